"""Parsing and checking of answer references."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from docchat.retrieval.retriever import RetrievalResult

_REFERENCES_HEADING_RE = re.compile(r"^\s*(?:\*\*)?References(?:\*\*)?:?\s*$", re.IGNORECASE | re.MULTILINE)
_REFERENCE_RE = re.compile(
    r"^\s*\[(?P<number>\d+)\]\s*(?:(?P<document>.+?),\s*)?Page\s+(?P<page>\d+)\s*\.?\s*$",
    re.IGNORECASE | re.MULTILINE,
)


@dataclass(slots=True)
class Citation:
    number: int
    page: int
    document: str | None = None
    document_slug: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "page": self.page,
            "document": self.document,
            "document_slug": self.document_slug,
        }


def extract_citations(answer: str) -> list[Citation]:
    """Parse ``[n] Document, Page X`` / ``[n] Page X`` lines of the References block."""
    headings = list(_REFERENCES_HEADING_RE.finditer(answer))
    section = answer[headings[-1].end() :] if headings else answer
    citations = []
    for match in _REFERENCE_RE.finditer(section):
        document = match.group("document")
        citations.append(
            Citation(
                number=int(match.group("number")),
                page=int(match.group("page")),
                document=document.strip() if document else None,
            )
        )
    return citations


def annotate_citations(citations: list[Citation], result: RetrievalResult) -> list[Citation]:
    """Attach document slugs; fill a missing name when the page identifies one document."""
    by_title = {document.title.lower(): document for document in result.documents if document.title}
    for citation in citations:
        if not result.multi_document:
            citation.document_slug = result.documents[0].slug
            continue
        if citation.document:
            document = by_title.get(citation.document.lower())
            if document is not None:
                citation.document_slug = document.slug
            continue
        candidates = {
            item.document_slug: item.document_title
            for item in result.items
            if item.chunk.page_number == citation.page
        }
        if len(candidates) == 1:
            citation.document_slug, citation.document = next(iter(candidates.items()))
    return citations


def citation_violations(citations: list[Citation], multi_document: bool) -> list[int]:
    """Citation numbers that break the format rule for this kind of query."""
    if multi_document:
        return [citation.number for citation in citations if not citation.document]
    return [citation.number for citation in citations if citation.document]


__all__ = ["Citation", "extract_citations", "annotate_citations", "citation_violations"]
