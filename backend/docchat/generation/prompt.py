"""Prompt construction for grounded answers."""

from __future__ import annotations

from typing import Sequence

from docchat.core.errors import ValidationError
from docchat.llm.chat import Message
from docchat.retrieval.retriever import RetrievalResult

EXCERPT_SEPARATOR = "\n\n---\n\n"
HISTORY_ROLES = {"user", "assistant"}

SINGLE_DOCUMENT_CITATIONS = (
    "Look for [Page X] markers in the excerpts. References must give the page number only. "
    'Example: "Drug X is indicated[1]. Dosage is 100mg[2].\n\n---\n\n**References**\n[1] Page 15\n[2] Page 45"'
)

MULTI_DOCUMENT_CITATIONS = (
    "Look for [Page X] and [Source: Document Name] markers in the excerpts. Every reference MUST "
    "include both the source document name and the page number; a page number alone is not enough. "
    'Example: "Drug X is indicated[1]. Dosage is 100mg[2].\n\n---\n\n**References**\n'
    '[1] SMH Manual, Page 15\n[2] UHN Manual, Page 42"'
)

CONFLICT_INSTRUCTIONS = """
6. When the sources give conflicting or different information for the same question:
   - State explicitly that different recommendations exist between sources
   - Present every position with its own citation, e.g. "Source A recommends X[1], while Source B suggests Y[2]"
   - Do not reconcile the difference or choose one of the positions
   - If the difference comes from context (for example a different population), say so"""


def document_label(result: RetrievalResult) -> str:
    titles = [document.title for document in result.documents if document.title]
    if not titles:
        return "the provided documents"
    if len(titles) == 1:
        return titles[0]
    return " and ".join(titles)


def format_context(result: RetrievalResult) -> str:
    """Render retrieved chunks as tagged excerpts."""
    excerpts = []
    for item in result.items:
        excerpt = item.chunk.text
        if item.chunk.page_number is not None:
            excerpt += f" [Page {item.chunk.page_number}]"
        if result.multi_document:
            excerpt += f" [Source: {item.document_title}]"
        excerpts.append(excerpt)
    return EXCERPT_SEPARATOR.join(excerpts)


def build_system_prompt(result: RetrievalResult) -> str:
    multi = result.multi_document
    label = document_label(result)
    subject = f"multiple documents: {label}" if multi else label
    citations = MULTI_DOCUMENT_CITATIONS if multi else SINGLE_DOCUMENT_CITATIONS
    conflicts = CONFLICT_INSTRUCTIONS if multi else ""
    reference_rule = (
        "References MUST name the source document and the page (e.g. [1] SMH Manual, Page 15)"
        if multi
        else "Take page numbers from the [Page X] markers (e.g. [1] Page 15)"
    )
    return f"""You are a helpful assistant that answers questions about {subject}.

You MUST add footnotes [1], [2], etc. after every claim and finish with a **References** section. {citations}

RULES:
1. Answer ONLY from the excerpts below
2. If the excerpts do not contain the answer, say "I don't have that information in the provided sections of {label}"
3. Be concise and professional
4. If you are unsure, say so instead of guessing
5. Do not mention excerpt numbers or how the excerpts were selected{conflicts}

FORMATTING:
- Use **bold** for important terms
- Use lists for enumerations and numbered lists for steps
- Number footnotes from [1] in every answer
- {reference_rule}

RELEVANT EXCERPTS FROM {label.upper()}:
---
{format_context(result)}
---"""


def build_messages(
    query: str,
    result: RetrievalResult,
    history: Sequence[Message] = (),
    max_history: int = 10,
) -> list[Message]:
    """System prompt, the most recent history turns, then the question."""
    for message in history:
        if message.get("role") not in HISTORY_ROLES or not isinstance(message.get("content"), str):
            raise ValidationError("History entries need a user or assistant role and text content")
    recent = list(history)[-max_history:] if max_history > 0 else []
    return [
        {"role": "system", "content": build_system_prompt(result)},
        *({"role": message["role"], "content": message["content"]} for message in recent),
        {"role": "user", "content": query},
    ]


__all__ = [
    "EXCERPT_SEPARATOR",
    "CONFLICT_INSTRUCTIONS",
    "document_label",
    "format_context",
    "build_system_prompt",
    "build_messages",
]
