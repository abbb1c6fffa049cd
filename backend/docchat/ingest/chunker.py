"""Chunking utilities."""

from __future__ import annotations

import bisect
import re
from dataclasses import dataclass

from docchat.core.errors import ValidationError
from docchat.ingest.types import ChunkPayload

PAGE_MARKER_RE = re.compile(r"\[Page (\d+)\]")
# A page marker counts as a single token so windows never split one.
_TOKEN_RE = re.compile(r"\[Page \d+\]|\S+")


@dataclass(slots=True)
class PageMarker:
    offset: int
    page: int


@dataclass(slots=True)
class Token:
    text: str
    start: int
    end: int


def find_page_markers(text: str) -> list[PageMarker]:
    """Locate every ``[Page N]`` marker once, in document order."""
    return [PageMarker(offset=match.start(), page=int(match.group(1))) for match in PAGE_MARKER_RE.finditer(text)]


def page_for_offset(markers: list[PageMarker], offset: int, offsets: list[int] | None = None) -> int | None:
    """Page of the last marker at or before ``offset``; None before the first marker."""
    if not markers:
        return None
    positions = offsets if offsets is not None else [marker.offset for marker in markers]
    idx = bisect.bisect_right(positions, offset) - 1
    if idx < 0:
        return None
    return markers[idx].page


def chunk_text(text: str, chunk_size: int = 500, overlap: int = 100) -> list[ChunkPayload]:
    """Split text into overlapping token windows attributed to pages.

    Windows hold ``chunk_size`` tokens and advance by ``chunk_size - overlap``.
    The last window is always emitted, however short.
    """
    if chunk_size <= 0:
        raise ValidationError("chunk_size must be positive")
    if overlap < 0 or overlap >= chunk_size:
        raise ValidationError("overlap must be non-negative and smaller than chunk_size")
    if not text or not text.strip():
        raise ValidationError("Cannot chunk empty text")

    tokens = [Token(match.group(), match.start(), match.end()) for match in _TOKEN_RE.finditer(text)]
    markers = find_page_markers(text)
    offsets = [marker.offset for marker in markers]
    markers_found = bool(markers)
    step = chunk_size - overlap

    chunks: list[ChunkPayload] = []
    start = 0
    while start < len(tokens):
        window = tokens[start : start + chunk_size]
        begin = window[0].start
        end = window[-1].end
        chunks.append(
            ChunkPayload(
                ordinal=len(chunks),
                text=text[begin:end],
                start_char=begin,
                end_char=end,
                token_count=len(window),
                page_number=page_for_offset(markers, begin, offsets) if markers_found else None,
                page_markers_found=markers_found,
            )
        )
        if start + chunk_size >= len(tokens):
            break
        start += step
    return chunks


__all__ = ["PageMarker", "find_page_markers", "page_for_offset", "chunk_text"]
