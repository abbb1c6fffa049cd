"""Tests for chunker."""

import pytest

from docchat.core.errors import ValidationError
from docchat.ingest.chunker import chunk_text, find_page_markers, page_for_offset

from conftest import paged_text


def _words(prefix: str, count: int) -> str:
    return " ".join(f"{prefix}{idx}" for idx in range(count))


def test_page_numbers_follow_preceding_marker() -> None:
    text = paged_text([_words("one", 40), _words("two", 40), _words("three", 40)])
    chunks = chunk_text(text, chunk_size=15, overlap=3)
    assert len(chunks) == 10
    markers = find_page_markers(text)
    pages = [chunk.page_number for chunk in chunks]
    assert pages == sorted(pages)
    for chunk in chunks:
        preceding = [marker.page for marker in markers if marker.offset <= chunk.start_char]
        assert chunk.page_number == preceding[-1]
        assert chunk.page_markers_found is True


def test_no_markers_means_no_pages() -> None:
    chunks = chunk_text(_words("w", 120), chunk_size=30, overlap=5)
    assert chunks
    assert all(chunk.page_number is None for chunk in chunks)
    assert all(chunk.page_markers_found is False for chunk in chunks)


def test_text_before_first_marker_has_no_page() -> None:
    text = _words("intro", 20) + " " + paged_text([_words("body", 20)])
    chunks = chunk_text(text, chunk_size=10, overlap=0)
    assert chunks[0].page_number is None
    assert chunks[-1].page_number == 1


def test_marker_is_never_split() -> None:
    text = paged_text([_words("a", 7), _words("b", 7)])
    for chunk in chunk_text(text, chunk_size=4, overlap=1):
        assert chunk.text.count("[Page") == chunk.text.count("]")


def test_windows_overlap_and_keep_short_tail() -> None:
    chunks = chunk_text(_words("t", 23), chunk_size=10, overlap=4)
    assert [chunk.token_count for chunk in chunks] == [10, 10, 10, 5]
    assert chunks[1].text.split()[:4] == chunks[0].text.split()[-4:]
    assert [chunk.ordinal for chunk in chunks] == [0, 1, 2, 3]
    assert all(chunk.start_char < chunk.end_char for chunk in chunks)


def test_short_text_is_one_chunk() -> None:
    chunks = chunk_text("just a few words", chunk_size=500, overlap=100)
    assert len(chunks) == 1
    assert chunks[0].text == "just a few words"


@pytest.mark.parametrize(("size", "overlap"), [(0, 0), (10, 10), (10, -1)])
def test_invalid_window_arguments(size: int, overlap: int) -> None:
    with pytest.raises(ValidationError):
        chunk_text("some text", chunk_size=size, overlap=overlap)


def test_empty_text_rejected() -> None:
    with pytest.raises(ValidationError):
        chunk_text("   \n ")


def test_page_for_offset_edges() -> None:
    markers = find_page_markers("[Page 2] x [Page 5] y")
    assert page_for_offset(markers, 0) == 2
    assert page_for_offset(markers, 10) == 2
    assert page_for_offset(markers, 11) == 5
    assert page_for_offset([], 3) is None
