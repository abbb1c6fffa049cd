"""Tests for retrieval utilities."""

from __future__ import annotations

import asyncio

import pytest

from docchat.core.config import Settings
from docchat.core.errors import NotFoundError, PartialFailureError
from docchat.db.store import DocumentStore
from docchat.ingest.embeddings import Embedder
from docchat.ingest.pipeline import IngestPipeline
from docchat.ingest.types import ChunkPayload, IngestRequest, UploadType
from docchat.models.entities import Document
from docchat.retrieval import Retriever, VectorIndex

from conftest import paged_text


def test_vector_index_basic() -> None:
    index = VectorIndex(dim=3)
    index.upsert(["a", "b"], [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
    results = index.search([1.0, 0.0, 0.0], top_k=1)
    assert results
    assert results[0].chunk_id == "a"


def test_vector_index_floor_and_ties() -> None:
    index = VectorIndex(dim=2)
    index.upsert(["first", "second", "far"], [[1.0, 0.0], [1.0, 0.0], [0.0, 1.0]])
    results = index.search([1.0, 0.0], top_k=5, min_score=0.5)
    assert [result.chunk_id for result in results] == ["first", "second"]


def _ingest(pipeline: IngestPipeline, slug: str, title: str, pages: list[str]) -> None:
    asyncio.run(
        pipeline.run(
            IngestRequest(
                document_slug=slug,
                upload_type=UploadType.TEXT,
                text=paged_text(pages),
                title=title,
            )
        )
    )


def _foreign_document(store: DocumentStore, slug: str) -> None:
    """A document stored in the 1536-dimensional openai space."""
    generation = store.begin_generation(slug, "openai")
    chunk = ChunkPayload(
        ordinal=0,
        text="blood pressure target",
        start_char=0,
        end_char=21,
        token_count=3,
        page_number=None,
        page_markers_found=False,
    )
    store.insert_chunks(slug, generation, "openai", [(chunk, [1.0] + [0.0] * 1535)])
    store.publish_generation(Document(slug=slug, title="Foreign", embedding_type="openai"), generation, replace=True)


@pytest.fixture
def retriever(store: DocumentStore, settings: Settings, embedders: dict[str, Embedder], retry_policy) -> Retriever:
    return Retriever(store, embedders, settings, retry_policy)


def test_single_document_retrieval(pipeline: IngestPipeline, retriever: Retriever) -> None:
    _ingest(pipeline, "cardio", "Cardio Manual", ["blood pressure target is below 130", "dosage guidance for drugs"])
    result = asyncio.run(retriever.retrieve("blood pressure target", ["cardio"]))
    assert result.items
    assert result.multi_document is False
    assert result.items[0].document_slug == "cardio"
    assert result.items[0].chunk.page_number == 1
    assert result.partial_failure() is None
    assert result.per_document_counts == {"cardio": len(result.items)}


def test_results_keep_request_order_per_document(pipeline: IngestPipeline, retriever: Retriever) -> None:
    _ingest(pipeline, "a", "Doc A", ["target below 130"])
    _ingest(pipeline, "b", "Doc B", ["target below 140"])
    result = asyncio.run(retriever.retrieve("target", ["b", "a"]))
    assert result.multi_document is True
    assert [item.document_slug for item in result.items] == ["b", "a"]
    assert {item.document_title for item in result.items} == {"Doc A", "Doc B"}


def test_one_failing_document_is_reported(
    pipeline: IngestPipeline,
    retriever: Retriever,
    store: DocumentStore,
) -> None:
    _ingest(pipeline, "local-doc", "Local", ["blood pressure target below 130"])
    _foreign_document(store, "foreign-doc")
    result = asyncio.run(retriever.retrieve("blood pressure target", ["local-doc", "foreign-doc"]))
    assert result.items
    assert all(item.document_slug == "local-doc" for item in result.items)
    partial = result.partial_failure()
    assert partial["type"] == "partial_document_failure"
    assert [entry["document_slug"] for entry in partial["failed_documents"]] == ["foreign-doc"]
    assert partial["searched_documents"] == ["local-doc"]


def test_all_documents_failing_raises(pipeline: IngestPipeline, retriever: Retriever, store: DocumentStore) -> None:
    _ingest(pipeline, "doc", "Doc", ["some content here"])
    store.set_document_active("doc", False)
    with pytest.raises(PartialFailureError):
        asyncio.run(retriever.retrieve("content", ["doc"]))


def test_unknown_document_is_not_found(retriever: Retriever) -> None:
    with pytest.raises(NotFoundError):
        asyncio.run(retriever.retrieve("anything", ["missing"]))


def test_chunk_limit_caps_results(pipeline: IngestPipeline, retriever: Retriever) -> None:
    pages = [" ".join(["pressure"] * 10 + [f"filler{idx}" for idx in range(60)]) for _ in range(4)]
    _ingest(pipeline, "long", "Long", pages)
    result = asyncio.run(retriever.retrieve("pressure", ["long"], per_document_limit=2))
    assert len(result.items) == 2
    scores = [item.score for item in result.items]
    assert scores == sorted(scores, reverse=True)
