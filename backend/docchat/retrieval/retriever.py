"""Multi-document similarity retrieval."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping, Sequence

from docchat.core.config import Settings
from docchat.core.errors import NotFoundError, PartialFailureError, ProcessingError, ValidationError, classify
from docchat.core.logging import get_logger, log_context
from docchat.core.metrics import RETRIEVAL_LATENCY
from docchat.core.retry import RetryPolicy
from docchat.ingest.embeddings import Embedder
from docchat.models.entities import Chunk, Document

if TYPE_CHECKING:
    from docchat.db.store import DocumentStore

logger = get_logger(__name__)


@dataclass(slots=True)
class RetrievedChunk:
    chunk: Chunk
    score: float
    document_slug: str
    document_title: str


@dataclass(slots=True)
class RetrievalResult:
    """Ranked chunks for one query, grouped per document in request order."""

    items: list[RetrievedChunk]
    documents: list[Document]
    per_document_counts: dict[str, int]
    failed_documents: dict[str, ProcessingError] = field(default_factory=dict)
    embedding_type: str = "openai"
    retrieval_ms: int = 0

    @property
    def chunk_ids(self) -> list[str]:
        return [item.chunk.id for item in self.items]

    @property
    def multi_document(self) -> bool:
        return len(self.documents) > 1

    def partial_failure(self) -> dict[str, Any] | None:
        if not self.failed_documents:
            return None
        return {
            "type": "partial_document_failure",
            "failed_documents": [
                {"document_slug": slug, "kind": error.kind.value, "message": error.message}
                for slug, error in self.failed_documents.items()
            ],
            "searched_documents": [
                document.slug for document in self.documents if document.slug not in self.failed_documents
            ],
        }


class Retriever:
    """Embed the query once, search each document concurrently, merge.

    One document failing is recorded and skipped; only when every document
    fails does retrieval itself fail.
    """

    def __init__(
        self,
        store: DocumentStore,
        embedders: Mapping[str, Embedder],
        settings: Settings,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.store = store
        self.embedders = dict(embedders)
        self.settings = settings
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)

    async def retrieve(
        self,
        query: str,
        documents: Sequence[Document | str],
        embedding_type: str | None = None,
        per_document_limit: int | None = None,
    ) -> RetrievalResult:
        """Documents may be given as records or slugs; an unknown slug is a NotFoundError."""
        documents = [self._resolve(document) for document in documents]
        if not documents:
            raise ValidationError("At least one document is required")
        if not query.strip():
            raise ValidationError("Query must not be empty")
        started = time.monotonic()
        embedding_type = embedding_type or self._embedding_type(documents)
        embedder = self.embedders.get(embedding_type)
        if embedder is None:
            raise ValidationError(f"No embedder configured for {embedding_type!r}")
        floor = self.settings.similarity_floor(embedding_type)

        # Nothing can be searched without the query vector, so this propagates.
        query_vector = await embedder.embed_one(query)

        results = await asyncio.gather(
            *(
                self._search(document, query_vector, self._limit(document, per_document_limit), floor)
                for document in documents
            ),
            return_exceptions=True,
        )

        items: list[RetrievedChunk] = []
        counts: dict[str, int] = {}
        failed: dict[str, ProcessingError] = {}
        for document, result in zip(documents, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                error = classify(result, {"document_slug": document.slug})
                failed[document.slug] = error
                logger.warning(
                    "Retrieval failed for %s",
                    document.slug,
                    extra=log_context(document_slug=document.slug, error=error.message, kind=error.kind.value),
                )
                continue
            counts[document.slug] = len(result)
            items.extend(
                RetrievedChunk(chunk=chunk, score=score, document_slug=document.slug, document_title=document.title)
                for chunk, score in result
            )

        elapsed = time.monotonic() - started
        RETRIEVAL_LATENCY.observe(elapsed)
        if len(failed) == len(documents):
            raise PartialFailureError(
                "None of the requested documents could be searched",
                successes=[],
                failures=list(failed.values()),
                context={"documents": [document.slug for document in documents]},
            )
        return RetrievalResult(
            items=items,
            documents=list(documents),
            per_document_counts=counts,
            failed_documents=failed,
            embedding_type=embedding_type,
            retrieval_ms=int(elapsed * 1000),
        )

    def _resolve(self, document: Document | str) -> Document:
        if isinstance(document, Document):
            return document
        found = self.store.get_document(document)
        if found is None:
            raise NotFoundError(f"Document {document} does not exist", context={"document_slug": document})
        return found

    def _embedding_type(self, documents: Sequence[Document]) -> str:
        if len(documents) > 1:
            return self.settings.default_embedding_type
        return documents[0].embedding_type

    def _limit(self, document: Document, override: int | None) -> int:
        if override is not None:
            return override
        return document.chunk_limit or self.settings.default_chunk_limit

    async def _search(
        self,
        document: Document,
        query_vector: list[float],
        limit: int,
        floor: float,
    ) -> list[tuple[Chunk, float]]:
        if not document.is_active:
            raise NotFoundError(f"Document {document.slug} is not active", context={"document_slug": document.slug})
        return await self.retry_policy.run(
            lambda: asyncio.to_thread(self.store.similarity_search, document.slug, query_vector, limit, floor),
            operation="similarity_search",
            context={"document_slug": document.slug},
        )


__all__ = ["Retriever", "RetrievalResult", "RetrievedChunk"]
