"""Ingest pipeline orchestration."""

from __future__ import annotations

import asyncio
import hashlib
import time
from dataclasses import dataclass
from typing import Mapping, Sequence

from docchat.core.config import Settings
from docchat.core.errors import (
    DatabaseError,
    EmbeddingError,
    NotFoundError,
    PartialFailureError,
    ProcessingError,
    ValidationError,
    classify,
)
from docchat.core.logging import get_logger, log_context
from docchat.core.metrics import INGEST_DURATION, INGEST_OUTCOMES
from docchat.core.retry import with_timeout
from docchat.db.store import DocumentStore
from docchat.ingest.abstracts import AbstractGenerator, placeholder_abstract
from docchat.ingest.chunker import chunk_text
from docchat.ingest.embeddings import Embedder
from docchat.ingest.loaders import LoaderRegistry, LocalFileStore
from docchat.ingest.types import (
    ChunkPayload,
    IngestMode,
    IngestOutcome,
    IngestRequest,
    IngestStage,
    UploadType,
)
from docchat.models.entities import Document, ProcessingEvent
from docchat.utils.ids import new_id
from docchat.utils.time import elapsed_ms, utc_now

logger = get_logger(__name__)

INSERT_BATCH_SIZE = 200


@dataclass(slots=True)
class _RunState:
    stage: IngestStage = IngestStage.FETCHING
    generation: int | None = None
    published: bool = False
    existing_chunk_count: int | None = None
    byte_size: int | None = None
    content_sha256: str | None = None


class IngestPipeline:
    """Coordinate extraction, chunking, embeddings, and generation swaps."""

    def __init__(
        self,
        store: DocumentStore,
        settings: Settings,
        embedders: Mapping[str, Embedder],
        loaders: LoaderRegistry | None = None,
        file_store: LocalFileStore | None = None,
        abstracts: AbstractGenerator | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.embedders = dict(embedders)
        self.loaders = loaders or LoaderRegistry()
        self.file_store = file_store
        self.abstracts = abstracts

    def open_event(self, request: IngestRequest) -> ProcessingEvent:
        """Write the ``started`` event for ``request``."""
        payload = _inline_payload(request)
        event = ProcessingEvent(
            id=new_id("evt"),
            document_slug=request.document_slug,
            action_type=request.mode.action_type,
            status="started",
            upload_type=request.upload_type.value,
            started_at=utc_now(),
            file_name=request.file_name or request.file_ref,
            requested_by=request.owner_id,
            byte_size=len(payload) if payload is not None else None,
            content_sha256=hashlib.sha256(payload).hexdigest() if payload is not None else None,
        )
        self.store.append_processing_event(event)
        return event

    async def run(self, request: IngestRequest, event: ProcessingEvent | None = None) -> IngestOutcome:
        """Ingest one upload; the processing event is finalised on every path."""
        if event is None:
            event = self.open_event(request)
        state = _RunState()
        started = time.monotonic()
        log_extra = log_context(
            document_slug=request.document_slug,
            event_id=event.id,
            mode=request.mode.value,
            upload_type=request.upload_type.value,
        )
        logger.info("Ingest started", extra=log_extra)
        try:
            outcome = await with_timeout(
                self._execute(request, event, state),
                self.settings.pipeline_timeout,
                "ingest pipeline",
            )
        except asyncio.CancelledError:
            self._fail(
                request,
                event,
                state,
                ProcessingError("Ingestion was cancelled before completion"),
                started,
            )
            raise
        except Exception as exc:
            error = classify(exc, {"document_slug": request.document_slug, "stage": state.stage.value})
            self._fail(request, event, state, error, started)
            logger.exception("Ingest failed during %s: %s", state.stage.value, error.message, extra=log_extra)
            if error is not exc:
                raise error from exc
            raise
        INGEST_DURATION.labels(upload_type=request.upload_type.value).observe(time.monotonic() - started)
        INGEST_OUTCOMES.labels(action_type=request.mode.action_type, status="completed").inc()
        logger.info("Ingest completed", extra={**log_extra, **log_context(chunks=outcome.chunk_count)})
        return outcome

    def abandon(self, event_id: str, reason: str) -> bool:
        """Fail an event whose run never got to finalise it."""
        return self.store.finalize_processing_event(
            event_id,
            "failed",
            {"error_kind": "unknown", "error_message": reason},
        )

    # Internal helpers -------------------------------------------------

    async def _execute(self, request: IngestRequest, event: ProcessingEvent, state: _RunState) -> IngestOutcome:
        started = time.monotonic()
        existing = self.store.get_document(request.document_slug)
        self._check_mode(request, existing)
        embedding_type = self._embedding_type(request, existing)
        embedder = self.embedders.get(embedding_type)
        if embedder is None:
            raise ValidationError(f"No embedder configured for {embedding_type!r}")

        self._enter(state, IngestStage.FETCHING, request)
        payload = await with_timeout(self._fetch(request), self.settings.fetch_timeout, "fetch")
        state.byte_size = len(payload)
        state.content_sha256 = hashlib.sha256(payload).hexdigest()

        self._enter(state, IngestStage.EXTRACTING, request)
        extracted = await with_timeout(
            self.loaders.extract(request.upload_type, payload, request.file_name),
            self.settings.stage_timeout,
            "extract",
        )

        self._enter(state, IngestStage.CHUNKING, request)
        chunks = chunk_text(extracted.text, self.settings.chunk_size, self.settings.chunk_overlap)
        title = request.title or (existing.title if existing else request.document_slug)
        abstract: str | None = None
        if request.mode is not IngestMode.APPEND:
            self._enter(state, IngestStage.ABSTRACTING, request)
            abstract = await self._abstract(title, chunks) or placeholder_abstract(title)

        if request.mode is IngestMode.APPEND:
            state.existing_chunk_count = self.store.live_chunk_count(request.document_slug)

        self._enter(state, IngestStage.EMBEDDING, request)
        state.generation = self.store.begin_generation(request.document_slug, embedding_type)
        await with_timeout(
            self._embed_and_store(request.document_slug, state.generation, embedder, chunks),
            self.settings.stage_timeout,
            "embed",
        )

        self._enter(state, IngestStage.PERSISTING, request)
        stored = self.store.generation_chunk_count(request.document_slug, state.generation)
        if stored != len(chunks):
            raise DatabaseError(
                f"Generation {state.generation} holds {stored} of {len(chunks)} chunks",
                transient=False,
                context={"document_slug": request.document_slug},
            )
        document = Document(
            slug=request.document_slug,
            title=title,
            owner_id=existing.owner_id if existing else request.owner_id,
            access_level=existing.access_level if existing else request.access_level,
            embedding_type=embedding_type,
            chunk_limit=request.chunk_limit or (existing.chunk_limit if existing else None),
            abstract=abstract,
        )
        self.store.publish_generation(document, state.generation, replace=request.mode is not IngestMode.APPEND)
        state.published = True

        self._enter(state, IngestStage.READY, request)
        duration_ms = elapsed_ms(started)
        self.store.finalize_processing_event(
            event.id,
            "completed",
            {
                "generation": state.generation,
                "chunk_count": len(chunks),
                "existing_chunk_count": state.existing_chunk_count,
                "processing_time_ms": duration_ms,
                "byte_size": state.byte_size,
                "content_sha256": state.content_sha256,
            },
        )
        return IngestOutcome(
            event_id=event.id,
            document_slug=request.document_slug,
            status="completed",
            generation=state.generation,
            chunk_count=len(chunks),
            existing_chunk_count=state.existing_chunk_count,
            abstract=abstract,
            duration_ms=duration_ms,
        )

    def _check_mode(self, request: IngestRequest, existing: Document | None) -> None:
        if request.chunk_limit is not None and request.chunk_limit < 1:
            raise ValidationError("chunk_limit must be positive")
        if request.mode is IngestMode.TRAIN and existing is not None:
            raise ValidationError(
                f"Document {request.document_slug} is already trained; retrain with replace or append",
                context={"document_slug": request.document_slug},
            )
        if request.mode is not IngestMode.TRAIN and existing is None:
            raise NotFoundError(
                f"Document {request.document_slug} does not exist",
                context={"document_slug": request.document_slug},
            )

    def _embedding_type(self, request: IngestRequest, existing: Document | None) -> str:
        if request.mode is IngestMode.APPEND and existing is not None:
            if request.embedding_type and request.embedding_type != existing.embedding_type:
                raise ValidationError(
                    "Appended chunks must use the document's embedding type",
                    context={"document_slug": request.document_slug, "embedding_type": existing.embedding_type},
                )
            return existing.embedding_type
        if request.embedding_type:
            return request.embedding_type
        if existing is not None:
            return existing.embedding_type
        return self.settings.default_embedding_type

    def _enter(self, state: _RunState, stage: IngestStage, request: IngestRequest) -> None:
        state.stage = stage
        logger.debug(
            "Ingest stage %s",
            stage.value,
            extra=log_context(document_slug=request.document_slug, stage=stage.value),
        )

    async def _fetch(self, request: IngestRequest) -> bytes:
        payload = _inline_payload(request)
        if payload is not None:
            if request.text is not None and request.upload_type is not UploadType.TEXT:
                raise ValidationError("Inline text is only accepted for text uploads")
            return payload
        if request.file_ref:
            if self.file_store is None:
                raise ValidationError("File references are not supported without a file store")
            return await self.file_store.fetch(request.file_ref)
        raise ValidationError("Ingest request carries no payload", context={"document_slug": request.document_slug})

    async def _abstract(self, title: str, chunks: Sequence[ChunkPayload]) -> str | None:
        if self.abstracts is None or not self.settings.generate_abstracts:
            return None
        try:
            return await with_timeout(
                self.abstracts.generate(title, chunks),
                self.settings.chat_timeout,
                "abstract",
            )
        except ProcessingError as exc:
            logger.warning("Abstract skipped: %s", exc.message, extra=log_context(title=title))
            return None

    async def _embed_and_store(
        self,
        slug: str,
        generation: int,
        embedder: Embedder,
        chunks: Sequence[ChunkPayload],
    ) -> None:
        """Embed every chunk into the pending generation.

        Successful vectors of a resumable partial failure are kept and only
        the failed subset is embedded again. A second failure, or a failure
        no retry could fix, fails the run.
        """
        embedding_type = embedder.embedding_type
        try:
            vectors = await embedder.embed([chunk.text for chunk in chunks])
        except PartialFailureError as exc:
            if not exc.retryable:
                raise
            successes: dict[int, list[float]] = exc.successes or {}
            self._insert(slug, generation, embedding_type, [(chunks[idx], successes[idx]) for idx in sorted(successes)])
            failed = [failure.chunk_index for failure in exc.failures if failure.chunk_index is not None]
            logger.warning(
                "Re-embedding %s failed chunks",
                len(failed),
                extra=log_context(document_slug=slug, generation=generation, failed_indices=failed),
            )
            try:
                retried = await embedder.embed([chunks[idx].text for idx in failed])
            except PartialFailureError as again:
                recovered: dict[int, list[float]] = again.successes or {}
                self._insert(
                    slug,
                    generation,
                    embedding_type,
                    [(chunks[failed[pos]], recovered[pos]) for pos in sorted(recovered)],
                )
                still_failed = [failed[failure.chunk_index] for failure in again.failures if failure.chunk_index is not None]
                raise PartialFailureError(
                    f"{len(still_failed)} of {len(chunks)} chunks could not be embedded",
                    successes=sorted(set(range(len(chunks))) - set(still_failed)),
                    failures=[
                        EmbeddingError(f"Chunk {idx} could not be embedded", chunk_index=idx)
                        for idx in still_failed
                    ],
                    context={"document_slug": slug, "generation": generation},
                ) from again
            self._insert(slug, generation, embedding_type, list(zip([chunks[idx] for idx in failed], retried)))
            return
        self._insert(slug, generation, embedding_type, list(zip(chunks, vectors)))

    def _insert(self, slug: str, generation: int, embedding_type: str, items: list) -> None:
        for start in range(0, len(items), INSERT_BATCH_SIZE):
            self.store.insert_chunks(slug, generation, embedding_type, items[start : start + INSERT_BATCH_SIZE])

    def _fail(
        self,
        request: IngestRequest,
        event: ProcessingEvent,
        state: _RunState,
        error: ProcessingError,
        started: float,
    ) -> None:
        """Discard the unpublished generation and finalise the event as failed."""
        if state.generation is not None and not state.published:
            try:
                self.store.delete_generation(request.document_slug, state.generation)
            except Exception:
                logger.exception(
                    "Could not discard generation %s of %s",
                    state.generation,
                    request.document_slug,
                )
        try:
            self.store.finalize_processing_event(
                event.id,
                "failed",
                {
                    "generation": state.generation,
                    "existing_chunk_count": state.existing_chunk_count,
                    "processing_time_ms": elapsed_ms(started),
                    "error_kind": error.kind.value,
                    "error_message": f"{state.stage.value}: {error.message}",
                    "byte_size": state.byte_size,
                    "content_sha256": state.content_sha256,
                },
            )
        except Exception:
            logger.exception("Could not finalise processing event %s", event.id)
        state.stage = IngestStage.FAILED
        INGEST_OUTCOMES.labels(action_type=request.mode.action_type, status="failed").inc()


def _inline_payload(request: IngestRequest) -> bytes | None:
    if request.payload is not None:
        return request.payload
    if request.text is not None:
        return request.text.encode("utf-8")
    return None


__all__ = ["IngestPipeline", "INSERT_BATCH_SIZE"]
