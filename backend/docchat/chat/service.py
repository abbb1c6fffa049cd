"""Chat request handling: admission, access, retrieval, generation."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Sequence

from docchat.chat.ratelimit import Admission, SessionRateLimiter
from docchat.core.errors import AccessDeniedError, NotFoundError, RateLimitError, ValidationError, classify
from docchat.core.logging import bind_context, get_logger, log_context
from docchat.db.store import DocumentStore
from docchat.generation.orchestrator import GenerationOrchestrator, StreamEvent
from docchat.llm.chat import Message
from docchat.models.entities import ChatAudit, Document
from docchat.retrieval.retriever import RetrievalResult, Retriever
from docchat.security.access import AccessPolicy, CallerContext

logger = get_logger(__name__)


class SessionRateLimited(RateLimitError):
    """The session is over one of its message windows."""

    def __init__(self, session_id: str, admission: Admission) -> None:
        super().__init__(
            f"Rate limit exceeded ({admission.reason}), retry in {admission.retry_after_seconds}s",
            retry_after=admission.retry_after_seconds,
            context={"session_id": session_id, "reason": admission.reason},
        )
        self.admission = admission

    def to_dict(self) -> dict[str, Any]:
        return self.admission.to_dict()


@dataclass(slots=True)
class ChatRequest:
    message: str
    document_slugs: Sequence[str]
    session_id: str
    history: Sequence[Message] = field(default_factory=list)
    caller: CallerContext = field(default_factory=CallerContext)


class ChatService:
    def __init__(
        self,
        store: DocumentStore,
        retriever: Retriever,
        orchestrator: GenerationOrchestrator,
        limiter: SessionRateLimiter,
        access: AccessPolicy,
    ) -> None:
        self.store = store
        self.retriever = retriever
        self.orchestrator = orchestrator
        self.limiter = limiter
        self.access = access

    async def answer(self, request: ChatRequest) -> dict[str, Any]:
        with bind_context(session_id=request.session_id):
            result = await self._prepare(request)
            answer = await self.orchestrator.complete(request.message, result, request.history)
            self._audit(request, result, answer.metadata, streaming=False)
        payload = answer.to_dict()
        payload["partial_failure"] = result.partial_failure()
        return payload

    async def stream(self, request: ChatRequest) -> AsyncIterator[dict[str, Any]]:
        """Yield SSE frame payloads; failures before generation become one error frame."""
        try:
            result = await self._prepare(request)
        except SessionRateLimited as exc:
            yield StreamEvent("error", {"error": exc.to_dict()}).to_dict()
            return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = classify(exc, {"session_id": request.session_id})
            yield StreamEvent("error", {"error": error.to_dict()}).to_dict()
            return
        events = self.orchestrator.stream(request.message, result, request.history)
        try:
            async for event in events:
                if event.type == "done":
                    with bind_context(session_id=request.session_id):
                        self._audit(request, result, event.data.get("metadata", {}), streaming=True)
                yield event.to_dict()
        finally:
            await events.aclose()

    async def _prepare(self, request: ChatRequest) -> RetrievalResult:
        if not request.message.strip():
            raise ValidationError("Message must not be empty")
        if not request.document_slugs:
            raise ValidationError("At least one document is required")
        admission = self.limiter.admit(request.session_id)
        if not admission.allowed:
            raise SessionRateLimited(request.session_id, admission)
        documents = [self._authorize(slug, request.caller) for slug in dict.fromkeys(request.document_slugs)]
        result = await self.retriever.retrieve(request.message, documents)
        logger.info(
            "Retrieved context",
            extra=log_context(
                session_id=request.session_id,
                documents=[document.slug for document in documents],
                chunks=len(result.items),
                failed=list(result.failed_documents),
            ),
        )
        return result

    def _audit(
        self,
        request: ChatRequest,
        result: RetrievalResult,
        metadata: dict[str, Any],
        streaming: bool,
    ) -> None:
        """Record the chunks an answer was grounded on.

        A failed write is logged; the answer has already been produced.
        """
        audit = ChatAudit(
            session_id=request.session_id,
            user_id=request.caller.user_id,
            document_slugs=[document.slug for document in result.documents],
            chunk_ids=list(metadata.get("chunk_ids", result.chunk_ids)),
            retrieval_ms=metadata.get("retrieval_ms"),
            generation_ms=metadata.get("generation_ms"),
            model=metadata.get("model"),
            streaming=streaming,
            partial_failure=result.partial_failure() is not None,
        )
        logger.info(
            "Chat audit",
            extra=log_context(
                session_id=audit.session_id,
                document_slugs=audit.document_slugs,
                chunk_ids=audit.chunk_ids,
                retrieval_ms=audit.retrieval_ms,
                generation_ms=audit.generation_ms,
                model=audit.model,
                streaming=streaming,
            ),
        )
        try:
            self.store.record_chat_audit(audit)
        except Exception:
            logger.exception("Could not record chat audit for session %s", request.session_id)

    def _authorize(self, slug: str, caller: CallerContext) -> Document:
        document = self.store.get_document(slug)
        if document is None:
            raise NotFoundError(f"Document {slug} does not exist", context={"document_slug": slug})
        if not self.access.may_access(caller, slug):
            raise AccessDeniedError(f"Access to {slug} is not allowed", context={"document_slug": slug})
        return document


__all__ = ["ChatService", "ChatRequest", "SessionRateLimited"]
