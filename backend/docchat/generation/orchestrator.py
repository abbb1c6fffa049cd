"""Answer generation over retrieved excerpts, complete or streamed."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal, Sequence

from docchat.core.config import Settings
from docchat.core.errors import classify
from docchat.core.logging import get_logger, log_context
from docchat.core.retry import RetryPolicy
from docchat.generation.citations import Citation, annotate_citations, citation_violations, extract_citations
from docchat.generation.prompt import build_messages
from docchat.llm.chat import ChatProvider, Message
from docchat.retrieval.retriever import RetrievalResult
from docchat.utils.time import elapsed_ms

logger = get_logger(__name__)

StreamEventType = Literal["content", "done", "error"]


@dataclass(slots=True)
class Answer:
    text: str
    citations: list[Citation]
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "answer": self.text,
            "citations": [citation.to_dict() for citation in self.citations],
            "metadata": self.metadata,
        }


@dataclass(slots=True)
class StreamEvent:
    type: StreamEventType
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, **self.data}


class GenerationOrchestrator:
    """Turn a retrieval result and history into an answer.

    ``stream`` yields content events followed by exactly one ``done`` event,
    or a single ``error`` event if the provider fails. Closing the stream
    closes the provider call.
    """

    def __init__(
        self,
        chat: ChatProvider,
        settings: Settings,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.chat = chat
        self.settings = settings
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)

    def generate(
        self,
        query: str,
        result: RetrievalResult,
        history: Sequence[Message] = (),
        mode: Literal["complete", "stream"] = "complete",
    ):
        """Coroutine resolving to an Answer, or an async iterator of StreamEvents."""
        if mode == "stream":
            return self.stream(query, result, history)
        return self.complete(query, result, history)

    async def complete(
        self,
        query: str,
        result: RetrievalResult,
        history: Sequence[Message] = (),
    ) -> Answer:
        messages = build_messages(query, result, history, self.settings.max_history_messages)
        started = time.monotonic()
        text = await self.retry_policy.run(
            lambda: self.chat.complete(messages),
            operation="chat_completion",
            context={"documents": [document.slug for document in result.documents]},
        )
        generation_ms = elapsed_ms(started)
        citations = self._citations(text, result)
        return Answer(text=text, citations=citations, metadata=self._metadata(result, citations, generation_ms))

    async def stream(
        self,
        query: str,
        result: RetrievalResult,
        history: Sequence[Message] = (),
    ) -> AsyncIterator[StreamEvent]:
        messages = build_messages(query, result, history, self.settings.max_history_messages)
        started = time.monotonic()
        parts: list[str] = []
        attempt = 0
        while True:
            attempt += 1
            provider_stream = self.chat.stream(messages)
            try:
                async for delta in provider_stream:
                    parts.append(delta)
                    yield StreamEvent("content", {"chunk": delta})
                break
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = classify(exc, {"operation": "chat_stream"})
                # Nothing has reached the caller yet, so the call can be replayed.
                if not parts and error.retryable and attempt < self.retry_policy.max_attempts:
                    delay = self.retry_policy.delay_for(attempt, error)
                    logger.warning(
                        "Retrying chat stream after %s",
                        error.kind.value,
                        extra=log_context(attempt=attempt, delay=round(delay, 3)),
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.error(
                    "Chat stream failed: %s",
                    error.message,
                    extra=log_context(kind=error.kind.value, chunks_sent=len(parts)),
                )
                yield StreamEvent("error", {"error": error.to_dict()})
                return
            finally:
                await provider_stream.aclose()

        generation_ms = elapsed_ms(started)
        citations = self._citations("".join(parts), result)
        yield StreamEvent("done", {"metadata": self._metadata(result, citations, generation_ms)})

    def _citations(self, text: str, result: RetrievalResult) -> list[Citation]:
        citations = annotate_citations(extract_citations(text), result)
        violations = citation_violations(citations, result.multi_document)
        if violations:
            logger.warning(
                "Answer citations break the %s-document format",
                "multi" if result.multi_document else "single",
                extra=log_context(citations=violations),
            )
        return citations

    def _metadata(self, result: RetrievalResult, citations: list[Citation], generation_ms: int) -> dict[str, Any]:
        return {
            "retrieval_ms": result.retrieval_ms,
            "generation_ms": generation_ms,
            "chunks_used": len(result.items),
            "chunk_ids": result.chunk_ids,
            "per_document_counts": result.per_document_counts,
            "citations": [citation.to_dict() for citation in citations],
            "model": getattr(self.chat, "model", None),
            "embedding_type": result.embedding_type,
            "partial_failure": result.partial_failure(),
        }


__all__ = ["GenerationOrchestrator", "Answer", "StreamEvent"]
