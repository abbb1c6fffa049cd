"""Internal dataclasses representing persisted entities."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

EMBEDDING_DIMENSIONS: dict[str, int] = {"openai": 1536, "local": 384}

ACCESS_LEVELS = ("public", "registered", "owner_restricted")


@dataclass(slots=True)
class Document:
    slug: str
    title: str
    owner_id: str | None = None
    access_level: str = "public"
    is_active: bool = True
    embedding_type: str = "openai"
    chunk_limit: int | None = None
    abstract: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class Chunk:
    """Immutable slice of a generation; ``id`` is derived from its key."""

    id: str
    document_slug: str
    generation: int
    ordinal: int
    text: str
    page_number: int | None
    start_char: int
    end_char: int
    token_count: int
    embedding_type: str


@dataclass(slots=True)
class ProcessingEvent:
    id: str
    document_slug: str
    action_type: str
    status: str
    upload_type: str
    started_at: datetime
    file_name: str | None = None
    requested_by: str | None = None
    byte_size: int | None = None
    content_sha256: str | None = None
    generation: int | None = None
    chunk_count: int | None = None
    existing_chunk_count: int | None = None
    processing_time_ms: int | None = None
    error_kind: str | None = None
    error_message: str | None = None
    finished_at: datetime | None = None


@dataclass(slots=True)
class ChatAudit:
    """The chunks one answered turn was grounded on."""

    session_id: str
    document_slugs: list[str]
    chunk_ids: list[str]
    user_id: str | None = None
    retrieval_ms: int | None = None
    generation_ms: int | None = None
    model: str | None = None
    streaming: bool = False
    partial_failure: bool = False
    id: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class QuizQuestion:
    question: str
    options: list[str]
    correct_answer: int
    explanation: str | None = None
    page_number: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "question": self.question,
            "options": list(self.options),
            "correct_answer": self.correct_answer,
            "explanation": self.explanation,
            "page_number": self.page_number,
        }


@dataclass(slots=True)
class QuizSet:
    document_slug: str
    questions: list[QuizQuestion]
    requested: int
    generated_at: datetime
    failed_batches: list[dict[str, Any]] = field(default_factory=list)
    generated_by: str | None = None

    @property
    def shortfall(self) -> int:
        return max(0, self.requested - len(self.questions))

    @property
    def complete(self) -> bool:
        return self.shortfall == 0


def chunk_key(document_slug: str, generation: int, ordinal: int) -> str:
    return f"{document_slug}:{generation}:{ordinal}"


__all__ = [
    "EMBEDDING_DIMENSIONS",
    "ACCESS_LEVELS",
    "Document",
    "Chunk",
    "ProcessingEvent",
    "ChatAudit",
    "QuizQuestion",
    "QuizSet",
    "chunk_key",
]
