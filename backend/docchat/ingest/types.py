"""Common ingestion data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class UploadType(str, Enum):
    PDF = "pdf"
    TEXT = "text"
    AUDIO = "audio"


class IngestMode(str, Enum):
    TRAIN = "train"
    REPLACE = "replace"
    APPEND = "append"

    @property
    def action_type(self) -> str:
        return {
            IngestMode.TRAIN: "train",
            IngestMode.REPLACE: "retrain_replace",
            IngestMode.APPEND: "retrain_append",
        }[self]


class IngestStage(str, Enum):
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    ABSTRACTING = "abstracting"
    EMBEDDING = "embedding"
    PERSISTING = "persisting"
    READY = "ready"
    FAILED = "failed"


@dataclass(slots=True)
class ExtractedText:
    """Text produced by an extractor, with page markers where the format has pages."""

    text: str
    upload_type: UploadType
    page_count: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ChunkPayload:
    """Chunk produced by the chunker prior to persistence."""

    ordinal: int
    text: str
    start_char: int
    end_char: int
    token_count: int
    page_number: int | None
    page_markers_found: bool


@dataclass(slots=True)
class IngestRequest:
    """One upload or retrain request for a document."""

    document_slug: str
    upload_type: UploadType
    mode: IngestMode = IngestMode.TRAIN
    title: str | None = None
    owner_id: str | None = None
    payload: bytes | None = None
    text: str | None = None
    file_ref: str | None = None
    file_name: str | None = None
    embedding_type: str | None = None
    access_level: str = "public"
    chunk_limit: int | None = None


@dataclass(slots=True)
class IngestOutcome:
    event_id: str
    document_slug: str
    status: str
    generation: int | None = None
    chunk_count: int = 0
    existing_chunk_count: int | None = None
    abstract: str | None = None
    duration_ms: int = 0
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "document_slug": self.document_slug,
            "status": self.status,
            "generation": self.generation,
            "chunk_count": self.chunk_count,
            "existing_chunk_count": self.existing_chunk_count,
            "abstract": self.abstract,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


__all__ = [
    "UploadType",
    "IngestMode",
    "IngestStage",
    "ExtractedText",
    "ChunkPayload",
    "IngestRequest",
    "IngestOutcome",
]
