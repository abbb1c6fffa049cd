"""Pydantic DTOs exposed via API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


class IngestRequestBody(BaseModel):
    upload_type: Literal["pdf", "text", "audio"]
    mode: Literal["train", "replace", "append"] = "train"
    title: str | None = None
    text: str | None = Field(default=None, description="Inline text for text uploads")
    content_base64: str | None = Field(default=None, description="Base64 encoded file content")
    file_ref: str | None = Field(default=None, description="Reference into the configured file store")
    file_name: str | None = None
    embedding_type: Literal["openai", "local"] | None = None
    access_level: Literal["public", "registered", "owner_restricted"] = "public"
    chunk_limit: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _one_source(self) -> "IngestRequestBody":
        provided = [value for value in (self.text, self.content_base64, self.file_ref) if value is not None]
        if len(provided) != 1:
            raise ValueError("Provide exactly one of text, content_base64 or file_ref")
        return self


class IngestAccepted(BaseModel):
    job_id: str
    event_id: str
    document_slug: str
    status: Literal["accepted"] = "accepted"


class ProcessingEventResponse(BaseModel):
    id: str
    document_slug: str
    action_type: str
    status: str
    upload_type: str
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
    started_at: datetime
    finished_at: datetime | None = None


class DocumentResponse(BaseModel):
    slug: str
    title: str
    access_level: str
    is_active: bool
    embedding_type: str
    chunk_limit: int | None = None
    abstract: str | None = None
    live_chunk_count: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


class HistoryMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequestBody(BaseModel):
    message: str = Field(min_length=1)
    document_slugs: list[str] = Field(min_length=1)
    session_id: str = Field(min_length=1)
    history: list[HistoryMessage] = Field(default_factory=list)


class CitationResponse(BaseModel):
    number: int
    page: int
    document: str | None = None
    document_slug: str | None = None


class ChatResponse(BaseModel):
    answer: str
    citations: list[CitationResponse]
    metadata: dict[str, Any]
    partial_failure: dict[str, Any] | None = None


class ChatAuditResponse(BaseModel):
    id: str
    session_id: str
    user_id: str | None = None
    document_slugs: list[str]
    chunk_ids: list[str]
    retrieval_ms: int | None = None
    generation_ms: int | None = None
    model: str | None = None
    streaming: bool = False
    partial_failure: bool = False
    created_at: datetime


class QuizGenerateBody(BaseModel):
    question_count: int | None = Field(default=None, ge=1, le=100)


class QuizQuestionResponse(BaseModel):
    question: str
    options: list[str]
    correct_answer: int
    explanation: str | None = None
    page_number: int | None = None


class QuizResponse(BaseModel):
    document_slug: str
    requested: int
    shortfall: int
    generated_at: datetime
    generated_by: str | None = None
    failed_batches: list[dict[str, Any]]
    questions: list[QuizQuestionResponse]


__all__ = [
    "IngestRequestBody",
    "IngestAccepted",
    "ProcessingEventResponse",
    "DocumentResponse",
    "HistoryMessage",
    "ChatRequestBody",
    "CitationResponse",
    "ChatResponse",
    "ChatAuditResponse",
    "QuizGenerateBody",
    "QuizQuestionResponse",
    "QuizResponse",
]
