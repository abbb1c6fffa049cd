"""Document ingest and history routes."""

from __future__ import annotations

import base64
import binascii

from fastapi import APIRouter, Depends

from docchat.api.dependencies import get_access_policy, get_caller, get_scheduler, get_store
from docchat.core.errors import AccessDeniedError, NotFoundError, ValidationError
from docchat.db.store import DocumentStore
from docchat.ingest.scheduler import IngestionScheduler
from docchat.ingest.types import IngestMode, IngestRequest, UploadType
from docchat.models.dto import DocumentResponse, IngestAccepted, IngestRequestBody, ProcessingEventResponse
from docchat.models.entities import Document
from docchat.security.access import CallerContext, DocumentAccessPolicy
from docchat.utils.ids import validate_slug

router = APIRouter()


@router.post(
    "/{slug}/ingest",
    response_model=IngestAccepted,
    status_code=202,
    summary="Upload or retrain a document in the background",
)
async def ingest_document(
    slug: str,
    body: IngestRequestBody,
    caller: CallerContext = Depends(get_caller),
    scheduler: IngestionScheduler = Depends(get_scheduler),
    store: DocumentStore = Depends(get_store),
) -> IngestAccepted:
    validate_slug(slug)
    existing = store.get_document(slug)
    if existing is not None and not _owns(caller, existing):
        raise AccessDeniedError(f"Only the owner may retrain {slug}", context={"document_slug": slug})
    request = IngestRequest(
        document_slug=slug,
        upload_type=UploadType(body.upload_type),
        mode=IngestMode(body.mode),
        title=body.title,
        owner_id=caller.user_id,
        payload=_decode(body.content_base64),
        text=body.text,
        file_ref=body.file_ref,
        file_name=body.file_name,
        embedding_type=body.embedding_type,
        access_level=body.access_level,
        chunk_limit=body.chunk_limit,
    )
    handle = scheduler.submit(request)
    return IngestAccepted(job_id=handle.job_id, event_id=handle.event_id, document_slug=slug)


@router.get("/{slug}", response_model=DocumentResponse, summary="Document summary")
async def get_document(
    slug: str,
    caller: CallerContext = Depends(get_caller),
    store: DocumentStore = Depends(get_store),
    access: DocumentAccessPolicy = Depends(get_access_policy),
) -> DocumentResponse:
    document = store.get_document(slug)
    if document is None:
        raise NotFoundError(f"Document {slug} does not exist", context={"document_slug": slug})
    if not access.may_access(caller, slug):
        raise AccessDeniedError(f"Access to {slug} is not allowed", context={"document_slug": slug})
    return DocumentResponse(
        slug=document.slug,
        title=document.title,
        access_level=document.access_level,
        is_active=document.is_active,
        embedding_type=document.embedding_type,
        chunk_limit=document.chunk_limit,
        abstract=document.abstract,
        live_chunk_count=store.live_chunk_count(slug),
        created_at=document.created_at,
        updated_at=document.updated_at,
    )


@router.get("/{slug}/history", response_model=list[ProcessingEventResponse], summary="Processing events for a document")
async def document_history(
    slug: str,
    limit: int = 50,
    caller: CallerContext = Depends(get_caller),
    store: DocumentStore = Depends(get_store),
    access: DocumentAccessPolicy = Depends(get_access_policy),
) -> list[ProcessingEventResponse]:
    """Events of a readable document; before the first publish, the caller's own requests."""
    events = store.list_processing_events(slug, limit)
    document = store.get_document(slug)
    if document is None:
        if not caller.is_super_admin:
            events = [event for event in events if caller.authenticated and event.requested_by == caller.user_id]
        if not events:
            raise NotFoundError(f"Document {slug} does not exist", context={"document_slug": slug})
    elif not (_owns(caller, document) or access.may_access(caller, slug)):
        raise AccessDeniedError(f"Access to {slug} is not allowed", context={"document_slug": slug})
    return [ProcessingEventResponse.model_validate(event, from_attributes=True) for event in events]


def _owns(caller: CallerContext, document: Document) -> bool:
    if caller.is_super_admin:
        return True
    # Anonymous callers own nothing, including documents trained anonymously.
    return caller.authenticated and caller.user_id == document.owner_id


def _decode(content: str | None) -> bytes | None:
    if content is None:
        return None
    try:
        return base64.b64decode(content, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("content_base64 is not valid base64") from exc


__all__ = ["router"]
