"""Administrative routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from docchat.api.dependencies import get_app_settings, get_caller, get_rate_limiter, get_scheduler, get_store
from docchat.chat.ratelimit import SessionRateLimiter
from docchat.core.config import Settings
from docchat.core.errors import AccessDeniedError
from docchat.core.metrics import metrics_response
from docchat.db.store import DocumentStore
from docchat.ingest.scheduler import IngestionScheduler
from docchat.models.dto import ChatAuditResponse, ProcessingEventResponse
from docchat.security.access import CallerContext

router = APIRouter()


def require_super_admin(caller: CallerContext = Depends(get_caller)) -> CallerContext:
    if not caller.is_super_admin:
        raise AccessDeniedError("Administrative routes require the super_admin role")
    return caller


@router.get("/metrics", summary="Prometheus metrics")
async def get_metrics():
    return metrics_response()


@router.get("/admin/rate-limit", summary="Rate limiter state", dependencies=[Depends(require_super_admin)])
async def rate_limit_stats(limiter: SessionRateLimiter = Depends(get_rate_limiter)) -> dict[str, Any]:
    return {
        **limiter.stats(),
        "rules": [
            {"reason": rule.reason, "limit": rule.limit, "window_seconds": rule.window_seconds}
            for rule in limiter.rules
        ],
    }


@router.get(
    "/admin/processing/stale",
    response_model=list[ProcessingEventResponse],
    summary="Processing events stuck in started",
    dependencies=[Depends(require_super_admin)],
)
async def stale_processing(
    older_than_seconds: int | None = None,
    store: DocumentStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> list[ProcessingEventResponse]:
    events = store.stale_events(older_than_seconds or settings.stale_after_seconds)
    return [ProcessingEventResponse.model_validate(event, from_attributes=True) for event in events]


@router.get(
    "/admin/chat/audits",
    response_model=list[ChatAuditResponse],
    summary="Chunks recently used to answer chats",
    dependencies=[Depends(require_super_admin)],
)
async def chat_audits(
    session_id: str | None = None,
    limit: int = 50,
    store: DocumentStore = Depends(get_store),
) -> list[ChatAuditResponse]:
    return [ChatAuditResponse.model_validate(audit, from_attributes=True) for audit in store.list_chat_audits(session_id, limit)]


@router.get("/admin/stats", summary="Row counts and active jobs", dependencies=[Depends(require_super_admin)])
async def stats(
    store: DocumentStore = Depends(get_store),
    scheduler: IngestionScheduler = Depends(get_scheduler),
) -> dict[str, Any]:
    return {**store.stats(), "active_jobs": scheduler.active_jobs}


__all__ = ["router"]
