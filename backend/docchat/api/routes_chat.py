"""Chat routes, complete and streamed."""

from __future__ import annotations

from typing import Any, AsyncIterator

import orjson
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from docchat.api.dependencies import get_caller, get_chat_service
from docchat.chat.service import ChatRequest, ChatService
from docchat.models.dto import ChatRequestBody, ChatResponse
from docchat.security.access import CallerContext

router = APIRouter()


def _to_request(body: ChatRequestBody, caller: CallerContext) -> ChatRequest:
    return ChatRequest(
        message=body.message,
        document_slugs=body.document_slugs,
        session_id=body.session_id,
        history=[message.model_dump() for message in body.history],
        caller=caller,
    )


@router.post("", response_model=ChatResponse, summary="Answer a question over one or more documents")
async def chat(
    body: ChatRequestBody,
    caller: CallerContext = Depends(get_caller),
    service: ChatService = Depends(get_chat_service),
) -> dict[str, Any]:
    return await service.answer(_to_request(body, caller))


@router.post("/stream", summary="Stream an answer as server-sent events")
async def chat_stream(
    body: ChatRequestBody,
    caller: CallerContext = Depends(get_caller),
    service: ChatService = Depends(get_chat_service),
) -> StreamingResponse:
    return StreamingResponse(
        _sse(service.stream(_to_request(body, caller))),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


async def _sse(events: AsyncIterator[dict[str, Any]]) -> AsyncIterator[bytes]:
    try:
        async for event in events:
            yield b"data: " + orjson.dumps(event, default=str) + b"\n\n"
    finally:
        await events.aclose()


__all__ = ["router"]
