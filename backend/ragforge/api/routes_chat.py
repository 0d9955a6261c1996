"""Chat session routes; replies stream as newline-delimited JSON envelopes."""

from __future__ import annotations

from contextlib import aclosing
from typing import Any, AsyncGenerator, AsyncIterator

from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import StreamingResponse

from ragforge.api.dependencies import get_chat_service, get_gateway
from ragforge.generation.gateway import GenerationGateway
from ragforge.generation.types import GenerationOptions
from ragforge.models.dto import (
    ChatOptions,
    DeleteResponse,
    MessageCreateRequest,
    MessageResponse,
    SessionCreateRequest,
    SessionListResponse,
    SessionResponse,
    SessionUpdateRequest,
)
from ragforge.rag.chat import ChatService, encode_envelope
from ragforge.utils.time import to_datetime

router = APIRouter()

NDJSON_MEDIA_TYPE = "application/x-ndjson"


@router.post("/sessions", response_model=SessionResponse, status_code=201, summary="Open a chat session")
async def create_session(
    request: SessionCreateRequest,
    service: ChatService = Depends(get_chat_service),
) -> SessionResponse:
    session = service.create_session(request.knowledge_base_id, request.title)
    return SessionResponse.from_row(session)


@router.get("/sessions", response_model=SessionListResponse, summary="List sessions of a knowledge base")
async def list_sessions(
    knowledge_base_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    service: ChatService = Depends(get_chat_service),
) -> SessionListResponse:
    sessions = service.list_sessions(knowledge_base_id, limit=limit, offset=offset)
    return SessionListResponse(
        sessions=[SessionResponse.from_row(session) for session in sessions], limit=limit, offset=offset
    )


@router.patch("/sessions/{session_id}", response_model=SessionResponse, summary="Rename a session")
async def rename_session(
    session_id: str,
    request: SessionUpdateRequest,
    service: ChatService = Depends(get_chat_service),
) -> SessionResponse:
    return SessionResponse.from_row(service.rename_session(session_id, request.title))


@router.delete("/sessions/{session_id}", response_model=DeleteResponse, summary="Delete a session and its messages")
async def delete_session(session_id: str, service: ChatService = Depends(get_chat_service)) -> DeleteResponse:
    service.delete_session(session_id)
    return DeleteResponse(status="ok", deleted=1)


@router.get("/sessions/{session_id}/export", summary="Download a session as json, txt or md")
async def export_session(
    session_id: str,
    fmt: str = Query("json", alias="format", description="json, txt or md"),
    service: ChatService = Depends(get_chat_service),
) -> Response:
    exported = service.export(session_id, fmt)
    return Response(
        content=exported.content,
        media_type=exported.media_type,
        headers={"Content-Disposition": f'attachment; filename="{exported.filename}"'},
    )


@router.get("/sessions/{session_id}/messages", response_model=list[MessageResponse])
async def list_messages(session_id: str, service: ChatService = Depends(get_chat_service)) -> list[MessageResponse]:
    return [
        MessageResponse(
            id=message.id,
            seq=message.seq,
            role=message.role,
            content=message.content,
            tokens_used=message.tokens_used,
            confidence=message.confidence,
            sources=message.sources,
            error=message.error,
            created_at=to_datetime(message.created_at),
        )
        for message in service.list_messages(session_id)
    ]


@router.post("/sessions/{session_id}/messages", summary="Send a message and stream the reply")
async def send_message(
    session_id: str,
    request: MessageCreateRequest,
    service: ChatService = Depends(get_chat_service),
    gateway: GenerationGateway = Depends(get_gateway),
) -> StreamingResponse:
    envelopes = service.send_message(session_id, request.content, _options(gateway, request))
    return StreamingResponse(_encode(envelopes), media_type=NDJSON_MEDIA_TYPE)


@router.post("/sessions/{session_id}/regenerate", summary="Replace the last reply and stream a new one")
async def regenerate(
    session_id: str,
    request: ChatOptions | None = None,
    service: ChatService = Depends(get_chat_service),
    gateway: GenerationGateway = Depends(get_gateway),
) -> StreamingResponse:
    envelopes = service.regenerate(session_id, _options(gateway, request or ChatOptions()))
    return StreamingResponse(_encode(envelopes), media_type=NDJSON_MEDIA_TYPE)


def _options(gateway: GenerationGateway, request: ChatOptions) -> GenerationOptions:
    return gateway.default_options(
        provider=request.provider,
        model=request.model,
        temperature=request.temperature,
        max_tokens=request.max_tokens,
        deployment=request.deployment,
    )


async def _encode(envelopes: AsyncGenerator[dict[str, Any], None]) -> AsyncIterator[bytes]:
    async with aclosing(envelopes):
        async for envelope in envelopes:
            yield encode_envelope(envelope)


__all__ = ["router"]
