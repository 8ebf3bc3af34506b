"""
Chat endpoints.

Generation and resume return server-sent events; everything else is plain
JSON. Every endpoint requires a bearer token.
"""

from __future__ import annotations

from typing import Annotated
from urllib.parse import unquote

from fastapi import APIRouter, Path, Query, Request
from fastapi.responses import Response
from starlette.datastructures import Headers

from api.dependencies import Chats, Resumes
from api.middleware.auth import CurrentUser
from api.middleware.exception_handlers import AppException, BadRequestError, translate_upstream_error
from api.middleware.request_context import update_request_context
from api.sse import stream_response
from models.api_models import (
    ChatWithMessagesResponse,
    DeleteTrailingMessagesResponse,
    PostChatRequest,
    VisibilityUpdateRequest,
)
from models.chat_models import Chat, RequestHints
from utils.logger import logger

router = APIRouter()

ChatIdPath = Annotated[str, Path(..., description="Chat identifier", min_length=1)]


def _header_float(headers: Headers, name: str) -> float | None:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _header_text(headers: Headers, name: str) -> str | None:
    value = headers.get(name)
    return unquote(value) if value else None


def request_hints_from_headers(headers: Headers) -> RequestHints:
    """Best-effort geolocation from edge proxy headers."""
    return RequestHints(
        latitude=_header_float(headers, "x-vercel-ip-latitude"),
        longitude=_header_float(headers, "x-vercel-ip-longitude"),
        city=_header_text(headers, "x-vercel-ip-city"),
        country=_header_text(headers, "x-vercel-ip-country"),
    )


@router.post(
    "",
    response_class=Response,
    summary="Generate a response",
    description="Run one assistant turn and stream it as UI message chunks over SSE.",
    responses={
        200: {"description": "Event stream", "content": {"text/event-stream": {}}},
        400: {"description": "Malformed request or gateway activation required"},
        403: {"description": "Chat belongs to another user"},
        429: {"description": "Daily message quota reached"},
        503: {"description": "Upstream unavailable"},
    },
)
async def create_chat(body: PostChatRequest, request: Request, user: CurrentUser, chats: Chats) -> Response:
    update_request_context(chat_id=body.id)
    hints = request_hints_from_headers(request.headers)

    try:
        feed = await chats.create_chat_stream(body, user, hints)
    except AppException:
        raise
    except Exception as exc:
        logger.error(f"Unhandled error in chat API: {exc}", exc_info=True)
        raise translate_upstream_error(exc) from exc

    return stream_response(feed)


@router.get(
    "/{chat_id}",
    response_model=ChatWithMessagesResponse,
    summary="Get chat",
    description="A chat and its messages. Private chats are visible only to their owner.",
    responses={
        404: {"description": "Chat not found"},
        403: {"description": "Private chat of another user"},
    },
)
async def get_chat(chat_id: ChatIdPath, user: CurrentUser, chats: Chats) -> ChatWithMessagesResponse:
    return await chats.get_chat_with_messages(chat_id, user)


@router.get(
    "/{chat_id}/stream",
    response_class=Response,
    summary="Resume stream",
    description="Reattach to the chat's latest generation. 204 when resumable streams are disabled.",
    responses={
        200: {"description": "Event stream", "content": {"text/event-stream": {}}},
        204: {"description": "Resumable streams are unavailable"},
        404: {"description": "Chat or stream not found"},
        403: {"description": "Private chat of another user"},
    },
)
async def resume_chat_stream(chat_id: ChatIdPath, user: CurrentUser, resumes: Resumes) -> Response:
    feed = await resumes.resume(chat_id, user)
    if feed is None:
        return Response(status_code=204)
    return stream_response(feed)


@router.delete(
    "",
    response_model=Chat,
    summary="Delete chat",
    responses={
        400: {"description": "Missing chat id"},
        404: {"description": "Chat not found"},
        403: {"description": "Chat belongs to another user"},
    },
)
async def delete_chat(
    user: CurrentUser,
    chats: Chats,
    chat_id: Annotated[str | None, Query(alias="id", description="Chat identifier")] = None,
) -> Chat:
    if not chat_id:
        raise BadRequestError()
    update_request_context(chat_id=chat_id)
    return await chats.delete_chat(chat_id, user)


@router.delete(
    "/messages/{message_id}/trailing",
    response_model=DeleteTrailingMessagesResponse,
    summary="Delete trailing messages",
    description="Delete a message and every later message in its chat.",
)
async def delete_trailing_messages(
    message_id: Annotated[str, Path(..., min_length=1)],
    user: CurrentUser,
    chats: Chats,
) -> DeleteTrailingMessagesResponse:
    deleted = await chats.delete_trailing_messages(message_id, user)
    return DeleteTrailingMessagesResponse(deleted=deleted)


@router.patch(
    "/{chat_id}/visibility",
    status_code=204,
    response_class=Response,
    summary="Update chat visibility",
)
async def update_chat_visibility(
    chat_id: ChatIdPath,
    body: VisibilityUpdateRequest,
    user: CurrentUser,
    chats: Chats,
) -> Response:
    await chats.update_chat_visibility(chat_id, body.visibility, user)
    return Response(status_code=204)
