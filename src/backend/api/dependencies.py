"""FastAPI dependencies that hand out the objects built during lifespan startup."""

from __future__ import annotations

from typing import Annotated

import asyncpg

from fastapi import Depends, Request

from api.services.chat_service import ChatService
from api.services.chat_store import ChatStore
from api.services.resume_service import ResumeService
from core.constants import Settings, get_settings
from integrations.stream_channel import StreamChannel


def get_app_settings() -> Settings:
    return get_settings()


async def get_db(request: Request) -> asyncpg.Pool:
    return request.app.state.db_pool


def get_chat_store(pool: Annotated[asyncpg.Pool, Depends(get_db)]) -> ChatStore:
    return ChatStore(pool)


def get_stream_channel(request: Request) -> StreamChannel | None:
    """Resumable stream channel, or None when resumption is disabled."""
    return request.app.state.stream_channel


def get_chat_service(request: Request) -> ChatService:
    # One instance per process: the per-chat generation locks live on it
    return request.app.state.chat_service


def get_resume_service(
    store: Annotated[ChatStore, Depends(get_chat_store)],
    channel: Annotated[StreamChannel | None, Depends(get_stream_channel)],
) -> ResumeService:
    return ResumeService(store, channel)


DB = Annotated[asyncpg.Pool, Depends(get_db)]
Channel = Annotated[StreamChannel | None, Depends(get_stream_channel)]
Chats = Annotated[ChatService, Depends(get_chat_service)]
Resumes = Annotated[ResumeService, Depends(get_resume_service)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
