"""
Stream resumption: reattach a new connection to a chat's latest generation.
"""

from __future__ import annotations

import json

from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime

from api.middleware.exception_handlers import ForbiddenError, NotFoundError
from api.services.chat_store import ChatStore
from core.constants import APPEND_MESSAGE_EVENT, RESUME_STALENESS_SECONDS
from core.transport import to_sse_frame
from integrations.stream_channel import StreamChannel
from models.api_models import UserInfo
from models.chat_models import DBMessage
from models.error_models import ErrorCode
from utils.logger import logger
from utils.metrics import stream_resumes_total


def _utcnow() -> datetime:
    return datetime.now(UTC)


async def empty_feed() -> AsyncIterator[str]:
    """A feed that completes immediately."""
    for frame in ():
        yield frame


async def catch_up_feed(message: DBMessage) -> AsyncIterator[str]:
    """A single transient event carrying the last persisted assistant message."""
    yield to_sse_frame(
        {
            "type": APPEND_MESSAGE_EVENT,
            "data": json.dumps(message.model_dump(mode="json", by_alias=True)),
            "transient": True,
        }
    )


class ResumeService:
    """Decide what a resume request for a chat gets back.

    Returns None when resumption is disabled (no stream channel) or the
    channel failed; callers answer that with 204. Otherwise returns a feed
    of SSE frames: the live generation, a single catch-up event, or nothing.
    """

    def __init__(
        self,
        store: ChatStore,
        channel: StreamChannel | None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.channel = channel
        self._now = now

    async def resume(self, chat_id: str, user: UserInfo) -> AsyncIterator[str] | None:
        if self.channel is None:
            stream_resumes_total.labels(outcome="unavailable").inc()
            return None

        chat = await self.store.get_chat_by_id(chat_id)
        if chat is None:
            raise NotFoundError(ErrorCode.NOT_FOUND_CHAT, resource_id=chat_id)
        if chat.visibility == "private" and chat.user_id != user.id:
            raise ForbiddenError(resource_id=chat_id)

        requested_at = self._now()
        stream_ids = await self.store.get_stream_ids_by_chat_id(chat_id)
        if not stream_ids:
            raise NotFoundError(ErrorCode.NOT_FOUND_STREAM, resource_id=chat_id)

        recent_stream_id = stream_ids[-1]
        try:
            live = await self.channel.resume_stream(recent_stream_id)
        except Exception as e:
            logger.error(f"Failed to resume stream {recent_stream_id}: {e}", exc_info=True)
            stream_resumes_total.labels(outcome="unavailable").inc()
            return None

        if live is not None:
            logger.info(f"Resuming live stream {recent_stream_id}", stream_id=recent_stream_id)
            stream_resumes_total.labels(outcome="live").inc()
            return live

        messages = await self.store.get_messages_by_chat_id(chat_id)
        last = messages[-1] if messages else None
        if last is None or last.role != "assistant":
            stream_resumes_total.labels(outcome="empty").inc()
            return empty_feed()

        # Whole seconds, truncated
        age_seconds = int((requested_at - last.created_at).total_seconds())
        if age_seconds > RESUME_STALENESS_SECONDS:
            stream_resumes_total.labels(outcome="empty").inc()
            return empty_feed()

        stream_resumes_total.labels(outcome="append").inc()
        return catch_up_feed(last)


__all__ = ["ResumeService", "catch_up_feed", "empty_feed"]
