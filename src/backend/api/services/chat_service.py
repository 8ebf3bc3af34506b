from __future__ import annotations

import asyncio
import time

from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx

from api.middleware.exception_handlers import ForbiddenError, NotFoundError, OfflineError, RateLimitError
from api.services.chat_store import ChatStore
from core.constants import (
    CHAT_TITLE_MAX_LENGTH,
    DEFAULT_CHAT_TITLE,
    ENTITLEMENTS_BY_USER_TYPE,
    GENERATION_LOCK_TIMEOUT_SECONDS,
    QUOTA_WINDOW_HOURS,
    REASONING_EFFORT,
    SMOOTH_STREAM_DELAY_SECONDS,
    Settings,
    get_settings,
    is_reasoning_model,
)
from core.prompts import TITLE_PROMPT, system_prompt
from core.smoothing import smooth_stream
from core.transport import to_sse_frame
from core.ui_stream import (
    UIMessageStreamFinish,
    UIMessageStreamWriter,
    create_ui_message_stream,
    generate_id,
)
from integrations.model_invoker import GenerationRequest, ModelInvoker
from integrations.stream_channel import StreamChannel, detached_feed
from integrations.text_model import TextModel
from models.api_models import ChatWithMessagesResponse, PostChatRequest, UserInfo
from models.chat_models import Chat, ChatMessage, DBMessage, RequestHints, Visibility
from tools.base import ToolContext
from tools.registry import active_tools
from utils.logger import logger
from utils.metrics import (
    generation_duration_seconds,
    generation_steps_total,
    generations_active,
    generations_total,
    time_to_first_event_seconds,
    tokens_total,
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ChatGenerationLocks:
    """One ``asyncio.Lock`` per chat id, held for the lifetime of a generation.

    Locks are created on demand and dropped once nobody holds or waits on
    them. Only generations inside this process are serialized.
    """

    def __init__(self, wait_timeout: float | None = GENERATION_LOCK_TIMEOUT_SECONDS) -> None:
        self.wait_timeout = wait_timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    async def acquire(self, chat_id: str) -> None:
        """Wait for the chat's lock.

        Raises:
            asyncio.TimeoutError: When it is still held after ``wait_timeout`` seconds.
        """
        lock = self._locks.setdefault(chat_id, asyncio.Lock())
        self._waiters[chat_id] = self._waiters.get(chat_id, 0) + 1
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.wait_timeout)
        except BaseException:
            self._forget(chat_id)
            raise

    def release(self, chat_id: str) -> None:
        self._locks[chat_id].release()
        self._forget(chat_id)

    def is_locked(self, chat_id: str) -> bool:
        lock = self._locks.get(chat_id)
        return lock is not None and lock.locked()

    def _forget(self, chat_id: str) -> None:
        self._waiters[chat_id] -= 1
        if self._waiters[chat_id] == 0:
            del self._waiters[chat_id]
            del self._locks[chat_id]


@dataclass
class _Turn:
    """State shared between the request and its detached generation."""

    chat_id: str
    user: UserInfo
    hints: RequestHints
    selected_chat_model: str
    ui_messages: list[ChatMessage]
    stream_id: str
    accepted_at: float
    title_task: asyncio.Task[str | None] | None = None
    generation: GenerationRequest | None = None
    started: bool = False
    errored: bool = False


class ChatService:
    """Chat turn orchestration.

    ``create_chat_stream`` checks the preconditions of a turn, persists the
    incoming user message and a fresh stream id, and returns a feed of SSE
    frames for the assistant response. The generation runs detached from the
    caller; with a stream channel configured its frames are mirrored there
    so a later request can resume them.
    """

    def __init__(
        self,
        store: ChatStore,
        invoker: ModelInvoker,
        channel: StreamChannel | None,
        http_client: httpx.AsyncClient,
        title_model: TextModel,
        artifact_model: TextModel,
        settings: Settings | None = None,
        locks: ChatGenerationLocks | None = None,
        smoothing_delay: float = SMOOTH_STREAM_DELAY_SECONDS,
    ):
        self.store = store
        self.invoker = invoker
        self.channel = channel
        self.http_client = http_client
        self.title_model = title_model
        self.artifact_model = artifact_model
        self.settings = settings or get_settings()
        self.locks = locks or ChatGenerationLocks()
        self.smoothing_delay = smoothing_delay
        # Keep references so fire-and-forget tasks are not garbage collected
        self._background_tasks: set[asyncio.Task[Any]] = set()

    # =========================================================================
    # Generation
    # =========================================================================

    async def create_chat_stream(
        self,
        request: PostChatRequest,
        user: UserInfo,
        hints: RequestHints,
    ) -> AsyncIterator[str]:
        """Start a turn and return its SSE frames.

        Quota and ownership failures raise before anything is written. Once
        this returns, failures surface as an ``error`` event on the feed.
        """
        accepted_at = time.monotonic()
        await self._check_quota(user)

        try:
            await self.locks.acquire(request.id)
        except asyncio.TimeoutError as e:
            logger.warning(f"Chat {request.id} is still busy with another generation", chat_id=request.id)
            raise OfflineError(cause=e) from e
        turn: _Turn | None = None
        try:
            turn = await self._prepare_turn(request, user, hints, accepted_at)
            return await self._open_feed(turn)
        except BaseException:
            if turn is None or not turn.started:
                self.locks.release(request.id)
            raise

    async def _check_quota(self, user: UserInfo) -> None:
        entitlements = ENTITLEMENTS_BY_USER_TYPE.get(user.type, ENTITLEMENTS_BY_USER_TYPE["regular"])
        message_count = await self.store.get_message_count_by_user_id(user.id, QUOTA_WINDOW_HOURS)
        if message_count >= entitlements.max_messages_per_day:
            logger.warning(
                f"Daily message quota reached for {user.id}: {message_count}/{entitlements.max_messages_per_day}",
                user_id=user.id,
            )
            raise RateLimitError(limit=entitlements.max_messages_per_day)

    async def _prepare_turn(
        self,
        request: PostChatRequest,
        user: UserInfo,
        hints: RequestHints,
        accepted_at: float,
    ) -> _Turn:
        chat_id = request.id
        message = request.message
        chat = await self.store.get_chat_by_id(chat_id)

        db_messages: list[DBMessage] = []
        title_task: asyncio.Task[str | None] | None = None
        if chat is not None:
            if chat.user_id != user.id:
                raise ForbiddenError(resource_id=chat_id)
            if not request.is_tool_approval_flow:
                db_messages = await self.store.get_messages_by_chat_id(chat_id)
            else:
                await self._check_continuation_target(chat_id, request.messages or [])
        elif message is not None and message.role == "user":
            await self.store.save_chat(chat_id, user.id, DEFAULT_CHAT_TITLE, request.selected_visibility_type)
            title_task = self._spawn(self._generate_title(chat_id, message))
            logger.info(f"Created chat {chat_id}", chat_id=chat_id)
        else:
            raise NotFoundError(resource_id=chat_id)

        if request.messages is not None:
            ui_messages = list(request.messages)
        else:
            assert message is not None  # For type narrowing
            ui_messages = [*(m.to_ui_message() for m in db_messages), message]

        if message is not None and message.role == "user":
            await self.store.save_messages(
                [
                    DBMessage(
                        id=message.id,
                        chat_id=chat_id,
                        role="user",
                        parts=message.parts,
                        attachments=[],
                        created_at=_utcnow(),
                    )
                ]
            )

        stream_id = generate_id()
        await self.store.create_stream_id(stream_id, chat_id)

        return _Turn(
            chat_id=chat_id,
            user=user,
            hints=hints,
            selected_chat_model=request.selected_chat_model,
            ui_messages=ui_messages,
            stream_id=stream_id,
            accepted_at=accepted_at,
            title_task=title_task,
        )

    async def _check_continuation_target(self, chat_id: str, messages: list[ChatMessage]) -> None:
        """The assistant message a continuation updates must belong to ``chat_id``."""
        if not messages or messages[-1].role != "assistant":
            return
        stored = await self.store.get_message_by_id(messages[-1].id)
        if stored is not None and stored.chat_id != chat_id:
            logger.warning(
                f"Rejected continuation of message {stored.id} from chat {stored.chat_id} in chat {chat_id}",
                chat_id=chat_id,
            )
            raise ForbiddenError(resource_id=chat_id)

    async def _open_feed(self, turn: _Turn) -> AsyncIterator[str]:
        frames = self._run_generation(turn)
        if self.channel is not None:
            try:
                return await self.channel.create_stream(turn.stream_id, frames)
            except Exception as e:
                logger.warning(f"Stream channel unavailable for {turn.stream_id}, serving without resume: {e}")
        return detached_feed(frames)

    async def _run_generation(self, turn: _Turn) -> AsyncIterator[str]:
        """Frames of one generation. Releases the chat lock when done."""
        turn.started = True
        model = turn.selected_chat_model
        generations_active.inc()
        first_event = True
        try:

            async def on_finish(finish: UIMessageStreamFinish) -> None:
                await self._persist_response(turn, finish)

            async for chunk in create_ui_message_stream(
                lambda writer: self._execute(turn, writer),
                original_messages=turn.ui_messages,
                on_finish=on_finish,
            ):
                if first_event:
                    first_event = False
                    time_to_first_event_seconds.labels(model=model).observe(time.monotonic() - turn.accepted_at)
                if chunk.get("type") == "error":
                    turn.errored = True
                yield to_sse_frame(chunk)
        except Exception:
            turn.errored = True
            raise
        finally:
            generations_active.dec()
            generations_total.labels(model=model, outcome="error" if turn.errored else "completed").inc()
            generation_duration_seconds.labels(model=model).observe(time.monotonic() - turn.accepted_at)
            if turn.generation is not None:
                generation_steps_total.labels(model=model).inc(turn.generation.steps)
            self.locks.release(turn.chat_id)

    async def _execute(self, turn: _Turn, writer: UIMessageStreamWriter) -> None:
        model = turn.selected_chat_model
        reasoning = is_reasoning_model(model)

        if turn.title_task is not None:
            self._spawn(self._emit_title(turn.title_task, writer))

        turn.generation = GenerationRequest(
            provider_model=self.settings.provider_model_for(model),
            system=system_prompt(model, turn.hints),
            messages=turn.ui_messages,
            tools=active_tools(model),
            tool_context=ToolContext(
                user=turn.user,
                writer=writer,
                store=self.store,
                http_client=self.http_client,
                artifact_model=self.artifact_model,
            ),
            reasoning_effort=REASONING_EFFORT if reasoning else None,
        )
        logger.info(
            f"Starting generation {turn.stream_id} with {model}",
            stream_id=turn.stream_id,
            messages=len(turn.ui_messages),
        )

        chunks = self.invoker.stream(turn.generation)
        if not reasoning:
            chunks = smooth_stream(chunks, delay=self.smoothing_delay)
        writer.merge(chunks)

    async def _persist_response(self, turn: _Turn, finish: UIMessageStreamFinish) -> None:
        """Update the message in place when the client already had it, insert it otherwise."""
        message = finish.response_message
        known_ids = {m.id for m in turn.ui_messages}
        updated = message.id in known_ids and await self.store.update_message_parts(
            message.id, turn.chat_id, message.parts
        )
        if not updated:
            await self.store.save_messages(
                [
                    DBMessage(
                        id=message.id,
                        chat_id=turn.chat_id,
                        role=message.role,
                        parts=message.parts,
                        attachments=[],
                        created_at=_utcnow(),
                    )
                ]
            )

        generation = turn.generation
        usage = generation.usage if generation is not None else None
        if usage is not None:
            tokens_total.labels(model=turn.selected_chat_model, type="input").inc(usage.input_tokens)
            tokens_total.labels(model=turn.selected_chat_model, type="output").inc(usage.output_tokens)

        user_messages = [m for m in turn.ui_messages if m.role == "user"]
        logger.log_generation(
            chat_id=turn.chat_id,
            stream_id=turn.stream_id,
            model=turn.selected_chat_model,
            user_input=user_messages[-1].text() if user_messages else "",
            response=message.text(),
            tool_names=generation.tool_names if generation is not None else None,
            duration_ms=(time.monotonic() - turn.accepted_at) * 1000,
            usage=usage.to_dict() if usage is not None else None,
        )

    # =========================================================================
    # Titles
    # =========================================================================

    async def _generate_title(self, chat_id: str, message: ChatMessage) -> str | None:
        """Generate and store a title. Failures are logged and yield None."""
        try:
            raw = await self.title_model.generate_text(TITLE_PROMPT, message.text())
            title = raw.strip().strip('"').strip("'").strip()[:CHAT_TITLE_MAX_LENGTH]
            if not title:
                return None
            await self.store.update_chat_title(chat_id, title)
            logger.info(f"Generated title for chat {chat_id}: {logger.preview(title)}", chat_id=chat_id)
            return title
        except Exception as e:
            logger.warning(f"Failed to generate title for {chat_id}: {e}")
            return None

    async def _emit_title(self, title_task: asyncio.Task[str | None], writer: UIMessageStreamWriter) -> None:
        title = await title_task
        # Dropped by the writer when the stream already closed
        if title:
            writer.write({"type": "data-chat-title", "data": title, "transient": True})

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # =========================================================================
    # Chat management
    # =========================================================================

    async def get_chat_with_messages(self, chat_id: str, user: UserInfo) -> ChatWithMessagesResponse:
        chat = await self.store.get_chat_by_id(chat_id)
        if chat is None:
            raise NotFoundError(resource_id=chat_id)
        if chat.visibility == "private" and chat.user_id != user.id:
            raise ForbiddenError(resource_id=chat_id)

        messages = await self.store.get_messages_by_chat_id(chat_id)
        return ChatWithMessagesResponse(chat=chat, messages=[m.to_ui_message() for m in messages])

    async def delete_chat(self, chat_id: str, user: UserInfo) -> Chat:
        await self._get_owned_chat(chat_id, user)
        deleted = await self.store.delete_chat_by_id(chat_id)
        if deleted is None:
            raise NotFoundError(resource_id=chat_id)
        logger.info(f"Deleted chat {chat_id}", chat_id=chat_id)
        return deleted

    async def delete_trailing_messages(self, message_id: str, user: UserInfo) -> int:
        """Delete a message and everything after it in its chat."""
        message = await self.store.get_message_by_id(message_id)
        if message is None:
            raise NotFoundError(resource_id=message_id)
        await self._get_owned_chat(message.chat_id, user)

        deleted = await self.store.delete_messages_after_timestamp(message.chat_id, message.created_at)
        logger.info(f"Deleted {deleted} trailing messages from chat {message.chat_id}", chat_id=message.chat_id)
        return deleted

    async def update_chat_visibility(self, chat_id: str, visibility: Visibility, user: UserInfo) -> None:
        await self._get_owned_chat(chat_id, user)
        await self.store.update_chat_visibility(chat_id, visibility)

    async def _get_owned_chat(self, chat_id: str, user: UserInfo) -> Chat:
        chat = await self.store.get_chat_by_id(chat_id)
        if chat is None:
            raise NotFoundError(resource_id=chat_id)
        if chat.user_id != user.id:
            raise ForbiddenError(resource_id=chat_id)
        return chat

    async def close(self) -> None:
        """Cancel outstanding title tasks."""
        for task in list(self._background_tasks):
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)


__all__ = ["ChatGenerationLocks", "ChatService"]
