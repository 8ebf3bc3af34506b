"""Tests for chat turn orchestration and chat management."""

from __future__ import annotations

import asyncio

from collections.abc import AsyncIterator
from typing import Any
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from api.middleware.exception_handlers import ForbiddenError, NotFoundError, OfflineError, RateLimitError
from api.services.chat_service import ChatGenerationLocks, ChatService
from core.constants import DEFAULT_CHAT_TITLE
from core.transport import SSEFrameParser
from integrations.stream_channel import MemoryStreamChannel
from models.api_models import PostChatRequest, UserInfo
from models.chat_models import ChatMessage, RequestHints

HINTS = RequestHints(city="Lisbon", country="PT")


def _new_message_request(chat_id: str = "chat-1", text: str = "Hi there", **fields: Any) -> PostChatRequest:
    return PostChatRequest(
        id=chat_id,
        message=ChatMessage(id=f"{chat_id}-u", role="user", parts=[{"type": "text", "text": text}]),
        **fields,
    )


async def _read(feed: AsyncIterator[str]) -> list[dict[str, Any]]:
    parser = SSEFrameParser()
    payloads: list[dict[str, Any]] = []
    async for text in feed:
        payloads.extend(parser.feed(text))
    payloads.extend(parser.flush())
    return payloads


@pytest.fixture
def settings() -> Mock:
    settings = Mock()
    settings.provider_model_for = Mock(side_effect=lambda model_id: f"provider-{model_id}")
    return settings


@pytest.fixture
def service(store: Any, invoker: Any, title_model: Any, settings: Mock) -> ChatService:
    return ChatService(
        store=store,
        invoker=invoker,
        channel=None,
        http_client=Mock(spec=httpx.AsyncClient),
        title_model=title_model,
        artifact_model=Mock(),
        settings=settings,
        smoothing_delay=0,
    )


class TestChatGenerationLocks:
    @pytest.mark.asyncio
    async def test_serializes_per_chat(self) -> None:
        locks = ChatGenerationLocks()
        await locks.acquire("a")

        waiter = asyncio.create_task(locks.acquire("a"))
        other = asyncio.create_task(locks.acquire("b"))
        await asyncio.sleep(0)

        assert not waiter.done()
        assert other.done()

        locks.release("a")
        await waiter
        assert locks.is_locked("a")

        locks.release("a")
        locks.release("b")
        assert not locks.is_locked("a")
        assert locks._locks == {}

    @pytest.mark.asyncio
    async def test_cancelled_waiter_is_forgotten(self) -> None:
        locks = ChatGenerationLocks()
        await locks.acquire("a")
        waiter = asyncio.create_task(locks.acquire("a"))
        await asyncio.sleep(0)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        locks.release("a")

        assert locks._locks == {}

    @pytest.mark.asyncio
    async def test_waiter_times_out_while_held(self) -> None:
        locks = ChatGenerationLocks(wait_timeout=0.01)
        await locks.acquire("a")

        with pytest.raises(asyncio.TimeoutError):
            await locks.acquire("a")

        assert locks.is_locked("a")
        locks.release("a")
        assert locks._locks == {}


class TestBusyChat:
    @pytest.mark.asyncio
    async def test_turn_on_busy_chat_is_offline(
        self, service: ChatService, store: Any, user: UserInfo
    ) -> None:
        service.locks = ChatGenerationLocks(wait_timeout=0.01)
        await service.locks.acquire("chat-1")

        with pytest.raises(OfflineError):
            await service.create_chat_stream(_new_message_request(), user, HINTS)

        assert store.chats == {}
        service.locks.release("chat-1")
        assert not service.locks.is_locked("chat-1")
        await _read(await service.create_chat_stream(_new_message_request(), user, HINTS))
        assert "chat-1" in store.chats


class TestQuota:
    @pytest.mark.asyncio
    async def test_limit_reached_is_rejected(self, service: ChatService, store: Any, user: UserInfo) -> None:
        store.message_count = 100

        with pytest.raises(RateLimitError):
            await service.create_chat_stream(_new_message_request(), user, HINTS)

        assert store.chats == {}
        assert not service.locks.is_locked("chat-1")

    @pytest.mark.asyncio
    async def test_one_below_limit_is_allowed(self, service: ChatService, store: Any, user: UserInfo) -> None:
        store.message_count = 99

        await _read(await service.create_chat_stream(_new_message_request(), user, HINTS))

        assert "chat-1" in store.chats

    @pytest.mark.asyncio
    async def test_guests_get_smaller_allowance(
        self, service: ChatService, store: Any, guest_user: UserInfo
    ) -> None:
        store.message_count = 20

        with pytest.raises(RateLimitError):
            await service.create_chat_stream(_new_message_request(), guest_user, HINTS)

    @pytest.mark.asyncio
    async def test_unknown_user_type_uses_regular_allowance(self, service: ChatService, store: Any) -> None:
        store.message_count = 50

        await _read(await service.create_chat_stream(_new_message_request(), UserInfo(id="x", type="vip"), HINTS))

        assert "chat-1" in store.chats


class TestNewChat:
    @pytest.mark.asyncio
    async def test_creates_chat_persists_messages_and_streams(
        self, service: ChatService, store: Any, invoker: Any, user: UserInfo
    ) -> None:
        feed = await service.create_chat_stream(_new_message_request(), user, HINTS)
        payloads = await _read(feed)

        assert payloads[0]["type"] == "start"
        assistant_id = payloads[0]["messageId"]
        assert payloads[-1] == {"type": "finish", "finishReason": {"unified": "stop", "raw": "stop"}}
        assert "".join(p["delta"] for p in payloads if p["type"] == "text-delta") == "Hello there"

        chat = store.chats["chat-1"]
        assert chat.user_id == "user-1"
        assert chat.visibility == "private"
        assert len(store.streams) == 1

        user_row, assistant_row = store.messages
        assert (user_row.id, user_row.role) == ("chat-1-u", "user")
        assert (assistant_row.id, assistant_row.role) == (assistant_id, "assistant")
        assert assistant_row.parts[-1] == {"type": "text", "text": "Hello there", "state": "done"}

        request = invoker.requests[0]
        assert request.provider_model == "provider-chat-model"
        assert [m.id for m in request.messages] == ["chat-1-u"]
        assert {t.name for t in request.tools} >= {"getWeather", "createDocument"}
        assert "Lisbon" in request.system
        assert not service.locks.is_locked("chat-1")

    @pytest.mark.asyncio
    async def test_public_visibility_is_applied(self, service: ChatService, store: Any, user: UserInfo) -> None:
        await _read(
            await service.create_chat_stream(_new_message_request(selected_visibility_type="public"), user, HINTS)
        )

        assert store.chats["chat-1"].visibility == "public"

    @pytest.mark.asyncio
    async def test_title_is_generated_and_announced(
        self, service: ChatService, store: Any, invoker: Any, user: UserInfo
    ) -> None:
        async def wait_for_title(index: int) -> None:
            if index == 1:
                while store.chats["chat-1"].title == DEFAULT_CHAT_TITLE:
                    await asyncio.sleep(0)
                for _ in range(5):
                    await asyncio.sleep(0)

        invoker.before_chunk = wait_for_title

        payloads = await _read(await service.create_chat_stream(_new_message_request(), user, HINTS))

        assert store.chats["chat-1"].title == "Greeting Chat"
        title_events = [p for p in payloads if p["type"] == "data-chat-title"]
        assert title_events == [{"type": "data-chat-title", "data": "Greeting Chat", "transient": True}]
        assistant = store.messages[-1]
        assert all(part["type"] != "data-chat-title" for part in assistant.parts)

    @pytest.mark.asyncio
    async def test_title_failure_keeps_default(self, store: Any, invoker: Any, settings: Mock, user: UserInfo) -> None:
        service = ChatService(
            store=store,
            invoker=invoker,
            channel=None,
            http_client=Mock(),
            title_model=Mock(generate_text=AsyncMock(side_effect=RuntimeError("title model down"))),
            artifact_model=Mock(),
            settings=settings,
            smoothing_delay=0,
        )

        payloads = await _read(await service.create_chat_stream(_new_message_request(), user, HINTS))
        await service.close()

        assert payloads[-1]["type"] == "finish"
        assert store.chats["chat-1"].title == DEFAULT_CHAT_TITLE

    @pytest.mark.asyncio
    async def test_reasoning_model_has_no_tools(
        self, service: ChatService, invoker: Any, user: UserInfo
    ) -> None:
        await _read(
            await service.create_chat_stream(
                _new_message_request(selected_chat_model="chat-model-reasoning"), user, HINTS
            )
        )

        request = invoker.requests[0]
        assert request.tools == []
        assert request.reasoning_effort is not None


class TestExistingChat:
    @pytest.mark.asyncio
    async def test_history_is_sent_to_the_model(
        self, service: ChatService, store: Any, invoker: Any, user: UserInfo
    ) -> None:
        store.add_chat("chat-1", "user-1")
        store.add_message("old-u", "chat-1", "user", "Earlier question")
        store.add_message("old-a", "chat-1", "assistant", "Earlier answer")

        await _read(await service.create_chat_stream(_new_message_request(), user, HINTS))

        assert [m.id for m in invoker.requests[0].messages] == ["old-u", "old-a", "chat-1-u"]
        assert len(store.chats) == 1

    @pytest.mark.asyncio
    async def test_other_users_chat_is_forbidden(
        self, service: ChatService, store: Any, other_user: UserInfo
    ) -> None:
        store.add_chat("chat-1", "user-1", visibility="public")

        with pytest.raises(ForbiddenError):
            await service.create_chat_stream(_new_message_request(), other_user, HINTS)

        assert store.messages == []
        assert store.streams == []
        assert not service.locks.is_locked("chat-1")


class TestToolApprovalFlow:
    @staticmethod
    def _approval_request(chat_id: str = "chat-1") -> PostChatRequest:
        return PostChatRequest(
            id=chat_id,
            messages=[
                ChatMessage(id="u1", role="user", parts=[{"type": "text", "text": "Weather in Oslo?"}]),
                ChatMessage(
                    id="a1",
                    role="assistant",
                    parts=[
                        {"type": "step-start"},
                        {
                            "type": "tool-getWeather",
                            "toolCallId": "c1",
                            "state": "approval-responded",
                            "input": {"city": "Oslo"},
                            "approval": {"id": "ap1", "approved": True},
                        },
                    ],
                ),
            ],
        )

    @pytest.mark.asyncio
    async def test_updates_existing_assistant_message(
        self, service: ChatService, store: Any, invoker: Any, user: UserInfo
    ) -> None:
        store.add_chat("chat-1", "user-1")
        store.add_message("u1", "chat-1", "user", "Weather in Oslo?")
        store.add_message("a1", "chat-1", "assistant")
        invoker.chunks = [
            {"type": "start"},
            {"type": "tool-output-available", "toolCallId": "c1", "output": {"temperature": 4}},
            {"type": "finish", "finishReason": {"unified": "stop", "raw": "stop"}},
        ]

        payloads = await _read(await service.create_chat_stream(self._approval_request(), user, HINTS))

        assert payloads[0]["messageId"] == "a1"
        assert [m.id for m in store.messages] == ["u1", "a1"]
        message_id, parts = store.updated_parts[-1]
        assert message_id == "a1"
        assert parts[1]["state"] == "output-available"
        assert parts[1]["output"] == {"temperature": 4}
        assert [m.id for m in invoker.requests[0].messages] == ["u1", "a1"]

    @pytest.mark.asyncio
    async def test_message_from_another_chat_is_forbidden(
        self, service: ChatService, store: Any, invoker: Any, user: UserInfo
    ) -> None:
        store.add_chat("chat-1", "user-1")
        store.add_chat("other-chat", "user-2")
        store.add_message("a1", "other-chat", "assistant", "Original answer")

        with pytest.raises(ForbiddenError):
            await service.create_chat_stream(self._approval_request(), user, HINTS)

        assert store.updated_parts == []
        assert store.messages[0].parts == [{"type": "text", "text": "Original answer"}]
        assert invoker.requests == []
        assert not service.locks.is_locked("chat-1")

    @pytest.mark.asyncio
    async def test_unknown_continuation_id_is_inserted(
        self, service: ChatService, store: Any, invoker: Any, user: UserInfo
    ) -> None:
        store.add_chat("chat-1", "user-1")
        store.add_message("u1", "chat-1", "user", "Weather in Oslo?")

        await _read(await service.create_chat_stream(self._approval_request(), user, HINTS))

        assert store.updated_parts == []
        assert [(m.id, m.chat_id) for m in store.messages] == [("u1", "chat-1"), ("a1", "chat-1")]

    @pytest.mark.asyncio
    async def test_missing_chat_is_not_found(self, service: ChatService, store: Any, user: UserInfo) -> None:
        with pytest.raises(NotFoundError):
            await service.create_chat_stream(self._approval_request("missing"), user, HINTS)

        assert store.chats == {}
        assert not service.locks.is_locked("missing")


class TestGenerationLifecycle:
    @pytest.mark.asyncio
    async def test_concurrent_turns_on_one_chat_are_serialized(
        self, service: ChatService, store: Any, invoker: Any, user: UserInfo
    ) -> None:
        gate = asyncio.Event()

        async def hold(index: int) -> None:
            if index == 0 and len(invoker.requests) == 1:
                await gate.wait()

        invoker.before_chunk = hold
        first = await service.create_chat_stream(_new_message_request(text="one"), user, HINTS)

        second_task = asyncio.create_task(
            service.create_chat_stream(
                PostChatRequest(
                    id="chat-1", message=ChatMessage(id="second-u", role="user", parts=[{"type": "text", "text": "two"}])
                ),
                user,
                HINTS,
            )
        )
        for _ in range(5):
            await asyncio.sleep(0)

        assert not second_task.done()
        assert [m.id for m in store.messages] == ["chat-1-u"]

        gate.set()
        await _read(first)
        second = await second_task
        await _read(second)

        assert [m.role for m in store.messages] == ["user", "assistant", "user", "assistant"]
        assert not service.locks.is_locked("chat-1")

    @pytest.mark.asyncio
    async def test_model_failure_emits_error_and_skips_persistence(
        self, service: ChatService, store: Any, invoker: Any, user: UserInfo
    ) -> None:
        invoker.fail_after = 3

        payloads = await _read(await service.create_chat_stream(_new_message_request(), user, HINTS))

        assert payloads[-1]["type"] == "error"
        assert payloads[-1]["errorText"]
        assert [m.role for m in store.messages] == ["user"]
        assert not service.locks.is_locked("chat-1")

    @pytest.mark.asyncio
    async def test_frames_go_through_stream_channel(
        self, store: Any, invoker: Any, title_model: Any, settings: Mock, user: UserInfo
    ) -> None:
        channel = MemoryStreamChannel()
        service = ChatService(
            store=store,
            invoker=invoker,
            channel=channel,
            http_client=Mock(),
            title_model=title_model,
            artifact_model=Mock(),
            settings=settings,
            smoothing_delay=0,
        )

        payloads = await _read(await service.create_chat_stream(_new_message_request(), user, HINTS))

        ((stream_id, chat_id),) = store.streams
        assert chat_id == "chat-1"
        assert stream_id in channel._streams
        assert payloads[-1]["type"] == "finish"

    @pytest.mark.asyncio
    async def test_falls_back_when_channel_fails(
        self, store: Any, invoker: Any, title_model: Any, settings: Mock, user: UserInfo
    ) -> None:
        channel = Mock()
        channel.create_stream = AsyncMock(side_effect=ConnectionError("channel down"))
        service = ChatService(
            store=store,
            invoker=invoker,
            channel=channel,
            http_client=Mock(),
            title_model=title_model,
            artifact_model=Mock(),
            settings=settings,
            smoothing_delay=0,
        )

        payloads = await _read(await service.create_chat_stream(_new_message_request(), user, HINTS))

        assert payloads[-1]["type"] == "finish"
        assert [m.role for m in store.messages] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_generation_survives_client_disconnect(
        self, service: ChatService, store: Any, user: UserInfo
    ) -> None:
        feed = await service.create_chat_stream(_new_message_request(), user, HINTS)
        await feed.__anext__()
        await feed.aclose()

        for _ in range(200):
            if len(store.messages) == 2:
                break
            await asyncio.sleep(0.005)

        assert [m.role for m in store.messages] == ["user", "assistant"]


class TestChatManagement:
    @pytest.mark.asyncio
    async def test_get_own_private_chat(self, service: ChatService, store: Any, user: UserInfo) -> None:
        store.add_chat("chat-1", "user-1")
        store.add_message("m1", "chat-1", "user", "Hi")
        store.add_message("m2", "chat-1", "assistant", "Hello")

        result = await service.get_chat_with_messages("chat-1", user)

        assert result.chat.id == "chat-1"
        assert [m.text() for m in result.messages] == ["Hi", "Hello"]
        assert result.messages[0].metadata is not None

    @pytest.mark.asyncio
    async def test_others_private_chat_is_forbidden(
        self, service: ChatService, store: Any, other_user: UserInfo
    ) -> None:
        store.add_chat("chat-1", "user-1")

        with pytest.raises(ForbiddenError):
            await service.get_chat_with_messages("chat-1", other_user)

    @pytest.mark.asyncio
    async def test_others_public_chat_is_readable(
        self, service: ChatService, store: Any, other_user: UserInfo
    ) -> None:
        store.add_chat("chat-1", "user-1", visibility="public")

        assert (await service.get_chat_with_messages("chat-1", other_user)).chat.visibility == "public"

    @pytest.mark.asyncio
    async def test_missing_chat(self, service: ChatService, user: UserInfo) -> None:
        with pytest.raises(NotFoundError):
            await service.get_chat_with_messages("nope", user)

    @pytest.mark.asyncio
    async def test_delete_chat(self, service: ChatService, store: Any, user: UserInfo) -> None:
        store.add_chat("chat-1", "user-1")

        deleted = await service.delete_chat("chat-1", user)

        assert deleted.id == "chat-1"
        assert store.chats == {}

    @pytest.mark.asyncio
    async def test_delete_public_chat_of_other_user_is_forbidden(
        self, service: ChatService, store: Any, other_user: UserInfo
    ) -> None:
        store.add_chat("chat-1", "user-1", visibility="public")

        with pytest.raises(ForbiddenError):
            await service.delete_chat("chat-1", other_user)

        assert "chat-1" in store.chats

    @pytest.mark.asyncio
    async def test_delete_trailing_messages(self, service: ChatService, store: Any, user: UserInfo) -> None:
        store.add_chat("chat-1", "user-1")
        for i, role in enumerate(["user", "assistant", "user", "assistant"]):
            store.add_message(f"m{i}", "chat-1", role, f"text {i}")

        deleted = await service.delete_trailing_messages("m2", user)

        assert deleted == 2
        assert [m.id for m in store.messages] == ["m0", "m1"]

    @pytest.mark.asyncio
    async def test_delete_trailing_unknown_message(self, service: ChatService, user: UserInfo) -> None:
        with pytest.raises(NotFoundError):
            await service.delete_trailing_messages("ghost", user)

    @pytest.mark.asyncio
    async def test_update_visibility(self, service: ChatService, store: Any, user: UserInfo) -> None:
        store.add_chat("chat-1", "user-1")

        await service.update_chat_visibility("chat-1", "public", user)

        assert store.chats["chat-1"].visibility == "public"

    @pytest.mark.asyncio
    async def test_update_visibility_requires_ownership(
        self, service: ChatService, store: Any, other_user: UserInfo
    ) -> None:
        store.add_chat("chat-1", "user-1")

        with pytest.raises(ForbiddenError):
            await service.update_chat_visibility("chat-1", "public", other_user)
