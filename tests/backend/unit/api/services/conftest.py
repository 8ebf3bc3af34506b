"""In-memory doubles for the chat service layer."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from integrations.model_invoker import GenerationRequest
from models.chat_models import Chat, DBMessage, Document, Suggestion, Visibility


class FakeChatStore:
    """Dict-backed stand-in for ``ChatStore``."""

    def __init__(self) -> None:
        self.chats: dict[str, Chat] = {}
        self.messages: list[DBMessage] = []
        self.streams: list[tuple[str, str]] = []
        self.documents: list[Document] = []
        self.suggestions: list[Suggestion] = []
        self.message_count = 0
        self.updated_parts: list[tuple[str, list[dict[str, Any]]]] = []
        self.clock = datetime(2025, 6, 1, 12, 0, 0, tzinfo=UTC)

    def _tick(self) -> datetime:
        self.clock += timedelta(seconds=1)
        return self.clock

    def add_chat(self, chat_id: str, user_id: str, visibility: Visibility = "private", title: str = "Chat") -> Chat:
        chat = Chat(id=chat_id, created_at=self._tick(), title=title, user_id=user_id, visibility=visibility)
        self.chats[chat_id] = chat
        return chat

    def add_message(self, message_id: str, chat_id: str, role: str, text: str = "", **fields: Any) -> DBMessage:
        message = DBMessage(
            id=message_id,
            chat_id=chat_id,
            role=role,  # type: ignore[arg-type]
            parts=[{"type": "text", "text": text}] if text else [],
            created_at=fields.pop("created_at", None) or self._tick(),
            **fields,
        )
        self.messages.append(message)
        return message

    async def save_chat(self, chat_id: str, user_id: str, title: str, visibility: Visibility) -> Chat:
        return self.add_chat(chat_id, user_id, visibility, title)

    async def get_chat_by_id(self, chat_id: str) -> Chat | None:
        return self.chats.get(chat_id)

    async def delete_chat_by_id(self, chat_id: str) -> Chat | None:
        self.messages = [m for m in self.messages if m.chat_id != chat_id]
        return self.chats.pop(chat_id, None)

    async def update_chat_title(self, chat_id: str, title: str) -> None:
        self.chats[chat_id] = self.chats[chat_id].model_copy(update={"title": title})

    async def update_chat_visibility(self, chat_id: str, visibility: Visibility) -> None:
        self.chats[chat_id] = self.chats[chat_id].model_copy(update={"visibility": visibility})

    async def save_messages(self, messages: list[DBMessage]) -> None:
        self.messages.extend(messages)

    async def get_messages_by_chat_id(self, chat_id: str) -> list[DBMessage]:
        return sorted((m for m in self.messages if m.chat_id == chat_id), key=lambda m: m.created_at)

    async def get_message_by_id(self, message_id: str) -> DBMessage | None:
        return next((m for m in self.messages if m.id == message_id), None)

    async def update_message_parts(self, message_id: str, chat_id: str, parts: list[dict[str, Any]]) -> bool:
        if not any(m.id == message_id and m.chat_id == chat_id for m in self.messages):
            return False
        self.updated_parts.append((message_id, parts))
        self.messages = [
            m.model_copy(update={"parts": parts}) if m.id == message_id and m.chat_id == chat_id else m
            for m in self.messages
        ]
        return True

    async def delete_messages_after_timestamp(self, chat_id: str, timestamp: datetime) -> int:
        doomed = [m for m in self.messages if m.chat_id == chat_id and m.created_at >= timestamp]
        self.messages = [m for m in self.messages if m not in doomed]
        return len(doomed)

    async def get_message_count_by_user_id(self, user_id: str, hours: int) -> int:
        return self.message_count

    async def create_stream_id(self, stream_id: str, chat_id: str) -> None:
        self.streams.append((stream_id, chat_id))

    async def get_stream_ids_by_chat_id(self, chat_id: str) -> list[str]:
        return [sid for sid, cid in self.streams if cid == chat_id]

    async def save_document(self, document_id: str, title: str, kind: str, content: str, user_id: str) -> Document:
        document = Document(
            id=document_id, created_at=self._tick(), title=title, content=content, kind=kind, user_id=user_id  # type: ignore[arg-type]
        )
        self.documents.append(document)
        return document

    async def get_document_by_id(self, document_id: str) -> Document | None:
        versions = [d for d in self.documents if d.id == document_id]
        return versions[-1] if versions else None

    async def save_suggestions(self, suggestions: list[Suggestion]) -> None:
        self.suggestions.extend(suggestions)


class ScriptedInvoker:
    """Yields a fixed chunk script, optionally running a hook before each chunk."""

    def __init__(self, chunks: list[dict[str, Any]] | None = None):
        self.chunks = chunks if chunks is not None else [
            {"type": "start"},
            {"type": "start-step"},
            {"type": "text-start", "id": "t1"},
            {"type": "text-delta", "id": "t1", "delta": "Hello there"},
            {"type": "text-end", "id": "t1"},
            {"type": "finish-step"},
            {"type": "finish", "finishReason": {"unified": "stop", "raw": "stop"}},
        ]
        self.requests: list[GenerationRequest] = []
        self.before_chunk: Callable[[int], Any] | None = None
        self.fail_after: int | None = None

    async def stream(self, request: GenerationRequest) -> AsyncIterator[dict[str, Any]]:
        self.requests.append(request)
        for i, chunk in enumerate(self.chunks):
            if self.before_chunk is not None:
                await self.before_chunk(i)
            if self.fail_after is not None and i == self.fail_after:
                raise RuntimeError("model connection reset")
            yield chunk


class FakeTitleModel:
    def __init__(self, title: str = '"Greeting Chat"', error: Exception | None = None):
        self.title = title
        self.error = error

    async def generate_text(self, system: str, prompt: str) -> str:
        if self.error is not None:
            raise self.error
        return self.title

    async def stream_text(self, system: str, prompt: str) -> AsyncIterator[str]:
        yield self.title


@pytest.fixture
def store() -> FakeChatStore:
    return FakeChatStore()


@pytest.fixture
def invoker() -> ScriptedInvoker:
    return ScriptedInvoker()


@pytest.fixture
def title_model() -> FakeTitleModel:
    return FakeTitleModel()
