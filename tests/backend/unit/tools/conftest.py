from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from models.api_models import UserInfo
from models.chat_models import Document
from tools.base import ToolContext


class FakeTextModel:
    """Streams a fixed list of deltas and records the prompts it was given."""

    def __init__(self, deltas: list[str] | None = None):
        self.deltas = deltas or []
        self.calls: list[tuple[str, str]] = []

    async def stream_text(self, system: str, prompt: str) -> AsyncIterator[str]:
        self.calls.append((system, prompt))
        for delta in self.deltas:
            yield delta

    async def generate_text(self, system: str, prompt: str) -> str:
        self.calls.append((system, prompt))
        return "".join(self.deltas)


class RecordingWriter:
    def __init__(self) -> None:
        self.chunks: list[dict[str, Any]] = []

    def write(self, chunk: dict[str, Any]) -> bool:
        self.chunks.append(chunk)
        return True

    def types(self) -> list[str]:
        return [c["type"] for c in self.chunks]


def make_document(**overrides: Any) -> Document:
    fields: dict[str, Any] = {
        "id": "doc-1",
        "created_at": datetime(2025, 6, 1, tzinfo=UTC),
        "title": "Essay",
        "content": "Old content.",
        "kind": "text",
        "user_id": "user-1",
    }
    fields.update(overrides)
    return Document(**fields)


@pytest.fixture(name="make_document")
def make_document_fixture() -> Any:
    return make_document


@pytest.fixture
def writer() -> RecordingWriter:
    return RecordingWriter()


@pytest.fixture
def store() -> Mock:
    store = Mock()
    store.get_document_by_id = AsyncMock(return_value=None)

    async def save_document(document_id: str, title: str, kind: str, content: str, user_id: str) -> Document:
        return make_document(id=document_id, title=title, kind=kind, content=content, user_id=user_id)

    store.save_document = AsyncMock(side_effect=save_document)
    store.save_suggestions = AsyncMock()
    return store


@pytest.fixture
def text_model() -> FakeTextModel:
    return FakeTextModel(["Hello ", "world"])


@pytest.fixture
def tool_context(writer: RecordingWriter, store: Mock, text_model: FakeTextModel) -> ToolContext:
    return ToolContext(
        user=UserInfo(id="user-1"),
        writer=writer,  # type: ignore[arg-type]
        store=store,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))),
        artifact_model=text_model,
    )
