"""
Chat domain models for Chat Relay.

Persisted entities (chats, messages, stream records, documents, suggestions)
and the UI message shape exchanged with clients. Wire names are camelCase,
Python attributes are snake_case.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Visibility = Literal["public", "private"]
MessageRole = Literal["user", "assistant", "system"]
ArtifactKind = Literal["text", "code", "sheet"]


class CamelModel(BaseModel):
    """Base model serializing to camelCase while accepting either spelling."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RequestHints(CamelModel):
    """Best-effort geolocation of the caller. Every field may be null."""

    latitude: float | None = None
    longitude: float | None = None
    city: str | None = None
    country: str | None = None


class ChatMessage(CamelModel):
    """UI message: an ordered list of typed parts.

    Parts are kept as plain dicts keyed by ``type`` (``text``, ``reasoning``,
    ``step-start``, ``tool-<name>``, ``data-<name>``) so unknown part types
    from newer clients round-trip untouched.
    """

    id: str
    role: MessageRole
    parts: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None

    def text(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(p.get("text", "") for p in self.parts if p.get("type") == "text")


class Chat(CamelModel):
    """A conversation owned by one user."""

    id: str
    created_at: datetime
    title: str
    user_id: str
    visibility: Visibility = "private"


class DBMessage(CamelModel):
    """A persisted message row."""

    id: str
    chat_id: str
    role: MessageRole
    parts: list[dict[str, Any]] = Field(default_factory=list)
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime

    def to_ui_message(self) -> ChatMessage:
        """Convert to the client-facing message shape."""
        return ChatMessage(
            id=self.id,
            role=self.role,
            parts=self.parts,
            metadata={"createdAt": self.created_at.isoformat()},
        )


class Document(CamelModel):
    """One version of an artifact. Versions share ``id`` and differ by ``created_at``."""

    id: str
    created_at: datetime
    title: str
    content: str | None = None
    kind: ArtifactKind = "text"
    user_id: str


class Suggestion(CamelModel):
    """A sentence-level rewrite proposed for a document."""

    id: str
    document_id: str
    document_created_at: datetime | None = None
    original_text: str
    suggested_text: str
    description: str | None = None
    is_resolved: bool = False
    user_id: str | None = None
    created_at: datetime | None = None


__all__ = [
    "ArtifactKind",
    "CamelModel",
    "Chat",
    "ChatMessage",
    "DBMessage",
    "Document",
    "MessageRole",
    "RequestHints",
    "Suggestion",
    "Visibility",
]
