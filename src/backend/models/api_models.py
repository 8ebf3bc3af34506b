"""
Request and response schemas for the chat HTTP surface.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from core.constants import DEFAULT_CHAT_MODEL, ChatModelId
from models.chat_models import CamelModel, Chat, ChatMessage, Visibility


class UserInfo(BaseModel):
    """Authenticated caller, taken from the bearer token claims."""

    id: str
    email: str | None = None
    type: str = "regular"


# =============================================================================
# Request Models
# =============================================================================


class PostChatRequest(CamelModel):
    """Body of ``POST /api/chat``.

    ``message`` starts a fresh turn; ``messages`` resumes a tool-approval
    interaction with the full client-side transcript. Exactly one is set.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "id": "4c9f6c1e-8d0b-4a55-9a6f-0f1e2d3c4b5a",
                "message": {
                    "id": "0b7d9e2a-1c3f-4e5d-8a9b-7c6d5e4f3a2b",
                    "role": "user",
                    "parts": [{"type": "text", "text": "Hello"}],
                },
                "selectedChatModel": "chat-model",
                "selectedVisibilityType": "private",
            }
        },
    )

    id: str = Field(..., min_length=1, description="Chat id (client generated)")
    message: ChatMessage | None = Field(default=None, description="New message for a fresh turn")
    messages: list[ChatMessage] | None = Field(default=None, description="Full transcript for approval resume")
    selected_chat_model: ChatModelId = Field(default=DEFAULT_CHAT_MODEL, description="Chat model id")
    selected_visibility_type: Visibility = Field(default="private", description="Visibility for a new chat")

    @model_validator(mode="after")
    def exactly_one_message_source(self) -> PostChatRequest:
        if (self.message is None) == (self.messages is None):
            raise ValueError("Exactly one of 'message' or 'messages' must be provided")
        return self

    @property
    def is_tool_approval_flow(self) -> bool:
        return self.messages is not None


class VisibilityUpdateRequest(BaseModel):
    """Body of ``PATCH /api/chat/{id}/visibility``."""

    visibility: Visibility


# =============================================================================
# Response Models
# =============================================================================


class ChatWithMessagesResponse(BaseModel):
    """A chat and its transcript in conversation order."""

    chat: Chat
    messages: list[ChatMessage]


class DeleteTrailingMessagesResponse(BaseModel):
    """Number of messages removed from the end of a chat."""

    deleted: int


__all__ = [
    "ChatWithMessagesResponse",
    "DeleteTrailingMessagesResponse",
    "PostChatRequest",
    "UserInfo",
    "VisibilityUpdateRequest",
]
