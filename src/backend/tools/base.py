"""
Tool contract shared by every tool exposed to the chat model.

A tool declares a pydantic input model (validated before execution), the
side-channel event types it may write, and whether a human has to approve
the call before it runs.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from pydantic import BaseModel

from models.api_models import UserInfo

if TYPE_CHECKING:
    from api.services.chat_store import ChatStore
    from core.ui_stream import UIMessageStreamWriter
    from integrations.text_model import TextModel


@dataclass
class ToolContext:
    """Per-generation collaborators handed to tool implementations."""

    user: UserInfo
    writer: UIMessageStreamWriter
    store: ChatStore
    http_client: httpx.AsyncClient
    artifact_model: TextModel


ToolExecute = Callable[[Any, ToolContext], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_model: type[BaseModel]
    execute: ToolExecute
    needs_approval: bool = False
    emits: tuple[str, ...] = field(default_factory=tuple)

    def openai_schema(self) -> dict[str, Any]:
        """Function-tool definition for chat completions."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_model.model_json_schema(),
            },
        }
