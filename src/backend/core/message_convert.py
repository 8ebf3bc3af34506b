"""
Convert UI messages into OpenAI chat-completions messages.
"""

from __future__ import annotations

import json

from typing import Any

from models.chat_models import ChatMessage

RESOLVED_TOOL_STATES = ("output-available", "output-error", "output-denied")
DENIED_TOOL_OUTPUT = "Tool execution was denied by the user."


def tool_name_of(part: dict[str, Any]) -> str | None:
    kind = str(part.get("type", ""))
    return kind[len("tool-") :] if kind.startswith("tool-") else None


def _tool_result_content(part: dict[str, Any]) -> str:
    state = part.get("state")
    if state == "output-error":
        return str(part.get("errorText") or "Tool execution failed.")
    if state == "output-denied":
        return DENIED_TOOL_OUTPUT
    output = part.get("output")
    return output if isinstance(output, str) else json.dumps(output)


def _assistant_step(block: list[dict[str, Any]]) -> list[dict[str, Any]]:
    text = "".join(p.get("text", "") for p in block if p.get("type") == "text")
    tool_parts = [p for p in block if tool_name_of(p) and p.get("state") in RESOLVED_TOOL_STATES]

    if not text and not tool_parts:
        return []

    assistant: dict[str, Any] = {"role": "assistant", "content": text or None}
    if tool_parts:
        assistant["tool_calls"] = [
            {
                "id": p["toolCallId"],
                "type": "function",
                "function": {"name": tool_name_of(p), "arguments": json.dumps(p.get("input") or {})},
            }
            for p in tool_parts
        ]

    converted = [assistant]
    converted.extend(
        {"role": "tool", "tool_call_id": p["toolCallId"], "content": _tool_result_content(p)} for p in tool_parts
    )
    return converted


def to_model_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """Flatten UI messages into the chat-completions message list.

    Assistant messages are split at ``step-start`` parts so every step's tool
    calls are followed by their results. Tool calls still waiting for input
    or approval are left out, as are reasoning and data parts.
    """
    converted: list[dict[str, Any]] = []
    for message in messages:
        if message.role in ("system", "user"):
            converted.append({"role": message.role, "content": message.text()})
            continue

        block: list[dict[str, Any]] = []
        for part in message.parts:
            if part.get("type") == "step-start":
                converted.extend(_assistant_step(block))
                block = []
            else:
                block.append(part)
        converted.extend(_assistant_step(block))
    return converted


__all__ = ["to_model_messages", "tool_name_of"]
