"""
UI message stream: one ordered sequence of chunk dicts for an assistant turn.

``create_ui_message_stream`` runs an ``execute`` coroutine that writes chunks
(directly, or by merging other async chunk sources) into a shared queue, and
yields them in arrival order. While chunks flow it assembles the response
message, and hands it to ``on_finish`` once every source is drained without
error.
"""

from __future__ import annotations

import asyncio
import copy
import uuid

from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from core.constants import GENERATION_ERROR_TEXT
from models.chat_models import ChatMessage
from utils.logger import logger

UIChunk = dict[str, Any]

_DONE = object()


def generate_id() -> str:
    return str(uuid.uuid4())


def is_transient(chunk: UIChunk) -> bool:
    return bool(chunk.get("transient"))


@dataclass
class UIMessageStreamFinish:
    """Result handed to ``on_finish``."""

    response_message: ChatMessage
    is_continuation: bool


class UIMessageStreamWriter:
    """Write side of a UI message stream.

    ``write`` enqueues a chunk; ``merge`` drains another async source in the
    background, interleaving its chunks by arrival. Writes after the stream
    closed are dropped and reported as ``False``.
    """

    def __init__(self, queue: asyncio.Queue[Any], on_error: Callable[[Exception], str]):
        self._queue = queue
        self._on_error = on_error
        self._tasks: set[asyncio.Task[None]] = set()
        self.closed = False
        self.errored = False

    def write(self, chunk: UIChunk) -> bool:
        if self.closed:
            return False
        self._queue.put_nowait(chunk)
        return True

    def merge(self, stream: AsyncIterable[UIChunk]) -> None:
        task = asyncio.create_task(self._drain(stream))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def fail(self, exc: Exception) -> None:
        """Record a failure and emit the terminal error chunk."""
        self.errored = True
        self.write({"type": "error", "errorText": self._on_error(exc)})

    async def _drain(self, stream: AsyncIterable[UIChunk]) -> None:
        try:
            async for chunk in stream:
                self.write(chunk)
        except Exception as exc:
            logger.error(f"Merged UI stream source failed: {exc}", exc_info=True)
            self.fail(exc)

    async def wait_merged(self) -> None:
        # Merged sources may merge further sources while draining
        while pending := [t for t in self._tasks if not t.done()]:
            await asyncio.gather(*pending, return_exceptions=True)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(_DONE)


class UIMessageAssembler:
    """Fold chunks into the parts of one assistant message.

    Transient data chunks and protocol bookkeeping (``start``, ``finish``,
    ``error``) never become parts. For a continuation the existing parts are
    copied and tool parts are updated in place by ``toolCallId``.
    """

    def __init__(self, message_id: str, parts: list[dict[str, Any]] | None = None):
        self.message_id = message_id
        self.metadata: dict[str, Any] | None = None
        self.parts: list[dict[str, Any]] = copy.deepcopy(parts) if parts else []
        self._text: dict[str, dict[str, Any]] = {}
        self._reasoning: dict[str, dict[str, Any]] = {}
        self._tools: dict[str, dict[str, Any]] = {
            p["toolCallId"]: p for p in self.parts if str(p.get("type", "")).startswith("tool-") and "toolCallId" in p
        }
        self._tool_input_text: dict[str, str] = {}

    def apply(self, chunk: UIChunk) -> None:
        kind = chunk.get("type", "")

        if kind == "start":
            if chunk.get("messageMetadata") is not None:
                self.metadata = chunk["messageMetadata"]
        elif kind == "start-step":
            self.parts.append({"type": "step-start"})
        elif kind == "finish-step":
            self._text.clear()
            self._reasoning.clear()
        elif kind in ("text-start", "reasoning-start"):
            part = {"type": "text" if kind == "text-start" else "reasoning", "text": "", "state": "streaming"}
            self.parts.append(part)
            (self._text if kind == "text-start" else self._reasoning)[chunk["id"]] = part
        elif kind in ("text-delta", "reasoning-delta"):
            active = self._text if kind == "text-delta" else self._reasoning
            if part := active.get(chunk["id"]):
                part["text"] += chunk.get("delta", "")
        elif kind in ("text-end", "reasoning-end"):
            active = self._text if kind == "text-end" else self._reasoning
            if part := active.pop(chunk["id"], None):
                part["state"] = "done"
        elif kind == "tool-input-start":
            self._tool_part(chunk["toolCallId"], chunk["toolName"]).update(state="input-streaming")
            self._tool_input_text[chunk["toolCallId"]] = ""
        elif kind == "tool-input-delta":
            self._tool_input_text[chunk["toolCallId"]] = (
                self._tool_input_text.get(chunk["toolCallId"], "") + chunk.get("inputTextDelta", "")
            )
        elif kind == "tool-input-available":
            part = self._tool_part(chunk["toolCallId"], chunk["toolName"])
            part.update(state="input-available", input=chunk.get("input"))
        elif kind == "tool-approval-request":
            part = self._tools[chunk["toolCallId"]]
            part.update(state="approval-requested", approval={"id": chunk["approvalId"]})
        elif kind == "tool-output-available":
            self._tools[chunk["toolCallId"]].update(state="output-available", output=chunk.get("output"))
        elif kind == "tool-output-error":
            self._tools[chunk["toolCallId"]].update(state="output-error", errorText=chunk.get("errorText"))
        elif kind == "tool-output-denied":
            self._tools[chunk["toolCallId"]].update(state="output-denied")
        elif kind.startswith("data-") and not is_transient(chunk):
            self._apply_data(chunk)

    def _tool_part(self, tool_call_id: str, tool_name: str) -> dict[str, Any]:
        part = self._tools.get(tool_call_id)
        if part is None:
            part = {"type": f"tool-{tool_name}", "toolCallId": tool_call_id, "state": "input-streaming", "input": None}
            self.parts.append(part)
            self._tools[tool_call_id] = part
        return part

    def _apply_data(self, chunk: UIChunk) -> None:
        part: dict[str, Any] = {"type": chunk["type"], "data": chunk.get("data")}
        if chunk.get("id") is not None:
            part["id"] = chunk["id"]
            for i, existing in enumerate(self.parts):
                if existing.get("type") == part["type"] and existing.get("id") == part["id"]:
                    self.parts[i] = part
                    return
        self.parts.append(part)

    def message(self) -> ChatMessage:
        return ChatMessage(id=self.message_id, role="assistant", parts=self.parts, metadata=self.metadata)


def _default_on_error(exc: Exception) -> str:
    return GENERATION_ERROR_TEXT


async def create_ui_message_stream(
    execute: Callable[[UIMessageStreamWriter], Awaitable[None]],
    *,
    original_messages: list[ChatMessage] | None = None,
    on_finish: Callable[[UIMessageStreamFinish], Awaitable[None]] | None = None,
    on_error: Callable[[Exception], str] = _default_on_error,
    id_factory: Callable[[], str] = generate_id,
) -> AsyncIterator[UIChunk]:
    """Run ``execute`` and yield every chunk it produces, in order.

    When the last of ``original_messages`` is an assistant message the turn
    continues it: the response keeps that id and starts from its parts.
    ``on_finish`` is skipped when any source failed.
    """
    last = original_messages[-1] if original_messages else None
    is_continuation = last is not None and last.role == "assistant"
    if is_continuation and last is not None:
        assembler = UIMessageAssembler(last.id, last.parts)
    else:
        assembler = UIMessageAssembler(id_factory())

    queue: asyncio.Queue[Any] = asyncio.Queue()
    writer = UIMessageStreamWriter(queue, on_error)

    async def run() -> None:
        try:
            await execute(writer)
            await writer.wait_merged()
        except Exception as exc:
            logger.error(f"UI message stream failed: {exc}", exc_info=True)
            writer.fail(exc)
        finally:
            writer.close()

    runner = asyncio.create_task(run())
    try:
        while True:
            item = await queue.get()
            if item is _DONE:
                break
            chunk: UIChunk = item
            if chunk.get("type") == "start" and (is_continuation or not chunk.get("messageId")):
                chunk = {**chunk, "messageId": assembler.message_id}
            assembler.apply(chunk)
            yield chunk
    finally:
        if not runner.done():
            runner.cancel()

    if writer.errored or on_finish is None:
        return
    await on_finish(UIMessageStreamFinish(response_message=assembler.message(), is_continuation=is_continuation))


__all__ = [
    "UIChunk",
    "UIMessageAssembler",
    "UIMessageStreamFinish",
    "UIMessageStreamWriter",
    "create_ui_message_stream",
    "generate_id",
    "is_transient",
]
