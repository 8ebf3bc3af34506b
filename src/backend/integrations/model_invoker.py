"""
Model invocation over OpenAI chat-completions streaming.

``OpenAIModelInvoker.stream`` turns a generation request into UI message
chunks. It runs up to ``max_steps`` model round-trips: each step streams
text, reasoning and tool-call fragments, then executes the requested tools
and feeds their results into the next step. A tool that needs approval is
surfaced as ``tool-approval-request`` and ends the turn; the client answers
on a later request, and the answer is resolved here before the first step.
"""

from __future__ import annotations

import copy
import json

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from openai import AsyncOpenAI

from core.constants import MAX_STEPS
from core.message_convert import to_model_messages, tool_name_of
from core.ui_stream import UIChunk, generate_id
from models.chat_models import ChatMessage
from tools.base import ToolContext, ToolSpec
from tools.registry import ToolResult, execute_tool, parse_arguments
from utils.logger import logger
from utils.metrics import tool_calls_total

FINISH_REASONS = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "content_filter": "content-filter",
}


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class GenerationRequest:
    """Everything one turn needs from the model side."""

    provider_model: str
    system: str
    messages: list[ChatMessage]
    tools: list[ToolSpec] = field(default_factory=list)
    tool_context: ToolContext | None = None
    max_steps: int = MAX_STEPS
    reasoning_effort: str | None = None
    # Filled in while streaming
    usage: Usage = field(default_factory=Usage)
    steps: int = 0
    tool_names: list[str] = field(default_factory=list)


class ModelInvoker(Protocol):
    def stream(self, request: GenerationRequest) -> AsyncIterator[UIChunk]: ...


@dataclass
class _ToolCall:
    id: str = ""
    name: str = ""
    arguments: str = ""
    announced: bool = False


class ToolCallAccumulator:
    """Assemble streamed tool-call fragments, keyed by their index."""

    def __init__(self) -> None:
        self.calls: dict[int, _ToolCall] = {}

    def add(self, fragment: Any) -> list[UIChunk]:
        call = self.calls.setdefault(fragment.index, _ToolCall())
        if fragment.id:
            call.id = fragment.id
        function = fragment.function
        if function is not None and function.name:
            call.name += function.name

        chunks: list[UIChunk] = []
        if not call.announced and call.id and call.name:
            call.announced = True
            chunks.append({"type": "tool-input-start", "toolCallId": call.id, "toolName": call.name})
            if call.arguments:
                chunks.append({"type": "tool-input-delta", "toolCallId": call.id, "inputTextDelta": call.arguments})

        if function is not None and function.arguments:
            call.arguments += function.arguments
            if call.announced:
                chunks.append(
                    {"type": "tool-input-delta", "toolCallId": call.id, "inputTextDelta": function.arguments}
                )
        return chunks

    def completed(self) -> list[_ToolCall]:
        return [self.calls[i] for i in sorted(self.calls) if self.calls[i].id and self.calls[i].name]


@dataclass
class _StepState:
    text: str = ""
    finish_reason: str | None = None
    tool_calls: list[_ToolCall] = field(default_factory=list)


def _output_chunk(tool_call_id: str, result: ToolResult) -> UIChunk:
    if result.ok:
        return {"type": "tool-output-available", "toolCallId": tool_call_id, "output": result.output}
    return {"type": "tool-output-error", "toolCallId": tool_call_id, "errorText": result.error_text}


def _tool_message(tool_call_id: str, result: ToolResult) -> dict[str, Any]:
    content = json.dumps(result.output) if result.ok else (result.error_text or "Tool execution failed.")
    return {"role": "tool", "tool_call_id": tool_call_id, "content": content}


class OpenAIModelInvoker:
    """Streams chat completions from an ``AsyncOpenAI`` client."""

    def __init__(self, client: AsyncOpenAI):
        self.client = client

    async def stream(self, request: GenerationRequest) -> AsyncIterator[UIChunk]:
        tools_by_name = {spec.name: spec for spec in request.tools}
        messages = list(request.messages)

        yield {"type": "start"}

        if messages and messages[-1].role == "assistant":
            resolved_parts: list[dict[str, Any]] = []
            async for chunk in self._resolve_approvals(messages[-1], tools_by_name, request, resolved_parts):
                yield chunk
            messages[-1] = messages[-1].model_copy(update={"parts": resolved_parts})

        model_messages = to_model_messages(messages)
        raw_finish: str | None = None

        for _ in range(request.max_steps):
            request.steps += 1
            state = _StepState()

            yield {"type": "start-step"}
            async for chunk in self._stream_step(request, model_messages, state):
                yield chunk

            raw_finish = state.finish_reason
            tool_messages: list[dict[str, Any]] = []
            awaiting_approval = False

            for call in state.tool_calls:
                args = parse_arguments(call.arguments)
                yield {"type": "tool-input-available", "toolCallId": call.id, "toolName": call.name, "input": args}
                request.tool_names.append(call.name)

                spec = tools_by_name.get(call.name)
                if spec is None:
                    result = ToolResult(error_text=f"Model tried to call unavailable tool '{call.name}'.")
                elif spec.needs_approval:
                    awaiting_approval = True
                    tool_calls_total.labels(tool_name=call.name, status="approval").inc()
                    yield {"type": "tool-approval-request", "approvalId": generate_id(), "toolCallId": call.id}
                    continue
                else:
                    result = await execute_tool(spec, args, self._tool_context(request))
                yield _output_chunk(call.id, result)
                tool_messages.append(_tool_message(call.id, result))

            yield {"type": "finish-step"}

            if not state.tool_calls or awaiting_approval:
                break

            model_messages.append(
                {
                    "role": "assistant",
                    "content": state.text or None,
                    "tool_calls": [
                        {"id": c.id, "type": "function", "function": {"name": c.name, "arguments": c.arguments or "{}"}}
                        for c in state.tool_calls
                    ],
                }
            )
            model_messages.extend(tool_messages)

        unified = FINISH_REASONS.get(raw_finish or "", "other")
        yield {"type": "finish", "finishReason": {"unified": unified, "raw": raw_finish}}

    async def _resolve_approvals(
        self,
        message: ChatMessage,
        tools_by_name: dict[str, ToolSpec],
        request: GenerationRequest,
        resolved_parts: list[dict[str, Any]],
    ) -> AsyncIterator[UIChunk]:
        """Run approved tool calls and deny the rest, updating ``resolved_parts``."""
        for part in copy.deepcopy(message.parts):
            resolved_parts.append(part)
            name = tool_name_of(part)
            if name is None or part.get("state") != "approval-responded":
                continue

            tool_call_id = part["toolCallId"]
            approval = part.get("approval") or {}
            if not approval.get("approved"):
                tool_calls_total.labels(tool_name=name, status="denied").inc()
                part["state"] = "output-denied"
                yield {"type": "tool-output-denied", "toolCallId": tool_call_id}
                continue

            spec = tools_by_name.get(name)
            if spec is None:
                result = ToolResult(error_text=f"Tool '{name}' is not available for this model.")
            else:
                result = await execute_tool(spec, part.get("input") or {}, self._tool_context(request))
            request.tool_names.append(name)

            if result.ok:
                part.update(state="output-available", output=result.output)
            else:
                part.update(state="output-error", errorText=result.error_text)
            yield _output_chunk(tool_call_id, result)

    def _tool_context(self, request: GenerationRequest) -> ToolContext:
        if request.tool_context is None:
            raise RuntimeError("Tools were requested without a tool context")
        return request.tool_context

    async def _stream_step(
        self,
        request: GenerationRequest,
        model_messages: list[dict[str, Any]],
        state: _StepState,
    ) -> AsyncIterator[UIChunk]:
        kwargs: dict[str, Any] = {
            "model": request.provider_model,
            "messages": [{"role": "system", "content": request.system}, *model_messages],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.tools:
            kwargs["tools"] = [spec.openai_schema() for spec in request.tools]
        if request.reasoning_effort:
            kwargs["reasoning_effort"] = request.reasoning_effort

        accumulator = ToolCallAccumulator()
        text_id: str | None = None
        reasoning_id: str | None = None

        stream = await self.client.chat.completions.create(**kwargs)
        async for chunk in stream:
            if chunk.usage is not None:
                request.usage.input_tokens += chunk.usage.prompt_tokens or 0
                request.usage.output_tokens += chunk.usage.completion_tokens or 0
            if not chunk.choices:
                continue

            choice = chunk.choices[0]
            delta = choice.delta
            if delta is not None:
                reasoning = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
                if isinstance(reasoning, str) and reasoning:
                    if reasoning_id is None:
                        reasoning_id = generate_id()
                        yield {"type": "reasoning-start", "id": reasoning_id}
                    yield {"type": "reasoning-delta", "id": reasoning_id, "delta": reasoning}

                if delta.content:
                    if reasoning_id is not None:
                        yield {"type": "reasoning-end", "id": reasoning_id}
                        reasoning_id = None
                    if text_id is None:
                        text_id = generate_id()
                        yield {"type": "text-start", "id": text_id}
                    state.text += delta.content
                    yield {"type": "text-delta", "id": text_id, "delta": delta.content}

                for fragment in delta.tool_calls or []:
                    for tool_chunk in accumulator.add(fragment):
                        yield tool_chunk

            if choice.finish_reason:
                state.finish_reason = choice.finish_reason

        if reasoning_id is not None:
            yield {"type": "reasoning-end", "id": reasoning_id}
        if text_id is not None:
            yield {"type": "text-end", "id": text_id}

        state.tool_calls = accumulator.completed()
        logger.debug(
            f"Model step finished: {state.finish_reason}",
            tool_calls=len(state.tool_calls),
            chars=len(state.text),
        )


__all__ = [
    "FINISH_REASONS",
    "GenerationRequest",
    "ModelInvoker",
    "OpenAIModelInvoker",
    "ToolCallAccumulator",
    "Usage",
]
