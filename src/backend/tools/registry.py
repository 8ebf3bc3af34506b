"""
Tool registry and executor.

Arguments are validated against each tool's input model before it runs.
Invalid input and tool failures come back as an error result for the model
to see, never as an exception.
"""

from __future__ import annotations

import json
import time

from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from core.constants import ACTIVE_TOOLS, is_reasoning_model
from tools.base import ToolContext, ToolSpec
from tools.documents import CREATE_DOCUMENT, UPDATE_DOCUMENT
from tools.suggestions import REQUEST_SUGGESTIONS
from tools.weather import GET_WEATHER
from utils.logger import logger
from utils.metrics import tool_calls_total

TOOLS: dict[str, ToolSpec] = {
    spec.name: spec for spec in (GET_WEATHER, CREATE_DOCUMENT, UPDATE_DOCUMENT, REQUEST_SUGGESTIONS)
}


@dataclass
class ToolResult:
    output: Any = None
    error_text: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_text is None


def active_tools(selected_chat_model: str) -> list[ToolSpec]:
    """Tools enabled for a chat model. Reasoning variants get none."""
    if is_reasoning_model(selected_chat_model):
        return []
    return [TOOLS[name] for name in ACTIVE_TOOLS]


def parse_arguments(raw: str | dict[str, Any] | None) -> Any:
    """Decode raw tool-call arguments. Undecodable text is returned unchanged."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


async def execute_tool(spec: ToolSpec, args: Any, ctx: ToolContext) -> ToolResult:
    """Validate ``args`` and run the tool."""
    start = time.perf_counter()
    try:
        parsed = spec.input_model.model_validate(args)
    except ValidationError as e:
        tool_calls_total.labels(tool_name=spec.name, status="error").inc()
        logger.warning(f"Invalid input for tool {spec.name}: {e.error_count()} errors")
        return ToolResult(error_text=f"Invalid input for tool {spec.name}: {e}")

    try:
        output = await spec.execute(parsed, ctx)
    except Exception as e:
        tool_calls_total.labels(tool_name=spec.name, status="error").inc()
        logger.error(f"Tool {spec.name} failed: {e}", exc_info=True)
        return ToolResult(error_text=str(e) or type(e).__name__)

    tool_calls_total.labels(tool_name=spec.name, status="success").inc()
    logger.info(f"Tool {spec.name} completed", tool_name=spec.name, ms=int((time.perf_counter() - start) * 1000))
    return ToolResult(output=output)


__all__ = ["TOOLS", "ToolResult", "active_tools", "execute_tool", "parse_arguments"]
