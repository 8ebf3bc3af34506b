"""
SSE framing for UI message chunks.

Outbound: each chunk becomes one ``data: <json>\\n\\n`` frame. Inbound: a
parser re-splits arbitrarily chunked frame text back into payloads so they
can be re-emitted through another transport (the SSE response, or a resumed
feed read back from the stream channel).
"""

from __future__ import annotations

import json

from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from core.constants import LOG_PREVIEW_LENGTH
from utils.logger import logger
from utils.metrics import sse_frames_dropped_total

FRAME_DELIMITER = "\n\n"
DATA_PREFIX = "data: "


def to_sse_frame(chunk: dict[str, Any]) -> str:
    return f"{DATA_PREFIX}{json.dumps(chunk, separators=(',', ':'), ensure_ascii=False)}{FRAME_DELIMITER}"


def normalize_finish_reason(payload: dict[str, Any]) -> dict[str, Any]:
    """Collapse a keyed ``finishReason`` on ``finish`` payloads to a plain string.

    ``{"unified": "stop", "raw": "stop"}`` becomes ``"stop"``. Without a
    ``unified`` key the first value is used when it is a string. Plain
    strings pass through unchanged.
    """
    reason = payload.get("finishReason")
    if payload.get("type") != "finish" or not isinstance(reason, dict) or not reason:
        return payload
    if reason.get("unified"):
        return {**payload, "finishReason": reason["unified"]}
    first = next(iter(reason.values()))
    if isinstance(first, str):
        return {**payload, "finishReason": first}
    return payload


def parse_frame(frame: str) -> dict[str, Any] | None:
    """Decode one frame. Malformed frames are logged, counted and dropped."""
    data = frame.strip()
    if data.startswith(DATA_PREFIX):
        data = data[len(DATA_PREFIX) :]
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.warning(f"Dropping malformed stream frame: {data[:LOG_PREVIEW_LENGTH]}")
        sse_frames_dropped_total.inc()
        return None
    if not isinstance(payload, dict):
        logger.warning(f"Dropping non-object stream frame: {data[:LOG_PREVIEW_LENGTH]}")
        sse_frames_dropped_total.inc()
        return None
    return normalize_finish_reason(payload)


class SSEFrameParser:
    """Incremental parser for ``data: ...\\n\\n`` text split across reads."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, text: str) -> list[dict[str, Any]]:
        self._buffer += text
        payloads: list[dict[str, Any]] = []
        while (end := self._buffer.find(FRAME_DELIMITER)) != -1:
            frame = self._buffer[:end]
            self._buffer = self._buffer[end + len(FRAME_DELIMITER) :]
            if frame.strip() and (payload := parse_frame(frame)) is not None:
                payloads.append(payload)
        return payloads

    def flush(self) -> list[dict[str, Any]]:
        """Parse whatever is left once the source is exhausted."""
        rest, self._buffer = self._buffer, ""
        if rest.strip() and (payload := parse_frame(rest)) is not None:
            return [payload]
        return []


async def frames_to_payloads(frames: AsyncIterable[str]) -> AsyncIterator[str]:
    """Re-split SSE text into JSON payload strings ready for ``EventSourceResponse``."""
    parser = SSEFrameParser()
    async for text in frames:
        for payload in parser.feed(text):
            yield json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    for payload in parser.flush():
        yield json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "SSEFrameParser",
    "frames_to_payloads",
    "normalize_finish_reason",
    "parse_frame",
    "to_sse_frame",
]
