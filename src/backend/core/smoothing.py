"""
Word-level pacing of text and reasoning deltas.
"""

from __future__ import annotations

import asyncio
import re

from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable

from core.constants import SMOOTH_STREAM_DELAY_SECONDS
from core.ui_stream import UIChunk

WORD_PATTERN = re.compile(r"\S+\s+", re.MULTILINE)

_SMOOTHED_TYPES = ("text-delta", "reasoning-delta")


async def smooth_stream(
    chunks: AsyncIterable[UIChunk],
    delay: float = SMOOTH_STREAM_DELAY_SECONDS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AsyncIterator[UIChunk]:
    """Re-chunk deltas into whole words with a pause after each one.

    Text is buffered per (type, id). Any other chunk, or a delta for a
    different part, first flushes what is buffered so ordering is preserved.
    """
    buffer = ""
    buffered_type: str | None = None
    buffered_id: str | None = None

    def flush() -> UIChunk | None:
        nonlocal buffer
        if not buffer or buffered_type is None:
            return None
        chunk = {"type": buffered_type, "id": buffered_id, "delta": buffer}
        buffer = ""
        return chunk

    async for chunk in chunks:
        kind = chunk.get("type")
        if kind not in _SMOOTHED_TYPES:
            if pending := flush():
                yield pending
            yield chunk
            continue

        if (kind, chunk.get("id")) != (buffered_type, buffered_id):
            if pending := flush():
                yield pending
            buffered_type, buffered_id = kind, chunk.get("id")

        buffer += chunk.get("delta", "")
        while match := WORD_PATTERN.search(buffer):
            word = buffer[: match.end()]
            buffer = buffer[match.end() :]
            yield {"type": kind, "id": buffered_id, "delta": word}
            await sleep(delay)

    if pending := flush():
        yield pending
