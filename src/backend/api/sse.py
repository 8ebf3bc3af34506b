"""SSE response wrapper.

Wraps a feed of ``data: <json>\\n\\n`` frames (from a live generation, a
stream channel or a catch-up feed) into an ``EventSourceResponse``. Frames
are re-split on the way out, so split or malformed frames from a channel
never reach the client.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

from sse_starlette.sse import EventSourceResponse

from core.transport import frames_to_payloads


def stream_response(feed: AsyncIterator[str]) -> EventSourceResponse:
    return EventSourceResponse(
        frames_to_payloads(feed),
        sep="\n",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
