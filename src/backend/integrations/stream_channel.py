"""
Durable broadcast channels for SSE frames, keyed by stream id.

A generation's framed output is written by exactly one producer and can be
read by any number of consumers. The first consumer is the HTTP response
that started the generation; later ones come from resume requests. The
producer runs as its own task, so a consumer going away never stops it.

``resume_stream`` returns None when the stream is unknown or has concluded.
A Postgres stream that stopped receiving frames without an end marker (its
producer died) counts as concluded once it has been idle for
``STREAM_IDLE_TIMEOUT_SECONDS``.
"""

from __future__ import annotations

import asyncio
import time

from collections.abc import AsyncIterable, AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import asyncpg

from core.constants import STREAM_NOTIFY_CHANNEL
from utils.db_utils import transaction
from utils.logger import logger

# Poll interval while waiting for NOTIFY; covers notifications lost on reconnect
LISTEN_POLL_SECONDS = 1.0

#: A stream with no new frame for this long and no end marker is treated as concluded
STREAM_IDLE_TIMEOUT_SECONDS = 60.0

_background_tasks: set[asyncio.Task[None]] = set()


class StreamChannel(Protocol):
    async def create_stream(self, stream_id: str, frames: AsyncIterable[str]) -> AsyncIterator[str]: ...

    async def resume_stream(self, stream_id: str) -> AsyncIterator[str] | None: ...

    async def close(self) -> None: ...


def detached_feed(frames: AsyncIterable[str]) -> AsyncIterator[str]:
    """Serve ``frames`` from a background producer without any channel.

    The producer starts right away. The consumer reads through a queue; if
    it stops early the producer still runs to completion.
    """
    queue: asyncio.Queue[str | None] = asyncio.Queue()

    async def produce() -> None:
        try:
            async for frame in frames:
                queue.put_nowait(frame)
        except Exception as e:
            logger.error(f"Detached stream producer failed: {e}", exc_info=True)
        finally:
            try:
                await _close_source(frames)
            finally:
                queue.put_nowait(None)

    task = asyncio.create_task(produce())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)

    return _drain(queue)


async def close_detached_feeds() -> None:
    """Cancel detached producers that are still running. Called on shutdown."""
    tasks = list(_background_tasks)
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Cancelled {len(tasks)} detached stream producers")


async def _close_source(frames: AsyncIterable[str]) -> None:
    # Runs the finally blocks of a generator left suspended by cancellation
    aclose = getattr(frames, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as e:
        logger.warning(f"Failed to close stream source: {e}")


async def _drain(queue: asyncio.Queue[str | None]) -> AsyncIterator[str]:
    while (frame := await queue.get()) is not None:
        yield frame


@dataclass
class _BufferedStream:
    frames: list[str] = field(default_factory=list)
    done: bool = False
    finished_at: float | None = None
    condition: asyncio.Condition = field(default_factory=asyncio.Condition)


class MemoryStreamChannel:
    """In-process channel. Concluded streams are evicted after ``retention_seconds``."""

    def __init__(self, retention_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._streams: dict[str, _BufferedStream] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    async def create_stream(self, stream_id: str, frames: AsyncIterable[str]) -> AsyncIterator[str]:
        self._evict()
        stream = _BufferedStream()
        self._streams[stream_id] = stream

        task = asyncio.create_task(self._produce(stream_id, stream, frames))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return self._follow(stream)

    async def resume_stream(self, stream_id: str) -> AsyncIterator[str] | None:
        self._evict()
        stream = self._streams.get(stream_id)
        if stream is None or stream.done:
            return None
        return self._follow(stream)

    def is_active(self, stream_id: str) -> bool:
        stream = self._streams.get(stream_id)
        return stream is not None and not stream.done

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _produce(self, stream_id: str, stream: _BufferedStream, frames: AsyncIterable[str]) -> None:
        try:
            async for frame in frames:
                async with stream.condition:
                    stream.frames.append(frame)
                    stream.condition.notify_all()
        except Exception as e:
            logger.error(f"Stream producer {stream_id} failed: {e}", exc_info=True)
        finally:
            await _close_source(frames)
            async with stream.condition:
                stream.done = True
                stream.finished_at = self._clock()
                stream.condition.notify_all()

    async def _follow(self, stream: _BufferedStream) -> AsyncIterator[str]:
        index = 0
        while True:
            async with stream.condition:
                await stream.condition.wait_for(lambda: index < len(stream.frames) or stream.done)
                batch = stream.frames[index:]
                done = stream.done
            index += len(batch)
            for frame in batch:
                yield frame
            if done:
                return

    def _evict(self) -> None:
        now = self._clock()
        expired = [
            sid
            for sid, s in self._streams.items()
            if s.done and s.finished_at is not None and now - s.finished_at > self.retention_seconds
        ]
        for sid in expired:
            del self._streams[sid]


class PostgresStreamChannel:
    """Channel persisted in ``stream_chunks`` and announced with LISTEN/NOTIFY.

    Frames are numbered per stream from 0. A row with a NULL frame marks the
    end of the stream. Consumers in this process read the local buffer;
    consumers in other processes replay rows by ``seq`` and then follow
    notifications whose payload is ``<stream_id>:<seq>``.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        retention_seconds: float = 300.0,
        idle_timeout: float = STREAM_IDLE_TIMEOUT_SECONDS,
        poll_interval: float = LISTEN_POLL_SECONDS,
    ):
        self.pool = pool
        self.retention_seconds = retention_seconds
        self.idle_timeout = idle_timeout
        self.poll_interval = poll_interval
        self._local = MemoryStreamChannel(retention_seconds)

    async def create_stream(self, stream_id: str, frames: AsyncIterable[str]) -> AsyncIterator[str]:
        await self._prune()
        return await self._local.create_stream(stream_id, self._mirror(stream_id, frames))

    async def resume_stream(self, stream_id: str) -> AsyncIterator[str] | None:
        if self._local.is_active(stream_id):
            return await self._local.resume_stream(stream_id)

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT COUNT(*) AS frames, BOOL_OR(frame IS NULL) AS done, MAX(created_at) AS last_at
                FROM stream_chunks
                WHERE stream_id = $1
                """,
                stream_id,
            )
        if not row or not row["frames"] or row["done"]:
            return None
        idle = datetime.now(UTC) - row["last_at"]
        if idle > timedelta(seconds=self.idle_timeout):
            logger.info(f"Stream {stream_id} has been idle for {idle.total_seconds():.0f}s without an end marker")
            return None
        return self._follow(stream_id)

    async def close(self) -> None:
        await self._local.close()

    async def _append(self, stream_id: str, seq: int, frame: str | None) -> None:
        try:
            # NOTIFY is delivered on commit, after the row is visible
            async with transaction(self.pool) as conn:
                await conn.execute(
                    """
                    INSERT INTO stream_chunks (stream_id, seq, frame, created_at)
                    VALUES ($1, $2, $3, $4)
                    """,
                    stream_id,
                    seq,
                    frame,
                    datetime.now(UTC),
                )
                await conn.execute("SELECT pg_notify($1, $2)", STREAM_NOTIFY_CHANNEL, f"{stream_id}:{seq}")
        except (asyncpg.PostgresError, OSError) as e:
            # Only resumability degrades; the live consumer keeps streaming
            logger.warning(f"Failed to persist frame {seq} of stream {stream_id}: {e}")

    async def _mirror(self, stream_id: str, frames: AsyncIterable[str]) -> AsyncIterator[str]:
        seq = 0
        try:
            async for frame in frames:
                await self._append(stream_id, seq, frame)
                seq += 1
                yield frame
        finally:
            await self._append(stream_id, seq, None)

    async def _follow(self, stream_id: str) -> AsyncIterator[str]:
        wakeup = asyncio.Event()
        prefix = f"{stream_id}:"

        def on_notify(connection: Any, pid: int, channel: str, payload: str) -> None:
            if payload.startswith(prefix):
                wakeup.set()

        next_seq = 0
        loop = asyncio.get_running_loop()
        last_progress = loop.time()
        async with self.pool.acquire() as conn:
            await conn.add_listener(STREAM_NOTIFY_CHANNEL, on_notify)
            try:
                while True:
                    wakeup.clear()
                    rows = await conn.fetch(
                        """
                        SELECT seq, frame FROM stream_chunks
                        WHERE stream_id = $1 AND seq >= $2
                        ORDER BY seq ASC
                        """,
                        stream_id,
                        next_seq,
                    )
                    for row in rows:
                        if row["frame"] is None:
                            return
                        next_seq = row["seq"] + 1
                        yield row["frame"]
                    if rows:
                        last_progress = loop.time()
                    elif loop.time() - last_progress > self.idle_timeout:
                        logger.warning(f"Stream {stream_id} went idle without an end marker, ending resumed feed")
                        return
                    try:
                        await asyncio.wait_for(wakeup.wait(), timeout=self.poll_interval)
                    except asyncio.TimeoutError:
                        pass
            finally:
                await conn.remove_listener(STREAM_NOTIFY_CHANNEL, on_notify)

    async def _prune(self) -> None:
        cutoff = datetime.now(UTC) - timedelta(seconds=self.retention_seconds)
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("DELETE FROM stream_chunks WHERE created_at < $1", cutoff)
        except asyncpg.PostgresError as e:
            logger.warning(f"Failed to prune stream chunks: {e}")


__all__ = [
    "MemoryStreamChannel",
    "PostgresStreamChannel",
    "StreamChannel",
    "close_detached_feeds",
    "detached_feed",
]
