"""Database utilities for the chat store and the durable stream channel.

Provides:
- Pool factory that applies statement and lock timeouts to every connection
- ``transaction`` context manager with a bounded acquire wait
- Retry decorator for reads that may hit a dropped connection
- Pool health and graceful shutdown helpers
"""

from __future__ import annotations

import asyncio
import functools
import random

from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, ParamSpec, TypeVar

import asyncpg

from utils.logger import logger
from utils.metrics import db_pool_connections, db_pool_size

P = ParamSpec("P")
T = TypeVar("T")

#: Shows up in pg_stat_activity
APPLICATION_NAME = "chat-relay"

#: Errors worth retrying: the connection went away or the pool ran dry
TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
)


class DatabaseError(Exception):
    """Base exception for database operations."""


class ConnectionPoolExhausted(DatabaseError):
    """No connection could be created or acquired in time."""


async def create_database_pool(
    dsn: str,
    *,
    min_size: int = 2,
    max_size: int = 10,
    command_timeout: float = 60.0,
    connection_timeout: float = 10.0,
    statement_cache_size: int = 100,
    max_inactive_connection_lifetime: float = 300.0,
) -> asyncpg.Pool:
    """Open the pool shared by the chat store and the stream channel.

    Raises:
        ConnectionPoolExhausted: If the initial connections cannot be opened
            within ``connection_timeout``.
    """
    timeout_ms = int(command_timeout * 1000)

    async def init_connection(conn: asyncpg.Connection) -> None:
        await conn.execute(f"SET statement_timeout = '{timeout_ms}'")
        await conn.execute(f"SET lock_timeout = '{timeout_ms}'")

    try:
        pool = await asyncio.wait_for(
            asyncpg.create_pool(
                dsn=dsn,
                min_size=min_size,
                max_size=max_size,
                command_timeout=command_timeout,
                statement_cache_size=statement_cache_size,
                max_inactive_connection_lifetime=max_inactive_connection_lifetime,
                server_settings={"application_name": APPLICATION_NAME},
                init=init_connection,
            ),
            timeout=connection_timeout,
        )
    except asyncio.TimeoutError as e:
        raise ConnectionPoolExhausted(f"Connection pool creation timed out after {connection_timeout}s") from e
    except (asyncpg.PostgresError, OSError) as e:
        raise ConnectionPoolExhausted(f"Failed to create connection pool: {e}") from e

    if pool is None:
        raise ConnectionPoolExhausted("Failed to create connection pool")
    logger.info(f"Database pool created ({min_size}-{max_size} connections)")
    return pool


@asynccontextmanager
async def acquire_connection(
    pool: asyncpg.Pool,
    *,
    timeout: float | None = None,
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a connection, converting an acquire timeout into ``ConnectionPoolExhausted``."""
    try:
        async with pool.acquire(timeout=timeout) as conn:
            yield conn
    except asyncio.TimeoutError as e:
        raise ConnectionPoolExhausted(f"No database connection available within {timeout}s") from e


@asynccontextmanager
async def transaction(
    pool: asyncpg.Pool,
    *,
    timeout: float | None = None,
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Run the block in one transaction.

    Example:
        async with transaction(pool) as conn:
            await conn.execute("INSERT INTO stream_chunks ...")
            await conn.execute("SELECT pg_notify(...)")
    """
    async with acquire_connection(pool, timeout=timeout) as conn, conn.transaction():
        yield conn


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 5.0,
    retryable_exceptions: tuple[type[Exception], ...] = (*TRANSIENT_ERRORS, ConnectionPoolExhausted),
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Retry an idempotent database call with exponential backoff and jitter.

    Only reads are decorated; a retried insert could run twice.

    Example:
        @with_retry()
        async def get_chat_by_id(self, chat_id):
            async with self.pool.acquire() as conn:
                return await conn.fetchrow("SELECT * FROM chats WHERE id = $1", chat_id)
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            attempt = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    if attempt >= max_attempts:
                        logger.error(
                            f"{func.__name__} failed after {max_attempts} attempts: {e}",
                            exc_info=True,
                        )
                        raise
                    delay = min(base_delay * (2 ** (attempt - 1)) + random.uniform(0, 0.5), max_delay)
                    logger.warning(
                        f"{func.__name__} failed (attempt {attempt}/{max_attempts}), retrying in {delay:.2f}s: {e}"
                    )
                    await asyncio.sleep(delay)
                    attempt += 1

        return wrapper

    return decorator


async def check_pool_health(pool: asyncpg.Pool) -> dict[str, Any]:
    """Run ``SELECT 1`` and report pool statistics. Also refreshes the pool gauges."""
    try:
        async with acquire_connection(pool, timeout=5.0) as conn:
            is_healthy = await conn.fetchval("SELECT 1") == 1
    except (DatabaseError, asyncpg.PostgresError, OSError) as e:
        logger.warning(f"Database health check failed: {e}")
        is_healthy = False

    size = pool.get_size()
    free = pool.get_idle_size()
    db_pool_size.set(size)
    db_pool_connections.labels(state="free").set(free)
    db_pool_connections.labels(state="used").set(size - free)

    return {
        "healthy": is_healthy,
        "pool_size": size,
        "pool_min_size": pool.get_min_size(),
        "pool_max_size": pool.get_max_size(),
        "free_connections": free,
        "used_connections": size - free,
    }


async def graceful_pool_close(pool: asyncpg.Pool, timeout: float = 10.0) -> None:
    """Wait up to ``timeout`` for borrowed connections to come back, then close."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while (busy := pool.get_size() - pool.get_idle_size()) > 0:
        if loop.time() > deadline:
            logger.warning(f"Timeout waiting for connections to drain, forcing close ({busy} active)")
            break
        await asyncio.sleep(0.1)

    await pool.close()
    logger.info("Database pool closed")
