from __future__ import annotations

import time

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import asyncpg

from agents import set_default_openai_client, set_tracing_disabled
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from openai import AsyncOpenAI
from prometheus_client import make_asgi_app

from api.middleware.exception_handlers import register_exception_handlers
from api.middleware.request_context import RequestContextMiddleware
from api.routes import chat, health
from api.services.chat_service import ChatService
from api.services.chat_store import ChatStore
from core.constants import env_files, get_settings
from integrations.model_invoker import OpenAIModelInvoker
from integrations.stream_channel import (
    MemoryStreamChannel,
    PostgresStreamChannel,
    StreamChannel,
    close_detached_feeds,
)
from integrations.text_model import AgentTextModel
from utils.client_factory import create_http_client, create_openai_client
from utils.db_utils import check_pool_health, create_database_pool, graceful_pool_close
from utils.logger import configure_uvicorn_logging, logger

settings = get_settings()

if settings.debug:
    logger.info(f"Env files: {[f.name for f in env_files(settings.app_env)]}")
    logger.info(
        f"Settings: app_env={settings.app_env}, "
        f"db_pool=[{settings.db_pool_min_size},{settings.db_pool_max_size}], "
        f"streams={settings.resumable_stream_backend}"
    )

# Module level so reload workers pick it up too
configure_uvicorn_logging()


def _setup_openai_client() -> AsyncOpenAI:
    """Create the provider client and register it with the agents SDK.

    Chat completions for generations and the agents SDK runs for titles and
    artifacts share this client. ``OPENAI_BASE_URL`` points it at a gateway.
    """
    http_client = create_http_client(read_timeout=settings.http_read_timeout)
    client = create_openai_client(
        settings.openai_api_key or "",
        base_url=settings.openai_base_url,
        http_client=http_client,
    )
    set_default_openai_client(client)
    set_tracing_disabled(True)

    target = settings.openai_base_url or "api.openai.com"
    logger.info(f"OpenAI client configured ({target})")
    return client


async def _create_stream_channel(pool: asyncpg.Pool) -> StreamChannel | None:
    """Create the resumable stream channel once per process, or None to disable resumption."""
    backend = settings.resumable_stream_backend
    channel: StreamChannel | None = None
    try:
        if backend == "postgres":
            async with pool.acquire() as conn:
                table = await conn.fetchval("SELECT to_regclass('stream_chunks')")
            if table is None:
                logger.warning("Table stream_chunks is missing; run the migrations to enable resumable streams")
            else:
                channel = PostgresStreamChannel(pool, retention_seconds=settings.stream_retention_seconds)
        elif backend == "memory":
            channel = MemoryStreamChannel(retention_seconds=settings.stream_retention_seconds)
    except (asyncpg.PostgresError, OSError) as e:
        logger.error(f"Failed to create stream channel: {e}", exc_info=True)

    if channel is None:
        logger.info(" > Resumable streams are disabled")
    else:
        logger.info(f"Resumable streams enabled ({backend})")
    return channel


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown with graceful handling."""
    app.state.started_at = time.monotonic()

    openai_client = _setup_openai_client()

    app.state.db_pool = await create_database_pool(
        dsn=settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        command_timeout=settings.db_command_timeout,
        connection_timeout=settings.db_connection_timeout,
        statement_cache_size=settings.db_statement_cache_size,
        max_inactive_connection_lifetime=settings.db_max_inactive_connection_lifetime,
    )

    health = await check_pool_health(app.state.db_pool)
    if not health["healthy"]:
        logger.error("Database health check failed during startup")
        raise RuntimeError("Database connection failed")
    logger.info(f"Database pool healthy: {health}")

    app.state.stream_channel = await _create_stream_channel(app.state.db_pool)

    # Weather and geocoding calls get their own short-timeout client
    tool_http_client = create_http_client(read_timeout=settings.weather_timeout)

    app.state.chat_service = ChatService(
        store=ChatStore(app.state.db_pool),
        invoker=OpenAIModelInvoker(openai_client),
        channel=app.state.stream_channel,
        http_client=tool_http_client,
        title_model=AgentTextModel(settings.title_model_name, name="TitleGenerator"),
        artifact_model=AgentTextModel(settings.artifact_model_name, name="ArtifactWriter"),
        settings=settings,
    )

    try:
        yield
    finally:
        logger.info("Initiating graceful shutdown sequence")

        await app.state.chat_service.close()
        await close_detached_feeds()
        if app.state.stream_channel is not None:
            await app.state.stream_channel.close()
            logger.info("Stream channel closed")

        await tool_http_client.aclose()
        await openai_client.close()

        await graceful_pool_close(app.state.db_pool, timeout=settings.shutdown_timeout)


app = FastAPI(
    title="Chat Relay API",
    description="""
## Chat Relay API

Streaming chat backend with resumable generations.

### Features
- **Generation**: One assistant turn per request, streamed as server-sent events
- **Tools**: Weather lookup (with approval), documents and writing suggestions
- **Resumption**: Reattach to a running generation after a disconnect

### Authentication
Every chat endpoint requires a JWT bearer token issued by the auth service.
""",
    version=settings.app_version,
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "Health",
            "description": "Health check endpoints for monitoring and orchestration",
        },
        {
            "name": "Chat",
            "description": "Generation, resumption and chat management",
        },
    ],
)

# Register global exception handlers for consistent error responses
register_exception_handlers(app)

# Middleware is executed in reverse order of registration
app.add_middleware(RequestContextMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, prefix="/api")
app.include_router(chat.router, prefix="/api/chat", tags=["Chat"])

app.mount("/metrics", make_asgi_app())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        reload_dirs=["src"],
        log_config=None,
    )
