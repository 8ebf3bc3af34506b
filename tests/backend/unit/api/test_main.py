from unittest.mock import AsyncMock, Mock, patch

import asyncpg
import pytest

from api.main import _create_stream_channel, app, lifespan
from api.services.chat_service import ChatService
from integrations.stream_channel import MemoryStreamChannel, PostgresStreamChannel


def _settings(**overrides: object) -> Mock:
    settings = Mock()
    settings.database_url = "postgres://test"
    settings.db_pool_min_size = 1
    settings.db_pool_max_size = 1
    settings.db_command_timeout = 10.0
    settings.db_connection_timeout = 10.0
    settings.db_statement_cache_size = 100
    settings.db_max_inactive_connection_lifetime = 300.0
    settings.resumable_stream_backend = "memory"
    settings.stream_retention_seconds = 60.0
    settings.weather_timeout = 5.0
    settings.title_model_name = "title-model"
    settings.artifact_model_name = "artifact-model"
    settings.shutdown_timeout = 10.0
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


def _pool(to_regclass: object = "stream_chunks") -> Mock:
    conn = AsyncMock()
    conn.fetchval.return_value = to_regclass
    ctx = AsyncMock()
    ctx.__aenter__.return_value = conn
    pool = Mock()
    pool.acquire.return_value = ctx
    return pool


class TestCreateStreamChannel:
    @pytest.mark.asyncio
    async def test_memory_backend(self) -> None:
        with patch("api.main.settings", _settings(resumable_stream_backend="memory")):
            channel = await _create_stream_channel(_pool())

        assert isinstance(channel, MemoryStreamChannel)

    @pytest.mark.asyncio
    async def test_postgres_backend(self) -> None:
        with patch("api.main.settings", _settings(resumable_stream_backend="postgres")):
            channel = await _create_stream_channel(_pool())

        assert isinstance(channel, PostgresStreamChannel)

    @pytest.mark.asyncio
    async def test_postgres_without_table_disables_resume(self) -> None:
        with patch("api.main.settings", _settings(resumable_stream_backend="postgres")):
            channel = await _create_stream_channel(_pool(to_regclass=None))

        assert channel is None

    @pytest.mark.asyncio
    async def test_postgres_error_disables_resume(self) -> None:
        pool = Mock()
        pool.acquire.side_effect = asyncpg.PostgresError("down")

        with patch("api.main.settings", _settings(resumable_stream_backend="postgres")):
            channel = await _create_stream_channel(pool)

        assert channel is None

    @pytest.mark.asyncio
    async def test_none_backend(self) -> None:
        with patch("api.main.settings", _settings(resumable_stream_backend="none")):
            assert await _create_stream_channel(_pool()) is None


@pytest.mark.asyncio
async def test_lifespan_startup_and_shutdown() -> None:
    mock_app = Mock()
    mock_app.state = Mock()
    openai_client = Mock()
    openai_client.close = AsyncMock()

    with (
        patch("api.main.settings", _settings()),
        patch("api.main._setup_openai_client", return_value=openai_client),
        patch("api.main.create_database_pool", new_callable=AsyncMock) as mock_create_db,
        patch("api.main.check_pool_health", new_callable=AsyncMock) as mock_check_health,
        patch("api.main.graceful_pool_close", new_callable=AsyncMock) as mock_close_db,
        patch("api.main.close_detached_feeds", new_callable=AsyncMock) as mock_close_feeds,
    ):
        mock_check_health.return_value = {"healthy": True}
        mock_db_pool = Mock()
        mock_create_db.return_value = mock_db_pool

        async with lifespan(mock_app):
            assert mock_app.state.db_pool is mock_db_pool
            assert isinstance(mock_app.state.stream_channel, MemoryStreamChannel)
            assert isinstance(mock_app.state.chat_service, ChatService)
            assert mock_app.state.chat_service.channel is mock_app.state.stream_channel

        mock_close_feeds.assert_awaited_once()
        openai_client.close.assert_awaited_once()
        mock_close_db.assert_awaited_once_with(mock_db_pool, timeout=10.0)


@pytest.mark.asyncio
async def test_lifespan_startup_db_failure() -> None:
    mock_app = Mock()

    with (
        patch("api.main.settings", _settings()),
        patch("api.main._setup_openai_client"),
        patch("api.main.create_database_pool", new_callable=AsyncMock),
        patch("api.main.check_pool_health", new_callable=AsyncMock) as mock_check_health,
    ):
        mock_check_health.return_value = {"healthy": False}

        with pytest.raises(RuntimeError, match="Database connection failed"):
            async with lifespan(mock_app):
                pass


def test_app_routes_exist() -> None:
    """Smoke test to verify router mounting."""
    routes = {getattr(r, "path", None) for r in app.routes}
    assert "/api/health" in routes
    assert "/api/chat" in routes
    assert "/api/chat/{chat_id}" in routes
    assert "/api/chat/{chat_id}/stream" in routes
    assert "/api/chat/{chat_id}/visibility" in routes
    assert "/api/chat/messages/{message_id}/trailing" in routes
    assert "/metrics" in routes
