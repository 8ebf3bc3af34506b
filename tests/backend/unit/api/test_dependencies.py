from unittest.mock import Mock, patch

import pytest

from fastapi import Request

from api.dependencies import (
    get_app_settings,
    get_chat_service,
    get_chat_store,
    get_db,
    get_resume_service,
    get_stream_channel,
)
from api.services.chat_store import ChatStore
from api.services.resume_service import ResumeService


def test_get_app_settings() -> None:
    mock_settings = Mock()
    with patch("api.dependencies.get_settings", return_value=mock_settings):
        assert get_app_settings() == mock_settings


@pytest.mark.asyncio
async def test_get_db() -> None:
    mock_request = Mock(spec=Request)
    mock_db_pool = Mock()
    mock_request.app.state.db_pool = mock_db_pool

    assert await get_db(mock_request) == mock_db_pool


def test_get_chat_store() -> None:
    mock_db_pool = Mock()
    store = get_chat_store(mock_db_pool)
    assert isinstance(store, ChatStore)
    assert store.pool == mock_db_pool


def test_get_stream_channel_may_be_none() -> None:
    mock_request = Mock(spec=Request)
    mock_request.app.state.stream_channel = None

    assert get_stream_channel(mock_request) is None


def test_get_chat_service_is_shared() -> None:
    mock_request = Mock(spec=Request)
    service = Mock()
    mock_request.app.state.chat_service = service

    assert get_chat_service(mock_request) is service
    assert get_chat_service(mock_request) is service


def test_get_resume_service() -> None:
    store = Mock(spec=ChatStore)
    channel = Mock()

    service = get_resume_service(store, channel)

    assert isinstance(service, ResumeService)
    assert service.store is store
    assert service.channel is channel
