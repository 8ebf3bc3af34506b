import pytest

from pydantic import ValidationError

from models.api_models import PostChatRequest, VisibilityUpdateRequest
from models.chat_models import DBMessage

MESSAGE = {"id": "m1", "role": "user", "parts": [{"type": "text", "text": "Hi"}]}


class TestPostChatRequest:
    def test_new_message_flow(self) -> None:
        request = PostChatRequest.model_validate({"id": "c1", "message": MESSAGE})

        assert request.is_tool_approval_flow is False
        assert request.selected_chat_model == "chat-model"
        assert request.selected_visibility_type == "private"

    def test_approval_flow(self) -> None:
        request = PostChatRequest.model_validate(
            {"id": "c1", "messages": [MESSAGE], "selectedChatModel": "chat-model-reasoning"}
        )

        assert request.is_tool_approval_flow is True
        assert request.selected_chat_model == "chat-model-reasoning"

    @pytest.mark.parametrize(
        "body",
        [
            {"id": "c1"},
            {"id": "c1", "message": MESSAGE, "messages": [MESSAGE]},
            {"id": "", "message": MESSAGE},
            {"id": "c1", "message": {"id": "m1", "role": "robot", "parts": []}},
        ],
    )
    def test_invalid_bodies(self, body: dict) -> None:
        with pytest.raises(ValidationError):
            PostChatRequest.model_validate(body)


def test_visibility_literal() -> None:
    assert VisibilityUpdateRequest(visibility="public").visibility == "public"
    with pytest.raises(ValidationError):
        VisibilityUpdateRequest.model_validate({"visibility": "shared"})


def test_db_message_to_ui_message() -> None:
    from datetime import UTC, datetime

    row = DBMessage(
        id="m1",
        chat_id="c1",
        role="assistant",
        parts=[{"type": "text", "text": "Hey"}],
        created_at=datetime(2025, 1, 2, 3, 4, 5, tzinfo=UTC),
    )

    ui = row.to_ui_message()

    assert ui.text() == "Hey"
    assert ui.metadata == {"createdAt": "2025-01-02T03:04:05+00:00"}
    assert row.model_dump(by_alias=True)["chatId"] == "c1"
