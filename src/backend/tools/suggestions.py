"""
Sentence-level rewrite suggestions for an existing document.

The model answers with one JSON object per line; each complete line becomes
a suggestion as soon as it arrives.
"""

from __future__ import annotations

import json
import uuid

from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.constants import MAX_SUGGESTIONS
from core.prompts import SUGGESTIONS_PROMPT
from models.chat_models import Suggestion
from tools.base import ToolContext, ToolSpec
from utils.logger import logger


class RequestSuggestionsInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_id: str = Field(
        ...,
        alias="documentId",
        description="The UUID of an existing document artifact that was previously created with createDocument",
    )


class SuggestionDraft(BaseModel):
    originalSentence: str = Field(..., min_length=1)
    suggestedSentence: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)


def _parse_draft(line: str) -> SuggestionDraft | None:
    line = line.strip().rstrip(",")
    if not line.startswith("{"):
        return None
    try:
        return SuggestionDraft.model_validate(json.loads(line))
    except (json.JSONDecodeError, ValidationError):
        logger.debug(f"Skipping incomplete suggestion line: {line[:100]}")
        return None


async def iter_suggestion_drafts(deltas: AsyncIterator[str]) -> AsyncIterator[SuggestionDraft]:
    """Yield drafts from streamed JSON lines, at most ``MAX_SUGGESTIONS``."""
    buffer = ""
    produced = 0
    async for delta in deltas:
        buffer += delta
        while "\n" in buffer and produced < MAX_SUGGESTIONS:
            line, buffer = buffer.split("\n", 1)
            if draft := _parse_draft(line):
                produced += 1
                yield draft
        if produced >= MAX_SUGGESTIONS:
            return
    if produced < MAX_SUGGESTIONS and (draft := _parse_draft(buffer)):
        yield draft


async def request_suggestions(args: RequestSuggestionsInput, ctx: ToolContext) -> dict[str, Any]:
    document = await ctx.store.get_document_by_id(args.document_id)
    if document is None or not document.content:
        return {"error": "Document not found"}

    suggestions: list[Suggestion] = []
    async for draft in iter_suggestion_drafts(ctx.artifact_model.stream_text(SUGGESTIONS_PROMPT, document.content)):
        suggestion = Suggestion(
            id=str(uuid.uuid4()),
            document_id=args.document_id,
            original_text=draft.originalSentence,
            suggested_text=draft.suggestedSentence,
            description=draft.description,
            is_resolved=False,
        )
        ctx.writer.write(
            {
                "type": "data-suggestion",
                "data": suggestion.model_dump(
                    mode="json",
                    by_alias=True,
                    include={"id", "document_id", "original_text", "suggested_text", "description", "is_resolved"},
                ),
                "transient": True,
            }
        )
        suggestions.append(suggestion)

    now = datetime.now(UTC)
    await ctx.store.save_suggestions(
        [
            s.model_copy(update={"user_id": ctx.user.id, "created_at": now, "document_created_at": document.created_at})
            for s in suggestions
        ]
    )

    return {
        "id": args.document_id,
        "title": document.title,
        "kind": document.kind,
        "message": "Suggestions have been added to the document",
    }


REQUEST_SUGGESTIONS = ToolSpec(
    name="requestSuggestions",
    description=(
        "Request writing suggestions for an existing document artifact. Only use this when the user explicitly "
        "asks to improve or get suggestions for a document they have already created. Never use for general questions."
    ),
    input_model=RequestSuggestionsInput,
    execute=request_suggestions,
    emits=("data-suggestion",),
)
