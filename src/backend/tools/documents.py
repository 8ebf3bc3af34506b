"""
Document tools: create a new artifact or revise an existing one.
"""

from __future__ import annotations

import uuid

from typing import Any

from pydantic import BaseModel, Field

from models.chat_models import ArtifactKind
from tools.artifacts import create_document_version, update_document_version
from tools.base import ToolContext, ToolSpec
from utils.logger import logger


class CreateDocumentInput(BaseModel):
    title: str
    kind: ArtifactKind


class UpdateDocumentInput(BaseModel):
    id: str = Field(..., description="The ID of the document to update")
    description: str = Field(..., description="The description of changes that need to be made")


async def create_document(args: CreateDocumentInput, ctx: ToolContext) -> dict[str, Any]:
    document_id = str(uuid.uuid4())

    ctx.writer.write({"type": "data-kind", "data": args.kind, "transient": True})
    ctx.writer.write({"type": "data-id", "data": document_id, "transient": True})
    ctx.writer.write({"type": "data-title", "data": args.title, "transient": True})
    ctx.writer.write({"type": "data-clear", "data": None, "transient": True})

    document = await create_document_version(document_id, args.title, args.kind, ctx)
    logger.info(f"Created {args.kind} document {document_id}", chars=len(document.content or ""))

    ctx.writer.write({"type": "data-finish", "data": None, "transient": True})

    return {
        "id": document_id,
        "title": args.title,
        "kind": args.kind,
        "content": "A document was created and is now visible to the user.",
    }


async def update_document(args: UpdateDocumentInput, ctx: ToolContext) -> dict[str, Any]:
    document = await ctx.store.get_document_by_id(args.id)
    if document is None:
        return {"error": "Document not found"}

    ctx.writer.write({"type": "data-clear", "data": None, "transient": True})

    await update_document_version(document, args.description, ctx)

    ctx.writer.write({"type": "data-finish", "data": None, "transient": True})

    return {
        "id": args.id,
        "title": document.title,
        "kind": document.kind,
        "content": "The document has been updated successfully.",
    }


CREATE_DOCUMENT = ToolSpec(
    name="createDocument",
    description=(
        "Create a document for a writing or content creation activities. This tool will call other functions "
        "that will generate the contents of the document based on the title and kind."
    ),
    input_model=CreateDocumentInput,
    execute=create_document,
    emits=("data-kind", "data-id", "data-title", "data-clear", "data-textDelta", "data-codeDelta", "data-sheetDelta", "data-finish"),
)

UPDATE_DOCUMENT = ToolSpec(
    name="updateDocument",
    description="Update a document with the given description.",
    input_model=UpdateDocumentInput,
    execute=update_document,
    emits=("data-clear", "data-textDelta", "data-codeDelta", "data-sheetDelta", "data-finish"),
)
