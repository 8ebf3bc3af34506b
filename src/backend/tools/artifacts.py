"""
Artifact content generators, one ``DocumentHandler`` per kind.

Adding a kind means adding one entry to ``DOCUMENT_HANDLERS``. Handlers only
produce content and stream progress events; ``create_document_version`` and
``update_document_version`` persist the result as a new document version.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from core.prompts import CODE_PROMPT, SHEET_PROMPT, TEXT_PROMPT, update_document_prompt
from core.ui_stream import UIMessageStreamWriter
from integrations.text_model import TextModel
from models.chat_models import ArtifactKind, Document
from tools.base import ToolContext


async def _stream_incremental(
    model: TextModel, writer: UIMessageStreamWriter, system: str, prompt: str, event_type: str
) -> str:
    """Emit each delta as it arrives."""
    draft = ""
    async for delta in model.stream_text(system, prompt):
        draft += delta
        writer.write({"type": event_type, "data": delta, "transient": True})
    return draft


async def _stream_accumulated(
    model: TextModel, writer: UIMessageStreamWriter, system: str, prompt: str, event_type: str
) -> str:
    """Emit the whole draft so far on every delta."""
    draft = ""
    async for delta in model.stream_text(system, prompt):
        draft += delta
        writer.write({"type": event_type, "data": draft, "transient": True})
    return draft


CreateFn = Callable[[str, TextModel, UIMessageStreamWriter], Awaitable[str]]
UpdateFn = Callable[[Document, str, TextModel, UIMessageStreamWriter], Awaitable[str]]


@dataclass(frozen=True)
class DocumentHandler:
    kind: ArtifactKind
    create: CreateFn
    update: UpdateFn


async def _create_text(title: str, model: TextModel, writer: UIMessageStreamWriter) -> str:
    return await _stream_incremental(model, writer, TEXT_PROMPT, title, "data-textDelta")


async def _update_text(document: Document, description: str, model: TextModel, writer: UIMessageStreamWriter) -> str:
    system = update_document_prompt(document.content, "text")
    return await _stream_incremental(model, writer, system, description, "data-textDelta")


async def _create_code(title: str, model: TextModel, writer: UIMessageStreamWriter) -> str:
    return await _stream_accumulated(model, writer, CODE_PROMPT, title, "data-codeDelta")


async def _update_code(document: Document, description: str, model: TextModel, writer: UIMessageStreamWriter) -> str:
    system = update_document_prompt(document.content, "code")
    return await _stream_accumulated(model, writer, system, description, "data-codeDelta")


async def _create_sheet(title: str, model: TextModel, writer: UIMessageStreamWriter) -> str:
    return await _stream_accumulated(model, writer, SHEET_PROMPT, title, "data-sheetDelta")


async def _update_sheet(document: Document, description: str, model: TextModel, writer: UIMessageStreamWriter) -> str:
    system = update_document_prompt(document.content, "sheet")
    return await _stream_accumulated(model, writer, system, description, "data-sheetDelta")


DOCUMENT_HANDLERS: dict[str, DocumentHandler] = {
    "text": DocumentHandler(kind="text", create=_create_text, update=_update_text),
    "code": DocumentHandler(kind="code", create=_create_code, update=_update_code),
    "sheet": DocumentHandler(kind="sheet", create=_create_sheet, update=_update_sheet),
}


async def create_document_version(document_id: str, title: str, kind: str, ctx: ToolContext) -> Document:
    handler = DOCUMENT_HANDLERS[kind]
    content = await handler.create(title, ctx.artifact_model, ctx.writer)
    return await ctx.store.save_document(document_id, title, kind, content, ctx.user.id)


async def update_document_version(document: Document, description: str, ctx: ToolContext) -> Document:
    handler = DOCUMENT_HANDLERS[document.kind]
    content = await handler.update(document, description, ctx.artifact_model, ctx.writer)
    return await ctx.store.save_document(document.id, document.title, document.kind, content, ctx.user.id)
