from __future__ import annotations

import json

from datetime import UTC, datetime, timedelta
from typing import Any

import asyncpg

from models.chat_models import Chat, DBMessage, Document, Suggestion, Visibility
from utils.db_utils import with_retry


def _json_load(value: Any) -> Any:
    # JSONB columns come back as text unless a codec is registered on the pool
    if isinstance(value, str):
        return json.loads(value)
    return value


def _rows_affected(tag: str | None) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 3" or "UPDATE 1"
    if not tag:
        return 0
    count = tag.split()[-1]
    return int(count) if count.isdigit() else 0


class ChatStore:
    """Persistence for chats, messages, stream ids, documents and suggestions."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    # =========================================================================
    # Chats
    # =========================================================================

    async def save_chat(self, chat_id: str, user_id: str, title: str, visibility: Visibility) -> Chat:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO chats (id, created_at, title, user_id, visibility)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
                """,
                chat_id,
                datetime.now(UTC),
                title,
                user_id,
                visibility,
            )
        return self._row_to_chat(row)

    @with_retry()
    async def get_chat_by_id(self, chat_id: str) -> Chat | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM chats WHERE id = $1", chat_id)
        return self._row_to_chat(row) if row else None

    async def delete_chat_by_id(self, chat_id: str) -> Chat | None:
        """Delete a chat. Messages and stream ids cascade."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("DELETE FROM chats WHERE id = $1 RETURNING *", chat_id)
        return self._row_to_chat(row) if row else None

    async def update_chat_title(self, chat_id: str, title: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("UPDATE chats SET title = $2 WHERE id = $1", chat_id, title)

    async def update_chat_visibility(self, chat_id: str, visibility: Visibility) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("UPDATE chats SET visibility = $2 WHERE id = $1", chat_id, visibility)

    # =========================================================================
    # Messages
    # =========================================================================

    async def save_messages(self, messages: list[DBMessage]) -> None:
        if not messages:
            return
        async with self.pool.acquire() as conn:
            await conn.executemany(
                """
                INSERT INTO messages (id, chat_id, role, parts, attachments, created_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                [
                    (
                        m.id,
                        m.chat_id,
                        m.role,
                        json.dumps(m.parts),
                        json.dumps(m.attachments),
                        m.created_at,
                    )
                    for m in messages
                ],
            )

    @with_retry()
    async def get_messages_by_chat_id(self, chat_id: str) -> list[DBMessage]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM messages
                WHERE chat_id = $1
                ORDER BY created_at ASC
                """,
                chat_id,
            )
        return [self._row_to_message(r) for r in rows]

    async def get_message_by_id(self, message_id: str) -> DBMessage | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM messages WHERE id = $1", message_id)
        return self._row_to_message(row) if row else None

    async def update_message_parts(self, message_id: str, chat_id: str, parts: list[dict[str, Any]]) -> bool:
        """Replace the parts of a message of ``chat_id``. False when the chat has no such message."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE messages SET parts = $3 WHERE id = $1 AND chat_id = $2",
                message_id,
                chat_id,
                json.dumps(parts),
            )
        return _rows_affected(result) > 0

    async def delete_messages_after_timestamp(self, chat_id: str, timestamp: datetime) -> int:
        """Delete messages created at or after ``timestamp``. Returns the number removed."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM messages WHERE chat_id = $1 AND created_at >= $2",
                chat_id,
                timestamp,
            )
        return _rows_affected(result)

    @with_retry()
    async def get_message_count_by_user_id(self, user_id: str, hours: int) -> int:
        """Count user-role messages sent by ``user_id`` within the last ``hours``."""
        since = datetime.now(UTC) - timedelta(hours=hours)
        async with self.pool.acquire() as conn:
            count = await conn.fetchval(
                """
                SELECT COUNT(m.id)
                FROM messages m
                JOIN chats c ON c.id = m.chat_id
                WHERE c.user_id = $1
                  AND m.role = 'user'
                  AND m.created_at >= $2
                """,
                user_id,
                since,
            )
        return int(count or 0)

    # =========================================================================
    # Streams
    # =========================================================================

    async def create_stream_id(self, stream_id: str, chat_id: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "INSERT INTO streams (id, chat_id, created_at) VALUES ($1, $2, $3)",
                stream_id,
                chat_id,
                datetime.now(UTC),
            )

    async def get_stream_ids_by_chat_id(self, chat_id: str) -> list[str]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT id FROM streams WHERE chat_id = $1 ORDER BY created_at ASC",
                chat_id,
            )
        return [r["id"] for r in rows]

    # =========================================================================
    # Documents
    # =========================================================================

    async def save_document(
        self,
        document_id: str,
        title: str,
        kind: str,
        content: str,
        user_id: str,
    ) -> Document:
        """Store a new version of a document."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO documents (id, created_at, title, content, kind, user_id)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING *
                """,
                document_id,
                datetime.now(UTC),
                title,
                content,
                kind,
                user_id,
            )
        return self._row_to_document(row)

    async def get_document_by_id(self, document_id: str) -> Document | None:
        """Latest version of a document."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM documents
                WHERE id = $1
                ORDER BY created_at DESC
                LIMIT 1
                """,
                document_id,
            )
        return self._row_to_document(row) if row else None

    async def get_documents_by_id(self, document_id: str) -> list[Document]:
        """Every version of a document, oldest first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM documents WHERE id = $1 ORDER BY created_at ASC",
                document_id,
            )
        return [self._row_to_document(r) for r in rows]

    # =========================================================================
    # Suggestions
    # =========================================================================

    async def save_suggestions(self, suggestions: list[Suggestion]) -> None:
        if not suggestions:
            return
        now = datetime.now(UTC)
        async with self.pool.acquire() as conn:
            await conn.executemany(
                """
                INSERT INTO suggestions (
                    id, document_id, document_created_at, original_text,
                    suggested_text, description, is_resolved, user_id, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                [
                    (
                        s.id,
                        s.document_id,
                        s.document_created_at,
                        s.original_text,
                        s.suggested_text,
                        s.description,
                        s.is_resolved,
                        s.user_id,
                        s.created_at or now,
                    )
                    for s in suggestions
                ],
            )

    # =========================================================================
    # Row mapping
    # =========================================================================

    def _row_to_chat(self, row: asyncpg.Record) -> Chat:
        return Chat(
            id=row["id"],
            created_at=row["created_at"],
            title=row["title"],
            user_id=row["user_id"],
            visibility=row["visibility"],
        )

    def _row_to_message(self, row: asyncpg.Record) -> DBMessage:
        return DBMessage(
            id=row["id"],
            chat_id=row["chat_id"],
            role=row["role"],
            parts=_json_load(row["parts"]) or [],
            attachments=_json_load(row["attachments"]) or [],
            created_at=row["created_at"],
        )

    def _row_to_document(self, row: asyncpg.Record) -> Document:
        return Document(
            id=row["id"],
            created_at=row["created_at"],
            title=row["title"],
            content=row["content"],
            kind=row["kind"],
            user_id=row["user_id"],
        )
