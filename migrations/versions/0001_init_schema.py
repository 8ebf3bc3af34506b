"""init schema"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_init_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Ids are client-generated UUID strings; user ids come from the token issuer
    op.create_table(
        "chats",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("title", sa.Text, nullable=False),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("visibility", sa.String(length=10), nullable=False, server_default="private"),
        sa.CheckConstraint("visibility IN ('public', 'private')", name="ck_chats_visibility"),
    )
    op.create_index("idx_chats_user_id", "chats", ["user_id"])

    op.create_table(
        "messages",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("chat_id", sa.Text, sa.ForeignKey("chats.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("parts", sa.dialects.postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("attachments", sa.dialects.postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
    )
    op.create_index("idx_messages_chat_created", "messages", ["chat_id", "created_at"])
    # Quota counts user messages in a rolling window
    op.create_index("idx_messages_role_created", "messages", ["role", "created_at"])

    op.create_table(
        "streams",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("chat_id", sa.Text, sa.ForeignKey("chats.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
    )
    op.create_index("idx_streams_chat_created", "streams", ["chat_id", "created_at"])

    op.create_table(
        "documents",
        sa.Column("id", sa.Text, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("title", sa.Text, nullable=False),
        sa.Column("content", sa.Text),
        sa.Column("kind", sa.String(length=10), nullable=False, server_default="text"),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.PrimaryKeyConstraint("id", "created_at", name="pk_documents"),
        sa.CheckConstraint("kind IN ('text', 'code', 'sheet')", name="ck_documents_kind"),
    )

    op.create_table(
        "suggestions",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("document_id", sa.Text, nullable=False),
        sa.Column("document_created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("original_text", sa.Text, nullable=False),
        sa.Column("suggested_text", sa.Text, nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("is_resolved", sa.Boolean, nullable=False, server_default=sa.text("FALSE")),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.ForeignKeyConstraint(
            ["document_id", "document_created_at"],
            ["documents.id", "documents.created_at"],
            ondelete="CASCADE",
            name="fk_suggestions_document",
        ),
    )
    op.create_index("idx_suggestions_document", "suggestions", ["document_id"])

    # Durable stream channel: one row per frame, NULL frame marks the end
    op.create_table(
        "stream_chunks",
        sa.Column("stream_id", sa.Text, nullable=False),
        sa.Column("seq", sa.Integer, nullable=False),
        sa.Column("frame", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.PrimaryKeyConstraint("stream_id", "seq", name="pk_stream_chunks"),
    )
    op.create_index("idx_stream_chunks_created", "stream_chunks", ["created_at"])


def downgrade() -> None:
    op.drop_table("stream_chunks")
    op.drop_table("suggestions")
    op.drop_table("documents")
    op.drop_table("streams")
    op.drop_table("messages")
    op.drop_table("chats")
