"""Add full-text GIN indexes on postgres.

Revision ID: 0002_fulltext_indexes
Revises: 0001_create_memory_tables
Create Date: 2026-02-14
"""

from alembic import op


revision = "0002_fulltext_indexes"
down_revision = "0001_create_memory_tables"
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name != "postgresql":
        return

    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_memories_fulltext ON memories "
        "USING GIN (to_tsvector('english', coalesce(content, '') || ' ' || coalesce(summary, '')))"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_memory_entities_fulltext ON memory_entities "
        "USING GIN (to_tsvector('english', coalesce(name, '') || ' ' || coalesce(description, '')))"
    )


def downgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name != "postgresql":
        return

    op.execute("DROP INDEX IF EXISTS ix_memory_entities_fulltext")
    op.execute("DROP INDEX IF EXISTS ix_memories_fulltext")
