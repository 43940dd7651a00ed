"""Create memory, entity, relationship, tag and embedding tables.

Revision ID: 0001_create_memory_tables
Revises:
Create Date: 2026-02-13
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_create_memory_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    json_type = postgresql.JSONB() if is_postgres else sa.JSON()

    # =============================================================================
    # Memories
    # =============================================================================
    op.create_table(
        "memories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("type", sa.String(50), nullable=False, server_default="note"),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("content_length", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("metadata", json_type, nullable=True),
        sa.Column("relevance_score", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("reminder_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_accessed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_memories_hash_archived", "memories", ["content_hash", "is_archived"])
    op.create_index("ix_memories_type_archived_created", "memories", ["type", "is_archived", "created_at"])
    op.create_index("ix_memories_reminder_archived", "memories", ["reminder_at", "is_archived"])
    op.create_index("ix_memories_relevance_score", "memories", ["relevance_score"])

    # =============================================================================
    # Entities
    # =============================================================================
    op.create_table(
        "memory_entities",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_subtype", sa.String(100), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("attributes", json_type, nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("mention_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_mentioned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_memory_entities_type_active", "memory_entities", ["entity_type", "is_active"])
    op.create_index("ix_memory_entities_type_end_date", "memory_entities", ["entity_type", "end_date"])
    op.create_index("ix_memory_entities_name", "memory_entities", ["name"])
    op.create_index("ix_memory_entities_email", "memory_entities", ["email"])
    op.create_index("ix_memory_entities_mention_count", "memory_entities", ["mention_count"])
    op.create_index(
        "uq_memory_entities_active_type_email",
        "memory_entities",
        ["entity_type", "email"],
        unique=True,
        postgresql_where=sa.text("is_active AND email IS NOT NULL"),
        sqlite_where=sa.text("is_active = 1 AND email IS NOT NULL"),
    )

    # =============================================================================
    # Relationships
    # =============================================================================
    op.create_table(
        "memory_relationships",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "from_entity_id",
            sa.Integer(),
            sa.ForeignKey("memory_entities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "to_entity_id",
            sa.Integer(),
            sa.ForeignKey("memory_entities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("relationship_type", sa.String(100), nullable=False),
        sa.Column("metadata", json_type, nullable=True),
        sa.Column("started_at", sa.Date(), nullable=True),
        sa.Column("ended_at", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "from_entity_id",
            "to_entity_id",
            "relationship_type",
            name="uq_memory_relationships_edge",
        ),
    )
    op.create_index("ix_memory_relationships_from", "memory_relationships", ["from_entity_id"])
    op.create_index(
        "ix_memory_relationships_to_type",
        "memory_relationships",
        ["to_entity_id", "relationship_type"],
    )
    op.create_index(
        "ix_memory_relationships_type_ended",
        "memory_relationships",
        ["relationship_type", "ended_at"],
    )

    # =============================================================================
    # Tags
    # =============================================================================
    op.create_table(
        "memory_tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("category", sa.String(100), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_memory_tags_usage_count", "memory_tags", ["usage_count"])

    # =============================================================================
    # Link tables
    # =============================================================================
    op.create_table(
        "memory_entity_links",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("memory_id", sa.Integer(), sa.ForeignKey("memories.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "entity_id",
            sa.Integer(),
            sa.ForeignKey("memory_entities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("link_type", sa.String(50), nullable=False, server_default="mentioned"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("memory_id", "entity_id", name="uq_memory_entity_links_pair"),
    )
    op.create_index("ix_memory_entity_links_entity", "memory_entity_links", ["entity_id", "memory_id"])

    op.create_table(
        "memory_tag_links",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("memory_id", sa.Integer(), sa.ForeignKey("memories.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("memory_tags.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("memory_id", "tag_id", name="uq_memory_tag_links_pair"),
    )
    op.create_index("ix_memory_tag_links_tag", "memory_tag_links", ["tag_id"])

    # =============================================================================
    # Embeddings
    # =============================================================================
    op.create_table(
        "memory_embeddings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "memory_id",
            sa.Integer(),
            sa.ForeignKey("memories.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("embedding", sa.JSON(), nullable=False),
        sa.Column("model", sa.String(100), nullable=False),
        sa.Column("dimensions", sa.Integer(), nullable=False),
        sa.Column("magnitude", sa.Float(), nullable=True),
        sa.Column("source_hash", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_memory_embeddings_model_created", "memory_embeddings", ["model", "created_at"])
    op.create_index("ix_memory_embeddings_magnitude", "memory_embeddings", ["magnitude"])


def downgrade() -> None:
    op.drop_table("memory_embeddings")
    op.drop_table("memory_tag_links")
    op.drop_table("memory_entity_links")
    op.drop_table("memory_tags")
    op.drop_table("memory_relationships")
    op.drop_table("memory_entities")
    op.drop_table("memories")
