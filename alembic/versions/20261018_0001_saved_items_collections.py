"""saved items, collections and memberships

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 00:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "saved_items",
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("id", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("hd_url", sa.Text(), nullable=True),
        sa.Column("media_type", sa.String(length=50), nullable=True),
        sa.Column("category", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("copyright", sa.String(length=500), nullable=True),
        sa.Column("content_date", sa.Date(), nullable=True),
        sa.Column("saved_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("user_note", sa.Text(), nullable=True),
        sa.Column("user_tags", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("is_favorite", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.PrimaryKeyConstraint("user_id", "id", name="pk_saved_items"),
    )
    op.create_index("ix_saved_items_type", "saved_items", ["type"], unique=False)
    op.create_index("ix_saved_items_saved_at", "saved_items", ["saved_at"], unique=False)
    op.create_index("ix_saved_items_is_archived", "saved_items", ["is_archived"], unique=False)
    op.create_index("ix_saved_items_is_favorite", "saved_items", ["is_favorite"], unique=False)
    op.create_index(
        "ix_saved_items_user_id_saved_at", "saved_items", ["user_id", "saved_at"], unique=False
    )

    op.create_table(
        "collections",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "name", name="uq_collections_user_id_name"),
    )
    op.create_index("ix_collections_user_id", "collections", ["user_id"], unique=False)
    op.create_index("ix_collections_is_public", "collections", ["is_public"], unique=False)
    op.create_index("ix_collections_updated_at", "collections", ["updated_at"], unique=False)

    op.create_table(
        "collection_items",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column(
            "collection_id",
            sa.String(length=36),
            sa.ForeignKey("collections.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("item_id", sa.String(length=255), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("added_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "collection_id", "item_id", name="uq_collection_items_collection_item"
        ),
        sa.ForeignKeyConstraint(
            ["user_id", "item_id"],
            ["saved_items.user_id", "saved_items.id"],
            name="fk_collection_items_saved_item",
        ),
        sa.CheckConstraint("position >= 0", name="ck_collection_items_position_non_negative"),
    )
    op.create_index(
        "ix_collection_items_collection_id_position",
        "collection_items",
        ["collection_id", "position"],
        unique=False,
    )
    op.create_index(
        "ix_collection_items_user_id_item_id",
        "collection_items",
        ["user_id", "item_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_collection_items_user_id_item_id", table_name="collection_items")
    op.drop_index("ix_collection_items_collection_id_position", table_name="collection_items")
    op.drop_table("collection_items")

    op.drop_index("ix_collections_updated_at", table_name="collections")
    op.drop_index("ix_collections_is_public", table_name="collections")
    op.drop_index("ix_collections_user_id", table_name="collections")
    op.drop_table("collections")

    op.drop_index("ix_saved_items_user_id_saved_at", table_name="saved_items")
    op.drop_index("ix_saved_items_is_favorite", table_name="saved_items")
    op.drop_index("ix_saved_items_is_archived", table_name="saved_items")
    op.drop_index("ix_saved_items_saved_at", table_name="saved_items")
    op.drop_index("ix_saved_items_type", table_name="saved_items")
    op.drop_table("saved_items")
