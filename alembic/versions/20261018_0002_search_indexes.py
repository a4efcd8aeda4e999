"""full-text search indexes (sqlite fts5 / postgres gin)

Revision ID: 20261018_0002
Revises: 20261018_0001
Create Date: 2026-10-18 00:00:01
"""

from __future__ import annotations

from alembic import op


revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


# Expressions must match the documents queried by the repositories exactly.
_PG_SAVED_ITEMS_DOCUMENT = (
    "setweight(to_tsvector('english', coalesce(title, '')), 'A') || "
    "setweight(to_tsvector('english', coalesce(description, '')), 'B') || "
    "setweight(to_tsvector('english', coalesce(category, '') || ' ' || "
    "coalesce(user_note, '')), 'C') || "
    "setweight(to_tsvector('english', coalesce(user_tags::text, '')), 'D')"
)
_PG_COLLECTIONS_DOCUMENT = (
    "setweight(to_tsvector('english', coalesce(name, '')), 'A') || "
    "setweight(to_tsvector('english', coalesce(description, '')), 'B')"
)

_SQLITE_TAGS_TEXT = "(SELECT group_concat(value, ' ') FROM json_each(new.user_tags))"


def _upgrade_postgres() -> None:
    op.execute(
        f"CREATE INDEX IF NOT EXISTS ix_saved_items_search "
        f"ON saved_items USING GIN (({_PG_SAVED_ITEMS_DOCUMENT}));"
    )
    op.execute(
        f"CREATE INDEX IF NOT EXISTS ix_collections_search "
        f"ON collections USING GIN (({_PG_COLLECTIONS_DOCUMENT}));"
    )


def _upgrade_sqlite() -> None:
    op.execute(
        """
        CREATE VIRTUAL TABLE IF NOT EXISTS saved_items_fts USING fts5(
          title,
          description,
          category,
          user_note,
          user_tags,
          item_id UNINDEXED,
          user_id UNINDEXED
        );
        """
    )

    # Archived items stay out of the index.
    op.execute(
        """
        INSERT INTO saved_items_fts(
          item_id, user_id, title, description, category, user_note, user_tags
        )
        SELECT s.id, s.user_id, s.title, s.description, s.category, s.user_note,
               (SELECT group_concat(value, ' ') FROM json_each(s.user_tags))
        FROM saved_items AS s
        WHERE s.is_archived = 0;
        """
    )

    op.execute(
        f"""
        CREATE TRIGGER IF NOT EXISTS saved_items_fts_ai AFTER INSERT ON saved_items
        WHEN new.is_archived = 0
        BEGIN
          INSERT INTO saved_items_fts(
            item_id, user_id, title, description, category, user_note, user_tags
          )
          VALUES (
            new.id, new.user_id, new.title, new.description, new.category, new.user_note,
            {_SQLITE_TAGS_TEXT}
          );
        END;
        """
    )

    op.execute(
        """
        CREATE TRIGGER IF NOT EXISTS saved_items_fts_ad AFTER DELETE ON saved_items
        BEGIN
          DELETE FROM saved_items_fts WHERE item_id = old.id AND user_id = old.user_id;
        END;
        """
    )

    # Covers text edits, tag edits, and archive/reactivate transitions.
    op.execute(
        f"""
        CREATE TRIGGER IF NOT EXISTS saved_items_fts_au AFTER UPDATE ON saved_items
        BEGIN
          DELETE FROM saved_items_fts WHERE item_id = old.id AND user_id = old.user_id;
          INSERT INTO saved_items_fts(
            item_id, user_id, title, description, category, user_note, user_tags
          )
          SELECT new.id, new.user_id, new.title, new.description, new.category, new.user_note,
                 {_SQLITE_TAGS_TEXT}
          WHERE new.is_archived = 0;
        END;
        """
    )

    op.execute(
        """
        CREATE VIRTUAL TABLE IF NOT EXISTS collections_fts USING fts5(
          name,
          description,
          collection_id UNINDEXED
        );
        """
    )

    op.execute(
        """
        INSERT INTO collections_fts(collection_id, name, description)
        SELECT c.id, c.name, c.description FROM collections AS c;
        """
    )

    op.execute(
        """
        CREATE TRIGGER IF NOT EXISTS collections_fts_ai AFTER INSERT ON collections
        BEGIN
          INSERT INTO collections_fts(collection_id, name, description)
          VALUES (new.id, new.name, new.description);
        END;
        """
    )

    op.execute(
        """
        CREATE TRIGGER IF NOT EXISTS collections_fts_ad AFTER DELETE ON collections
        BEGIN
          DELETE FROM collections_fts WHERE collection_id = old.id;
        END;
        """
    )

    op.execute(
        """
        CREATE TRIGGER IF NOT EXISTS collections_fts_au AFTER UPDATE OF name, description
        ON collections
        BEGIN
          DELETE FROM collections_fts WHERE collection_id = old.id;
          INSERT INTO collections_fts(collection_id, name, description)
          VALUES (new.id, new.name, new.description);
        END;
        """
    )


def upgrade() -> None:
    dialect = op.get_bind().dialect.name
    if dialect == "sqlite":
        _upgrade_sqlite()
    elif dialect == "postgresql":
        _upgrade_postgres()


def downgrade() -> None:
    dialect = op.get_bind().dialect.name
    if dialect == "postgresql":
        op.execute("DROP INDEX IF EXISTS ix_collections_search;")
        op.execute("DROP INDEX IF EXISTS ix_saved_items_search;")
        return
    if dialect != "sqlite":
        return

    op.execute("DROP TRIGGER IF EXISTS collections_fts_au;")
    op.execute("DROP TRIGGER IF EXISTS collections_fts_ad;")
    op.execute("DROP TRIGGER IF EXISTS collections_fts_ai;")
    op.execute("DROP TABLE IF EXISTS collections_fts;")
    op.execute("DROP TRIGGER IF EXISTS saved_items_fts_au;")
    op.execute("DROP TRIGGER IF EXISTS saved_items_fts_ad;")
    op.execute("DROP TRIGGER IF EXISTS saved_items_fts_ai;")
    op.execute("DROP TABLE IF EXISTS saved_items_fts;")
