from __future__ import annotations

import re
from collections import defaultdict
from datetime import datetime
from typing import Any, cast

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession as SAAsyncSession
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from favorites_backend.config import settings
from favorites_backend.db_urls import is_sqlite_url
from favorites_backend.models import Collection, CollectionItem, SavedItem

# bm25 weights follow the fts5 column order: title, description, category, user_note, user_tags.
# Tags weigh least so an incidental tag hit ranks below a content match.
_FTS_BM25_WEIGHTS = "8.0, 4.0, 2.0, 2.0, 0.25"

# Must stay identical to the expression index created by the search-index migration.
PG_SEARCH_DOCUMENT = (
    "setweight(to_tsvector('english', coalesce(si.title, '')), 'A') || "
    "setweight(to_tsvector('english', coalesce(si.description, '')), 'B') || "
    "setweight(to_tsvector('english', coalesce(si.category, '') || ' ' || "
    "coalesce(si.user_note, '')), 'C') || "
    "setweight(to_tsvector('english', coalesce(si.user_tags::text, '')), 'D')"
)

_TERM_RE = re.compile(r"\w+", re.UNICODE)


def _is_sqlite() -> bool:
    return is_sqlite_url(settings.database_url)


def _col(attr: object) -> ColumnElement[Any]:
    return cast(ColumnElement[Any], attr)


def search_terms(query: str | None) -> list[str]:
    """Split free text into plain search terms; punctuation and operators are dropped."""
    return _TERM_RE.findall((query or "").lower())


def fts_match_expression(terms: list[str]) -> str:
    # Quoted terms are literal tokens for fts5; juxtaposition means AND.
    return " ".join(f'"{t}"' for t in terms)


def _tags_overlap(tags: list[str]) -> ColumnElement[bool]:
    fn = sa.func.json_each if _is_sqlite() else sa.func.json_array_elements_text
    elements = fn(_col(SavedItem.user_tags)).table_valued("value")
    return sa.exists(
        sa.select(sa.literal(1)).select_from(elements).where(elements.c.value.in_(tags))
    )


def _active() -> ColumnElement[bool]:
    return _col(SavedItem.is_archived) == sa.false()


async def get_item(session: AsyncSession, *, user_id: str, item_id: str) -> SavedItem | None:
    return (
        await session.exec(
            select(SavedItem).where(SavedItem.user_id == user_id).where(SavedItem.id == item_id)
        )
    ).first()


async def list_item_ids(
    session: AsyncSession,
    *,
    user_id: str,
    item_type: str | None,
    include_archived: bool,
    tags: list[str] | None,
    sort_by: str,
    limit: int,
    offset: int,
) -> tuple[list[str], int]:
    filters: list[ColumnElement[bool]] = [_col(SavedItem.user_id) == user_id]
    if not include_archived:
        filters.append(_active())
    if item_type is not None:
        filters.append(_col(SavedItem.type) == item_type)
    if tags:
        filters.append(_tags_overlap(tags))

    if sort_by == "title":
        order_by = [
            sa.func.lower(sa.func.coalesce(_col(SavedItem.title), "")).asc(),
            _col(SavedItem.id).asc(),
        ]
    elif sort_by == "date":
        order_by = [
            sa.func.coalesce(_col(SavedItem.content_date), _col(SavedItem.saved_at)).desc(),
            _col(SavedItem.id).desc(),
        ]
    else:
        order_by = [_col(SavedItem.saved_at).desc(), _col(SavedItem.id).desc()]

    stmt = select(SavedItem.id).where(*filters).order_by(*order_by).limit(limit).offset(offset)
    count_stmt = select(sa.func.count()).select_from(SavedItem).where(*filters)

    ids = list((await session.exec(stmt)).all())
    total = int((await session.exec(count_stmt)).one() or 0)
    return ids, total


async def search_item_ids(
    session: AsyncSession,
    *,
    user_id: str,
    terms: list[str],
    types: list[str] | None,
    tags: list[str] | None,
    limit: int,
    offset: int,
) -> tuple[list[tuple[str, float]], int]:
    if _is_sqlite():
        return await _search_item_ids_sqlite_fts(
            session,
            user_id=user_id,
            terms=terms,
            types=types,
            tags=tags,
            limit=limit,
            offset=offset,
        )
    return await _search_item_ids_pg(
        session,
        user_id=user_id,
        terms=terms,
        types=types,
        tags=tags,
        limit=limit,
        offset=offset,
    )


def _extra_filters(
    *, types: list[str] | None, tags: list[str] | None, tags_fn: str
) -> tuple[str, list[sa.BindParameter[Any]], dict[str, object]]:
    sql = ""
    bind: list[sa.BindParameter[Any]] = []
    params: dict[str, object] = {}
    if types:
        sql += "\n  AND si.type IN :types"
        bind.append(sa.bindparam("types", expanding=True))
        params["types"] = list(types)
    if tags:
        sql += (
            f"\n  AND EXISTS (SELECT 1 FROM {tags_fn}(si.user_tags) AS t"
            " WHERE t.value IN :tags)"
        )
        bind.append(sa.bindparam("tags", expanding=True))
        params["tags"] = list(tags)
    return sql, bind, params


async def _search_item_ids_sqlite_fts(
    session: AsyncSession,
    *,
    user_id: str,
    terms: list[str],
    types: list[str] | None,
    tags: list[str] | None,
    limit: int,
    offset: int,
) -> tuple[list[tuple[str, float]], int]:
    extra_sql, bind, params = _extra_filters(types=types, tags=tags, tags_fn="json_each")
    params.update(
        {"user_id": user_id, "q": fts_match_expression(terms), "limit": limit, "offset": offset}
    )

    # Archived items never reach the fts index (see migration), the is_archived check is a backstop.
    matched = (
        """
        FROM (
          SELECT item_id, user_id, -bm25(saved_items_fts, """
        + _FTS_BM25_WEIGHTS
        + """) AS score
          FROM saved_items_fts
          WHERE saved_items_fts MATCH :q AND user_id = :user_id
        ) AS m
        JOIN saved_items AS si ON si.id = m.item_id AND si.user_id = m.user_id
        WHERE si.user_id = :user_id
          AND si.is_archived = 0
        """
        + extra_sql
    )

    ids_sql = sa.text(
        "SELECT si.id, m.score"
        + matched
        + "\nORDER BY m.score DESC, si.saved_at DESC, si.id DESC\nLIMIT :limit OFFSET :offset"
    ).bindparams(*bind)
    count_sql = sa.text("SELECT COUNT(*)" + matched).bindparams(*bind)

    sa_session = cast(SAAsyncSession, session)
    rows = (await sa_session.execute(ids_sql, params)).all()
    total = (await sa_session.execute(count_sql, params)).scalar_one()
    return [(str(r[0]), float(r[1] or 0.0)) for r in rows], int(total or 0)


async def _search_item_ids_pg(
    session: AsyncSession,
    *,
    user_id: str,
    terms: list[str],
    types: list[str] | None,
    tags: list[str] | None,
    limit: int,
    offset: int,
) -> tuple[list[tuple[str, float]], int]:
    extra_sql, bind, params = _extra_filters(
        types=types, tags=tags, tags_fn="json_array_elements_text"
    )
    params.update({"user_id": user_id, "q": " ".join(terms), "limit": limit, "offset": offset})

    matched = (
        """
        FROM saved_items AS si, plainto_tsquery('english', :q) AS query
        WHERE si.user_id = :user_id
          AND si.is_archived = false
          AND ("""
        + PG_SEARCH_DOCUMENT
        + ") @@ query"
        + extra_sql
    )

    ids_sql = sa.text(
        "SELECT si.id, ts_rank("
        + PG_SEARCH_DOCUMENT
        + ", query) AS score"
        + matched
        + "\nORDER BY score DESC, si.saved_at DESC, si.id DESC\nLIMIT :limit OFFSET :offset"
    ).bindparams(*bind)
    count_sql = sa.text("SELECT COUNT(*)" + matched).bindparams(*bind)

    sa_session = cast(SAAsyncSession, session)
    rows = (await sa_session.execute(ids_sql, params)).all()
    total = (await sa_session.execute(count_sql, params)).scalar_one()
    return [(str(r[0]), float(r[1] or 0.0)) for r in rows], int(total or 0)


async def get_items_by_ids(
    session: AsyncSession,
    *,
    user_id: str,
    item_ids: list[str],
) -> list[SavedItem]:
    """Fetch rows for a page of ids, preserving the order of `item_ids`."""
    if not item_ids:
        return []

    rows = (
        await session.exec(
            select(SavedItem)
            .where(SavedItem.user_id == user_id)
            .where(_col(SavedItem.id).in_(item_ids))
        )
    ).all()
    by_id = {r.id: r for r in rows}
    return [by_id[i] for i in item_ids if i in by_id]


async def get_collection_names_for_items(
    session: AsyncSession,
    *,
    user_id: str,
    item_ids: list[str],
) -> dict[str, list[str]]:
    if not item_ids:
        return {}

    stmt = (
        select(CollectionItem.item_id, Collection.name)
        .select_from(CollectionItem)
        .join(Collection, _col(Collection.id) == _col(CollectionItem.collection_id))
        .where(CollectionItem.user_id == user_id)
        .where(_col(CollectionItem.item_id).in_(item_ids))
        .order_by(_col(CollectionItem.item_id).asc(), _col(Collection.name).asc())
    )
    rows = (await session.exec(stmt)).all()

    names_by_item: dict[str, list[str]] = defaultdict(list)
    for item_id, name in rows:
        names_by_item[str(item_id)].append(str(name))
    return dict(names_by_item)


async def get_stats(
    session: AsyncSession,
    *,
    user_id: str,
    recent_since: datetime,
) -> dict[str, Any]:
    active = _active()

    def _count_where(cond: ColumnElement[bool]) -> Any:
        return sa.func.coalesce(sa.func.sum(sa.case((cond, 1), else_=0)), 0)

    saved_at = _col(SavedItem.saved_at)
    stmt = (
        select(
            _count_where(active).label("total_favorites"),
            _count_where(sa.not_(active)).label("archived_count"),
            _count_where(sa.and_(active, _col(SavedItem.is_favorite) == sa.true())).label(
                "marked_favorites"
            ),
            sa.func.count(sa.distinct(sa.case((active, _col(SavedItem.type))))).label(
                "unique_types"
            ),
            sa.func.min(sa.case((active, saved_at))).label("first_saved"),
            sa.func.max(sa.case((active, saved_at))).label("last_saved"),
            _count_where(
                sa.and_(active, sa.func.json_array_length(_col(SavedItem.user_tags)) > 0)
            ).label("tagged_count"),
            _count_where(sa.and_(active, _col(SavedItem.user_note).is_not(None))).label(
                "noted_count"
            ),
            _count_where(sa.and_(active, saved_at >= recent_since)).label("recent_count"),
        )
        .select_from(SavedItem)
        .where(SavedItem.user_id == user_id)
    )
    row = (await session.exec(stmt)).one()
    out = dict(row._mapping)

    types_stmt = (
        select(SavedItem.type)
        .where(SavedItem.user_id == user_id)
        .where(active)
        .distinct()
        .order_by(_col(SavedItem.type).asc())
    )
    out["types"] = [str(t) for t in (await session.exec(types_stmt)).all()]
    return out


async def list_items_for_export(
    session: AsyncSession,
    *,
    user_id: str,
    include_archived: bool,
) -> list[SavedItem]:
    stmt = select(SavedItem).where(SavedItem.user_id == user_id)
    if not include_archived:
        stmt = stmt.where(_active())
    stmt = stmt.order_by(_col(SavedItem.saved_at).desc(), _col(SavedItem.id).desc())
    return list((await session.exec(stmt)).all())
