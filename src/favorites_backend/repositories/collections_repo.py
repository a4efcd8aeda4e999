from __future__ import annotations

from typing import Any, cast

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession as SAAsyncSession
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from favorites_backend.config import settings
from favorites_backend.db_urls import is_sqlite_url
from favorites_backend.models import Collection, CollectionItem, SavedItem, utc_now
from favorites_backend.repositories.saved_items_repo import fts_match_expression

# Must stay identical to the expression index created by the search-index migration.
PG_COLLECTION_DOCUMENT = (
    "setweight(to_tsvector('english', coalesce(c.name, '')), 'A') || "
    "setweight(to_tsvector('english', coalesce(c.description, '')), 'B')"
)


def _is_sqlite() -> bool:
    return is_sqlite_url(settings.database_url)


def _col(attr: object) -> ColumnElement[Any]:
    return cast(ColumnElement[Any], attr)


def _live_membership_join() -> ColumnElement[bool]:
    return sa.and_(
        _col(SavedItem.user_id) == _col(CollectionItem.user_id),
        _col(SavedItem.id) == _col(CollectionItem.item_id),
        _col(SavedItem.is_archived) == sa.false(),
    )


def item_count_expr() -> Any:
    """Correlated count of memberships whose saved item is still active."""
    return (
        select(sa.func.count(_col(CollectionItem.id)))
        .select_from(CollectionItem)
        .join(SavedItem, _live_membership_join())
        .where(_col(CollectionItem.collection_id) == _col(Collection.id))
        .correlate(Collection)
        .scalar_subquery()
    )


async def lock_owned_collection(
    session: AsyncSession, *, user_id: str, collection_id: str
) -> Collection | None:
    # SQLite drops FOR UPDATE; BEGIN IMMEDIATE already holds the write lock there.
    return (
        await session.exec(
            select(Collection)
            .where(Collection.id == collection_id)
            .where(Collection.user_id == user_id)
            .with_for_update()
        )
    ).first()


async def get_by_name(
    session: AsyncSession,
    *,
    user_id: str,
    name: str,
    exclude_id: str | None = None,
) -> Collection | None:
    stmt = select(Collection).where(Collection.user_id == user_id).where(Collection.name == name)
    if exclude_id is not None:
        stmt = stmt.where(_col(Collection.id) != exclude_id)
    return (await session.exec(stmt)).first()


async def count_live_items(session: AsyncSession, *, collection_id: str) -> int:
    stmt = (
        select(sa.func.count(_col(CollectionItem.id)))
        .select_from(CollectionItem)
        .join(SavedItem, _live_membership_join())
        .where(CollectionItem.collection_id == collection_id)
    )
    return int((await session.exec(stmt)).one() or 0)


async def list_collections(
    session: AsyncSession,
    *,
    user_id: str,
    include_public: bool,
    limit: int,
    offset: int,
) -> tuple[list[tuple[Collection, int]], int]:
    owner_filter: ColumnElement[bool] = _col(Collection.user_id) == user_id
    if include_public:
        owner_filter = sa.or_(owner_filter, _col(Collection.is_public) == sa.true())

    stmt = (
        select(Collection, item_count_expr().label("item_count"))
        .where(owner_filter)
        .order_by(_col(Collection.updated_at).desc(), _col(Collection.id).desc())
        .limit(limit)
        .offset(offset)
    )
    count_stmt = select(sa.func.count()).select_from(Collection).where(owner_filter)

    rows = [(c, int(n or 0)) for c, n in (await session.exec(stmt)).all()]
    total = int((await session.exec(count_stmt)).one() or 0)
    return rows, total


async def list_public_collections(
    session: AsyncSession,
    *,
    limit: int,
    offset: int,
) -> tuple[list[tuple[Collection, int]], int]:
    public = _col(Collection.is_public) == sa.true()
    stmt = (
        select(Collection, item_count_expr().label("item_count"))
        .where(public)
        .order_by(_col(Collection.updated_at).desc(), _col(Collection.id).desc())
        .limit(limit)
        .offset(offset)
    )
    count_stmt = select(sa.func.count()).select_from(Collection).where(public)

    rows = [(c, int(n or 0)) for c, n in (await session.exec(stmt)).all()]
    total = int((await session.exec(count_stmt)).one() or 0)
    return rows, total


async def search_public_collection_ids(
    session: AsyncSession,
    *,
    terms: list[str],
    limit: int,
    offset: int,
) -> tuple[list[tuple[str, float]], int]:
    if _is_sqlite():
        params: dict[str, object] = {
            "q": fts_match_expression(terms),
            "limit": limit,
            "offset": offset,
        }
        matched = """
        FROM (
          SELECT collection_id, -bm25(collections_fts, 4.0, 1.0) AS score
          FROM collections_fts
          WHERE collections_fts MATCH :q
        ) AS m
        JOIN collections AS c ON c.id = m.collection_id
        WHERE c.is_public = 1
        """
        score_sql = "m.score"
    else:
        params = {"q": " ".join(terms), "limit": limit, "offset": offset}
        matched = (
            """
        FROM collections AS c, plainto_tsquery('english', :q) AS query
        WHERE c.is_public = true
          AND ("""
            + PG_COLLECTION_DOCUMENT
            + ") @@ query"
        )
        score_sql = "ts_rank(" + PG_COLLECTION_DOCUMENT + ", query)"

    ids_sql = sa.text(
        f"SELECT c.id, {score_sql} AS score"
        + matched
        + "\nORDER BY score DESC, c.updated_at DESC, c.id DESC\nLIMIT :limit OFFSET :offset"
    )
    count_sql = sa.text("SELECT COUNT(*)" + matched)

    sa_session = cast(SAAsyncSession, session)
    rows = (await sa_session.execute(ids_sql, params)).all()
    total = (await sa_session.execute(count_sql, params)).scalar_one()
    return [(str(r[0]), float(r[1] or 0.0)) for r in rows], int(total or 0)


async def get_collections_with_counts(
    session: AsyncSession, *, collection_ids: list[str]
) -> dict[str, tuple[Collection, int]]:
    if not collection_ids:
        return {}
    stmt = select(Collection, item_count_expr().label("item_count")).where(
        _col(Collection.id).in_(collection_ids)
    )
    return {c.id: (c, int(n or 0)) for c, n in (await session.exec(stmt)).all()}


async def get_membership(
    session: AsyncSession, *, collection_id: str, item_id: str
) -> CollectionItem | None:
    return (
        await session.exec(
            select(CollectionItem)
            .where(CollectionItem.collection_id == collection_id)
            .where(CollectionItem.item_id == item_id)
        )
    ).first()


async def list_member_ids(
    session: AsyncSession, *, collection_id: str, item_ids: list[str] | None = None
) -> list[str]:
    stmt = select(CollectionItem.item_id).where(CollectionItem.collection_id == collection_id)
    if item_ids is not None:
        stmt = stmt.where(_col(CollectionItem.item_id).in_(item_ids))
    return [str(i) for i in (await session.exec(stmt)).all()]


async def list_memberships(session: AsyncSession, *, collection_id: str) -> list[CollectionItem]:
    stmt = (
        select(CollectionItem)
        .where(CollectionItem.collection_id == collection_id)
        .order_by(
            _col(CollectionItem.position).asc(),
            _col(CollectionItem.added_at).asc(),
            _col(CollectionItem.id).asc(),
        )
    )
    return list((await session.exec(stmt)).all())


async def count_members(session: AsyncSession, *, collection_id: str) -> int:
    stmt = (
        select(sa.func.count())
        .select_from(CollectionItem)
        .where(CollectionItem.collection_id == collection_id)
    )
    return int((await session.exec(stmt)).one() or 0)


async def next_position(session: AsyncSession, *, collection_id: str) -> int:
    stmt = select(sa.func.coalesce(sa.func.max(_col(CollectionItem.position)) + 1, 0)).where(
        CollectionItem.collection_id == collection_id
    )
    return int((await session.exec(stmt)).one() or 0)


async def shift_positions_from(session: AsyncSession, *, collection_id: str, start: int) -> None:
    stmt = (
        sa.update(CollectionItem)
        .where(_col(CollectionItem.collection_id) == collection_id)
        .where(_col(CollectionItem.position) >= start)
        .values(position=_col(CollectionItem.position) + 1)
        .execution_options(synchronize_session=False)
    )
    await cast(SAAsyncSession, session).execute(stmt)


async def compact_positions(session: AsyncSession, *, collection_id: str) -> None:
    """Renumber a collection to 0..n-1 in one statement, keeping relative order."""
    ranked = (
        select(
            _col(CollectionItem.id).label("id"),
            (
                sa.func.row_number().over(
                    order_by=(
                        _col(CollectionItem.position).asc(),
                        _col(CollectionItem.added_at).asc(),
                        _col(CollectionItem.id).asc(),
                    )
                )
                - 1
            ).label("new_position"),
        )
        .where(CollectionItem.collection_id == collection_id)
        .subquery("ranked")
    )
    stmt = (
        sa.update(CollectionItem)
        .where(_col(CollectionItem.id) == ranked.c.id)
        .where(_col(CollectionItem.position) != ranked.c.new_position)
        .values(position=ranked.c.new_position)
        .execution_options(synchronize_session=False)
    )
    await cast(SAAsyncSession, session).execute(stmt)


async def delete_membership(session: AsyncSession, *, collection_id: str, item_id: str) -> int:
    stmt = (
        sa.delete(CollectionItem)
        .where(_col(CollectionItem.collection_id) == collection_id)
        .where(_col(CollectionItem.item_id) == item_id)
    )
    result = await cast(SAAsyncSession, session).execute(stmt)
    return int(cast(Any, result).rowcount or 0)


async def delete_collection(session: AsyncSession, *, collection_id: str) -> None:
    sa_session = cast(SAAsyncSession, session)
    await sa_session.execute(
        sa.delete(CollectionItem).where(_col(CollectionItem.collection_id) == collection_id)
    )
    await sa_session.execute(sa.delete(Collection).where(_col(Collection.id) == collection_id))


async def touch_collection(session: AsyncSession, *, collection_id: str) -> None:
    stmt = (
        sa.update(Collection)
        .where(_col(Collection.id) == collection_id)
        .values(updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    await cast(SAAsyncSession, session).execute(stmt)


async def list_entries(
    session: AsyncSession,
    *,
    collection_id: str,
    sort_by: str,
    limit: int,
    offset: int,
) -> tuple[list[tuple[CollectionItem, SavedItem]], int]:
    if sort_by == "added_at":
        order_by = [_col(CollectionItem.added_at).asc(), _col(CollectionItem.id).asc()]
    elif sort_by == "saved_at":
        order_by = [_col(SavedItem.saved_at).desc(), _col(SavedItem.id).desc()]
    elif sort_by == "title":
        order_by = [
            sa.func.lower(sa.func.coalesce(_col(SavedItem.title), "")).asc(),
            _col(SavedItem.id).asc(),
        ]
    else:
        order_by = [
            _col(CollectionItem.position).asc(),
            _col(CollectionItem.added_at).asc(),
            _col(CollectionItem.id).asc(),
        ]

    stmt = (
        select(CollectionItem, SavedItem)
        .join(SavedItem, _live_membership_join())
        .where(CollectionItem.collection_id == collection_id)
        .order_by(*order_by)
        .limit(limit)
        .offset(offset)
    )
    count_stmt = (
        select(sa.func.count(_col(CollectionItem.id)))
        .select_from(CollectionItem)
        .join(SavedItem, _live_membership_join())
        .where(CollectionItem.collection_id == collection_id)
    )

    rows = [(m, i) for m, i in (await session.exec(stmt)).all()]
    total = int((await session.exec(count_stmt)).one() or 0)
    return rows, total


async def get_stats(session: AsyncSession, *, user_id: str) -> dict[str, Any]:
    per_collection = (
        select(
            _col(Collection.id).label("id"),
            _col(Collection.is_public).label("is_public"),
            item_count_expr().label("n"),
        )
        .where(Collection.user_id == user_id)
        .subquery("per_collection")
    )
    stmt = select(
        sa.func.count().label("total_collections"),
        sa.func.coalesce(
            sa.func.sum(sa.case((per_collection.c.is_public == sa.true(), 1), else_=0)), 0
        ).label("public_collections"),
        sa.func.coalesce(sa.func.sum(per_collection.c.n), 0).label("total_items_in_collections"),
        sa.func.coalesce(sa.func.max(per_collection.c.n), 0).label("largest_collection_size"),
    ).select_from(per_collection)
    row = (await session.exec(stmt)).one()
    return dict(row._mapping)
