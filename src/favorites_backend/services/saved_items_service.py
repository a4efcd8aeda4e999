from __future__ import annotations

import csv
import io
import logging
from collections.abc import Sequence
from datetime import timedelta
from typing import Any, Union

from sqlmodel.ext.asyncio.session import AsyncSession

from favorites_backend.cache import QueryCache, make_cache_key, owner_scope
from favorites_backend.config import settings
from favorites_backend.db import SessionFactory, session_scope, write_transaction
from favorites_backend.errors import (
    AlreadyExists,
    InvalidArgument,
    NotFound,
    StoreError,
    translate_store_errors,
)
from favorites_backend.models import SAVED_ITEM_TYPES, SavedItem, utc_now
from favorites_backend.pagination import build_pagination, check_page_bounds, resolve_limit
from favorites_backend.repositories import saved_items_repo
from favorites_backend.schemas_saved_items import (
    BatchAddFailure,
    BatchAddResult,
    SavedItemCreate,
    SavedItemOut,
    SavedItemPage,
    SavedItemPatch,
    SavedItemStats,
)

logger = logging.getLogger(__name__)

MAX_BATCH_ADD = 100
MAX_TAG_LENGTH = 50
SORT_KEYS = ("saved_at", "date", "title")
EXPORT_FORMATS = ("json", "csv")

CSV_HEADERS = [
    "ID",
    "Type",
    "Title",
    "URL",
    "Category",
    "Date",
    "Saved At",
    "Note",
    "Tags",
    "Is Favorite",
]

ExportResult = Union[list[SavedItemOut], str]


def _require_owner(owner_id: str) -> str:
    owner = (owner_id or "").strip()
    if not owner:
        raise InvalidArgument("owner id is required")
    return owner


def _check_type(item_type: str) -> str:
    if item_type not in SAVED_ITEM_TYPES:
        raise InvalidArgument(
            f"invalid item type: {item_type}",
            details={"allowed": list(SAVED_ITEM_TYPES)},
        )
    return item_type


def normalize_tags(tags: Sequence[str] | None) -> list[str]:
    """Trim, drop blanks and de-duplicate while keeping first-seen order."""
    out: list[str] = []
    seen: set[str] = set()
    for raw in tags or []:
        tag = (raw or "").strip()
        if not tag:
            continue
        if len(tag) > MAX_TAG_LENGTH:
            raise InvalidArgument(f"tag too long (max {MAX_TAG_LENGTH} chars)")
        if tag in seen:
            continue
        seen.add(tag)
        out.append(tag)
    return out


def to_saved_item_out(
    item: SavedItem,
    *,
    collection_names: list[str] | None = None,
    relevance_score: float | None = None,
) -> SavedItemOut:
    names = list(collection_names or [])
    return SavedItemOut(
        id=item.id,
        user_id=item.user_id,
        type=item.type,
        title=item.title,
        url=item.url,
        hd_url=item.hd_url,
        media_type=item.media_type,
        category=item.category,
        description=item.description,
        copyright=item.copyright,
        content_date=item.content_date,
        saved_at=item.saved_at,
        created_at=item.created_at,
        updated_at=item.updated_at,
        is_archived=item.is_archived,
        user_note=item.user_note,
        user_tags=list(item.user_tags or []),
        is_favorite=item.is_favorite,
        metadata=dict(item.item_metadata or {}),
        collection_count=len(names),
        collection_names=names,
        relevance_score=relevance_score,
    )


class SavedItemStore:
    """Owner-scoped saved items: save, reactivate, annotate, soft delete, search."""

    def __init__(
        self,
        *,
        cache: QueryCache,
        session_factory: SessionFactory = session_scope,
    ) -> None:
        self._cache = cache
        self._session_factory = session_factory

    async def _annotate(
        self,
        session: AsyncSession,
        *,
        owner_id: str,
        items: list[SavedItem],
        scores: dict[str, float] | None = None,
    ) -> list[SavedItemOut]:
        names_by_item = await saved_items_repo.get_collection_names_for_items(
            session, user_id=owner_id, item_ids=[i.id for i in items]
        )
        return [
            to_saved_item_out(
                i,
                collection_names=names_by_item.get(i.id),
                relevance_score=scores.get(i.id) if scores is not None else None,
            )
            for i in items
        ]

    async def list(
        self,
        owner_id: str,
        *,
        page: int = 1,
        limit: int | None = None,
        item_type: str | None = None,
        include_archived: bool = False,
        tags: Sequence[str] | None = None,
        sort_by: str = "saved_at",
    ) -> SavedItemPage:
        owner = _require_owner(owner_id)
        limit = resolve_limit(limit)
        offset = check_page_bounds(page=page, limit=limit)
        if item_type is not None:
            _check_type(item_type)
        if sort_by not in SORT_KEYS:
            raise InvalidArgument(
                f"invalid sort_by: {sort_by}", details={"allowed": list(SORT_KEYS)}
            )
        tag_filter = normalize_tags(tags)

        key = make_cache_key(
            "saved_items:list",
            owner=owner,
            page=page,
            limit=limit,
            item_type=item_type,
            include_archived=include_archived,
            tags=tag_filter,
            sort_by=sort_by,
        )
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        since = self._cache.version()

        with translate_store_errors(operation="saved_items.list", conflict_message="conflict"):
            async with self._session_factory() as session:
                ids, total = await saved_items_repo.list_item_ids(
                    session,
                    user_id=owner,
                    item_type=item_type,
                    include_archived=include_archived,
                    tags=tag_filter,
                    sort_by=sort_by,
                    limit=limit,
                    offset=offset,
                )
                rows = await saved_items_repo.get_items_by_ids(
                    session, user_id=owner, item_ids=ids
                )
                items = await self._annotate(session, owner_id=owner, items=rows)

        out = SavedItemPage(
            items=items,
            pagination=build_pagination(total=total, page=page, limit=limit),
        )
        self._cache.set(key, out, scopes=[owner_scope(owner)], since=since)
        return out

    async def get(self, owner_id: str, item_id: str) -> SavedItemOut:
        owner = _require_owner(owner_id)
        key = make_cache_key("saved_items:get", owner=owner, item_id=item_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        since = self._cache.version()

        with translate_store_errors(operation="saved_items.get", conflict_message="conflict"):
            async with self._session_factory() as session:
                item = await saved_items_repo.get_item(session, user_id=owner, item_id=item_id)
                if item is None:
                    raise NotFound("saved item not found")
                out = (await self._annotate(session, owner_id=owner, items=[item]))[0]

        self._cache.set(key, out, scopes=[owner_scope(owner)], since=since)
        return out

    async def add(self, owner_id: str, payload: SavedItemCreate) -> SavedItemOut:
        owner = _require_owner(owner_id)
        item_type = _check_type(payload.item_type)
        item_id = (payload.item_id or "").strip()
        if not item_id:
            raise InvalidArgument("item_id is required")

        data = payload.data
        reactivated = False
        with translate_store_errors(
            operation="saved_items.add", conflict_message="item already saved"
        ):
            async with self._session_factory() as session:
                async with write_transaction(session):
                    existing = await saved_items_repo.get_item(
                        session, user_id=owner, item_id=item_id
                    )
                    if existing is not None and not existing.is_archived:
                        raise AlreadyExists("item already saved")

                    now = utc_now()
                    if existing is not None:
                        existing.is_archived = False
                        existing.updated_at = now
                        session.add(existing)
                        item = existing
                        reactivated = True
                    else:
                        item = SavedItem(
                            user_id=owner,
                            id=item_id,
                            type=item_type,
                            title=data.title,
                            url=data.url,
                            hd_url=data.hd_url,
                            media_type=data.media_type or "image",
                            category=data.category,
                            description=data.description,
                            copyright=data.copyright,
                            content_date=payload.item_date,
                            saved_at=now,
                            created_at=now,
                            updated_at=now,
                            item_metadata=dict(data.metadata),
                        )
                        session.add(item)
                    await session.flush()
                out = (await self._annotate(session, owner_id=owner, items=[item]))[0]

        self._cache.invalidate_owner(owner)
        logger.info(
            "saved item added user_id=%s item_id=%s type=%s reactivated=%s",
            owner,
            item_id,
            item_type,
            reactivated,
        )
        return out

    async def add_many(self, owner_id: str, items: Sequence[SavedItemCreate]) -> BatchAddResult:
        owner = _require_owner(owner_id)
        if not items:
            raise InvalidArgument("items are required")
        if len(items) > MAX_BATCH_ADD:
            raise InvalidArgument(f"maximum {MAX_BATCH_ADD} items allowed per batch")

        successful: list[SavedItemOut] = []
        failed: list[BatchAddFailure] = []
        for payload in items:
            try:
                successful.append(await self.add(owner, payload))
            except StoreError as exc:
                failed.append(
                    BatchAddFailure(item_id=payload.item_id, error=exc.error, message=exc.message)
                )

        logger.info(
            "saved items batch added user_id=%s ok=%d failed=%d",
            owner,
            len(successful),
            len(failed),
        )
        return BatchAddResult(successful=successful, failed=failed, total=len(items))

    async def update(self, owner_id: str, item_id: str, patch: SavedItemPatch) -> SavedItemOut:
        owner = _require_owner(owner_id)
        changed = set(patch.model_fields_set)
        if not changed:
            raise InvalidArgument("no valid fields to update")
        if "is_favorite" in changed and patch.is_favorite is None:
            raise InvalidArgument("is_favorite cannot be null")
        tags = normalize_tags(patch.user_tags) if "user_tags" in changed else None

        with translate_store_errors(operation="saved_items.update", conflict_message="conflict"):
            async with self._session_factory() as session:
                async with write_transaction(session):
                    item = await saved_items_repo.get_item(session, user_id=owner, item_id=item_id)
                    if item is None or item.is_archived:
                        raise NotFound("saved item not found")

                    if "user_note" in changed:
                        note = patch.user_note
                        item.user_note = note if note and note.strip() else None
                    if tags is not None:
                        item.user_tags = tags
                    if "is_favorite" in changed and patch.is_favorite is not None:
                        item.is_favorite = patch.is_favorite
                    item.updated_at = utc_now()
                    session.add(item)
                    await session.flush()
                out = (await self._annotate(session, owner_id=owner, items=[item]))[0]

        self._cache.invalidate_owner(owner)
        logger.info(
            "saved item updated user_id=%s item_id=%s fields=%s",
            owner,
            item_id,
            ",".join(sorted(changed)),
        )
        return out

    async def remove(self, owner_id: str, item_id: str) -> bool:
        owner = _require_owner(owner_id)
        with translate_store_errors(operation="saved_items.remove", conflict_message="conflict"):
            async with self._session_factory() as session:
                async with write_transaction(session):
                    item = await saved_items_repo.get_item(session, user_id=owner, item_id=item_id)
                    if item is None or item.is_archived:
                        return False
                    item.is_archived = True
                    item.updated_at = utc_now()
                    session.add(item)

        self._cache.invalidate_owner(owner)
        logger.info("saved item archived user_id=%s item_id=%s", owner, item_id)
        return True

    async def search(
        self,
        owner_id: str,
        query: str,
        *,
        page: int = 1,
        limit: int | None = None,
        types: Sequence[str] | None = None,
        tags: Sequence[str] | None = None,
    ) -> SavedItemPage:
        owner = _require_owner(owner_id)
        if not query or not query.strip():
            raise InvalidArgument("search query is required")
        terms = saved_items_repo.search_terms(query)
        if not terms:
            raise InvalidArgument("search query has no searchable terms")
        limit = resolve_limit(limit)
        offset = check_page_bounds(page=page, limit=limit)
        type_filter = [_check_type(t) for t in dict.fromkeys(types or [])]
        tag_filter = normalize_tags(tags)

        key = make_cache_key(
            "saved_items:search",
            owner=owner,
            terms=terms,
            page=page,
            limit=limit,
            types=type_filter,
            tags=tag_filter,
        )
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        since = self._cache.version()

        with translate_store_errors(operation="saved_items.search", conflict_message="conflict"):
            async with self._session_factory() as session:
                scored, total = await saved_items_repo.search_item_ids(
                    session,
                    user_id=owner,
                    terms=terms,
                    types=type_filter,
                    tags=tag_filter,
                    limit=limit,
                    offset=offset,
                )
                scores = dict(scored)
                rows = await saved_items_repo.get_items_by_ids(
                    session, user_id=owner, item_ids=[i for i, _ in scored]
                )
                items = await self._annotate(session, owner_id=owner, items=rows, scores=scores)

        out = SavedItemPage(
            items=items,
            pagination=build_pagination(total=total, page=page, limit=limit),
        )
        self._cache.set(
            key,
            out,
            scopes=[owner_scope(owner)],
            ttl=settings.cache_search_ttl_seconds,
            since=since,
        )
        return out

    async def stats(self, owner_id: str) -> SavedItemStats:
        owner = _require_owner(owner_id)
        key = make_cache_key("saved_items:stats", owner=owner)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        since = self._cache.version()

        recent_since = utc_now() - timedelta(days=settings.recent_window_days)
        with translate_store_errors(operation="saved_items.stats", conflict_message="conflict"):
            async with self._session_factory() as session:
                row = await saved_items_repo.get_stats(
                    session, user_id=owner, recent_since=recent_since
                )

        total = int(row["total_favorites"] or 0)
        marked = int(row["marked_favorites"] or 0)
        tagged = int(row["tagged_count"] or 0)
        engagement = round((marked + tagged) / total * 100, 2) if total > 0 else 0.0
        out = SavedItemStats(
            total_favorites=total,
            archived_count=int(row["archived_count"] or 0),
            marked_favorites=marked,
            unique_types=int(row["unique_types"] or 0),
            types=list(row["types"]),
            first_saved=row["first_saved"],
            last_saved=row["last_saved"],
            tagged_count=tagged,
            noted_count=int(row["noted_count"] or 0),
            recent_count=int(row["recent_count"] or 0),
            engagement_rate=engagement,
        )
        self._cache.set(key, out, scopes=[owner_scope(owner)], since=since)
        return out

    async def export(
        self,
        owner_id: str,
        *,
        fmt: str = "json",
        include_archived: bool = False,
    ) -> ExportResult:
        owner = _require_owner(owner_id)
        if fmt not in EXPORT_FORMATS:
            raise InvalidArgument(
                f"unsupported export format: {fmt}", details={"allowed": list(EXPORT_FORMATS)}
            )

        with translate_store_errors(operation="saved_items.export", conflict_message="conflict"):
            async with self._session_factory() as session:
                rows = await saved_items_repo.list_items_for_export(
                    session, user_id=owner, include_archived=include_archived
                )
                items = (
                    await self._annotate(session, owner_id=owner, items=rows)
                    if fmt == "json"
                    else None
                )

        logger.info("saved items exported user_id=%s format=%s count=%d", owner, fmt, len(rows))
        if items is None:
            return _render_csv(rows)
        return items


def _render_csv(rows: Sequence[SavedItem]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for r in rows:
        values: list[Any] = [
            r.id,
            r.type,
            r.title or "",
            r.url or "",
            r.category or "",
            r.content_date.isoformat() if r.content_date else "",
            r.saved_at.isoformat(),
            r.user_note or "",
            ";".join(r.user_tags or []),
            "true" if r.is_favorite else "false",
        ]
        writer.writerow(values)
    return buf.getvalue()
