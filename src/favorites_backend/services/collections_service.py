from __future__ import annotations

import logging
from collections.abc import Sequence

from favorites_backend.cache import (
    PUBLIC_SCOPE,
    QueryCache,
    collection_scope,
    make_cache_key,
    owner_scope,
)
from favorites_backend.config import settings
from favorites_backend.db import SessionFactory, session_scope, write_transaction
from favorites_backend.errors import (
    AlreadyExists,
    InvalidArgument,
    NotFound,
    translate_store_errors,
)
from favorites_backend.models import Collection, CollectionItem, SavedItem, utc_now
from favorites_backend.pagination import build_pagination, check_page_bounds, resolve_limit
from favorites_backend.repositories import collections_repo, saved_items_repo
from favorites_backend.schemas_collections import (
    CollectionCreate,
    CollectionEntryOut,
    CollectionItemsPage,
    CollectionOut,
    CollectionPage,
    CollectionPatch,
    CollectionStats,
    MembershipOut,
    ReorderEntry,
)

logger = logging.getLogger(__name__)

NAME_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500
MAX_BATCH_ITEMS = 50
ITEM_SORT_KEYS = ("position", "added_at", "saved_at", "title")


def _require_owner(owner_id: str) -> str:
    owner = (owner_id or "").strip()
    if not owner:
        raise InvalidArgument("owner id is required")
    return owner


def _clean_name(name: str | None) -> str:
    v = (name or "").strip()
    if not v:
        raise InvalidArgument("collection name is required")
    if len(v) > NAME_MAX_LENGTH:
        raise InvalidArgument(f"collection name must be {NAME_MAX_LENGTH} characters or less")
    return v


def _clean_description(description: str | None) -> str | None:
    v = (description or "").strip()
    if len(v) > DESCRIPTION_MAX_LENGTH:
        raise InvalidArgument(
            f"description must be {DESCRIPTION_MAX_LENGTH} characters or less"
        )
    return v or None


def _clean_notes(notes: str | None) -> str | None:
    v = (notes or "").strip()
    return v or None


def _collection_out(
    c: Collection,
    *,
    item_count: int,
    viewer_id: str | None,
    relevance_score: float | None = None,
) -> CollectionOut:
    return CollectionOut(
        id=c.id,
        user_id=c.user_id,
        name=c.name,
        description=c.description,
        is_public=c.is_public,
        created_at=c.created_at,
        updated_at=c.updated_at,
        item_count=item_count,
        is_owner=viewer_id is not None and viewer_id == c.user_id,
        relevance_score=relevance_score,
    )


def _membership_out(m: CollectionItem) -> MembershipOut:
    return MembershipOut(
        id=m.id,
        collection_id=m.collection_id,
        item_id=m.item_id,
        position=m.position,
        notes=m.notes,
        added_at=m.added_at,
    )


def _entry_out(m: CollectionItem, item: SavedItem) -> CollectionEntryOut:
    return CollectionEntryOut(
        id=item.id,
        type=item.type,
        title=item.title,
        url=item.url,
        hd_url=item.hd_url,
        category=item.category,
        description=item.description,
        copyright=item.copyright,
        content_date=item.content_date,
        saved_at=item.saved_at,
        user_note=item.user_note,
        user_tags=list(item.user_tags or []),
        is_favorite=item.is_favorite,
        position=m.position,
        collection_notes=m.notes,
        added_to_collection_at=m.added_at,
    )


def plan_reorder(current: Sequence[str], entries: Sequence[ReorderEntry]) -> list[str]:
    """Final member order after moving each entry's item to its requested index.

    Members not named keep their relative order. Requested indexes past the end
    are clamped, so those items are appended in requested-position order.
    """
    requested = {e.item_id: e.position for e in entries}
    order = [item_id for item_id in current if item_id not in requested]
    # Ascending inserts never displace an item placed earlier.
    for item_id, position in sorted(requested.items(), key=lambda kv: kv[1]):
        order.insert(min(position, len(order)), item_id)
    return order


class CollectionStore:
    """Named, ordered groupings of one owner's saved items.

    Every mutation runs in a single transaction that first locks the collection
    row, so membership positions stay dense (0..n-1) under concurrent writers.
    """

    def __init__(
        self,
        *,
        cache: QueryCache,
        session_factory: SessionFactory = session_scope,
    ) -> None:
        self._cache = cache
        self._session_factory = session_factory

    async def list(
        self,
        owner_id: str,
        *,
        page: int = 1,
        limit: int | None = None,
        include_public: bool = False,
    ) -> CollectionPage:
        owner = _require_owner(owner_id)
        limit = resolve_limit(limit)
        offset = check_page_bounds(page=page, limit=limit)

        key = make_cache_key(
            "collections:list",
            owner=owner,
            page=page,
            limit=limit,
            include_public=include_public,
        )
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        since = self._cache.version()

        with translate_store_errors(operation="collections.list", conflict_message="conflict"):
            async with self._session_factory() as session:
                rows, total = await collections_repo.list_collections(
                    session,
                    user_id=owner,
                    include_public=include_public,
                    limit=limit,
                    offset=offset,
                )

        out = CollectionPage(
            collections=[_collection_out(c, item_count=n, viewer_id=owner) for c, n in rows],
            pagination=build_pagination(total=total, page=page, limit=limit),
        )
        scopes = [owner_scope(owner)]
        if include_public:
            scopes.append(PUBLIC_SCOPE)
        self._cache.set(key, out, scopes=scopes, since=since)
        return out

    async def get(self, owner_id: str, collection_id: str) -> CollectionOut:
        owner = _require_owner(owner_id)
        key = make_cache_key("collections:get", owner=owner, collection_id=collection_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        since = self._cache.version()

        with translate_store_errors(operation="collections.get", conflict_message="conflict"):
            async with self._session_factory() as session:
                found = await collections_repo.get_collections_with_counts(
                    session, collection_ids=[collection_id]
                )

        if collection_id not in found:
            raise NotFound("collection not found")
        c, n = found[collection_id]
        if c.user_id != owner and not c.is_public:
            raise NotFound("collection not found")

        out = _collection_out(c, item_count=n, viewer_id=owner)
        self._cache.set(
            key,
            out,
            scopes=[owner_scope(owner), owner_scope(c.user_id), PUBLIC_SCOPE],
            since=since,
        )
        return out

    async def create(self, owner_id: str, payload: CollectionCreate) -> CollectionOut:
        owner = _require_owner(owner_id)
        name = _clean_name(payload.name)
        description = _clean_description(payload.description)

        with translate_store_errors(
            operation="collections.create",
            conflict_message="collection with this name already exists",
        ):
            async with self._session_factory() as session:
                async with write_transaction(session):
                    if await collections_repo.get_by_name(session, user_id=owner, name=name):
                        raise AlreadyExists("collection with this name already exists")
                    now = utc_now()
                    collection = Collection(
                        user_id=owner,
                        name=name,
                        description=description,
                        is_public=payload.is_public,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(collection)

        self._cache.invalidate_owner(owner)
        logger.info(
            "collection created user_id=%s collection_id=%s public=%s",
            owner,
            collection.id,
            collection.is_public,
        )
        return _collection_out(collection, item_count=0, viewer_id=owner)

    async def update(
        self, owner_id: str, collection_id: str, patch: CollectionPatch
    ) -> CollectionOut:
        owner = _require_owner(owner_id)
        changed = set(patch.model_fields_set)
        if not changed:
            raise InvalidArgument("no valid fields to update")
        name = _clean_name(patch.name) if "name" in changed else None
        description = _clean_description(patch.description) if "description" in changed else None
        if "is_public" in changed and patch.is_public is None:
            raise InvalidArgument("is_public cannot be null")

        with translate_store_errors(
            operation="collections.update",
            conflict_message="collection with this name already exists",
        ):
            async with self._session_factory() as session:
                async with write_transaction(session):
                    collection = await collections_repo.lock_owned_collection(
                        session, user_id=owner, collection_id=collection_id
                    )
                    if collection is None:
                        raise NotFound("collection not found")

                    if name is not None:
                        clash = await collections_repo.get_by_name(
                            session, user_id=owner, name=name, exclude_id=collection_id
                        )
                        if clash is not None:
                            raise AlreadyExists("collection with this name already exists")
                        collection.name = name
                    if "description" in changed:
                        collection.description = description
                    if "is_public" in changed and patch.is_public is not None:
                        collection.is_public = patch.is_public
                    collection.updated_at = utc_now()
                    session.add(collection)
                    await session.flush()
                    item_count = await collections_repo.count_live_items(
                        session, collection_id=collection_id
                    )

        self._cache.invalidate_owner(owner)
        logger.info(
            "collection updated user_id=%s collection_id=%s fields=%s",
            owner,
            collection_id,
            ",".join(sorted(changed)),
        )
        return _collection_out(collection, item_count=item_count, viewer_id=owner)

    async def delete(self, owner_id: str, collection_id: str) -> bool:
        owner = _require_owner(owner_id)
        with translate_store_errors(operation="collections.delete", conflict_message="conflict"):
            async with self._session_factory() as session:
                async with write_transaction(session):
                    collection = await collections_repo.lock_owned_collection(
                        session, user_id=owner, collection_id=collection_id
                    )
                    if collection is None:
                        return False
                    await collections_repo.delete_collection(session, collection_id=collection_id)

        self._cache.invalidate_owner(owner)
        self._cache.invalidate(collection_scope(collection_id))
        logger.info("collection deleted user_id=%s collection_id=%s", owner, collection_id)
        return True

    async def add_item(
        self,
        owner_id: str,
        collection_id: str,
        item_id: str,
        *,
        position: int | None = None,
        notes: str | None = None,
    ) -> MembershipOut:
        owner = _require_owner(owner_id)
        item_id = (item_id or "").strip()
        if not item_id:
            raise InvalidArgument("item_id is required")
        if position is not None and position < 0:
            raise InvalidArgument("position must be non-negative")

        with translate_store_errors(
            operation="collections.add_item",
            conflict_message="item already in collection",
        ):
            async with self._session_factory() as session:
                async with write_transaction(session):
                    collection = await collections_repo.lock_owned_collection(
                        session, user_id=owner, collection_id=collection_id
                    )
                    if collection is None:
                        raise NotFound("collection not found")

                    item = await saved_items_repo.get_item(session, user_id=owner, item_id=item_id)
                    if item is None or item.is_archived:
                        raise NotFound("saved item not found")

                    if await collections_repo.get_membership(
                        session, collection_id=collection_id, item_id=item_id
                    ):
                        raise AlreadyExists("item already in collection")

                    if position is None:
                        target = await collections_repo.next_position(
                            session, collection_id=collection_id
                        )
                    else:
                        size = await collections_repo.count_members(
                            session, collection_id=collection_id
                        )
                        target = min(position, size)
                        if target < size:
                            await collections_repo.shift_positions_from(
                                session, collection_id=collection_id, start=target
                            )

                    membership = CollectionItem(
                        collection_id=collection_id,
                        user_id=owner,
                        item_id=item_id,
                        position=target,
                        notes=_clean_notes(notes),
                        added_at=utc_now(),
                    )
                    session.add(membership)
                    await session.flush()
                    await collections_repo.touch_collection(session, collection_id=collection_id)

        self._cache.invalidate_owner(owner)
        logger.info(
            "collection item added user_id=%s collection_id=%s item_id=%s position=%d",
            owner,
            collection_id,
            item_id,
            target,
        )
        return _membership_out(membership)

    async def add_items(
        self,
        owner_id: str,
        collection_id: str,
        item_ids: Sequence[str],
        *,
        notes: str | None = None,
    ) -> list[MembershipOut]:
        """Append several saved items in the given order; nothing is written if any one fails."""
        owner = _require_owner(owner_id)
        ids: list[str] = []
        for raw in item_ids or []:
            v = (raw or "").strip()
            if not v:
                raise InvalidArgument("item ids must not be blank")
            if v not in ids:
                ids.append(v)
        if not ids:
            raise InvalidArgument("item_ids are required")
        if len(ids) > MAX_BATCH_ITEMS:
            raise InvalidArgument(f"maximum {MAX_BATCH_ITEMS} items allowed per batch")
        clean_notes = _clean_notes(notes)

        with translate_store_errors(
            operation="collections.add_items",
            conflict_message="item already in collection",
        ):
            async with self._session_factory() as session:
                async with write_transaction(session):
                    collection = await collections_repo.lock_owned_collection(
                        session, user_id=owner, collection_id=collection_id
                    )
                    if collection is None:
                        raise NotFound("collection not found")

                    found = await saved_items_repo.get_items_by_ids(
                        session, user_id=owner, item_ids=ids
                    )
                    active = {i.id for i in found if not i.is_archived}
                    missing = [i for i in ids if i not in active]
                    if missing:
                        raise NotFound("saved items not found", details={"item_ids": missing})

                    present = await collections_repo.list_member_ids(
                        session, collection_id=collection_id, item_ids=ids
                    )
                    if present:
                        raise AlreadyExists(
                            "items already in collection", details={"item_ids": sorted(present)}
                        )

                    start = await collections_repo.next_position(
                        session, collection_id=collection_id
                    )
                    now = utc_now()
                    memberships = [
                        CollectionItem(
                            collection_id=collection_id,
                            user_id=owner,
                            item_id=item_id,
                            position=start + offset,
                            notes=clean_notes,
                            added_at=now,
                        )
                        for offset, item_id in enumerate(ids)
                    ]
                    session.add_all(memberships)
                    await session.flush()
                    await collections_repo.touch_collection(session, collection_id=collection_id)

        self._cache.invalidate_owner(owner)
        logger.info(
            "collection items added user_id=%s collection_id=%s count=%d",
            owner,
            collection_id,
            len(memberships),
        )
        return [_membership_out(m) for m in memberships]

    async def remove_item(self, owner_id: str, collection_id: str, item_id: str) -> bool:
        owner = _require_owner(owner_id)
        with translate_store_errors(
            operation="collections.remove_item", conflict_message="conflict"
        ):
            async with self._session_factory() as session:
                async with write_transaction(session):
                    collection = await collections_repo.lock_owned_collection(
                        session, user_id=owner, collection_id=collection_id
                    )
                    if collection is None:
                        raise NotFound("collection not found")

                    deleted = await collections_repo.delete_membership(
                        session, collection_id=collection_id, item_id=item_id
                    )
                    if deleted == 0:
                        return False
                    await collections_repo.compact_positions(session, collection_id=collection_id)
                    await collections_repo.touch_collection(session, collection_id=collection_id)

        self._cache.invalidate_owner(owner)
        logger.info(
            "collection item removed user_id=%s collection_id=%s item_id=%s",
            owner,
            collection_id,
            item_id,
        )
        return True

    async def reorder(
        self,
        owner_id: str,
        collection_id: str,
        entries: Sequence[ReorderEntry],
    ) -> list[MembershipOut]:
        """Move the named members to the requested positions and renumber densely.

        Partial orderings are accepted: members not mentioned keep their relative
        order and fill the remaining slots. See plan_reorder.
        """
        owner = _require_owner(owner_id)
        if not entries:
            raise InvalidArgument("items are required")
        seen_ids: set[str] = set()
        seen_positions: set[int] = set()
        for entry in entries:
            if not (entry.item_id or "").strip():
                raise InvalidArgument("item_id is required")
            if entry.position < 0:
                raise InvalidArgument("position must be non-negative")
            if entry.item_id in seen_ids:
                raise InvalidArgument(f"duplicate item_id: {entry.item_id}")
            if entry.position in seen_positions:
                raise InvalidArgument(f"duplicate position: {entry.position}")
            seen_ids.add(entry.item_id)
            seen_positions.add(entry.position)

        with translate_store_errors(operation="collections.reorder", conflict_message="conflict"):
            async with self._session_factory() as session:
                async with write_transaction(session):
                    collection = await collections_repo.lock_owned_collection(
                        session, user_id=owner, collection_id=collection_id
                    )
                    if collection is None:
                        raise NotFound("collection not found")

                    memberships = await collections_repo.list_memberships(
                        session, collection_id=collection_id
                    )
                    by_item = {m.item_id: m for m in memberships}
                    unknown = sorted(seen_ids - by_item.keys())
                    if unknown:
                        raise InvalidArgument(
                            "items are not in this collection", details={"item_ids": unknown}
                        )

                    order = plan_reorder([m.item_id for m in memberships], entries)
                    for index, item_id in enumerate(order):
                        membership = by_item[item_id]
                        if membership.position != index:
                            membership.position = index
                            session.add(membership)
                    await session.flush()
                    await collections_repo.touch_collection(session, collection_id=collection_id)
                    out = [_membership_out(by_item[item_id]) for item_id in order]

        self._cache.invalidate_owner(owner)
        logger.info(
            "collection reordered user_id=%s collection_id=%s entries=%d",
            owner,
            collection_id,
            len(entries),
        )
        return out

    async def list_items(
        self,
        collection_id: str,
        *,
        viewer_id: str | None = None,
        page: int = 1,
        limit: int | None = None,
        sort_by: str = "position",
    ) -> CollectionItemsPage:
        limit = resolve_limit(limit)
        offset = check_page_bounds(page=page, limit=limit)
        if sort_by not in ITEM_SORT_KEYS:
            raise InvalidArgument(
                f"invalid sort_by: {sort_by}", details={"allowed": list(ITEM_SORT_KEYS)}
            )

        key = make_cache_key(
            "collections:items",
            collection_id=collection_id,
            viewer=viewer_id,
            page=page,
            limit=limit,
            sort_by=sort_by,
        )
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        since = self._cache.version()

        with translate_store_errors(
            operation="collections.list_items", conflict_message="conflict"
        ):
            async with self._session_factory() as session:
                found = await collections_repo.get_collections_with_counts(
                    session, collection_ids=[collection_id]
                )
                if collection_id not in found:
                    raise NotFound("collection not found")
                collection, item_count = found[collection_id]
                if (
                    viewer_id is not None
                    and collection.user_id != viewer_id
                    and not collection.is_public
                ):
                    raise NotFound("collection not found")

                rows, total = await collections_repo.list_entries(
                    session,
                    collection_id=collection_id,
                    sort_by=sort_by,
                    limit=limit,
                    offset=offset,
                )

        out = CollectionItemsPage(
            collection=_collection_out(collection, item_count=item_count, viewer_id=viewer_id),
            items=[_entry_out(m, i) for m, i in rows],
            pagination=build_pagination(total=total, page=page, limit=limit),
        )
        self._cache.set(
            key,
            out,
            scopes=[collection_scope(collection_id), owner_scope(collection.user_id)],
            since=since,
        )
        return out

    async def stats(self, owner_id: str) -> CollectionStats:
        owner = _require_owner(owner_id)
        key = make_cache_key("collections:stats", owner=owner)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        since = self._cache.version()

        with translate_store_errors(operation="collections.stats", conflict_message="conflict"):
            async with self._session_factory() as session:
                row = await collections_repo.get_stats(session, user_id=owner)

        total = int(row["total_collections"] or 0)
        public = int(row["public_collections"] or 0)
        items = int(row["total_items_in_collections"] or 0)
        out = CollectionStats(
            total_collections=total,
            public_collections=public,
            private_collections=total - public,
            total_items_in_collections=items,
            avg_items_per_collection=round(items / total, 2) if total > 0 else 0.0,
            largest_collection_size=int(row["largest_collection_size"] or 0),
        )
        self._cache.set(key, out, scopes=[owner_scope(owner)], since=since)
        return out

    async def list_public(
        self,
        *,
        page: int = 1,
        limit: int | None = None,
        search: str | None = None,
    ) -> CollectionPage:
        limit = resolve_limit(limit)
        offset = check_page_bounds(page=page, limit=limit)
        terms = saved_items_repo.search_terms(search) if search and search.strip() else []
        if search and search.strip() and not terms:
            raise InvalidArgument("search query has no searchable terms")

        key = make_cache_key("collections:public", page=page, limit=limit, terms=terms)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        since = self._cache.version()

        with translate_store_errors(
            operation="collections.list_public", conflict_message="conflict"
        ):
            async with self._session_factory() as session:
                if terms:
                    scored, total = await collections_repo.search_public_collection_ids(
                        session, terms=terms, limit=limit, offset=offset
                    )
                    by_id = await collections_repo.get_collections_with_counts(
                        session, collection_ids=[cid for cid, _ in scored]
                    )
                    collections = [
                        _collection_out(
                            by_id[cid][0],
                            item_count=by_id[cid][1],
                            viewer_id=None,
                            relevance_score=score,
                        )
                        for cid, score in scored
                        if cid in by_id
                    ]
                else:
                    rows, total = await collections_repo.list_public_collections(
                        session, limit=limit, offset=offset
                    )
                    collections = [
                        _collection_out(c, item_count=n, viewer_id=None) for c, n in rows
                    ]

        out = CollectionPage(
            collections=collections,
            pagination=build_pagination(total=total, page=page, limit=limit),
        )
        ttl = settings.cache_search_ttl_seconds if terms else settings.cache_public_ttl_seconds
        self._cache.set(key, out, scopes=[PUBLIC_SCOPE], ttl=ttl, since=since)
        return out
