"""Read-side query cache shared by the saved-item and collection stores.

Entries are tagged with scopes (the owner of the data, plus ``public`` for
cross-owner listings). Writers drop whole scopes after committing, so coarse
invalidation errs on the side of re-reading from the database.

A reader that races a writer could otherwise re-insert data it read before the
write committed. Readers capture ``version()`` before querying and hand it to
``set(since=...)``; the fill is dropped if any invalidation happened meanwhile.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
from collections import defaultdict
from typing import Any, Iterable, Protocol

from cachetools import TTLCache

from favorites_backend.config import Settings

logger = logging.getLogger(__name__)

PUBLIC_SCOPE = "public"


def owner_scope(owner_id: str) -> str:
    return f"owner:{owner_id}"


def collection_scope(collection_id: str) -> str:
    return f"collection:{collection_id}"


def make_cache_key(namespace: str, **params: Any) -> str:
    key_data = json.dumps(params, sort_keys=True, default=str)
    return f"{namespace}:{hashlib.md5(key_data.encode()).hexdigest()}"


class QueryCache(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(
        self,
        key: str,
        value: Any,
        *,
        scopes: Iterable[str],
        ttl: float | None = None,
        since: int | None = None,
    ) -> None: ...

    def invalidate(self, *scopes: str) -> None: ...

    def invalidate_owner(self, owner_id: str) -> None: ...

    def version(self) -> int: ...

    def clear(self) -> None: ...


class TTLQueryCache:
    """Process-local cache on top of ``cachetools.TTLCache``.

    TTLCache has a single ttl per instance, so each distinct ttl gets its own
    bucket; all buckets share the scope index and the size budget.
    """

    def __init__(self, *, maxsize: int = 4096, default_ttl: float = 300) -> None:
        self._maxsize = max(1, int(maxsize))
        self._default_ttl = float(default_ttl)
        self._buckets: dict[float, TTLCache[str, Any]] = {}
        self._key_bucket: dict[str, float] = {}
        self._scope_keys: defaultdict[str, set[str]] = defaultdict(set)
        self._key_scopes: dict[str, tuple[str, ...]] = {}
        self._version = 0

    def _bucket(self, ttl: float) -> TTLCache[str, Any]:
        bucket = self._buckets.get(ttl)
        if bucket is None:
            bucket = TTLCache(maxsize=self._maxsize, ttl=ttl)
            self._buckets[ttl] = bucket
        return bucket

    def _forget(self, key: str) -> None:
        ttl = self._key_bucket.pop(key, None)
        if ttl is not None:
            self._buckets[ttl].pop(key, None)
        for scope in self._key_scopes.pop(key, ()):
            keys = self._scope_keys.get(scope)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._scope_keys[scope]

    def get(self, key: str) -> Any | None:
        ttl = self._key_bucket.get(key)
        if ttl is None:
            logger.debug("query cache miss key=%s", key)
            return None
        value = self._buckets[ttl].get(key)
        if value is None:
            # Expired (or evicted) inside TTLCache; drop the index entries too.
            self._forget(key)
            logger.debug("query cache miss key=%s", key)
            return None
        logger.debug("query cache hit key=%s", key)
        return copy.deepcopy(value)

    def set(
        self,
        key: str,
        value: Any,
        *,
        scopes: Iterable[str],
        ttl: float | None = None,
        since: int | None = None,
    ) -> None:
        if since is not None and since != self._version:
            logger.debug("query cache fill skipped key=%s (invalidated during read)", key)
            return

        self._forget(key)
        if len(self._key_bucket) >= self._maxsize:
            self._evict_expired()
            if len(self._key_bucket) >= self._maxsize:
                self._forget(next(iter(self._key_bucket)))

        bucket_ttl = float(ttl) if ttl is not None else self._default_ttl
        self._bucket(bucket_ttl)[key] = copy.deepcopy(value)
        self._key_bucket[key] = bucket_ttl
        scope_tuple = tuple(dict.fromkeys(scopes))
        self._key_scopes[key] = scope_tuple
        for scope in scope_tuple:
            self._scope_keys[scope].add(key)

    def _evict_expired(self) -> None:
        for bucket in self._buckets.values():
            bucket.expire()
        stale = [k for k, ttl in self._key_bucket.items() if k not in self._buckets[ttl]]
        for key in stale:
            self._forget(key)

    def invalidate(self, *scopes: str) -> None:
        self._version += 1
        dropped = 0
        for scope in scopes:
            for key in list(self._scope_keys.get(scope, ())):
                self._forget(key)
                dropped += 1
        logger.debug("query cache invalidated scopes=%s dropped=%d", scopes, dropped)

    def invalidate_owner(self, owner_id: str) -> None:
        self.invalidate(owner_scope(owner_id), PUBLIC_SCOPE)

    def version(self) -> int:
        return self._version

    def clear(self) -> None:
        self._version += 1
        for bucket in self._buckets.values():
            bucket.clear()
        self._key_bucket.clear()
        self._scope_keys.clear()
        self._key_scopes.clear()

    def __len__(self) -> int:
        return len(self._key_bucket)


class NullQueryCache:
    """Cache that never stores anything."""

    def get(self, key: str) -> Any | None:
        return None

    def set(
        self,
        key: str,
        value: Any,
        *,
        scopes: Iterable[str],
        ttl: float | None = None,
        since: int | None = None,
    ) -> None:
        return None

    def invalidate(self, *scopes: str) -> None:
        return None

    def invalidate_owner(self, owner_id: str) -> None:
        return None

    def version(self) -> int:
        return 0

    def clear(self) -> None:
        return None


def build_query_cache(settings: Settings) -> QueryCache:
    if not settings.cache_enabled:
        return NullQueryCache()
    return TTLQueryCache(
        maxsize=settings.cache_max_entries,
        default_ttl=settings.cache_ttl_seconds,
    )
