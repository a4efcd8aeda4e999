from __future__ import annotations

from collections.abc import AsyncGenerator, Iterator
from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config

from favorites_backend.cache import TTLQueryCache
from favorites_backend.config import settings
from favorites_backend.db import dispose_engine, reset_engine_cache
from favorites_backend.services.collections_service import CollectionStore
from favorites_backend.services.saved_items_service import SavedItemStore


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
async def _dispose_engine_per_test(  # pyright: ignore[reportUnusedFunction]
    anyio_backend: object,  # noqa: ARG001
) -> AsyncGenerator[None, None]:
    # Shut the aiosqlite worker threads down while this test's event loop is still alive.
    _ = anyio_backend
    yield
    await dispose_engine()


@pytest.fixture
def migrated_db(tmp_path: Path) -> Iterator[str]:
    """Point settings at a fresh SQLite file and run every migration on it."""
    old_db = settings.database_url
    settings.database_url = f"sqlite:///{tmp_path / 'favorites-test.db'}"
    reset_engine_cache()
    command.upgrade(Config("alembic.ini"), "head")
    try:
        yield settings.database_url
    finally:
        # The cached engine is disposed by the autouse fixture above.
        settings.database_url = old_db


@pytest.fixture
def cache() -> TTLQueryCache:
    return TTLQueryCache(maxsize=256, default_ttl=300)


@pytest.fixture
def saved_items(migrated_db: str, cache: TTLQueryCache) -> SavedItemStore:
    _ = migrated_db
    return SavedItemStore(cache=cache)


@pytest.fixture
def collections(migrated_db: str, cache: TTLQueryCache) -> CollectionStore:
    _ = migrated_db
    return CollectionStore(cache=cache)
