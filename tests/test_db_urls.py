from __future__ import annotations

from pathlib import Path

import pytest

from favorites_backend.db_urls import (
    ensure_sqlite_parent_dir,
    extract_sqlite_db_file_path,
    is_sqlite_url,
    normalize_database_url_for_alembic,
    normalize_database_url_for_async,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("sqlite:///./dev.db", "sqlite+aiosqlite:///./dev.db"),
        ("postgres://u:p@db:5432/fav", "postgresql+psycopg://u:p@db:5432/fav"),
        ("postgresql://u:p@db/fav", "postgresql+psycopg://u:p@db/fav"),
        ("postgresql+psycopg://u:p@db/fav", "postgresql+psycopg://u:p@db/fav"),
    ],
)
def test_async_driver_is_selected(raw: str, expected: str) -> None:
    assert normalize_database_url_for_async(raw) == expected


def test_alembic_uses_sync_drivers() -> None:
    assert normalize_database_url_for_alembic("sqlite+aiosqlite:///x.db") == "sqlite:///x.db"
    assert (
        normalize_database_url_for_alembic("postgres://u:p@db/fav")
        == "postgresql+psycopg://u:p@db/fav"
    )


def test_sqlite_file_path_extraction() -> None:
    assert is_sqlite_url("SQLITE:///x.db")
    assert not is_sqlite_url("postgresql://db/fav")
    assert extract_sqlite_db_file_path("sqlite:///./data/dev.db") == Path("./data/dev.db")
    assert extract_sqlite_db_file_path("sqlite:///:memory:") is None
    assert extract_sqlite_db_file_path("sqlite://") is None
    assert extract_sqlite_db_file_path("postgresql://db/fav") is None


def test_ensure_sqlite_parent_dir_creates_missing_directories(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "deeper" / "fav.db"
    ensure_sqlite_parent_dir(f"sqlite+aiosqlite:///{target}")
    assert target.parent.is_dir()
