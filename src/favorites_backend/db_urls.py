"""DATABASE_URL 规范化，运行时 engine 与 Alembic 共用。

约定：
- 运行时：sqlite+aiosqlite://... 或 postgresql+psycopg://...（异步 driver）
- Alembic：同步 driver，接受同一个用户配置的 URL
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy.engine import URL, make_url

_ASYNC_DRIVERS = {"sqlite": "sqlite+aiosqlite", "postgresql": "postgresql+psycopg"}
# psycopg3 同时支持同步与异步；不回退到 psycopg2
_SYNC_DRIVERS = {"sqlite": "sqlite", "postgresql": "postgresql+psycopg"}


def _parse(database_url: str) -> URL | None:
    raw = (database_url or "").strip()
    if not raw:
        return None
    # 兼容 Heroku 风格的 postgres://
    if raw.startswith("postgres://"):
        raw = "postgresql://" + raw[len("postgres://") :]
    return make_url(raw)


def _with_driver(database_url: str, drivers: dict[str, str]) -> str:
    url = _parse(database_url)
    if url is None:
        return (database_url or "").strip()
    driver = drivers.get(url.get_backend_name())
    if driver is None:
        return url.render_as_string(hide_password=False)
    return url.set(drivername=driver).render_as_string(hide_password=False)


def normalize_database_url_for_async(database_url: str) -> str:
    return _with_driver(database_url, _ASYNC_DRIVERS)


def normalize_database_url_for_alembic(database_url: str) -> str:
    return _with_driver(database_url, _SYNC_DRIVERS)


def is_sqlite_url(database_url: str) -> bool:
    return (database_url or "").strip().lower().startswith("sqlite")


def extract_sqlite_db_file_path(database_url: str) -> Path | None:
    """SQLite URL 对应的本地文件路径；内存库或非 SQLite URL 返回 None。"""
    if not is_sqlite_url(database_url):
        return None
    url = _parse(database_url)
    if url is None:
        return None
    database = url.database
    if not database or database == ":memory:" or database.startswith("file::memory:"):
        return None
    return Path(database)


def ensure_sqlite_parent_dir(database_url: str) -> None:
    path = extract_sqlite_db_file_path(database_url)
    if path is None:
        return
    parent = path.parent
    if str(parent) in {"", "."}:
        return
    parent.mkdir(parents=True, exist_ok=True)
