from __future__ import annotations

import os
from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlmodel import SQLModel

from favorites_backend import models  # noqa: F401  # 确保 SQLModel metadata 已加载
from favorites_backend.config import settings
from favorites_backend.db_urls import is_sqlite_url, normalize_database_url_for_alembic

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = SQLModel.metadata

# 全文检索表由迁移中的原生 SQL 创建，不在 metadata 中，autogenerate 时忽略
_UNMANAGED_TABLE_PREFIXES = ("saved_items_fts", "collections_fts")


def _database_url() -> str:
    # 优先使用环境变量，便于 CI/部署覆写；否则读取 settings（.env 或测试覆写）
    raw = os.getenv("DATABASE_URL") or settings.database_url
    return normalize_database_url_for_alembic(raw)


def _include_object(
    obj: Any, name: str | None, type_: str, reflected: bool, compare_to: Any
) -> bool:
    _ = obj, reflected, compare_to
    if type_ == "table" and name and name.startswith(_UNMANAGED_TABLE_PREFIXES):
        return False
    return True


def _configure_kwargs(url: str) -> dict[str, Any]:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "include_object": _include_object,
        # SQLite 不支持直接 ALTER 大部分约束，需要 batch 模式
        "render_as_batch": is_sqlite_url(url),
    }


def run_migrations_offline() -> None:
    url = _database_url()
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_kwargs(url),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url = _database_url()
    section = config.get_section(config.config_ini_section) or {}
    section["sqlalchemy.url"] = url

    connectable = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(connection=connection, **_configure_kwargs(url))
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
