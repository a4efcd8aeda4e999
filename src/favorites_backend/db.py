from __future__ import annotations

from contextlib import AbstractAsyncContextManager, asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncIterator, Callable

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel.ext.asyncio.session import AsyncSession

from favorites_backend.config import settings
from favorites_backend.db_urls import (
    ensure_sqlite_parent_dir,
    is_sqlite_url,
    normalize_database_url_for_async,
)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

# 连接级执行选项：标记该事务需要在 BEGIN 时即获取写锁（仅 SQLite 生效）
WRITE_LOCK_OPTION = "favorites_write_lock"


def _configure_sqlite(engine: AsyncEngine) -> None:
    # pysqlite 默认的隐式 BEGIN 是 deferred：两个写事务可能同时读到 max(position) 再各自写入。
    # 写路径改为 BEGIN IMMEDIATE 提前拿写锁；只读会话仍走普通 BEGIN，不占用写锁。
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:  # pyright: ignore[reportUnusedFunction]
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:  # pyright: ignore[reportUnusedFunction]
        if conn.get_execution_options().get(WRITE_LOCK_OPTION):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


def _create_async_engine(database_url: str) -> AsyncEngine:
    # 运行时统一使用异步 driver，避免因默认 driver 选择导致不可预期行为
    url = normalize_database_url_for_async(database_url)
    if is_sqlite_url(url):
        ensure_sqlite_parent_dir(url)
        engine = create_async_engine(
            url,
            echo=False,
            connect_args={"timeout": settings.sqlite_busy_timeout_seconds},
        )
        _configure_sqlite(engine)
        return engine
    return create_async_engine(url, echo=False, pool_pre_ping=True)


@lru_cache(maxsize=4)
def get_engine() -> AsyncEngine:
    # 允许测试/部署时覆写 settings.database_url 后重建 engine
    return _create_async_engine(settings.database_url)


def reset_engine_cache() -> None:
    get_engine.cache_clear()


async def dispose_engine() -> None:
    if get_engine.cache_info().currsize == 0:
        return
    await get_engine().dispose()
    get_engine.cache_clear()


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    session_maker = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        yield session


@asynccontextmanager
async def write_transaction(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """开启写事务：提交或回滚随上下文退出。

    SQLite 下以 BEGIN IMMEDIATE 开始，读-改-写序列在同一把写锁内完成；
    其他数据库等价于 session.begin()。
    """
    async with session.begin():
        await session.connection(execution_options={WRITE_LOCK_OPTION: True})
        yield session
