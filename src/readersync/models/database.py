"""数据库初始化和会话管理."""

import logging
from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

logger = logging.getLogger(__name__)

# 全局引擎和会话工厂
_engine: Any = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

# 旧库升级时需要补齐的列
_ARTICLE_COLUMNS = {
    "last_local_update": "DATETIME",
    "last_sync_update": "DATETIME",
}

_QUEUE_COLUMNS = {
    "deferred_until": "DATETIME",
    "stuck": "BOOLEAN DEFAULT 0",
    "last_error": "TEXT",
}


async def init_db(database_url: str) -> None:
    """初始化数据库，创建所有表."""
    global _engine, _session_factory

    # 确保所有表模型已注册到 metadata
    import readersync.models  # noqa: F401

    _engine = create_async_engine(database_url, echo=False)
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with _engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    # 添加新列（如果不存在）
    await _add_missing_columns("articles", _ARTICLE_COLUMNS)
    await _add_missing_columns("sync_queue", _QUEUE_COLUMNS)


async def close_db() -> None:
    """释放数据库连接."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def _add_missing_columns(table: str, columns: dict[str, str]) -> None:
    """为已存在的表补齐缺失的列."""
    if _session_factory is None:
        return

    async with _session_factory() as session:
        result = await session.execute(text(f"PRAGMA table_info({table})"))
        existing = {row[1] for row in result.fetchall()}

        for name, ddl in columns.items():
            if name not in existing:
                logger.info(f"添加 {table}.{name} 列")
                await session.execute(
                    text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")
                )

        await session.commit()


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """获取数据库会话（用于依赖注入）."""
    if _session_factory is None:
        msg = "数据库未初始化，请先调用 init_db()"
        raise RuntimeError(msg)

    async with _session_factory() as session:
        yield session


def async_session_maker() -> async_sessionmaker[AsyncSession]:
    """获取会话工厂（用于后台任务）."""
    if _session_factory is None:
        msg = "数据库未初始化，请先调用 init_db()"
        raise RuntimeError(msg)
    return _session_factory
