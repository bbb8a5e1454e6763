"""
MarketFlow 数据库连接和会话管理
"""
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
    AsyncEngine
)
from sqlalchemy import text, event

from mf_core.config import Settings, get_settings
from mf_core.utils.logger import get_logger
from mf_core.models.base import Base

logger = get_logger(__name__)


def _watch_slow_queries(engine, threshold_ms: int) -> None:
    """超过阈值的语句记一条 warning（语句截断到 500 字符）"""
    @event.listens_for(engine, "before_cursor_execute")
    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault("query_start_time", []).append(time.perf_counter())

    @event.listens_for(engine, "after_cursor_execute")
    def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        start_times = conn.info.get("query_start_time", [])
        if start_times:
            duration_ms = (time.perf_counter() - start_times.pop()) * 1000
            if duration_ms >= threshold_ms:
                logger.warning("Slow query", duration_ms=round(duration_ms, 1),
                               sql=" ".join(statement[:500].split()))


class DatabaseManager:
    """数据库管理器"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._async_engine: Optional[AsyncEngine] = None
        self._async_session_factory: Optional[async_sessionmaker] = None

    def create_async_engine(self) -> AsyncEngine:
        """创建异步数据库引擎"""
        if self._async_engine is None:
            url = self.settings.database_url
            engine_kwargs = {"echo": False, "future": True}
            # 连接池参数仅对 PostgreSQL 生效
            if url.startswith("postgresql"):
                engine_kwargs.update(
                    pool_size=self.settings.db_pool_size,
                    max_overflow=self.settings.db_max_overflow,
                    pool_pre_ping=True,
                    pool_recycle=3600,
                )
            self._async_engine = create_async_engine(url, **engine_kwargs)
            _watch_slow_queries(self._async_engine.sync_engine, self.settings.slow_query_threshold_ms)
            logger.info("Created async database engine", backend=url.split(":", 1)[0])

        return self._async_engine

    def get_async_session_factory(self) -> async_sessionmaker:
        """获取异步会话工厂"""
        if self._async_session_factory is None:
            engine = self.create_async_engine()
            self._async_session_factory = async_sessionmaker(
                engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )

        return self._async_session_factory

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """获取数据库会话上下文管理器"""
        session_factory = self.get_async_session_factory()
        async with session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    @asynccontextmanager
    async def get_transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """获取事务上下文管理器（退出时提交，异常时回滚）"""
        session_factory = self.get_async_session_factory()
        async with session_factory() as session:
            async with session.begin():
                yield session

    async def create_tables(self) -> None:
        """创建所有表（仅用于测试）"""
        engine = self.create_async_engine()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Created all database tables")

    async def check_connection(self) -> bool:
        """检查数据库连接"""
        try:
            engine = self.create_async_engine()
            async with engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception:
            logger.error("Database connection check failed", exc_info=True)
            return False

    async def close(self) -> None:
        """关闭数据库连接"""
        if self._async_engine:
            await self._async_engine.dispose()
            self._async_engine = None
            self._async_session_factory = None
            logger.info("Closed async database engine")


# 全局数据库管理器实例
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """获取数据库管理器单例"""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


def set_db_manager(manager: Optional[DatabaseManager]) -> None:
    """替换全局数据库管理器（测试使用独立数据库）"""
    global _db_manager
    _db_manager = manager

