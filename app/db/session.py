# app/db/session.py
# 显式构造的数据库对象：engine + session 工厂，生命周期由调用方管理（init / dispose）
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.db.base import Base, init_models
from app.db.engine import create_async_engine_safe

log = logging.getLogger(__name__)


class Database:
    """
    取代旧版模块级 engine / SessionLocal 全局变量：

        db = Database(settings.DATABASE_URL)
        await db.init()
        async with db.session() as session:
            ...
        await db.dispose()
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._maker: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database.init() has not been called")
        return self._engine

    async def init(self, *, create_schema: bool = False) -> None:
        if self._engine is not None:
            return
        init_models()
        self._engine = create_async_engine_safe(self.url, echo=self.echo)
        self._maker = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        if create_schema:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        log.info("database ready: backend=%s", self._engine.dialect.name)

    def session(self) -> AsyncSession:
        if self._maker is None:
            raise RuntimeError("Database.init() has not been called")
        return self._maker()

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._maker = None
