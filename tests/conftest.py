# tests/conftest.py
from __future__ import annotations

from typing import AsyncGenerator, Callable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import Database
from app.services.reservation_service import ReservationService
from app.services.stock_service import StockService
from tests._helpers import FakePaymentProvider, RecordingNotifier


# =========================================
# 每用例独立 SQLite 文件库（NullPool，每个 session 一个连接）
#   文件库而不是 :memory:，并发预占测试需要多连接共享同一个库
# =========================================
@pytest_asyncio.fixture(scope="function")
async def database(tmp_path) -> AsyncGenerator[Database, None]:
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'core.db'}")
    await db.init(create_schema=True)
    try:
        yield db
    finally:
        await db.dispose()


@pytest.fixture(scope="function")
def session_factory(database: Database) -> Callable[[], AsyncSession]:
    return database.session


@pytest_asyncio.fixture(scope="function")
async def session(database: Database) -> AsyncGenerator[AsyncSession, None]:
    """
    标准 Session：用例结束时未提交的内容一律回滚。

    注意：读一次就会 autobegin，之后再调服务将不再自动提交；
    需要服务自己提交的步骤请用 session_factory() 开新 session。
    """
    async with database.session() as sess:
        try:
            yield sess
        finally:
            if sess.in_transaction():
                await sess.rollback()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def stock_service(notifier: RecordingNotifier) -> StockService:
    return StockService(notifier=notifier, admin_email="ops@bareloft.test")


@pytest.fixture
def reservation_service(stock_service: StockService) -> ReservationService:
    return ReservationService(stock_service=stock_service, default_ttl_minutes=15)
