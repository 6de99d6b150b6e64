# app/core/tx.py
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

T = TypeVar("T")


@asynccontextmanager
async def tx_unit(session: AsyncSession):
    """
    单个工作单元：

    - session 已在事务中：开保存点，失败只回滚本单元；
    - 否则：begin/commit 一个独立事务。

    bulk_adjust 逐条调整、对账逐单修正都用它，保证“一条失败不连坐”。
    """
    if session.in_transaction():
        async with session.begin_nested():
            yield
    else:
        async with session.begin():
            yield


async def run_in_tx(session: AsyncSession, fn: Callable[[], Awaitable[T]]) -> T:
    """
    如果 session 已经在事务中，则直接执行 fn（由外层负责提交/回滚）；
    否则使用 async with session.begin() 包裹 fn。
    """
    if session.in_transaction():
        return await fn()
    async with session.begin():
        return await fn()
