# app/db/engine.py
# 统一引擎工厂：PG 下注入 application_name；SQLite 只带 timeout / check_same_thread
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

__all__ = ["create_async_engine_safe", "normalize_async_dsn"]


def normalize_async_dsn(url: str) -> str:
    """把常见写法统一到 psycopg3 / aiosqlite 异步驱动。"""
    url = url.strip()
    if (url.startswith('"') and url.endswith('"')) or (url.startswith("'") and url.endswith("'")):
        url = url[1:-1].strip()
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite:///" + url[len("sqlite:///") :]
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def _connect_args_for(url_str: str) -> dict[str, Any]:
    """
    返回后端专属 connect_args：
    - SQLite: check_same_thread + busy timeout（并发预占时写锁需要排队）
    - 其他：空
    """
    backend = make_url(url_str).get_backend_name()
    if backend.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": 30}
    return {}


def create_async_engine_safe(url_str: str, *, echo: bool = False) -> AsyncEngine:
    """Async 引擎（'postgresql+psycopg' 或 'sqlite+aiosqlite'）。"""
    url_str = normalize_async_dsn(url_str)
    u = make_url(url_str)

    kwargs: dict[str, Any] = {"echo": echo}
    connect_args = _connect_args_for(url_str)
    if connect_args:
        kwargs["connect_args"] = connect_args

    if u.get_backend_name().startswith("postgresql"):
        kwargs["pool_pre_ping"] = True
        kwargs["connect_args"] = {"application_name": "bareloft-core"}
    elif u.get_backend_name().startswith("sqlite"):
        # 每个 session 独占一个连接，写锁才能真正串行
        kwargs["poolclass"] = NullPool

    return create_async_engine(url_str, **kwargs)
