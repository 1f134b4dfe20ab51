# insulinlog/db/session.py
from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from insulinlog import config

_engine: AsyncEngine | None = None


def dsn(cfg: Any = config) -> str:
    db = cfg.DB
    return (
        f"mysql+aiomysql://{db['user']}:{db['password']}"
        f"@{db['host']}:{db['port']}/{db['db']}"
        f"?charset=utf8mb4"
    )


def engine(cfg: Any = config) -> AsyncEngine:
    """
    Lazily create a singleton AsyncEngine.
    Uses the aiomysql driver via SQLAlchemy's 'mysql+aiomysql'.
    """
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            dsn(cfg),
            pool_pre_ping=True,
            pool_size=5,
            max_overflow=0,
            echo=False,
        )
    return _engine


async def dispose_engine() -> None:
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
