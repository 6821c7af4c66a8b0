"""Async engine and session scopes for the reports database.

A :class:`ReportDatabase` owns one asyncpg-backed engine.  Repositories
never see the engine: they receive :meth:`ReportDatabase.session`, a
factory of transaction scopes that commit on clean exit and roll back
on any exception (cancellation included).
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from .models import Base

logger = logging.getLogger(__name__)


class ReportDatabase:
    """Connection pool plus unit-of-work factory.

    Args:
        url: ``postgresql+asyncpg://`` connection URL.
        pool_size: Persistent pooled connections.
        max_overflow: Extra connections allowed under load.
        pool_recycle: Seconds before a pooled connection is replaced.
        echo: Log emitted SQL.
        use_null_pool: Open a fresh connection per scope (one-off CLI
            commands that should not leave a pool behind).
    """

    def __init__(
        self,
        url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_recycle: int = 1800,
        echo: bool = False,
        use_null_pool: bool = False,
    ) -> None:
        pool: dict[str, Any]
        if use_null_pool:
            pool = {"poolclass": NullPool}
        else:
            pool = {
                "pool_size": pool_size,
                "max_overflow": max_overflow,
                "pool_recycle": pool_recycle,
                "pool_pre_ping": True,
            }
        self._engine: AsyncEngine | None = create_async_engine(url, echo=echo, **pool)
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False)
        logger.info(
            "Reports database engine created for %s (null_pool=%s)",
            url.split("@")[-1], use_null_pool,
        )

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("ReportDatabase has been disposed")
        return self._engine

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """One transaction: commit on success, roll back on error."""
        if self._engine is None:
            raise RuntimeError("ReportDatabase has been disposed")
        async with self._sessions() as session:
            try:
                yield session
                await session.commit()
            except BaseException:
                await session.rollback()
                raise

    async def create_schema(self) -> None:
        """Create ``reports`` and ``events_inbox`` if they do not exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Reports schema created / verified")

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            logger.info("Reports database engine disposed")
