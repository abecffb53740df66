"""
Invest Gateway - Data Store Probe
=================================

What:  Owns the async SQLAlchemy engine of the backing data store and answers
       one question: is the store reachable right now?
How:   `DataStore.ping()` runs `SELECT 1` under a timeout. Connection-level
       failures mean "unreachable" (False); anything else propagates so the
       caller can tell a failed probe from an unreachable store.
Who:   The lifecycle manager (startup gating) and GET /api/health.
When:  Recomputed on every call; the result is never cached.

Domain handler groups own their own sessions and schema. The gateway never
reads or writes rows.

Connection Pooling Strategy:
    pool_size / max_overflow come from settings for server databases.
    SQLite URLs (tests, local runs) use SQLAlchemy's default pool.
    pool_pre_ping validates pooled connections before use.
"""

import asyncio
import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from invest_gateway.config import Settings

logger = logging.getLogger(__name__)


class DataStore:
    """Lazily-created async engine plus a reachability probe."""

    def __init__(
        self,
        database_url: str,
        probe_timeout: float = 5.0,
        pool_size: int = 10,
        max_overflow: int = 10,
        echo: bool = False,
    ):
        self.database_url = database_url
        self.probe_timeout = probe_timeout
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._echo = echo
        self._engine: Optional[AsyncEngine] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "DataStore":
        return cls(
            database_url=settings.database_url,
            probe_timeout=settings.db_probe_timeout,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            echo=settings.log_level == "DEBUG",
        )

    @property
    def engine(self) -> AsyncEngine:
        """
        The engine, created on first use.

        Creating the engine does not connect, but it does import the driver,
        so it is deferred until a probe or a collaborator actually needs it.
        """
        if self._engine is None:
            options = {"pool_pre_ping": True, "echo": self._echo}
            if not self.database_url.startswith("sqlite"):
                options.update(
                    pool_size=self._pool_size,
                    max_overflow=self._max_overflow,
                    pool_recycle=3600,
                )
            self._engine = create_async_engine(self.database_url, **options)
        return self._engine

    async def ping(self) -> bool:
        """
        Probe reachability of the data store.

        Returns:
            True when `SELECT 1` succeeds within the probe timeout,
            False when the store cannot be reached (connection refused,
            authentication failure, timeout).

        Raises:
            Anything that is not a connectivity failure (e.g. a broken
            driver install); callers treat that as a failed probe.
        """
        try:
            async with asyncio.timeout(self.probe_timeout):
                async with self.engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError, TimeoutError) as e:
            logger.warning("Data store unreachable: %s", str(e))
            return False
        return True

    async def dispose(self) -> None:
        """Close all pooled connections. Safe to call when no engine was created."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
