"""
Postgres connection pool for the triage store.

Only opened when SUPABASE_DB_URL is configured; without it the service runs on
the in-memory triage store and nothing here is touched.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from inbox_triage.config import settings
from inbox_triage.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Health ceilings for the readiness probe
MAX_UTILIZATION_PERCENT = 90
MAX_PROBE_MS = 100


class DatabasePoolManager:
    """Owns one AsyncConnectionPool for the lifetime of the process."""

    def __init__(self, conninfo: str | None = None):
        self.conninfo = conninfo
        self.pool: AsyncConnectionPool | None = None
        self._state = "new"  # new -> open -> closed

    @property
    def is_initialized(self) -> bool:
        return self._state == "open"

    async def initialize(self) -> None:
        """Open the pool and run a probe query; a closed manager cannot reopen."""
        if self._state == "open":
            logger.warning("Database pool already initialized")
            return
        if self._state == "closed":
            raise RuntimeError("Cannot reinitialize closed pool")

        conninfo = self.conninfo or settings.SUPABASE_DB_URL
        if not conninfo:
            raise RuntimeError("SUPABASE_DB_URL is not configured")

        pool_config = settings.get_db_pool_config()
        self.pool = AsyncConnectionPool(
            conninfo=conninfo,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=self._configure_connection,
            **pool_config,
        )
        try:
            await self.pool.open()
            await self.pool.wait()
            self._state = "open"
            await self._probe()
        except Exception as e:
            logger.error("Failed to open database pool", error=str(e))
            self._state = "new"
            await self.pool.close()
            self.pool = None
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        logger.info(
            "Database pool ready",
            min_size=pool_config["min_size"],
            max_size=pool_config["max_size"],
            environment=settings.environment,
        )

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        conn.row_factory = dict_row
        await conn.set_autocommit(True)
        app_name = f"inbox-triage-{settings.environment}"
        await conn.execute(sql.SQL("SET application_name = {}").format(sql.Literal(app_name)))
        await conn.execute("SET timezone = 'UTC'")
        # Batch upserts are small; anything slower than this is stuck
        await conn.execute("SET statement_timeout = '60s'")

    async def _probe(self) -> None:
        async with self.connection() as conn:
            cursor = await conn.execute("SELECT 1 AS ok")
            row = await cursor.fetchone()
        if not row or row["ok"] != 1:
            raise RuntimeError("Database probe returned an unexpected result")

    async def close(self) -> None:
        if self._state != "open":
            return
        self._state = "closed"
        try:
            await asyncio.wait_for(self.pool.close(), timeout=30.0)
            logger.info("Database pool closed")
        except TimeoutError:
            logger.warning("Database pool close timed out")

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Borrow a connection.

        Usage:
            async with db_pool.connection() as conn:
                await conn.execute("SELECT 1")
        """
        if self._state != "open":
            raise RuntimeError(f"Database pool is not open (state={self._state})")

        async with self.pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Connection inside a transaction: commit on exit, rollback on error."""
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> dict[str, Any]:
        """Pool utilisation plus a timed probe query."""
        if self._state != "open":
            return {"healthy": False, "service": "database_pool", "error": f"Pool {self._state}"}

        try:
            started = time.perf_counter()
            await self._probe()
            probe_ms = (time.perf_counter() - started) * 1000
        except (psycopg.Error, RuntimeError) as e:
            logger.error("Database health probe failed", error=str(e))
            return {
                "healthy": False,
                "service": "database_pool",
                "error": str(e),
                "error_type": type(e).__name__,
            }

        stats = self.pool.get_stats()
        size = stats.get("pool_size", 0)
        in_use = size - stats.get("pool_available", 0)
        utilization = in_use / size * 100 if size else 0

        return {
            "healthy": utilization < MAX_UTILIZATION_PERCENT and probe_ms < MAX_PROBE_MS,
            "service": "database_pool",
            "connection_time_ms": round(probe_ms, 2),
            "pool_stats": {
                "pool_size": size,
                "in_use": in_use,
                "pool_utilization_percent": round(utilization, 2),
                "requests_waiting": stats.get("requests_waiting", 0),
            },
        }


db_pool = DatabasePoolManager()


async def get_db_connection():
    """Pooled connection context manager (used by db.helpers)."""
    return db_pool.connection()


async def get_db_transaction():
    """Pooled transactional connection context manager."""
    return db_pool.transaction()


async def db_health_check() -> dict[str, Any]:
    return await db_pool.health_check()
