# app/db/pool.py
"""
PostgreSQL connection pool manager using psycopg_pool.

One manager per database: the hosted Supabase database (contracts,
templates, send log) and the RADIUS accounting database.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from app.config import Settings, settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class PoolUnavailableError(RuntimeError):
    """Raised when a connection is requested from a pool that cannot serve it."""


class DatabasePoolManager:
    """
    Database connection pool manager.

    Handles initialization, connection checkout, graceful shutdown and
    health reporting for a single PostgreSQL database.
    """

    def __init__(self, name: str, conninfo: str | None, pool_config: dict[str, Any]):
        self.name = name
        self.conninfo = conninfo
        self.pool_config = dict(pool_config)
        self.pool: AsyncConnectionPool | None = None
        self._initialized = False
        self._closed = False

    @property
    def is_ready(self) -> bool:
        return self._initialized and not self._closed

    async def initialize(self) -> None:
        """Open the pool and verify that connections work."""
        if self._initialized:
            logger.warning("Database pool already initialized", pool=self.name)
            return

        if self._closed:
            raise RuntimeError(f"Cannot reinitialize closed pool '{self.name}'")

        if not self.conninfo:
            raise RuntimeError(f"No connection string configured for pool '{self.name}'")

        try:
            logger.info("Initializing database connection pool", pool=self.name)

            self.pool = AsyncConnectionPool(
                conninfo=self.conninfo,
                open=False,
                check=AsyncConnectionPool.check_connection,
                configure=self._configure_connection,
                **self.pool_config,
            )
            await self.pool.open()
            await self.pool.wait()

            # Mark as initialized before testing, connection() checks the flag
            self._initialized = True
            await self._test_pool_connections()

            logger.info(
                "Database pool initialized successfully",
                pool=self.name,
                min_size=self.pool_config.get("min_size"),
                max_size=self.pool_config.get("max_size"),
                timeout=self.pool_config.get("timeout"),
            )

        except Exception as e:
            logger.error("Failed to initialize database pool", pool=self.name, error=str(e))
            self._initialized = False
            if self.pool:
                try:
                    await self.pool.close()
                except Exception as close_error:
                    logger.debug(
                        "Error closing pool after failed init",
                        pool=self.name,
                        error=str(close_error),
                    )
                self.pool = None
            raise RuntimeError(f"Database pool '{self.name}' initialization failed: {e}") from e

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        """Configure each new connection from the pool."""
        conn.row_factory = dict_row

        app_name = f"isp-ops-{self.name}-{settings.environment}"

        # Autocommit keeps connections out of INTRANS state between checkouts
        await conn.set_autocommit(True)
        await conn.execute(sql.SQL("SET application_name = {}").format(sql.Literal(app_name)))
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute("SET statement_timeout = '60s'")

    async def _test_pool_connections(self) -> None:
        async with self.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1 AS ok")
                row = await cur.fetchone()
        if not row or row["ok"] != 1:
            raise RuntimeError("Database connection test failed - got unexpected result")

    async def close(self) -> None:
        """Close the connection pool gracefully."""
        if not self._initialized or self._closed:
            return

        try:
            logger.info("Closing database connection pool", pool=self.name)
            if self.pool:
                await asyncio.wait_for(self.pool.close(), timeout=30.0)
            logger.info("Database pool closed successfully", pool=self.name)

        except TimeoutError:
            logger.warning("Database pool close timed out, forcing shutdown", pool=self.name)
        finally:
            self._initialized = False
            self._closed = True

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Get a connection from the pool.

        Usage:
            async with pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute("SELECT 1")
        """
        if not self._initialized:
            raise PoolUnavailableError(f"Database pool '{self.name}' not initialized")

        if self._closed:
            raise PoolUnavailableError(f"Database pool '{self.name}' is closed")

        try:
            async with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as e:
            logger.error("Timed out waiting for a database connection", pool=self.name)
            raise PoolUnavailableError(f"Pool '{self.name}' timed out: {e}") from e

    async def health_check(self) -> dict[str, Any]:
        """Health status with latency and pool statistics."""
        if not self.is_ready:
            return {"healthy": False, "service": self.name, "error": "Pool not initialized"}

        start_time = time.time()
        try:
            await self._test_pool_connections()
        except Exception as e:
            return {"healthy": False, "service": self.name, "error": str(e)}

        stats = self.pool.get_stats()
        return {
            "healthy": True,
            "service": self.name,
            "connection_time_ms": round((time.time() - start_time) * 1000, 2),
            "pool_size": stats.get("pool_size", 0),
            "pool_available": stats.get("pool_available", 0),
            "requests_waiting": stats.get("requests_waiting", 0),
        }


def create_supabase_pool(config: Settings = settings) -> DatabasePoolManager:
    """Pool for the hosted database (contracts, templates, send log)."""
    return DatabasePoolManager("supabase", config.SUPABASE_DB_URL, config.get_db_pool_config())


def create_radius_pool(config: Settings = settings) -> DatabasePoolManager:
    """Pool for the RADIUS accounting database."""
    return DatabasePoolManager("radius", config.RADIUS_DB_URL, config.get_db_pool_config())
