# app/db/helpers.py
"""
Database helper functions for common patterns.
Reduces boilerplate in the repository layer and maps driver failures onto
the error kinds the rest of the application understands.
"""

import asyncio
import functools
from typing import Any

import psycopg

from app.db.pool import DatabasePoolManager, PoolUnavailableError
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabaseError(Exception):
    """Custom exception for database operations."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class StoreUnavailable(DatabaseError):
    """The backing store could not be reached. Transient, retryable by the caller."""

    def __init__(self, message: str, operation: str = "unknown"):
        super().__init__(message, operation=operation, recoverable=True)


def _translate(e: Exception, operation: str, query: str) -> DatabaseError:
    if isinstance(e, (psycopg.OperationalError, PoolUnavailableError)):
        logger.error("Database unavailable", operation=operation, error=str(e))
        return StoreUnavailable(f"Store unavailable: {e}", operation=operation)

    logger.error("Database query error", operation=operation, query=query[:100], error=str(e))
    recoverable = not isinstance(e, (psycopg.IntegrityError, psycopg.DataError))
    return DatabaseError(f"Query failed: {e}", operation=operation, recoverable=recoverable)


async def fetch_one(
    pool: DatabasePoolManager, query: str, params: tuple = ()
) -> dict[str, Any] | None:
    """
    Execute query and return single row as dict.

    Args:
        pool: Pool to check a connection out of
        query: SQL query with %s placeholders
        params: Query parameters

    Returns:
        Dict with row data or None if no results
    """
    try:
        async with pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchone()
    except (psycopg.Error, PoolUnavailableError) as e:
        raise _translate(e, "fetch_one", query) from e


async def fetch_all(
    pool: DatabasePoolManager, query: str, params: tuple = ()
) -> list[dict[str, Any]]:
    """
    Execute query and return all rows as list of dicts.

    Args:
        pool: Pool to check a connection out of
        query: SQL query with %s placeholders
        params: Query parameters

    Returns:
        List of dicts with row data
    """
    try:
        async with pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchall()
    except (psycopg.Error, PoolUnavailableError) as e:
        raise _translate(e, "fetch_all", query) from e


async def fetch_val(pool: DatabasePoolManager, query: str, params: tuple = ()) -> Any:
    """Execute query and return the first column of the first row."""
    row = await fetch_one(pool, query, params)
    return next(iter(row.values())) if row else None


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """
    Decorator to retry an async operation while the store is unavailable.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Base delay between retries (exponential backoff)
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)

                except StoreUnavailable as e:
                    if attempt >= max_retries:
                        logger.error(
                            "Store operation failed after all retries",
                            operation=func.__name__,
                            attempts=max_retries + 1,
                            error=str(e),
                        )
                        raise

                    delay = base_delay * (2**attempt)
                    logger.warning(
                        "Store unavailable, retrying",
                        operation=func.__name__,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
