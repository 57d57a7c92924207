# app/infra/db_resilience_async.py
"""
Async database resilience utilities.

Transient asyncpg errors are retried with exponential backoff; anything
that still fails is surfaced to the services as ``DependencyError`` so the
transport answers 503 instead of leaking driver exceptions.
"""
from __future__ import annotations
import asyncio
from typing import Callable
from contextlib import asynccontextmanager
from functools import wraps

import asyncpg
from app.core.dispatch.errors import DependencyError
from app.infra.db_async import db_conn, pool_ready
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

_TRANSIENT_PATTERNS = (
    "connection",
    "timeout",
    "closed",
    "network",
    "deadlock",
    "too many connections",
    "server closed",
    "connection reset",
)


def is_transient_error(exc: BaseException) -> bool:
    """Connection loss, pool exhaustion, deadlock and similar retryable failures."""
    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.DeadlockDetectedError,
        asyncpg.SerializationError,
        ConnectionError,
        asyncio.TimeoutError,
    )):
        return True

    # Constraint and syntax errors are never transient even if the message says "connection"
    if isinstance(exc, asyncpg.PostgresError):
        return False

    message = str(exc).lower()
    return any(pattern in message for pattern in _TRANSIENT_PATTERNS)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0,
):
    """
    Retry an async repository method on transient database errors.

    Example:
        @retry_on_transient_error(max_retries=3)
        async def get(self, job_id: str):
            async with safe_db_conn() as conn:
                return await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except DependencyError:
                    raise
                except Exception as exc:
                    if not is_transient_error(exc):
                        raise

                    if attempt >= max_retries:
                        logger.error(
                            f"Max retries ({max_retries}) exceeded in {func.__name__}",
                            exc_info=True,
                        )
                        DispatchMetrics.database_error(func.__name__)
                        raise DependencyError("Database unavailable") from exc

                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt + 1}/{max_retries}): {exc}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True):
    """
    Borrow a pooled connection for one unit of repository work.

    Transient failures (during acquisition or inside the block) propagate
    as-is so that ``retry_on_transient_error`` on the repository method can
    retry the whole unit; a missing pool is reported as ``DependencyError``.

    Usage:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)
    """
    if not pool_ready():
        raise DependencyError("Database unavailable")

    async with db_conn(autocommit=autocommit) as conn:
        yield conn
