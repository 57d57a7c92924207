# app/infra/http_client.py
"""
Shared HTTP client sessions for the application.

Named, lazy-initialized aiohttp.ClientSession singletons so outbound
calls reuse TCP connections instead of opening a session per request.

Session profiles
~~~~~~~~~~~~~~~~
- **sender**  – outbound provider calls (push gateway; total=10 s, connect=3 s, pool limit=20)

The per-attempt deadline for notifications is enforced by the resilient
sender; the session timeouts are only an outer bound.

Shutdown
~~~~~~~~
Call ``close_all_sessions()`` once during application shutdown.
"""
from __future__ import annotations

import aiohttp

from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_sessions: dict[str, aiohttp.ClientSession] = {}


def _get_or_create(
    name: str,
    timeout: aiohttp.ClientTimeout,
    limit: int = 10,
) -> aiohttp.ClientSession:
    session = _sessions.get(name)
    if session is None or session.closed:
        session = aiohttp.ClientSession(
            timeout=timeout,
            connector=aiohttp.TCPConnector(
                keepalive_timeout=30,
                limit=limit,
                enable_cleanup_closed=True,
            ),
        )
        _sessions[name] = session
        logger.debug("HTTP session '%s' created (limit=%d)", name, limit)
    return session


def get_sender_session() -> aiohttp.ClientSession:
    """Session for outbound provider calls."""
    return _get_or_create(
        "sender",
        aiohttp.ClientTimeout(total=10, connect=3),
        limit=20,
    )


async def close_all_sessions() -> None:
    """Gracefully close every managed session.  Call during app shutdown."""
    for name in list(_sessions):
        session = _sessions.pop(name, None)
        if session is not None and not session.closed:
            await session.close()
            logger.debug("HTTP session '%s' closed", name)
