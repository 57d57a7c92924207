# app/infra/schema_validator.py
"""
Schema version validator.

The API does not run migrations itself: ``python -m app.infra.migrate``
does, and the API refuses to start against a schema whose latest applied
migration differs from ``settings.expected_schema_version``.
"""
from __future__ import annotations
from app.config import settings
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_MIGRATIONS_TABLE_EXISTS = """
    SELECT EXISTS (
        SELECT FROM information_schema.tables
        WHERE table_schema = 'public'
        AND table_name = 'schema_migrations'
    )
"""


async def validate_schema_version() -> dict:
    """
    Raises:
        RuntimeError: schema missing or not at the expected version
    """
    async with db_conn() as conn:
        if not await conn.fetchval(_MIGRATIONS_TABLE_EXISTS):
            error = (
                "Schema migrations table not found. "
                "Run migrations first: python -m app.infra.migrate"
            )
            logger.critical(error)
            raise RuntimeError(error)

        # Filenames are zero-padded, so the lexically greatest version is the latest
        current_version = await conn.fetchval(
            "SELECT version FROM schema_migrations ORDER BY version DESC LIMIT 1"
        )

    if not current_version:
        error = "No migrations have been applied. Run migrations first: python -m app.infra.migrate"
        logger.critical(error)
        raise RuntimeError(error)

    if current_version != settings.expected_schema_version:
        error = (
            f"Schema version mismatch! "
            f"Expected: {settings.expected_schema_version}, "
            f"Found: {current_version}. "
            f"Run migrations to update schema: python -m app.infra.migrate"
        )
        logger.critical(error)
        raise RuntimeError(error)

    logger.info(f"Schema version validated: {current_version}")
    return {
        "ok": True,
        "current_version": current_version,
        "expected_version": settings.expected_schema_version,
    }
