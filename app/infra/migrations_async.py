# app/infra/migrations_async.py
"""
Async database migrations runner (asyncpg).
"""
from __future__ import annotations
from pathlib import Path

from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Serializes concurrent migrate runs (e.g. two deploy jobs racing)
_MIGRATION_LOCK_KEY = 74_202_611


def sql_dir() -> Path:
    """SQL migrations live next to this file: app/infra/sql"""
    return Path(__file__).resolve().parent / "sql"


def migration_files() -> list[Path]:
    return sorted(p for p in sql_dir().glob("*.sql") if p.is_file())


async def apply_migrations() -> dict:
    """
    Apply pending migrations from app/infra/sql in filename order.

    Applied versions are tracked in ``schema_migrations``; each migration
    runs in its own transaction together with its bookkeeping row.

    Returns:
        {"ok": True, "applied": [filenames applied now], "count": int}
    """
    files = migration_files()

    async with db_conn() as conn:
        await conn.execute("SELECT pg_advisory_lock($1)", _MIGRATION_LOCK_KEY)
        try:
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations(
                  version text PRIMARY KEY,
                  applied_at timestamptz NOT NULL DEFAULT now()
                )
                """
            )

            rows = await conn.fetch("SELECT version FROM schema_migrations")
            applied = {row["version"] for row in rows}

            applied_now = []
            for path in files:
                version = path.name
                if version in applied:
                    logger.debug(f"Migration {version} already applied, skipping")
                    continue

                logger.info(f"Applying migration: {version}")
                async with conn.transaction():
                    await conn.execute(path.read_text(encoding="utf-8"))
                    await conn.execute(
                        "INSERT INTO schema_migrations(version) VALUES ($1)",
                        version,
                    )
                applied_now.append(version)
                logger.info(f"Migration {version} applied successfully")
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", _MIGRATION_LOCK_KEY)

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}
