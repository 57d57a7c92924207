# app/infra/pg_outbox_repo_async.py
"""
Async PostgreSQL outbox repository (asyncpg).

Append-only record of notifications the channels could not deliver;
operators read it back through the admin outbox view.
"""
from __future__ import annotations

from app.core.dispatch.domain import OutboxEntry, OutboxStatus
from app.infra.db_resilience_async import retry_on_transient_error, safe_db_conn


def _row_to_entry(row) -> OutboxEntry:
    return OutboxEntry(
        id=row["id"],
        kind=row["kind"],
        recipient=row["recipient"],
        body=row["body"],
        job_id=row["job_id"],
        status=OutboxStatus(row["status"]),
        error=row["error"],
        created_at=row["created_at"],
        sent_at=row["sent_at"],
    )


class AsyncPostgresOutboxRepository:
    @retry_on_transient_error()
    async def append(self, entry: OutboxEntry) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO outbox (id, kind, recipient, body, job_id, status, error, created_at, sent_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                entry.id,
                entry.kind,
                entry.recipient,
                entry.body,
                entry.job_id,
                entry.status.value,
                entry.error,
                entry.created_at,
                entry.sent_at,
            )

    @retry_on_transient_error()
    async def list_recent(self, limit: int = 200) -> list[OutboxEntry]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM outbox ORDER BY created_at DESC LIMIT $1",
                limit,
            )
            return [_row_to_entry(row) for row in rows]
