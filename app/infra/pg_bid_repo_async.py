# app/infra/pg_bid_repo_async.py
"""
Async PostgreSQL bid repository (asyncpg).

One row per (job_id, vendor_phone): a repeat submission from the same
phone replaces the earlier offer in place, keeping its id and created_at.
"""
from __future__ import annotations
from typing import Optional

from app.core.dispatch.domain import Bid
from app.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from app.infra.pg_job_repo_async import to_money


def _row_to_bid(row) -> Bid:
    return Bid(
        id=row["id"],
        job_id=row["job_id"],
        vendor_id=row["vendor_id"],
        vendor_name=row["vendor_name"],
        vendor_phone=row["vendor_phone"],
        eta_minutes=row["eta_minutes"],
        price=float(row["price"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class AsyncPostgresBidRepository:
    @retry_on_transient_error()
    async def upsert(self, bid: Bid) -> Bid:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO bids (id, job_id, vendor_id, vendor_name, vendor_phone,
                                  eta_minutes, price, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $8)
                ON CONFLICT (job_id, vendor_phone) DO UPDATE SET
                    vendor_id = COALESCE(EXCLUDED.vendor_id, bids.vendor_id),
                    vendor_name = EXCLUDED.vendor_name,
                    eta_minutes = EXCLUDED.eta_minutes,
                    price = EXCLUDED.price,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                bid.id,
                bid.job_id,
                bid.vendor_id,
                bid.vendor_name,
                bid.vendor_phone,
                bid.eta_minutes,
                to_money(bid.price),
                bid.updated_at or bid.created_at,
            )
            return _row_to_bid(row)

    @retry_on_transient_error()
    async def get(self, bid_id: str) -> Optional[Bid]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM bids WHERE id = $1", bid_id)
            return _row_to_bid(row) if row else None

    @retry_on_transient_error()
    async def list_for_job(self, job_id: str) -> list[Bid]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM bids WHERE job_id = $1 ORDER BY created_at DESC",
                job_id,
            )
            return [_row_to_bid(row) for row in rows]

    @retry_on_transient_error()
    async def count_for_job(self, job_id: str) -> int:
        async with safe_db_conn() as conn:
            return await conn.fetchval("SELECT count(*) FROM bids WHERE job_id = $1", job_id)
