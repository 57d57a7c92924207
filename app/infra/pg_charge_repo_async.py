# app/infra/pg_charge_repo_async.py
"""
Async PostgreSQL commission charge repository (asyncpg).

``job_id`` is unique, so the charge row is created once and then only its
amounts are refreshed; id, status and processor reference survive retries.
"""
from __future__ import annotations
from decimal import Decimal
from typing import Optional

from app.core.dispatch.domain import ChargeStatus, CommissionCharge
from app.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from app.infra.pg_job_repo_async import to_money


def _row_to_charge(row) -> CommissionCharge:
    return CommissionCharge(
        id=row["id"],
        job_id=row["job_id"],
        vendor_id=row["vendor_id"],
        reported_amount=float(row["reported_amount"]),
        commission_rate=float(row["commission_rate"]),
        commission_amount=float(row["commission_amount"]),
        status=ChargeStatus(row["status"]),
        processor=row["processor"],
        processor_reference=row["processor_reference"],
        failure_reason=row["failure_reason"],
        requested_at=row["requested_at"],
        processed_at=row["processed_at"],
    )


class AsyncPostgresChargeRepository:
    @retry_on_transient_error()
    async def upsert_for_job(self, charge: CommissionCharge) -> CommissionCharge:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO commission_charges (id, job_id, vendor_id, reported_amount,
                                                commission_rate, commission_amount,
                                                status, processor, requested_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (job_id) DO UPDATE SET
                    vendor_id = EXCLUDED.vendor_id,
                    reported_amount = EXCLUDED.reported_amount,
                    commission_rate = EXCLUDED.commission_rate,
                    commission_amount = EXCLUDED.commission_amount
                RETURNING *
                """,
                charge.id,
                charge.job_id,
                charge.vendor_id,
                to_money(charge.reported_amount),
                Decimal(str(round(charge.commission_rate, 4))),
                to_money(charge.commission_amount),
                charge.status.value,
                charge.processor,
                charge.requested_at,
            )
            return _row_to_charge(row)

    @retry_on_transient_error()
    async def save(self, charge: CommissionCharge) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE commission_charges SET
                    status = $2,
                    processor = $3,
                    processor_reference = $4,
                    failure_reason = $5,
                    processed_at = $6
                WHERE id = $1
                """,
                charge.id,
                charge.status.value,
                charge.processor,
                charge.processor_reference,
                charge.failure_reason,
                charge.processed_at,
            )

    @retry_on_transient_error()
    async def get_for_job(self, job_id: str) -> Optional[CommissionCharge]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM commission_charges WHERE job_id = $1", job_id)
            return _row_to_charge(row) if row else None
