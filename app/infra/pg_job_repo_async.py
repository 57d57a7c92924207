# app/infra/pg_job_repo_async.py
"""
Async PostgreSQL job repository (asyncpg).

Jobs are written whole (insert / full update).  Every update is conditional
on the ``version`` the caller read and bumps it, so a write computed from a
stale read is rejected with ``ConflictError`` instead of overwriting a newer
one.  Bid selection additionally requires the previously read
``selected_bid_id``; unbid alerts are claimed conditionally on
``unbid_alert_sent_at``.
"""
from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from app.core.dispatch.domain import (
    BidMode,
    CommissionStatus,
    GeoPoint,
    Job,
    JobCommission,
    JobFlags,
    JobStatus,
    PaymentActor,
    Priority,
    ReportedPayment,
    Urgency,
)
from app.core.dispatch.errors import ConflictError
from app.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_JOB_COLUMNS = (
    "customer_id",
    "customer_phone",
    "status",
    "urgency",
    "priority",
    "bid_mode",
    "bidding_open",
    "selected_bid_id",
    "vendor_id",
    "vendor_name",
    "vendor_phone",
    "vendor_token",
    "customer_token",
    "vendor_accepted_token",
    "service_type",
    "pickup_address",
    "dropoff_address",
    "notes",
    "heavy_duty",
    "pickup_lat",
    "pickup_lng",
    "dropoff_lat",
    "dropoff_lng",
    "quoted_price",
    "final_price",
    "expected_revenue",
    "payment_status",
    "reported_payment",
    "commission",
    "flags",
    "customer_rating",
    "created_at",
    "assigned_at",
    "on_the_way_at",
    "arrived_at",
    "completed_at",
    "escalated_at",
    "unbid_alert_sent_at",
    "cancelled",
    "cancelled_at",
)
_JSONB_COLUMNS = frozenset({"reported_payment", "commission", "flags"})


def _placeholder(column: str, index: int) -> str:
    return f"${index}::jsonb" if column in _JSONB_COLUMNS else f"${index}"


# Parameters start at $2; $1 is always the job id
_INSERT_SQL = (
    f"INSERT INTO jobs (id, {', '.join(_JOB_COLUMNS)}) VALUES ($1, "
    + ", ".join(_placeholder(c, i) for i, c in enumerate(_JOB_COLUMNS, start=2))
    + ")"
)
_UPDATE_SET = ", ".join(f"{c} = {_placeholder(c, i)}" for i, c in enumerate(_JOB_COLUMNS, start=2))
# Both updates only apply on top of the version the caller read
_VERSION_PARAM = len(_JOB_COLUMNS) + 2
_UPDATE_SQL = (
    f"UPDATE jobs SET {_UPDATE_SET}, version = version + 1 "
    f"WHERE id = $1 AND version = ${_VERSION_PARAM}"
)
_SELECTION_SQL = (
    f"UPDATE jobs SET {_UPDATE_SET}, version = version + 1 "
    f"WHERE id = $1 AND version = ${_VERSION_PARAM} "
    f"AND selected_bid_id IS NOT DISTINCT FROM ${_VERSION_PARAM + 1}"
)


def to_money(value: Any) -> Decimal:
    return Decimal(str(round(float(value or 0), 2)))


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _dump_reported(payment: Optional[ReportedPayment]) -> Optional[str]:
    if payment is None:
        return None
    return json.dumps({
        "amount": payment.amount,
        "method": payment.method,
        "note": payment.note,
        "actor": payment.actor.value,
        "reported_at": _dt(payment.reported_at),
    })


def _load_reported(raw: Any) -> Optional[ReportedPayment]:
    data = _json(raw)
    if not data:
        return None
    return ReportedPayment(
        amount=float(data.get("amount") or 0),
        method=data.get("method"),
        note=data.get("note"),
        actor=PaymentActor(data.get("actor") or PaymentActor.VENDOR.value),
        reported_at=_parse_dt(data.get("reported_at")),
    )


def _dump_commission(commission: Optional[JobCommission]) -> Optional[str]:
    if commission is None:
        return None
    return json.dumps({
        "rate": commission.rate,
        "amount": commission.amount,
        "status": commission.status.value,
        "charged_at": _dt(commission.charged_at),
        "charge_id": commission.charge_id,
        "failure_reason": commission.failure_reason,
    })


def _load_commission(raw: Any) -> Optional[JobCommission]:
    data = _json(raw)
    if not data:
        return None
    return JobCommission(
        rate=float(data.get("rate") or 0),
        amount=float(data.get("amount") or 0),
        status=CommissionStatus(data.get("status") or CommissionStatus.PENDING.value),
        charged_at=_parse_dt(data.get("charged_at")),
        charge_id=data.get("charge_id"),
        failure_reason=data.get("failure_reason"),
    )


def _job_params(job: Job) -> list[Any]:
    return [
        job.customer_id,
        job.customer_phone,
        job.status.value,
        job.urgency.value,
        job.priority.value,
        job.bid_mode.value,
        job.bidding_open,
        job.selected_bid_id,
        job.vendor_id,
        job.vendor_name,
        job.vendor_phone,
        job.vendor_token,
        job.customer_token,
        job.vendor_accepted_token,
        job.service_type,
        job.pickup_address,
        job.dropoff_address,
        job.notes,
        job.heavy_duty,
        job.pickup.lat if job.pickup else None,
        job.pickup.lng if job.pickup else None,
        job.dropoff.lat if job.dropoff else None,
        job.dropoff.lng if job.dropoff else None,
        to_money(job.quoted_price),
        to_money(job.final_price),
        to_money(job.expected_revenue),
        job.payment_status,
        _dump_reported(job.reported_payment),
        _dump_commission(job.commission),
        json.dumps({"under_report": job.flags.under_report, "reason": job.flags.reason}),
        job.customer_rating,
        job.created_at,
        job.assigned_at,
        job.on_the_way_at,
        job.arrived_at,
        job.completed_at,
        job.escalated_at,
        job.unbid_alert_sent_at,
        job.cancelled,
        job.cancelled_at,
    ]


def _point(lat: Any, lng: Any) -> Optional[GeoPoint]:
    if lat is None or lng is None:
        return None
    return GeoPoint(lat=float(lat), lng=float(lng))


def _row_to_job(row) -> Job:
    """Convert an asyncpg Record to a Job dataclass."""
    flags = _json(row["flags"]) or {}
    return Job(
        id=row["id"],
        customer_id=row["customer_id"],
        customer_phone=row["customer_phone"],
        pickup_address=row["pickup_address"],
        status=JobStatus(row["status"]),
        urgency=Urgency(row["urgency"]),
        priority=Priority(row["priority"]),
        bid_mode=BidMode(row["bid_mode"]),
        bidding_open=row["bidding_open"],
        selected_bid_id=row["selected_bid_id"],
        vendor_id=row["vendor_id"],
        vendor_name=row["vendor_name"],
        vendor_phone=row["vendor_phone"],
        vendor_token=row["vendor_token"],
        customer_token=row["customer_token"],
        vendor_accepted_token=row["vendor_accepted_token"],
        service_type=row["service_type"],
        dropoff_address=row["dropoff_address"],
        notes=row["notes"],
        heavy_duty=row["heavy_duty"],
        pickup=_point(row["pickup_lat"], row["pickup_lng"]),
        dropoff=_point(row["dropoff_lat"], row["dropoff_lng"]),
        quoted_price=float(row["quoted_price"]),
        final_price=float(row["final_price"]),
        expected_revenue=float(row["expected_revenue"]),
        payment_status=row["payment_status"],
        reported_payment=_load_reported(row["reported_payment"]),
        commission=_load_commission(row["commission"]),
        flags=JobFlags(under_report=bool(flags.get("under_report")), reason=flags.get("reason")),
        customer_rating=row["customer_rating"],
        created_at=row["created_at"],
        assigned_at=row["assigned_at"],
        on_the_way_at=row["on_the_way_at"],
        arrived_at=row["arrived_at"],
        completed_at=row["completed_at"],
        escalated_at=row["escalated_at"],
        unbid_alert_sent_at=row["unbid_alert_sent_at"],
        cancelled=row["cancelled"],
        cancelled_at=row["cancelled_at"],
        version=row["version"],
    )


def _rows_affected(status: str) -> int:
    """asyncpg returns the command tag, e.g. ``"UPDATE 1"``."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


class AsyncPostgresJobRepository:
    @retry_on_transient_error()
    async def get(self, job_id: str) -> Optional[Job]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)
            return _row_to_job(row) if row else None

    @retry_on_transient_error()
    async def create(self, job: Job) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(_INSERT_SQL, job.id, *_job_params(job))

    @retry_on_transient_error()
    async def save(self, job: Job) -> None:
        """
        Write ``job`` back over the version it was read at.

        Raises:
            ConflictError: another writer updated the job since it was read
        """
        async with safe_db_conn() as conn:
            status = await conn.execute(_UPDATE_SQL, job.id, *_job_params(job), job.version)
        if _rows_affected(status) != 1:
            logger.warning(f"Stale job write rejected (version={job.version})", extra={"job_id": job.id})
            raise ConflictError("Job was changed by another request, reload and try again")
        job.version += 1

    @retry_on_transient_error()
    async def save_selection(self, job: Job, expected_selected_bid_id: Optional[str]) -> bool:
        async with safe_db_conn() as conn:
            status = await conn.execute(
                _SELECTION_SQL, job.id, *_job_params(job), job.version, expected_selected_bid_id,
            )
        applied = _rows_affected(status) == 1
        if applied:
            job.version += 1
        else:
            logger.info("Bid selection lost the race", extra={"job_id": job.id})
        return applied

    @retry_on_transient_error()
    async def find_by_vendor_token(self, token: str) -> Optional[Job]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM jobs WHERE vendor_token = $1", token)
            return _row_to_job(row) if row else None

    @retry_on_transient_error()
    async def find_by_customer_token(self, token: str) -> Optional[Job]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM jobs WHERE customer_token = $1", token)
            return _row_to_job(row) if row else None

    @retry_on_transient_error()
    async def list_open(self) -> list[Job]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM jobs
                WHERE cancelled = false AND status <> 'Completed'
                ORDER BY created_at
                """
            )
            return [_row_to_job(row) for row in rows]

    @retry_on_transient_error()
    async def list_assigned_since(self, since: datetime) -> list[Job]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM jobs
                WHERE vendor_id IS NOT NULL AND created_at >= $1
                """,
                since,
            )
            return [_row_to_job(row) for row in rows]

    @retry_on_transient_error()
    async def list_unbid_candidates(self, created_before: datetime, limit: int) -> list[Job]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM jobs
                WHERE status = 'Unassigned'
                  AND cancelled = false
                  AND vendor_id IS NULL
                  AND unbid_alert_sent_at IS NULL
                  AND created_at <= $1
                  AND (bid_mode = 'open' OR bidding_open)
                ORDER BY created_at
                LIMIT $2
                """,
                created_before,
                limit,
            )
            return [_row_to_job(row) for row in rows]

    @retry_on_transient_error()
    async def claim_unbid_alert(self, job_id: str, now: datetime) -> bool:
        async with safe_db_conn() as conn:
            status = await conn.execute(
                """
                UPDATE jobs SET unbid_alert_sent_at = $2, version = version + 1
                WHERE id = $1 AND unbid_alert_sent_at IS NULL
                """,
                job_id,
                now,
            )
        return _rows_affected(status) == 1
