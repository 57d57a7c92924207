# app/core/dispatch/ports.py
from __future__ import annotations
from datetime import datetime
from typing import Protocol, Optional

from app.core.dispatch.domain import Bid, CommissionCharge, Job, OutboxEntry, Vendor


# ============================================================================
# ASYNC REPOSITORY PROTOCOLS (asyncpg in production, in-memory in tests)
# ============================================================================

class JobRepository(Protocol):
    async def get(self, job_id: str) -> Optional[Job]: ...
    async def create(self, job: Job) -> None: ...
    async def save(self, job: Job) -> None:
        """
        Persist ``job`` if the stored ``version`` still equals ``job.version``,
        then bump ``job.version``.  Raises ConflictError otherwise.
        """
        ...

    async def save_selection(self, job: Job, expected_selected_bid_id: Optional[str]) -> bool:
        """
        Persist ``job`` only if the stored ``version`` still equals
        ``job.version`` and the stored ``selected_bid_id`` still equals
        ``expected_selected_bid_id`` (NULL-safe comparison).

        True  => write applied
        False => another writer changed the selection first, nothing written
        """
        ...

    async def find_by_vendor_token(self, token: str) -> Optional[Job]: ...
    async def find_by_customer_token(self, token: str) -> Optional[Job]: ...
    async def list_open(self) -> list[Job]: ...
    async def list_assigned_since(self, since: datetime) -> list[Job]: ...
    async def list_unbid_candidates(self, created_before: datetime, limit: int) -> list[Job]: ...

    async def claim_unbid_alert(self, job_id: str, now: datetime) -> bool:
        """Stamp ``unbid_alert_sent_at`` if still NULL. True => this caller owns the alert."""
        ...


class BidRepository(Protocol):
    async def upsert(self, bid: Bid) -> Bid:
        """Insert or replace the bid for (job_id, vendor_phone); returns the stored row."""
        ...

    async def get(self, bid_id: str) -> Optional[Bid]: ...
    async def list_for_job(self, job_id: str) -> list[Bid]: ...
    async def count_for_job(self, job_id: str) -> int: ...


class VendorRepository(Protocol):
    async def get(self, vendor_id: str) -> Optional[Vendor]: ...
    async def find_by_phone(self, phone: str) -> Optional[Vendor]: ...
    async def create(self, vendor: Vendor) -> None: ...
    async def save(self, vendor: Vendor) -> None: ...
    async def list_active(self) -> list[Vendor]: ...
    async def list_all(self) -> list[Vendor]: ...


class ChargeRepository(Protocol):
    async def upsert_for_job(self, charge: CommissionCharge) -> CommissionCharge:
        """
        Insert on first call (status pending, requested_at now); later calls
        refresh amounts and keep the original id, status and processor reference.
        """
        ...

    async def save(self, charge: CommissionCharge) -> None: ...
    async def get_for_job(self, job_id: str) -> Optional[CommissionCharge]: ...


class OutboxRepository(Protocol):
    async def append(self, entry: OutboxEntry) -> None: ...
    async def list_recent(self, limit: int = 200) -> list[OutboxEntry]: ...
