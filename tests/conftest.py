# tests/conftest.py
"""Pytest configuration, in-memory repositories and fixtures"""
import copy
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.core.dispatch.commission import CommissionConfig  # noqa: E402
from app.core.dispatch.domain import (  # noqa: E402
    Bid,
    CommissionCharge,
    GeoPoint,
    Job,
    JobStatus,
    OutboxEntry,
    Vendor,
    VendorBilling,
)
from app.core.dispatch.errors import ConflictError  # noqa: E402
from app.core.dispatch.services import DispatchNotifier  # noqa: E402
from app.infra.notification_channels import NotificationChannel  # noqa: E402

BASE_URL = "https://dispatch.example.com"
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# IN-MEMORY REPOSITORIES
# ============================================================================
# Rows are deep-copied in and out so services cannot mutate stored state
# without calling save, matching the Postgres repositories.

class InMemoryJobRepository:
    def __init__(self):
        self.rows: dict[str, Job] = {}
        self.save_count = 0

    def put(self, job: Job) -> Job:
        self.rows[job.id] = copy.deepcopy(job)
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        job = self.rows.get(job_id)
        return copy.deepcopy(job) if job else None

    async def create(self, job: Job) -> None:
        self.rows[job.id] = copy.deepcopy(job)

    async def save(self, job: Job) -> None:
        stored = self.rows.get(job.id)
        if stored is None or stored.version != job.version:
            raise ConflictError("Job was changed by another request, reload and try again")
        self.save_count += 1
        job.version += 1
        self.rows[job.id] = copy.deepcopy(job)

    async def save_selection(self, job: Job, expected_selected_bid_id: Optional[str]) -> bool:
        stored = self.rows.get(job.id)
        if (
            stored is None
            or stored.version != job.version
            or stored.selected_bid_id != expected_selected_bid_id
        ):
            return False
        job.version += 1
        self.rows[job.id] = copy.deepcopy(job)
        return True

    async def find_by_vendor_token(self, token: str) -> Optional[Job]:
        for job in self.rows.values():
            if job.vendor_token == token:
                return copy.deepcopy(job)
        return None

    async def find_by_customer_token(self, token: str) -> Optional[Job]:
        for job in self.rows.values():
            if job.customer_token == token:
                return copy.deepcopy(job)
        return None

    async def list_open(self) -> list[Job]:
        return [copy.deepcopy(j) for j in self.rows.values() if j.is_open]

    async def list_assigned_since(self, since: datetime) -> list[Job]:
        return [
            copy.deepcopy(j) for j in self.rows.values()
            if j.vendor_id and j.created_at >= since
        ]

    async def list_unbid_candidates(self, created_before: datetime, limit: int) -> list[Job]:
        candidates = [
            j for j in self.rows.values()
            if j.status == JobStatus.UNASSIGNED
            and not j.cancelled
            and j.vendor_id is None
            and j.unbid_alert_sent_at is None
            and j.created_at <= created_before
            and (j.bid_mode.value == "open" or j.bidding_open)
        ]
        candidates.sort(key=lambda j: j.created_at)
        return [copy.deepcopy(j) for j in candidates[:limit]]

    async def claim_unbid_alert(self, job_id: str, now: datetime) -> bool:
        job = self.rows.get(job_id)
        if job is None or job.unbid_alert_sent_at is not None:
            return False
        job.unbid_alert_sent_at = now
        job.version += 1
        return True


class InMemoryBidRepository:
    def __init__(self):
        self.rows: dict[str, Bid] = {}

    async def upsert(self, bid: Bid) -> Bid:
        for existing in self.rows.values():
            if existing.job_id == bid.job_id and existing.vendor_phone == bid.vendor_phone:
                existing.vendor_name = bid.vendor_name
                existing.eta_minutes = bid.eta_minutes
                existing.price = bid.price
                existing.vendor_id = bid.vendor_id or existing.vendor_id
                existing.updated_at = bid.updated_at
                return copy.deepcopy(existing)
        self.rows[bid.id] = copy.deepcopy(bid)
        return copy.deepcopy(bid)

    async def get(self, bid_id: str) -> Optional[Bid]:
        bid = self.rows.get(bid_id)
        return copy.deepcopy(bid) if bid else None

    async def list_for_job(self, job_id: str) -> list[Bid]:
        return [copy.deepcopy(b) for b in self.rows.values() if b.job_id == job_id]

    async def count_for_job(self, job_id: str) -> int:
        return sum(1 for b in self.rows.values() if b.job_id == job_id)


class InMemoryVendorRepository:
    def __init__(self):
        self.rows: dict[str, Vendor] = {}

    def put(self, vendor: Vendor) -> Vendor:
        self.rows[vendor.id] = copy.deepcopy(vendor)
        return vendor

    async def get(self, vendor_id: str) -> Optional[Vendor]:
        vendor = self.rows.get(vendor_id)
        return copy.deepcopy(vendor) if vendor else None

    async def find_by_phone(self, phone: str) -> Optional[Vendor]:
        for vendor in self.rows.values():
            if vendor.phone == phone:
                return copy.deepcopy(vendor)
        return None

    async def create(self, vendor: Vendor) -> None:
        self.rows[vendor.id] = copy.deepcopy(vendor)

    async def save(self, vendor: Vendor) -> None:
        self.rows[vendor.id] = copy.deepcopy(vendor)

    async def list_active(self) -> list[Vendor]:
        return [copy.deepcopy(v) for v in self.rows.values() if v.active]

    async def list_all(self) -> list[Vendor]:
        return [copy.deepcopy(v) for v in self.rows.values()]


class InMemoryChargeRepository:
    def __init__(self):
        self.rows: dict[str, CommissionCharge] = {}  # keyed by job_id
        self.upsert_count = 0

    async def upsert_for_job(self, charge: CommissionCharge) -> CommissionCharge:
        self.upsert_count += 1
        existing = self.rows.get(charge.job_id)
        if existing is None:
            self.rows[charge.job_id] = copy.deepcopy(charge)
            return copy.deepcopy(charge)
        existing.vendor_id = charge.vendor_id
        existing.reported_amount = charge.reported_amount
        existing.commission_rate = charge.commission_rate
        existing.commission_amount = charge.commission_amount
        return copy.deepcopy(existing)

    async def save(self, charge: CommissionCharge) -> None:
        self.rows[charge.job_id] = copy.deepcopy(charge)

    async def get_for_job(self, job_id: str) -> Optional[CommissionCharge]:
        charge = self.rows.get(job_id)
        return copy.deepcopy(charge) if charge else None


class InMemoryOutboxRepository:
    def __init__(self):
        self.entries: list[OutboxEntry] = []

    async def append(self, entry: OutboxEntry) -> None:
        self.entries.append(entry)

    async def list_recent(self, limit: int = 200) -> list[OutboxEntry]:
        return sorted(self.entries, key=lambda e: e.created_at, reverse=True)[:limit]


# ============================================================================
# FAKE CHANNELS / SENDERS
# ============================================================================

class FakeChannel(NotificationChannel):
    """Channel whose first ``fail_times`` sends raise."""

    def __init__(self, name: str = "sms", configured: bool = True, fail_times: int = 0, result: bool = True):
        self._name = name
        self.configured = configured
        self.fail_times = fail_times
        self.result = result
        self.calls: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return self._name

    def is_configured(self) -> bool:
        return self.configured

    async def send(self, recipient: str, body: str) -> bool:
        self.calls.append((recipient, body))
        if len(self.calls) <= self.fail_times:
            raise ConnectionError("provider unavailable")
        return self.result


class FakeClock:
    """Monotonic clock stand-in advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSender:
    """MessageSender stand-in that records every message."""

    def __init__(self, result: str = "sent"):
        self.result = result
        self.messages: list[tuple[str, str, Optional[str]]] = []

    async def send(self, recipient: str, body: str, job_id: Optional[str] = None) -> str:
        self.messages.append((recipient, body, job_id))
        return self.result


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def job_repo():
    return InMemoryJobRepository()


@pytest.fixture
def bid_repo():
    return InMemoryBidRepository()


@pytest.fixture
def vendor_repo():
    return InMemoryVendorRepository()


@pytest.fixture
def charge_repo():
    return InMemoryChargeRepository()


@pytest.fixture
def outbox_repo():
    return InMemoryOutboxRepository()


@pytest.fixture
def sms():
    return RecordingSender()


@pytest.fixture
def push():
    return RecordingSender()


@pytest.fixture
def notifier(sms, push):
    return DispatchNotifier(sms, push, base_url=BASE_URL, ops_recipient="ops")


@pytest.fixture
def commission_config():
    return CommissionConfig()


def make_job(**overrides) -> Job:
    data = dict(
        id="job-1",
        customer_id="cust-1",
        customer_phone="+15550001111",
        pickup_address="12 Main St",
        service_type="Towing",
        created_at=NOW,
    )
    data.update(overrides)
    return Job(**data)


def make_vendor(**overrides) -> Vendor:
    data = dict(
        id="vendor-1",
        name="Acme Towing",
        phone="+15552223333",
        location=GeoPoint(40.0, -74.0),
        billing=VendorBilling(provider="stripe", customer_id="cus_1", default_payment_method_id="pm_1"),
    )
    data.update(overrides)
    return Vendor(**data)
