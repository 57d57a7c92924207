from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# ENUMS
# ============================================================================

class JobStatus(str, Enum):
    """Canonical job lifecycle, in forward order."""
    UNASSIGNED = "Unassigned"
    ASSIGNED = "Assigned"
    ON_THE_WAY = "OnTheWay"
    ARRIVED = "Arrived"
    COMPLETED = "Completed"


class Urgency(str, Enum):
    EMERGENCY = "emergency"
    URGENT = "urgent"
    STANDARD = "standard"


class Priority(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"


class BidMode(str, Enum):
    OPEN = "open"    # vendors propose price and ETA
    FIXED = "fixed"  # price is the job's quote, vendors only propose ETA


class CommissionStatus(str, Enum):
    PENDING = "pending"
    CHARGED = "charged"
    FAILED = "failed"
    SKIPPED = "skipped"


class ChargeStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class OutboxStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class PaymentActor(str, Enum):
    VENDOR = "vendor"
    ADMIN = "admin"
    SYSTEM = "system"


PAYMENT_METHODS = frozenset({
    "cash",
    "card",
    "zelle",
    "venmo",
    "bank_transfer",
    "other",
})


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float


@dataclass
class ReportedPayment:
    """Completion amount as reported by the vendor or a dispatcher."""
    amount: float = 0.0
    method: Optional[str] = None
    note: Optional[str] = None
    actor: PaymentActor = PaymentActor.VENDOR
    reported_at: Optional[datetime] = None


@dataclass
class JobCommission:
    """Platform share for a completed job, mirrored from the charge record."""
    rate: float = 0.0
    amount: float = 0.0
    status: CommissionStatus = CommissionStatus.PENDING
    charged_at: Optional[datetime] = None
    charge_id: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass
class JobFlags:
    under_report: bool = False
    reason: Optional[str] = None


@dataclass
class VendorBilling:
    provider: Optional[str] = None
    customer_id: Optional[str] = None
    default_payment_method_id: Optional[str] = None

    @property
    def has_payment_method(self) -> bool:
        return bool(self.customer_id and self.default_payment_method_id)


@dataclass
class ComplianceIssue:
    key: str
    label: str = ""
    reason: str = ""


# ============================================================================
# RECORDS
# ============================================================================

@dataclass
class Job:
    """The unit of dispatch work."""
    id: str
    customer_id: str
    pickup_address: str
    status: JobStatus = JobStatus.UNASSIGNED
    urgency: Urgency = Urgency.STANDARD
    priority: Priority = Priority.NORMAL
    bid_mode: BidMode = BidMode.OPEN
    bidding_open: bool = False
    selected_bid_id: Optional[str] = None

    customer_phone: Optional[str] = None
    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None
    vendor_phone: Optional[str] = None

    # Public access tokens
    vendor_token: Optional[str] = None
    customer_token: Optional[str] = None
    vendor_accepted_token: Optional[str] = None

    service_type: str = ""
    dropoff_address: Optional[str] = None
    notes: str = ""
    heavy_duty: bool = False
    pickup: Optional[GeoPoint] = None
    dropoff: Optional[GeoPoint] = None

    # Pricing
    quoted_price: float = 0.0
    final_price: float = 0.0
    expected_revenue: float = 0.0
    payment_status: str = "pending"
    reported_payment: Optional[ReportedPayment] = None
    commission: Optional[JobCommission] = None
    flags: JobFlags = field(default_factory=JobFlags)

    customer_rating: Optional[int] = None

    # Lifecycle stamps (set-once)
    created_at: datetime = field(default_factory=utcnow)
    assigned_at: Optional[datetime] = None
    on_the_way_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    unbid_alert_sent_at: Optional[datetime] = None

    cancelled: bool = False
    cancelled_at: Optional[datetime] = None

    # Bumped by every stored write; writes carry the version they read
    version: int = 0

    @property
    def is_open(self) -> bool:
        return not self.cancelled and self.status != JobStatus.COMPLETED

    def clear_vendor(self) -> None:
        self.vendor_id = None
        self.vendor_name = None
        self.vendor_phone = None
        self.vendor_accepted_token = None


@dataclass
class Bid:
    """A vendor's offer on a job. Identity is (job_id, vendor_phone)."""
    id: str
    job_id: str
    vendor_name: str
    vendor_phone: str
    eta_minutes: int
    price: float
    vendor_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class CommissionCharge:
    """Settlement record; exactly one per job."""
    id: str
    job_id: str
    vendor_id: str
    reported_amount: float
    commission_rate: float
    commission_amount: float
    status: ChargeStatus = ChargeStatus.PENDING
    processor: str = "manual"
    processor_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    requested_at: datetime = field(default_factory=utcnow)
    processed_at: Optional[datetime] = None


@dataclass
class Vendor:
    id: str
    name: str
    phone: Optional[str] = None
    city: str = ""
    services: list[str] = field(default_factory=list)
    heavy_duty: bool = False
    location: Optional[GeoPoint] = None
    active: bool = True
    updates_paused: bool = False
    billing: VendorBilling = field(default_factory=VendorBilling)
    compliance_status: str = "pending"
    compliance_missing: list[ComplianceIssue] = field(default_factory=list)


@dataclass
class OutboxEntry:
    """A notification that could not be delivered synchronously."""
    id: str
    kind: str  # "sms" | "push"
    recipient: str
    body: str
    job_id: Optional[str] = None
    status: OutboxStatus = OutboxStatus.QUEUED
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    sent_at: Optional[datetime] = None
