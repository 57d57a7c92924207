"""
Bidding subsystem.

Vendors reach a job through its opaque ``vendor_token`` and submit one bid
each (keyed by normalized phone; re-submitting replaces the earlier bid).
The customer reviews bids through ``customer_token`` and selects one.
Selection is a compare-and-set on ``selected_bid_id`` so two concurrent
selections of different bids cannot both win.
"""
from __future__ import annotations

import math
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from app.core.dispatch.domain import Bid, BidMode, Job, JobStatus, Vendor, utcnow
from app.core.dispatch.errors import ConflictError, NotFoundError, ValidationError
from app.core.dispatch.lifecycle import apply_transition, validate_transition
from app.core.dispatch.ports import BidRepository, JobRepository, VendorRepository
from app.core.dispatch.services import DispatchNotifier
from app.infra.audit_log import audit_event
from app.infra.logging_config import LogContext, get_logger, mask_phone
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

ETA_MIN_MINUTES = 1
ETA_MAX_MINUTES = 720  # 12h
PRICE_MAX = 1_000_000
VENDOR_NAME_MAX = 120

_NON_DIGITS = re.compile(r"\D+")


def mint_token() -> str:
    """Opaque 32-hex-char access token."""
    return secrets.token_hex(16)


def normalize_phone(value: Any) -> str:
    """Keep digits only, preserving a leading ``+``.  ``"+1 (555) 010-2000"`` -> ``"+15550102000"``"""
    text = str(value or "").strip()
    if not text:
        return ""
    if text.startswith("+"):
        digits = _NON_DIGITS.sub("", text[1:])
        return f"+{digits}" if digits else ""
    return _NON_DIGITS.sub("", text)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def parse_eta_minutes(value: Any) -> int:
    """Integer minutes clamped to [1, 720]; non-numeric input is a ValidationError."""
    if value is None or isinstance(value, bool) or value == "":
        raise ValidationError("Invalid ETA or price")
    try:
        if isinstance(value, str):
            match = re.match(r"\s*([+-]?\d+)", value)
            if not match:
                raise ValueError(value)
            minutes = int(match.group(1))
        else:
            number = float(value)
            if not math.isfinite(number):
                raise ValueError(value)
            minutes = int(number)
    except (TypeError, ValueError):
        raise ValidationError("Invalid ETA or price") from None
    return int(_clamp(minutes, ETA_MIN_MINUTES, ETA_MAX_MINUTES))


def parse_bid_price(value: Any) -> float:
    """Open-mode price clamped to [0, 1 000 000]; missing or non-numeric is a ValidationError."""
    if value is None or isinstance(value, bool) or value == "":
        raise ValidationError("Invalid ETA or price")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError("Invalid ETA or price") from None
    if not math.isfinite(number):
        raise ValidationError("Invalid ETA or price")
    return _clamp(number, 0, PRICE_MAX)


def build_links(job: Job, base_url: str) -> dict[str, str]:
    base = base_url.rstrip("/")
    links = {"statusUrl": f"{base}/status/{job.id}"}
    if job.vendor_token:
        links["vendorLink"] = f"{base}/vendor/{job.vendor_token}"
    if job.customer_token:
        links["customerLink"] = f"{base}/choose/{job.customer_token}"
    return links


def _holds_selection(job: Job, bid: Bid) -> bool:
    """True when ``bid`` is selected and the job is still assigned to its vendor."""
    return (
        job.selected_bid_id == bid.id
        and job.status != JobStatus.UNASSIGNED
        and job.vendor_id is not None
    )


@dataclass(frozen=True)
class SelectionResult:
    job: Job
    bid: Bid
    vendor_portal: str
    status_url: str
    already_selected: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "jobId": self.job.id,
            "selectedBidId": self.job.selected_bid_id,
            "status": self.job.status.value,
            "finalPrice": self.job.final_price,
            "vendor": {"name": self.job.vendor_name, "phone": self.job.vendor_phone},
            "links": {"vendorPortal": self.vendor_portal, "statusUrl": self.status_url},
        }


class BiddingService:
    def __init__(
        self,
        jobs: JobRepository,
        bids: BidRepository,
        vendors: VendorRepository,
        notifier: DispatchNotifier,
        base_url: str,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.jobs = jobs
        self.bids = bids
        self.vendors = vendors
        self.notifier = notifier
        self.base_url = base_url.rstrip("/")
        self._clock = clock

    # ------------------------------------------------------------------
    # Dispatcher side
    # ------------------------------------------------------------------

    async def open_bidding(self, job_id: str) -> dict[str, str]:
        job = await self.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job not found")

        job.vendor_token = job.vendor_token or mint_token()
        job.customer_token = job.customer_token or mint_token()
        job.bidding_open = True
        await self.jobs.save(job)

        audit_event("job.open_bidding", job_id=job.id, actor="admin")
        return build_links(job, self.base_url)

    # ------------------------------------------------------------------
    # Vendor side
    # ------------------------------------------------------------------

    async def _open_job_for_vendor(self, vendor_token: str) -> Job:
        job = await self.jobs.find_by_vendor_token(vendor_token) if vendor_token else None
        if job is None or not job.bidding_open:
            raise NotFoundError("Job not found or bidding closed")
        return job

    async def job_preview(self, vendor_token: str) -> dict[str, Any]:
        job = await self._open_job_for_vendor(vendor_token)
        return {
            "jobId": job.id,
            "serviceType": job.service_type,
            "pickupAddress": job.pickup_address,
            "dropoffAddress": job.dropoff_address,
            "heavyDuty": job.heavy_duty,
            "quotedPrice": job.quoted_price or 0,
            "bidMode": job.bid_mode.value,
        }

    async def submit_bid(
        self,
        vendor_token: str,
        vendor_name: str,
        vendor_phone: str,
        eta_minutes: Any,
        price: Any = None,
    ) -> Bid:
        job = await self._open_job_for_vendor(vendor_token)

        phone = normalize_phone(vendor_phone)
        if not phone:
            raise ValidationError("Enter a valid phone number")
        name = (vendor_name or "").strip()
        if not name:
            raise ValidationError("vendorName is required")
        if len(name) > VENDOR_NAME_MAX:
            raise ValidationError("vendorName too long")

        eta = parse_eta_minutes(eta_minutes)
        if job.bid_mode == BidMode.FIXED:
            amount = job.quoted_price if math.isfinite(job.quoted_price or 0) else 0.0
        else:
            amount = parse_bid_price(price)

        now = self._clock()
        vendor = await self._register_vendor(job, name, phone)

        bid = await self.bids.upsert(Bid(
            id=str(uuid.uuid4()),
            job_id=job.id,
            vendor_name=name,
            vendor_phone=phone,
            eta_minutes=eta,
            price=amount,
            vendor_id=vendor.id if vendor else None,
            created_at=now,
            updated_at=now,
        ))

        LogContext(logger, job_id=job.id, bid_id=bid.id).info(
            f"Bid stored: vendor={mask_phone(phone)} eta={eta}m price={amount} mode={job.bid_mode.value}"
        )
        DispatchMetrics.bid_submitted(job.bid_mode.value)

        await self.notifier.bid_received(job, bid)
        return bid

    async def _register_vendor(self, job: Job, name: str, phone: str) -> Optional[Vendor]:
        """Find or create the vendor behind a bid, merging the job's service type."""
        vendor = await self.vendors.find_by_phone(phone)
        if vendor is None:
            vendor = Vendor(
                id=str(uuid.uuid4()),
                name=name or "Vendor",
                phone=phone,
                services=[job.service_type] if job.service_type else [],
            )
            await self.vendors.create(vendor)
            logger.info(f"Vendor auto-registered from bid: {mask_phone(phone)}", extra={"vendor_id": vendor.id})
            return vendor

        changed = False
        if name and (not vendor.name or vendor.name == vendor.phone):
            vendor.name = name
            changed = True
        if job.service_type and job.service_type not in vendor.services:
            vendor.services = [*vendor.services, job.service_type]
            changed = True
        if changed:
            await self.vendors.save(vendor)
        return vendor

    # ------------------------------------------------------------------
    # Customer side
    # ------------------------------------------------------------------

    async def list_bids(self, customer_token: str) -> dict[str, Any]:
        job = await self.jobs.find_by_customer_token(customer_token) if customer_token else None
        if job is None:
            raise NotFoundError("Invalid link")

        bids = await self.bids.list_for_job(job.id)
        bids.sort(key=lambda b: b.created_at, reverse=True)

        return {
            "jobId": job.id,
            "job": {
                "serviceType": job.service_type,
                "pickupAddress": job.pickup_address,
                "dropoffAddress": job.dropoff_address,
                "heavyDuty": job.heavy_duty,
                "status": job.status.value,
                "biddingOpen": job.bidding_open,
                "selectedBidId": job.selected_bid_id,
            },
            "bids": [
                {
                    "id": b.id,
                    "vendorName": b.vendor_name,
                    "vendorPhone": b.vendor_phone,
                    "price": b.price,
                    "etaMinutes": b.eta_minutes,
                    "createdAt": b.created_at.isoformat(),
                }
                for b in bids
            ],
        }

    async def select_bid(self, bid_id: str) -> SelectionResult:
        bid = await self.bids.get(bid_id)
        if bid is None:
            DispatchMetrics.bid_selected("not_found")
            raise NotFoundError("Bid not found")

        job = await self.jobs.get(bid.job_id)
        if job is None:
            DispatchMetrics.bid_selected("not_found")
            raise NotFoundError("Job not found")

        expected = job.selected_bid_id
        if expected is not None and expected != bid.id:
            DispatchMetrics.bid_selected("conflict")
            raise ConflictError("Another bid has already been selected")

        if _holds_selection(job, bid):
            DispatchMetrics.bid_selected("idempotent")
            return self._selection_result(job, bid, already_selected=True)

        # A selection the dispatcher rolled back to Unassigned is re-applied below
        try:
            validate_transition(job.status, JobStatus.ASSIGNED)
        except ConflictError:
            DispatchMetrics.bid_selected("conflict")
            raise

        now = self._clock()
        vendor = await self._register_vendor(job, bid.vendor_name.strip(), bid.vendor_phone)

        apply_transition(job, JobStatus.ASSIGNED, now)
        job.selected_bid_id = bid.id
        job.vendor_id = vendor.id if vendor else job.vendor_id
        job.vendor_name = bid.vendor_name.strip() or (vendor.name if vendor else job.vendor_name)
        job.vendor_phone = bid.vendor_phone or (vendor.phone if vendor else job.vendor_phone)
        job.bidding_open = False
        if job.bid_mode == BidMode.FIXED:
            job.final_price = job.quoted_price if job.quoted_price else (bid.price or 0.0)
        else:
            job.final_price = bid.price or 0.0
        job.vendor_accepted_token = job.vendor_accepted_token or mint_token()

        applied = await self.jobs.save_selection(job, expected)
        if not applied:
            current = await self.jobs.get(job.id)
            if current is not None and _holds_selection(current, bid):
                DispatchMetrics.bid_selected("idempotent")
                return self._selection_result(current, bid, already_selected=True)
            DispatchMetrics.bid_selected("conflict")
            if current is not None and current.selected_bid_id not in (None, bid.id):
                raise ConflictError("Another bid has already been selected")
            raise ConflictError("Job was changed by another request, reload and try again")

        DispatchMetrics.bid_selected("selected")
        audit_event(
            "bid.select",
            job_id=job.id,
            actor="customer",
            detail=f"bid={bid.id} final_price={job.final_price}",
        )

        result = self._selection_result(job, bid)
        await self.notifier.bid_accepted(job, result.vendor_portal, result.status_url)
        return result

    def _selection_result(self, job: Job, bid: Bid, already_selected: bool = False) -> SelectionResult:
        return SelectionResult(
            job=job,
            bid=bid,
            vendor_portal=f"{self.base_url}/vendor/{job.vendor_accepted_token}",
            status_url=f"{self.base_url}/status/{job.id}",
            already_selected=already_selected,
        )
