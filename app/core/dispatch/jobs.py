# app/core/dispatch/jobs.py
"""
Dispatcher-facing job operations: create, read, partial update and links.

Status changes always go through the lifecycle state machine; vendor
(re)assignment and priority escalation are folded into the same update
so a single PATCH is validated as a whole before anything is written.
"""
from __future__ import annotations

import math
import uuid
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from app.core.dispatch.bidding import build_links
from app.core.dispatch.domain import (
    BidMode,
    GeoPoint,
    Job,
    JobStatus,
    Priority,
    Urgency,
    utcnow,
)
from app.core.dispatch.errors import ConflictError, NotFoundError, ValidationError
from app.core.dispatch.lifecycle import apply_transition, parse_status
from app.core.dispatch.ports import JobRepository, VendorRepository
from app.core.dispatch.services import DispatchNotifier
from app.infra.audit_log import audit_event
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _parse_point(value: Any) -> Optional[GeoPoint]:
    if not value:
        return None
    if isinstance(value, GeoPoint):
        return value
    try:
        lat = float(value["lat"])
        lng = float(value["lng"])
    except (KeyError, TypeError, ValueError):
        raise ValidationError("Coordinates must have numeric lat and lng") from None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        raise ValidationError("Coordinates out of range")
    return GeoPoint(lat=lat, lng=lng)


def _parse_urgency(value: Any) -> Urgency:
    try:
        return Urgency(str(value or Urgency.STANDARD.value).lower())
    except ValueError:
        raise ValidationError(f"Invalid urgency: {value}") from None


class JobService:
    def __init__(
        self,
        jobs: JobRepository,
        vendors: VendorRepository,
        notifier: DispatchNotifier,
        base_url: str,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.jobs = jobs
        self.vendors = vendors
        self.notifier = notifier
        self.base_url = base_url.rstrip("/")
        self._clock = clock

    async def get_job(self, job_id: str) -> Job:
        job = await self.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job not found")
        return job

    async def create_job(self, data: Mapping[str, Any]) -> Job:
        customer_id = str(data.get("customer_id") or "").strip()
        if not customer_id:
            raise ValidationError("customerId required")
        pickup_address = str(data.get("pickup_address") or "").strip()
        if not pickup_address:
            raise ValidationError("pickupAddress required")

        vendor = None
        vendor_id = str(data.get("vendor_id") or "").strip()
        if vendor_id:
            vendor = await self.vendors.get(vendor_id)
            if vendor is None:
                raise NotFoundError("Vendor not found")

        now = self._clock()
        quoted = max(_to_float(data.get("quoted_price")), 0.0)
        priority = Priority.URGENT if data.get("priority") == Priority.URGENT.value else Priority.NORMAL

        job = Job(
            id=str(uuid.uuid4()),
            customer_id=customer_id,
            customer_phone=(data.get("customer_phone") or None),
            pickup_address=pickup_address,
            dropoff_address=(str(data.get("dropoff_address") or "").strip() or None),
            service_type=str(data.get("service_type") or "").strip(),
            notes=str(data.get("notes") or "").strip(),
            heavy_duty=bool(data.get("heavy_duty")),
            urgency=_parse_urgency(data.get("urgency")),
            priority=priority,
            bid_mode=BidMode.FIXED if data.get("bid_mode") == BidMode.FIXED.value else BidMode.OPEN,
            quoted_price=quoted,
            pickup=_parse_point(data.get("pickup")),
            dropoff=_parse_point(data.get("dropoff")),
            created_at=now,
            escalated_at=now if priority == Priority.URGENT else None,
        )

        if vendor is not None:
            job.vendor_id = vendor.id
            job.vendor_name = vendor.name or None
            job.vendor_phone = vendor.phone or None
            job.status = JobStatus.ASSIGNED
            job.bid_mode = BidMode.FIXED
            job.bidding_open = False
            job.assigned_at = now
            final_price = _to_float(data.get("final_price"))
            job.final_price = final_price if final_price > 0 else quoted

        await self.jobs.create(job)

        logger.info(
            f"Job created: status={job.status.value} mode={job.bid_mode.value} urgency={job.urgency.value}",
            extra={"job_id": job.id},
        )
        audit_event("job.create", job_id=job.id, actor="admin", detail=f"vendor={job.vendor_id or '-'}")

        if vendor is not None:
            await self.notifier.vendor_assigned(job)
        return job

    async def update_job(self, job_id: str, changes: Mapping[str, Any]) -> Job:
        """
        Apply a partial update.  Recognised keys: ``priority``, ``final_price``,
        ``notes``, ``vendor_id``, ``status``.  Only keys present are touched;
        an illegal status edge rejects the whole update.
        """
        job = await self.get_job(job_id)
        if not changes:
            return job

        now = self._clock()
        previous_status = job.status
        previous_vendor = job.vendor_id
        target_status = changes.get("status")

        if "priority" in changes:
            if changes["priority"] == Priority.URGENT.value:
                job.priority = Priority.URGENT
                job.escalated_at = job.escalated_at or now
            else:
                job.priority = Priority.NORMAL
                job.escalated_at = None

        if "final_price" in changes and changes["final_price"] is not None:
            price = _to_float(changes["final_price"], default=math.nan)
            if not math.isnan(price):
                job.final_price = price

        if "notes" in changes and changes["notes"] is not None:
            job.notes = str(changes["notes"])

        if "vendor_id" in changes:
            vendor_id = changes["vendor_id"]
            if not vendor_id:
                job.clear_vendor()
                job.bidding_open = True
            else:
                vendor = await self.vendors.get(str(vendor_id))
                if vendor is None:
                    raise NotFoundError("Vendor not found")
                job.vendor_id = vendor.id
                job.vendor_name = vendor.name or None
                job.vendor_phone = vendor.phone or None
                job.bidding_open = False
                if not target_status:
                    target_status = JobStatus.ASSIGNED.value

        if target_status:
            target = parse_status(target_status)
            if target != previous_status:
                apply_transition(job, target, now)
                DispatchMetrics.job_transition(target.value)

        await self.jobs.save(job)

        if job.status != previous_status:
            audit_event(
                "job.status",
                job_id=job.id,
                actor="admin",
                detail=f"{previous_status.value} -> {job.status.value}",
            )
        if job.vendor_id and job.vendor_id != previous_vendor:
            audit_event("job.assign", job_id=job.id, actor="admin", detail=f"vendor={job.vendor_id}")
            await self.notifier.vendor_assigned(job)

        return job

    async def links(self, job_id: str) -> dict[str, str]:
        job = await self.get_job(job_id)
        if not job.vendor_token and not job.customer_token:
            raise ConflictError("Links not available. Open bidding first.")
        return build_links(job, self.base_url)
