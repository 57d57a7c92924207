# app/core/dispatch/services.py
"""
Dispatch notification service.

Every method is called strictly after the authoritative write has been
persisted, and none of them raise: delivery goes through resilient
senders that fall back to the outbox on their own.
"""
from __future__ import annotations

from typing import Optional, Protocol

from app.core.dispatch.domain import Bid, BidMode, Job
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


class MessageSender(Protocol):
    async def send(self, recipient: str, body: str, job_id: Optional[str] = None) -> str:
        """Deliver or queue; returns the outcome ("sent", "queued", "failed", "dropped")."""
        ...


def customer_topic(job: Job) -> str:
    return f"customer:{job.customer_id}"


class DispatchNotifier:
    def __init__(
        self,
        sms: MessageSender,
        push: MessageSender,
        base_url: str,
        ops_recipient: str = "ops",
    ):
        self.sms = sms
        self.push = push
        self.base_url = base_url.rstrip("/")
        self.ops_recipient = ops_recipient

    async def bid_received(self, job: Job, bid: Bid) -> None:
        if job.bid_mode == BidMode.FIXED:
            message = (
                f"New ETA: {bid.vendor_name} - ETA {bid.eta_minutes}m. "
                f"Fixed price ${_money(bid.price)}"
            )
        else:
            message = f"New bid: {bid.vendor_name} - ${_money(bid.price)}, ETA {bid.eta_minutes}m"

        if job.customer_phone and job.customer_token:
            link = f"{self.base_url}/choose/{job.customer_token}"
            await self.sms.send(job.customer_phone, f"{message}. View: {link}", job.id)

        await self.push.send(customer_topic(job), message, job.id)

    async def bid_accepted(self, job: Job, vendor_portal: str, status_url: str) -> None:
        if job.vendor_phone:
            await self.sms.send(
                job.vendor_phone,
                f"Your bid was accepted. Open job: {vendor_portal}",
                job.id,
            )
        if job.customer_phone:
            await self.sms.send(
                job.customer_phone,
                f"Vendor assigned: {job.vendor_name}. Track: {status_url}",
                job.id,
            )
        await self.push.send(customer_topic(job), f"Vendor assigned: {job.vendor_name}", job.id)

    async def vendor_assigned(self, job: Job) -> None:
        """Dispatcher assigned a vendor directly (no bid)."""
        if not job.vendor_phone:
            logger.debug("Vendor has no phone, skipping assignment SMS", extra={"job_id": job.id})
            return
        pickup = job.pickup_address or "pickup on file"
        await self.sms.send(
            job.vendor_phone,
            f"New job assigned: {job.service_type or 'service'} at {pickup}. "
            f"Status: {self.base_url}/status/{job.id}",
            job.id,
        )

    async def unbid_alert(self, job: Job, minutes_open: int) -> str:
        service = job.service_type or "Service request"
        pickup = job.pickup_address or "Unknown location"
        message = f"Job awaiting bids: {service} at {pickup} has no bids after {minutes_open} minutes."
        return await self.push.send(self.ops_recipient, message, job.id)


def _money(value: float) -> str:
    amount = float(value or 0)
    return f"{amount:.0f}" if amount.is_integer() else f"{amount:.2f}"
