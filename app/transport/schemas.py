# app/transport/schemas.py
"""
Request models and response serializers for the HTTP API.

The wire format is camelCase; models accept either camelCase or the
snake_case field names and dump snake_case for the services.
"""
from __future__ import annotations

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.core.dispatch.commission import CommissionSummary, commission_summary
from app.core.dispatch.domain import Bid, GeoPoint, Job, OutboxEntry
from app.core.dispatch.settlement import CompletionResult


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class GeoPointIn(_ApiModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class JobCreateIn(_ApiModel):
    """Required fields are checked by JobService so errors read the same everywhere."""

    customer_id: Optional[str] = Field(default=None, max_length=128)
    customer_phone: Optional[str] = Field(default=None, max_length=32)
    pickup_address: Optional[str] = Field(default=None, max_length=500)
    dropoff_address: Optional[str] = Field(default=None, max_length=500)
    service_type: Optional[str] = Field(default=None, max_length=120)
    notes: Optional[str] = Field(default=None, max_length=2000)
    heavy_duty: bool = False
    urgency: Optional[str] = None
    priority: Optional[Literal["normal", "urgent"]] = None
    bid_mode: Optional[Literal["open", "fixed"]] = None
    quoted_price: Optional[float] = None
    final_price: Optional[float] = None
    vendor_id: Optional[str] = None
    pickup: Optional[GeoPointIn] = None
    dropoff: Optional[GeoPointIn] = None


class JobPatchIn(_ApiModel):
    """Partial update; dump with ``exclude_unset`` so an explicit null vendorId unassigns."""

    status: Optional[str] = None
    vendor_id: Optional[str] = None
    priority: Optional[Literal["normal", "urgent"]] = None
    final_price: Optional[float] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class CompleteJobIn(_ApiModel):
    amount: Optional[float] = None
    method: Optional[str] = None
    note: Optional[str] = None
    auto_charge: Optional[bool] = None


class BidSubmissionIn(_ApiModel):
    vendor_name: Optional[str] = None
    vendor_phone: Optional[str] = None
    eta_minutes: Union[int, float, str, None] = None
    price: Union[int, float, str, None] = None


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------

def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _point(point: Optional[GeoPoint]) -> Optional[dict[str, float]]:
    return {"lat": point.lat, "lng": point.lng} if point else None


def serialize_job(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "customerId": job.customer_id,
        "customerPhone": job.customer_phone,
        "status": job.status.value,
        "urgency": job.urgency.value,
        "priority": job.priority.value,
        "bidMode": job.bid_mode.value,
        "biddingOpen": job.bidding_open,
        "selectedBidId": job.selected_bid_id,
        "vendorId": job.vendor_id,
        "vendorName": job.vendor_name,
        "vendorPhone": job.vendor_phone,
        "serviceType": job.service_type,
        "pickupAddress": job.pickup_address,
        "dropoffAddress": job.dropoff_address,
        "pickup": _point(job.pickup),
        "dropoff": _point(job.dropoff),
        "notes": job.notes,
        "heavyDuty": job.heavy_duty,
        "quotedPrice": job.quoted_price,
        "finalPrice": job.final_price,
        "paymentStatus": job.payment_status,
        "commission": commission_summary(job),
        "createdAt": _iso(job.created_at),
        "assignedAt": _iso(job.assigned_at),
        "onTheWayAt": _iso(job.on_the_way_at),
        "arrivedAt": _iso(job.arrived_at),
        "completedAt": _iso(job.completed_at),
        "escalatedAt": _iso(job.escalated_at),
    }


def serialize_bid(bid: Bid) -> dict[str, Any]:
    return {
        "id": bid.id,
        "jobId": bid.job_id,
        "vendorId": bid.vendor_id,
        "vendorName": bid.vendor_name,
        "vendorPhone": bid.vendor_phone,
        "etaMinutes": bid.eta_minutes,
        "price": bid.price,
        "createdAt": _iso(bid.created_at),
        "updatedAt": _iso(bid.updated_at),
    }


def serialize_summary(summary: CommissionSummary) -> dict[str, Any]:
    return {
        "reportedAmount": summary.reported_amount,
        "commissionRate": summary.commission_rate,
        "commissionAmount": summary.commission_amount,
        "expectedRevenue": summary.expected_revenue,
        "shortfall": summary.shortfall,
        "pctDrop": summary.pct_drop,
        "flagged": summary.flagged,
        "flagReason": summary.flag_reason,
    }


def serialize_completion(result: CompletionResult) -> dict[str, Any]:
    return {
        "ok": True,
        "job": serialize_job(result.job),
        "summary": serialize_summary(result.summary),
        "charge": result.charge.to_dict() if result.charge else None,
    }


def serialize_outbox_entry(entry: OutboxEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "kind": entry.kind,
        "recipient": entry.recipient,
        "body": entry.body,
        "jobId": entry.job_id,
        "status": entry.status.value,
        "error": entry.error,
        "createdAt": _iso(entry.created_at),
        "sentAt": _iso(entry.sent_at),
    }
