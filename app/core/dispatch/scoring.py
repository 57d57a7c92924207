"""
Dispatch scoring: SLA risk, vendor ranking and vendor scorecards.

Pure functions over records; the caller supplies ``now``.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from app.core.dispatch.domain import GeoPoint, Job, JobStatus, Urgency, Vendor

SLA_MINUTES: dict[Urgency, int] = {
    Urgency.EMERGENCY: 15,
    Urgency.URGENT: 30,
    Urgency.STANDARD: 45,
}
DEFAULT_SLA_MINUTES = SLA_MINUTES[Urgency.STANDARD]

SEVERE_OVERDUE_MINUTES = -10
BACKLOG_WEIGHT = 2
PAUSED_PENALTY = 5
MAX_SUGGESTIONS = 5
EARTH_RADIUS_KM = 6371.0


def _round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def to_minutes(seconds: float) -> int:
    return int(_round_half_up(seconds / 60.0))


def sla_minutes(urgency: Any) -> int:
    try:
        return SLA_MINUTES[Urgency(urgency)]
    except ValueError:
        return DEFAULT_SLA_MINUTES


def haversine_km(a: Optional[GeoPoint], b: Optional[GeoPoint]) -> float:
    """Great-circle distance; ``inf`` when either point is missing."""
    if a is None or b is None:
        return math.inf
    coords = (a.lat, a.lng, b.lat, b.lng)
    if not all(isinstance(c, (int, float)) and math.isfinite(c) for c in coords):
        return math.inf

    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


# ============================================================================
# SLA QUEUE
# ============================================================================

@dataclass(frozen=True)
class QueueEntry:
    job_id: str
    service_type: str
    priority: str
    status: str
    urgency: str
    created_at: datetime
    pickup_address: Optional[str]
    vendor_id: Optional[str]
    vendor_name: Optional[str]
    open_minutes: int
    since_assigned_minutes: int
    sla_minutes: int
    minutes_remaining: int
    at_risk: bool
    severe: bool
    escalated: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "serviceType": self.service_type,
            "priority": self.priority,
            "status": self.status,
            "urgency": self.urgency,
            "createdAt": self.created_at.isoformat(),
            "pickupAddress": self.pickup_address,
            "vendorId": self.vendor_id,
            "vendorName": self.vendor_name,
            "openMinutes": self.open_minutes,
            "sinceAssignedMinutes": self.since_assigned_minutes,
            "slaMinutes": self.sla_minutes,
            "minutesRemaining": self.minutes_remaining,
            "atRisk": self.at_risk,
            "severe": self.severe,
            "escalated": self.escalated,
        }


def compute_queue_entry(job: Job, now: datetime) -> QueueEntry:
    budget = sla_minutes(job.urgency)
    open_minutes = to_minutes((now - job.created_at).total_seconds())
    since_assigned = (
        to_minutes((now - job.assigned_at).total_seconds()) if job.assigned_at else 0
    )
    remaining = budget - open_minutes

    return QueueEntry(
        job_id=job.id,
        service_type=job.service_type or "Service",
        priority=job.priority.value,
        status=job.status.value,
        urgency=job.urgency.value,
        created_at=job.created_at,
        pickup_address=job.pickup_address or None,
        vendor_id=job.vendor_id,
        vendor_name=job.vendor_name,
        open_minutes=open_minutes,
        since_assigned_minutes=since_assigned,
        sla_minutes=budget,
        minutes_remaining=remaining,
        at_risk=remaining <= 0,
        severe=remaining <= SEVERE_OVERDUE_MINUTES,
        escalated=job.escalated_at is not None,
    )


def escalation_queue(entries: Iterable[QueueEntry]) -> list[QueueEntry]:
    """At-risk or manually escalated entries, most overdue first."""
    flagged = [e for e in entries if e.at_risk or e.escalated]
    return sorted(flagged, key=lambda e: e.minutes_remaining)


# ============================================================================
# VENDOR RANKING
# ============================================================================

@dataclass(frozen=True)
class VendorSuggestion:
    vendor_id: str
    name: str
    distance_km: float
    backlog: int
    paused: bool
    score: float
    city: str = ""
    services: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "vendorId": self.vendor_id,
            "name": self.name,
            "distanceKm": _round_half_up(self.distance_km, 1),
            "backlog": self.backlog,
            "paused": self.paused,
            "score": self.score,
            "city": self.city,
            "services": list(self.services),
        }


def rank_vendors(
    pickup: Optional[GeoPoint],
    vendors: Iterable[Vendor],
    backlog: Mapping[str, int],
    limit: int = MAX_SUGGESTIONS,
) -> list[VendorSuggestion]:
    """
    Lower score is better: ``distance_km + 2 * backlog + 5 if paused``.

    Vendors without coordinates (or inactive ones) never appear.  Ties are
    broken by vendor id so the order is stable.
    """
    suggestions: list[VendorSuggestion] = []
    for vendor in vendors:
        if not vendor.active:
            continue
        distance = haversine_km(vendor.location, pickup)
        if not math.isfinite(distance):
            continue
        open_jobs = backlog.get(vendor.id, 0)
        score = distance + BACKLOG_WEIGHT * open_jobs + (PAUSED_PENALTY if vendor.updates_paused else 0)
        suggestions.append(VendorSuggestion(
            vendor_id=vendor.id,
            name=vendor.name,
            distance_km=distance,
            backlog=open_jobs,
            paused=vendor.updates_paused,
            score=score,
            city=vendor.city,
            services=tuple(vendor.services),
        ))

    suggestions.sort(key=lambda s: (s.score, s.vendor_id))
    return suggestions[:limit]


# ============================================================================
# SCORECARDS
# ============================================================================

@dataclass
class ScorecardStats:
    assigned: int = 0
    completed: int = 0
    cancelled: int = 0
    avg_arrival_minutes: Optional[float] = None
    avg_completion_minutes: Optional[float] = None
    sla_hit_rate: Optional[int] = None
    avg_rating: Optional[float] = None
    gross: float = 0.0
    commission: float = 0.0


@dataclass
class VendorScorecard:
    vendor_id: str
    name: str = "Vendor"
    city: str = ""
    services: list[str] = field(default_factory=list)
    active: bool = True
    heavy_duty: bool = False
    compliance_status: str = "pending"
    compliance_issues: list[dict[str, str]] = field(default_factory=list)
    stats: ScorecardStats = field(default_factory=ScorecardStats)

    def to_dict(self) -> dict[str, Any]:
        s = self.stats
        return {
            "vendorId": self.vendor_id,
            "name": self.name,
            "city": self.city,
            "services": self.services,
            "active": self.active,
            "heavyDuty": self.heavy_duty,
            "stats": {
                "assigned": s.assigned,
                "completed": s.completed,
                "cancelled": s.cancelled,
                "avgArrivalMinutes": s.avg_arrival_minutes,
                "avgCompletionMinutes": s.avg_completion_minutes,
                "slaHitRate": s.sla_hit_rate,
                "avgRating": s.avg_rating,
                "gross": round(s.gross, 2),
                "commission": round(s.commission, 2),
            },
            "compliance": {
                "status": self.compliance_status,
                "issues": self.compliance_issues,
            },
        }


def build_vendor_scorecard(vendor_id: str, jobs: Iterable[Job], vendor: Optional[Vendor]) -> VendorScorecard:
    card = VendorScorecard(vendor_id=vendor_id)
    if vendor is not None:
        card.name = vendor.name or "Vendor"
        card.city = vendor.city
        card.services = list(vendor.services)
        card.active = vendor.active
        card.heavy_duty = vendor.heavy_duty
        card.compliance_status = vendor.compliance_status or "pending"
        card.compliance_issues = [
            {"key": issue.key, "label": issue.label, "reason": issue.reason or ""}
            for issue in vendor.compliance_missing
        ]

    stats = card.stats
    arrivals: list[int] = []
    completions: list[int] = []
    sla_hits = 0
    ratings: list[int] = []

    for job in jobs:
        stats.assigned += 1
        if job.cancelled:
            stats.cancelled += 1
        if job.status == JobStatus.COMPLETED:
            stats.completed += 1

        stats.gross += float(job.final_price or job.quoted_price or 0)
        if job.commission is not None:
            stats.commission += float(job.commission.amount or 0)

        if job.arrived_at and job.assigned_at:
            minutes = to_minutes((job.arrived_at - job.assigned_at).total_seconds())
            arrivals.append(minutes)
            if minutes <= sla_minutes(job.urgency):
                sla_hits += 1

        if job.completed_at and job.assigned_at:
            completions.append(to_minutes((job.completed_at - job.assigned_at).total_seconds()))

        if job.customer_rating is not None:
            ratings.append(job.customer_rating)

    if arrivals:
        stats.avg_arrival_minutes = _round_half_up(sum(arrivals) / len(arrivals), 1)
        stats.sla_hit_rate = int(_round_half_up(sla_hits / len(arrivals) * 100))
    if completions:
        stats.avg_completion_minutes = _round_half_up(sum(completions) / len(completions), 1)
    if ratings:
        stats.avg_rating = _round_half_up(sum(ratings) / len(ratings), 1)

    return card


def group_by_vendor(jobs: Iterable[Job]) -> dict[str, list[Job]]:
    grouped: dict[str, list[Job]] = {}
    for job in jobs:
        if job.vendor_id:
            grouped.setdefault(job.vendor_id, []).append(job)
    return grouped
