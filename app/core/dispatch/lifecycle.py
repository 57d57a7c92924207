"""
Job lifecycle state machine.

    Unassigned -> Assigned -> OnTheWay -> Arrived -> Completed

Forward edges are explicit (an assigned vendor may skip straight to
Arrived or Completed).  Staying in place and stepping back exactly one
state are always allowed so a dispatcher can undo a mis-click.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from app.core.dispatch.domain import Job, JobStatus
from app.core.dispatch.errors import ConflictError, ValidationError

STATUS_ORDER: tuple[JobStatus, ...] = (
    JobStatus.UNASSIGNED,
    JobStatus.ASSIGNED,
    JobStatus.ON_THE_WAY,
    JobStatus.ARRIVED,
    JobStatus.COMPLETED,
)

FORWARD_EDGES: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.UNASSIGNED: frozenset({JobStatus.ASSIGNED}),
    JobStatus.ASSIGNED: frozenset({
        JobStatus.ON_THE_WAY,
        JobStatus.ARRIVED,
        JobStatus.COMPLETED,
        JobStatus.UNASSIGNED,
    }),
    JobStatus.ON_THE_WAY: frozenset({JobStatus.ARRIVED, JobStatus.COMPLETED}),
    JobStatus.ARRIVED: frozenset({JobStatus.COMPLETED}),
    JobStatus.COMPLETED: frozenset(),
}

# Set-once timestamp stamped on entry to each state
_ENTRY_STAMPS: dict[JobStatus, str] = {
    JobStatus.ASSIGNED: "assigned_at",
    JobStatus.ON_THE_WAY: "on_the_way_at",
    JobStatus.ARRIVED: "arrived_at",
    JobStatus.COMPLETED: "completed_at",
}


def parse_status(value: Any) -> JobStatus:
    if isinstance(value, JobStatus):
        return value
    try:
        return JobStatus(str(value))
    except ValueError:
        raise ValidationError(f"Invalid status: {value}") from None


def allowed_targets(status: JobStatus) -> frozenset[JobStatus]:
    targets = set(FORWARD_EDGES.get(status, frozenset()))
    targets.add(status)
    idx = STATUS_ORDER.index(status)
    if idx > 0:
        targets.add(STATUS_ORDER[idx - 1])
    return frozenset(targets)


def is_terminal(status: JobStatus) -> bool:
    return not FORWARD_EDGES.get(status)


def validate_transition(current: Any, target: Any) -> JobStatus:
    """Return the parsed target or raise ConflictError for an illegal edge."""
    current_status = parse_status(current)
    target_status = parse_status(target)
    if target_status not in allowed_targets(current_status):
        raise ConflictError(
            f"Cannot move job from {current_status.value} to {target_status.value}"
        )
    return target_status


def apply_transition(job: Job, target: Any, now: datetime) -> Job:
    """Move ``job`` to ``target`` in place, stamping entry timestamps once.

    Raises before touching the job if the edge is illegal.
    """
    target_status = validate_transition(job.status, target)

    job.status = target_status

    stamp = _ENTRY_STAMPS.get(target_status)
    if stamp and getattr(job, stamp) is None:
        setattr(job, stamp, now)

    if target_status == JobStatus.UNASSIGNED:
        job.clear_vendor()
        job.bidding_open = True

    return job
