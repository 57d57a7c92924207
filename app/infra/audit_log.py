# app/infra/audit_log.py
"""
Audit logging for dispatcher and settlement actions.

Status changes, bid selections, completions and commission charges are
written to a logger named "audit" so they can be routed to a separate
sink through logging configuration.
"""
from __future__ import annotations

import logging
from typing import Any

_audit_logger = logging.getLogger("audit")


def audit_event(
    action: str,
    *,
    job_id: str | None = None,
    actor: str | None = None,
    detail: str = "",
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Record an audit event.

    Args:
        action: Action name (e.g., "job.status", "bid.select", "commission.charge")
        job_id: Job affected
        actor: Who performed it ("admin", "vendor", "customer", "system")
        detail: Human-readable detail
        extra: Additional structured context
    """
    record = {
        "audit_action": action,
        "job_id": job_id or "",
        "actor": actor or "",
        "detail": detail,
    }
    if extra:
        record.update(extra)

    _audit_logger.info(
        f"AUDIT: {action} job={job_id or '-'} actor={actor or '-'} {detail}".rstrip(),
        extra=record,
    )
