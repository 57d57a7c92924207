"""
Mission control: the dispatcher's operational snapshot.

Assembles the SLA queue, escalations, vendor route suggestions for
unassigned jobs, backlog per vendor, scorecards and outstanding
compliance tasks from the repositories in one call.
"""
from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable

from app.core.dispatch.domain import utcnow
from app.core.dispatch.ports import JobRepository, VendorRepository
from app.core.dispatch.scoring import (
    build_vendor_scorecard,
    compute_queue_entry,
    escalation_queue,
    group_by_vendor,
    rank_vendors,
)
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

COMPLIANCE_ISSUES_PER_VENDOR = 3


class MissionControlService:
    def __init__(
        self,
        jobs: JobRepository,
        vendors: VendorRepository,
        window_days: int = 45,
        report_window_days: int = 90,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.jobs = jobs
        self.vendors = vendors
        self.window_days = window_days
        self.report_window_days = report_window_days
        self._clock = clock

    async def snapshot(self) -> dict[str, Any]:
        now = self._clock()

        open_jobs = sorted(await self.jobs.list_open(), key=lambda j: j.created_at)
        queue = [compute_queue_entry(job, now) for job in open_jobs]
        escalations = escalation_queue(queue)

        active_vendors = await self.vendors.list_active()
        vendor_map = {v.id: v for v in active_vendors}

        backlog = Counter(job.vendor_id for job in open_jobs if job.vendor_id)

        route_suggestions = []
        for job in open_jobs:
            if job.vendor_id:
                continue
            suggestions = rank_vendors(job.pickup, active_vendors, backlog)
            route_suggestions.append({
                "jobId": job.id,
                "serviceType": job.service_type or "Service",
                "pickupAddress": job.pickup_address or "",
                "urgency": job.urgency.value,
                "suggestions": [s.to_dict() for s in suggestions],
            })

        recent = await self.jobs.list_assigned_since(now - timedelta(days=self.window_days))
        scorecards = [
            build_vendor_scorecard(vendor_id, jobs, vendor_map.get(vendor_id)).to_dict()
            for vendor_id, jobs in group_by_vendor(recent).items()
        ]

        compliance_tasks = []
        for vendor in active_vendors:
            for issue in vendor.compliance_missing[:COMPLIANCE_ISSUES_PER_VENDOR]:
                compliance_tasks.append({
                    "type": "missing",
                    "vendorId": vendor.id,
                    "vendorName": vendor.name or "Vendor",
                    "key": issue.key,
                    "label": issue.label,
                    "reason": issue.reason or "",
                })

        logger.debug(
            f"Mission control: open={len(queue)} escalations={len(escalations)} "
            f"unassigned={len(route_suggestions)} scorecards={len(scorecards)}"
        )

        return {
            "queue": [entry.to_dict() for entry in queue],
            "escalations": [entry.to_dict() for entry in escalations],
            "routeSuggestions": route_suggestions,
            "vendorScorecards": scorecards,
            "vendorBacklog": [
                {"vendorId": vendor_id, "activeJobs": count}
                for vendor_id, count in sorted(backlog.items())
            ],
            "complianceTasks": compliance_tasks,
            "queueVendors": sorted(backlog),
            "generatedAt": now.isoformat(),
        }

    async def vendor_scorecards(self) -> dict[str, Any]:
        now = self._clock()
        recent = await self.jobs.list_assigned_since(now - timedelta(days=self.report_window_days))
        vendor_map = {v.id: v for v in await self.vendors.list_all()}

        return {
            "generatedAt": now.isoformat(),
            "scorecards": [
                build_vendor_scorecard(vendor_id, jobs, vendor_map.get(vendor_id)).to_dict()
                for vendor_id, jobs in group_by_vendor(recent).items()
            ],
        }
