"""
Settlement orchestrator.

Completing a job records the vendor's reported payment, evaluates the
commission, persists the job and only then issues the commission charge.
Every step converges on re-run: the charge row is upserted per job, the
simulated processor reference is kept once minted, and an already-charged
job is never charged twice.
"""
from __future__ import annotations

import math
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from app.core.dispatch.commission import CommissionConfig, CommissionSummary, evaluate_commission
from app.core.dispatch.domain import (
    PAYMENT_METHODS,
    ChargeStatus,
    CommissionCharge,
    CommissionStatus,
    Job,
    JobCommission,
    JobFlags,
    JobStatus,
    PaymentActor,
    ReportedPayment,
    utcnow,
)
from app.core.dispatch.errors import ConflictError, NotFoundError, ValidationError
from app.core.dispatch.lifecycle import apply_transition
from app.core.dispatch.ports import ChargeRepository, JobRepository, VendorRepository
from app.infra.audit_log import audit_event
from app.infra.logging_config import LogContext, get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

NOTE_MAX_CHARS = 240


@dataclass(frozen=True)
class ChargeOutcome:
    status: str  # "charged" | "failed"
    reason: Optional[str] = None
    transaction_id: Optional[str] = None
    processor: Optional[str] = None
    processed_at: Optional[datetime] = None
    method: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status}
        if self.reason:
            data["reason"] = self.reason
        if self.transaction_id:
            data["transactionId"] = self.transaction_id
        if self.processor:
            data["processor"] = self.processor
        if self.processed_at:
            data["processedAt"] = self.processed_at.isoformat()
        if self.status == "charged":
            data["method"] = self.method
        return data


@dataclass(frozen=True)
class CompletionResult:
    job: Job
    summary: CommissionSummary
    charge: Optional[ChargeOutcome]


def parse_amount(value: Any) -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError("amount must be greater than 0") from None
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError("amount must be greater than 0")
    return amount


def parse_payment_method(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        return None
    method = value.strip().lower()
    if method not in PAYMENT_METHODS:
        raise ValidationError("Unsupported payment method")
    return method


def sanitize_note(note: Any) -> Optional[str]:
    if not note:
        return None
    text = str(note).strip()[:NOTE_MAX_CHARS]
    return text or None


class SettlementService:
    def __init__(
        self,
        jobs: JobRepository,
        vendors: VendorRepository,
        charges: ChargeRepository,
        config: CommissionConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.jobs = jobs
        self.vendors = vendors
        self.charges = charges
        self.config = config
        self._clock = clock

    async def complete_job(
        self,
        job_id: str,
        amount: Any,
        method: Any = None,
        note: Any = None,
        actor: PaymentActor = PaymentActor.ADMIN,
        auto_charge: Optional[bool] = None,
    ) -> CompletionResult:
        reported = parse_amount(amount)
        payment_method = parse_payment_method(method)

        job = await self.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job not found")

        log = LogContext(logger, job_id=job.id, vendor_id=job.vendor_id)

        with DispatchMetrics.track_settlement_time():
            summary = evaluate_commission(job, reported, self.config)
            now = self._clock()

            apply_transition(job, JobStatus.COMPLETED, now)

            job.payment_status = "paid"
            job.reported_payment = ReportedPayment(
                amount=summary.reported_amount,
                method=payment_method,
                note=sanitize_note(note),
                actor=PaymentActor(actor),
                reported_at=now,
            )

            already_charged = (
                job.commission is not None
                and job.commission.status == CommissionStatus.CHARGED
            )
            if not already_charged:
                job.commission = JobCommission(
                    rate=summary.commission_rate,
                    amount=summary.commission_amount,
                    status=(
                        CommissionStatus.PENDING
                        if summary.should_auto_charge
                        else CommissionStatus.SKIPPED
                    ),
                )
                job.expected_revenue = summary.expected_revenue
                job.flags = JobFlags(under_report=summary.flagged, reason=summary.flag_reason)

            # Persist the completion before any charge is attempted
            await self.jobs.save(job)

            DispatchMetrics.job_completed(summary.flagged)
            audit_event(
                "job.complete",
                job_id=job.id,
                actor=job.reported_payment.actor.value,
                detail=f"amount={summary.reported_amount} method={payment_method or '-'}",
            )
            if summary.flagged:
                log.warning(f"Under-report flagged: {summary.flag_reason}")

            charge: Optional[ChargeOutcome] = None
            should_charge = summary.should_auto_charge if auto_charge is None else auto_charge

            if already_charged:
                log.info("Commission already charged, skipping re-charge")
                charge = ChargeOutcome(
                    status="charged",
                    transaction_id=job.commission.charge_id,
                    processed_at=job.commission.charged_at,
                    method=payment_method,
                )
            elif should_charge and job.vendor_id:
                charge = await self.charge_commission(job, summary, payment_method)
            elif job.commission.status != CommissionStatus.SKIPPED:
                job.commission.status = CommissionStatus.SKIPPED
                job.commission.failure_reason = None
                await self.jobs.save(job)

        return CompletionResult(job=job, summary=summary, charge=charge)

    async def charge_commission(
        self,
        job: Job,
        summary: CommissionSummary,
        method: Optional[str] = None,
    ) -> ChargeOutcome:
        """Issue (or re-issue) the commission charge for a completed job."""
        log = LogContext(logger, job_id=job.id, vendor_id=job.vendor_id)
        now = self._clock()

        vendor = await self.vendors.get(job.vendor_id) if job.vendor_id else None
        if vendor is None:
            log.warning("Commission charge failed: vendor record missing")
            self._mark_job_commission_failed(job, "Vendor record missing")
            await self.jobs.save(job)
            DispatchMetrics.commission_charge("failed")
            return ChargeOutcome(status="failed", reason="Vendor record missing")

        charge = await self.charges.upsert_for_job(CommissionCharge(
            id=str(uuid.uuid4()),
            job_id=job.id,
            vendor_id=vendor.id,
            reported_amount=summary.reported_amount,
            commission_rate=summary.commission_rate,
            commission_amount=summary.commission_amount,
            status=ChargeStatus.PENDING,
            requested_at=now,
        ))

        billing = vendor.billing
        processor = billing.provider or "manual"

        if not billing.has_payment_method:
            charge.status = ChargeStatus.FAILED
            charge.failure_reason = "No payment method on file"
            charge.processed_at = now
            charge.processor = processor
            await self.charges.save(charge)

            self._mark_job_commission_failed(job, charge.failure_reason)
            await self.jobs.save(job)

            log.info("Commission charge failed: no payment method on file")
            DispatchMetrics.commission_charge("failed")
            audit_event("commission.charge", job_id=job.id, actor="system", detail="status=failed reason=no_payment_method")
            return ChargeOutcome(status="failed", reason=charge.failure_reason)

        # Simulated processor: success is immediate, reference minted once
        charge.status = ChargeStatus.SUCCEEDED
        charge.processor = processor
        charge.processor_reference = charge.processor_reference or f"SIM-{secrets.token_hex(8)}"
        charge.processed_at = now
        charge.failure_reason = None
        await self.charges.save(charge)

        if job.commission is None:
            job.commission = JobCommission(rate=summary.commission_rate, amount=summary.commission_amount)
        job.commission.status = CommissionStatus.CHARGED
        job.commission.charged_at = now
        job.commission.charge_id = charge.processor_reference
        job.commission.failure_reason = None
        await self.jobs.save(job)

        log.info(f"Commission charged: amount={charge.commission_amount} ref={charge.processor_reference}")
        DispatchMetrics.commission_charge("succeeded")
        audit_event(
            "commission.charge",
            job_id=job.id,
            actor="system",
            detail=f"status=succeeded amount={charge.commission_amount} ref={charge.processor_reference}",
        )

        return ChargeOutcome(
            status="charged",
            transaction_id=charge.processor_reference,
            processor=charge.processor,
            processed_at=now,
            method=method,
        )

    async def retry_charge(self, job_id: str) -> ChargeOutcome:
        """Re-run only the charge step for a completed job."""
        job = await self.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job not found")
        if job.status != JobStatus.COMPLETED or job.commission is None or job.reported_payment is None:
            raise ConflictError("Job has not been completed")

        if job.commission.status == CommissionStatus.CHARGED:
            return ChargeOutcome(
                status="charged",
                transaction_id=job.commission.charge_id,
                processed_at=job.commission.charged_at,
                method=job.reported_payment.method,
            )
        if job.commission.status not in (CommissionStatus.FAILED, CommissionStatus.PENDING):
            raise ConflictError(f"Commission is {job.commission.status.value}, nothing to retry")
        if not job.vendor_id:
            raise ConflictError("Job has no vendor assigned")

        summary = evaluate_commission(
            job,
            job.reported_payment.amount,
            self.config,
            rate=job.commission.rate,
            expected_revenue=job.expected_revenue,
        )
        audit_event("commission.retry", job_id=job.id, actor="admin")
        return await self.charge_commission(job, summary, job.reported_payment.method)

    @staticmethod
    def _mark_job_commission_failed(job: Job, reason: str) -> None:
        if job.commission is None:
            job.commission = JobCommission()
        job.commission.status = CommissionStatus.FAILED
        job.commission.failure_reason = reason
