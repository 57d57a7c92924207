# tests/test_settlement.py
"""Tests for job completion and commission charging"""
import pytest

from app.core.dispatch.commission import CommissionConfig
from app.core.dispatch.domain import (
    ChargeStatus,
    CommissionStatus,
    JobStatus,
    PaymentActor,
    VendorBilling,
)
from app.core.dispatch.errors import ConflictError, NotFoundError, ValidationError
from app.core.dispatch.settlement import (
    SettlementService,
    parse_amount,
    parse_payment_method,
    sanitize_note,
)
from tests.conftest import make_job, make_vendor


def _service(job_repo, vendor_repo, charge_repo, clock, **config):
    return SettlementService(job_repo, vendor_repo, charge_repo, CommissionConfig(**config), clock=clock)


@pytest.fixture
def service(job_repo, vendor_repo, charge_repo, clock):
    return _service(job_repo, vendor_repo, charge_repo, clock)


@pytest.fixture
def assigned_job(job_repo, vendor_repo):
    vendor_repo.put(make_vendor())
    return job_repo.put(make_job(
        status=JobStatus.ASSIGNED,
        vendor_id="vendor-1",
        vendor_name="Acme Towing",
        final_price=120,
    ))


class TestInputRules:
    @pytest.mark.parametrize("raw", [0, -10, "abc", None, float("inf")])
    def test_amount_must_be_positive(self, raw):
        with pytest.raises(ValidationError) as exc_info:
            parse_amount(raw)
        assert exc_info.value.detail == "amount must be greater than 0"

    def test_payment_method_normalized(self):
        assert parse_payment_method("  Cash ") == "cash"
        assert parse_payment_method("") is None
        assert parse_payment_method(None) is None

    def test_unsupported_payment_method(self):
        with pytest.raises(ValidationError):
            parse_payment_method("bitcoin")

    def test_note_trimmed(self):
        assert sanitize_note("  ok  ") == "ok"
        assert len(sanitize_note("x" * 500)) == 240
        assert sanitize_note("   ") is None


class TestCompleteJob:
    @pytest.mark.asyncio
    async def test_complete_and_charge(self, service, assigned_job, job_repo, charge_repo):
        result = await service.complete_job("job-1", 100, method="card", note="paid at door")

        job = job_repo.rows["job-1"]
        assert job.status == JobStatus.COMPLETED
        assert job.completed_at is not None
        assert job.payment_status == "paid"
        assert job.reported_payment.amount == 100
        assert job.reported_payment.actor == PaymentActor.ADMIN
        assert job.commission.status == CommissionStatus.CHARGED
        assert job.commission.amount == 30.0
        assert job.commission.charge_id.startswith("SIM-")

        charge = charge_repo.rows["job-1"]
        assert charge.status == ChargeStatus.SUCCEEDED
        assert charge.processor == "stripe"
        assert charge.commission_amount == 30.0

        assert result.charge.status == "charged"
        assert result.charge.to_dict()["method"] == "card"

    @pytest.mark.asyncio
    async def test_under_report_flag_recorded(self, service, assigned_job, job_repo):
        result = await service.complete_job("job-1", 80)

        job = job_repo.rows["job-1"]
        assert result.summary.flagged is True
        assert job.flags.under_report is True
        assert "shortfall 40.00" in job.flags.reason
        assert job.expected_revenue == 120.0

    @pytest.mark.asyncio
    async def test_recomplete_does_not_charge_twice(self, service, assigned_job, job_repo, charge_repo):
        first = await service.complete_job("job-1", 100)
        charged_amount = job_repo.rows["job-1"].commission.amount
        second = await service.complete_job("job-1", 100)

        assert charged_amount == first.summary.commission_amount
        assert job_repo.rows["job-1"].commission.amount == charged_amount
        assert charge_repo.rows["job-1"].commission_amount == charged_amount
        assert charge_repo.upsert_count == 1
        assert second.charge.status == "charged"
        assert second.charge.transaction_id == first.charge.transaction_id
        assert job_repo.rows["job-1"].commission.charge_id == first.charge.transaction_id

    @pytest.mark.asyncio
    async def test_no_payment_method_fails_softly(self, service, job_repo, vendor_repo, charge_repo):
        vendor_repo.put(make_vendor(billing=VendorBilling()))
        job_repo.put(make_job(status=JobStatus.ARRIVED, vendor_id="vendor-1", final_price=100))

        result = await service.complete_job("job-1", 100)

        assert result.charge.status == "failed"
        assert result.charge.reason == "No payment method on file"
        assert charge_repo.rows["job-1"].status == ChargeStatus.FAILED
        job = job_repo.rows["job-1"]
        assert job.status == JobStatus.COMPLETED
        assert job.commission.status == CommissionStatus.FAILED

    @pytest.mark.asyncio
    async def test_missing_vendor_record(self, service, job_repo, charge_repo):
        job_repo.put(make_job(status=JobStatus.ASSIGNED, vendor_id="ghost", final_price=100))

        result = await service.complete_job("job-1", 100)

        assert result.charge.reason == "Vendor record missing"
        assert charge_repo.rows == {}
        assert job_repo.rows["job-1"].commission.status == CommissionStatus.FAILED

    @pytest.mark.asyncio
    async def test_auto_charge_disabled_skips(self, job_repo, vendor_repo, charge_repo, clock, assigned_job):
        service = _service(job_repo, vendor_repo, charge_repo, clock, auto_charge=False)
        result = await service.complete_job("job-1", 100)

        assert result.charge is None
        assert job_repo.rows["job-1"].commission.status == CommissionStatus.SKIPPED
        assert charge_repo.rows == {}

    @pytest.mark.asyncio
    async def test_explicit_auto_charge_false(self, service, assigned_job, job_repo):
        result = await service.complete_job("job-1", 100, auto_charge=False)
        assert result.charge is None
        assert job_repo.rows["job-1"].commission.status == CommissionStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_unassigned_job_cannot_complete(self, service, job_repo):
        job_repo.put(make_job())
        with pytest.raises(ConflictError):
            await service.complete_job("job-1", 100)
        assert job_repo.rows["job-1"].status == JobStatus.UNASSIGNED

    @pytest.mark.asyncio
    async def test_missing_job(self, service):
        with pytest.raises(NotFoundError):
            await service.complete_job("nope", 100)

    @pytest.mark.asyncio
    async def test_invalid_amount_rejected_before_lookup(self, service):
        with pytest.raises(ValidationError):
            await service.complete_job("nope", 0)


class TestRetryCharge:
    @pytest.mark.asyncio
    async def test_retry_after_payment_method_added(self, service, job_repo, vendor_repo, charge_repo):
        vendor_repo.put(make_vendor(billing=VendorBilling()))
        job_repo.put(make_job(status=JobStatus.ASSIGNED, vendor_id="vendor-1", final_price=100))
        await service.complete_job("job-1", 100)
        failed_id = charge_repo.rows["job-1"].id

        vendor_repo.put(make_vendor())
        outcome = await service.retry_charge("job-1")

        assert outcome.status == "charged"
        assert charge_repo.rows["job-1"].id == failed_id
        assert charge_repo.rows["job-1"].status == ChargeStatus.SUCCEEDED
        assert job_repo.rows["job-1"].commission.status == CommissionStatus.CHARGED

    @pytest.mark.asyncio
    async def test_retry_on_charged_is_idempotent(self, service, assigned_job, charge_repo):
        first = await service.complete_job("job-1", 100)
        outcome = await service.retry_charge("job-1")

        assert outcome.status == "charged"
        assert outcome.transaction_id == first.charge.transaction_id
        assert charge_repo.upsert_count == 1

    @pytest.mark.asyncio
    async def test_retry_requires_completion(self, service, assigned_job):
        with pytest.raises(ConflictError):
            await service.retry_charge("job-1")

    @pytest.mark.asyncio
    async def test_retry_skipped_commission_conflicts(self, service, assigned_job):
        await service.complete_job("job-1", 100, auto_charge=False)
        with pytest.raises(ConflictError):
            await service.retry_charge("job-1")
