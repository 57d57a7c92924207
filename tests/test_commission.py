# tests/test_commission.py
"""Tests for commission evaluation and the under-report flag"""
import math

import pytest

from app.core.dispatch.commission import (
    CommissionConfig,
    clamp_rate,
    commission_summary,
    derive_expected_revenue,
    evaluate_commission,
    round_currency,
)
from app.core.dispatch.domain import CommissionStatus, JobCommission
from tests.conftest import make_job


class TestRoundCurrency:
    def test_half_up(self):
        assert round_currency(2.675) == 2.68
        assert round_currency(0.125) == 0.13

    def test_non_finite_is_zero(self):
        assert round_currency(math.inf) == 0.0
        assert round_currency("abc") == 0.0


class TestClampRate:
    @pytest.mark.parametrize("raw,expected", [(0.3, 0.3), (-1, 0.0), (5, 1.0), ("x", 0.0)])
    def test_clamps_into_unit_interval(self, raw, expected):
        assert clamp_rate(raw) == expected


class TestExpectedRevenue:
    def test_takes_largest_candidate(self):
        job = make_job(quoted_price=100, final_price=120, expected_revenue=90)
        assert derive_expected_revenue(job) == 120.0

    def test_never_decreases(self):
        job = make_job(quoted_price=100, final_price=80, expected_revenue=150)
        assert derive_expected_revenue(job) == 150.0

    def test_zero_when_nothing_known(self):
        assert derive_expected_revenue(make_job()) == 0.0


class TestEvaluateCommission:
    def test_under_report_flagged(self):
        job = make_job(final_price=120)
        summary = evaluate_commission(job, 80, CommissionConfig())

        assert summary.flagged is True
        assert summary.shortfall == 40.0
        assert summary.flag_reason == "Reported 80.00 vs expected 120.00 (shortfall 40.00)"
        assert summary.commission_amount == 24.0

    def test_small_shortfall_not_flagged(self):
        job = make_job(final_price=120)
        summary = evaluate_commission(job, 110, CommissionConfig())

        assert summary.flagged is False
        assert summary.flag_reason is None
        assert summary.shortfall == 10.0

    def test_percentage_tolerance_alone_flags(self):
        config = CommissionConfig(tolerance_amount=1000, tolerance_pct=0.10)
        summary = evaluate_commission(make_job(final_price=100), 85, config)
        assert summary.flagged is True

    def test_overpayment_not_flagged(self):
        summary = evaluate_commission(make_job(final_price=100), 150, CommissionConfig())
        assert summary.flagged is False
        assert summary.shortfall == 0.0

    def test_no_expected_revenue_not_flagged(self):
        summary = evaluate_commission(make_job(), 50, CommissionConfig())
        assert summary.flagged is False
        assert summary.expected_revenue == 0.0

    def test_explicit_rate_overrides_default(self):
        summary = evaluate_commission(make_job(), 200, CommissionConfig(), rate=0.1)
        assert summary.commission_rate == 0.1
        assert summary.commission_amount == 20.0

    def test_auto_charge_requires_enabled_and_amount(self):
        assert evaluate_commission(make_job(), 100, CommissionConfig()).should_auto_charge is True
        assert evaluate_commission(make_job(), 100, CommissionConfig(enabled=False)).should_auto_charge is False
        assert evaluate_commission(make_job(), 100, CommissionConfig(auto_charge=False)).should_auto_charge is False
        assert evaluate_commission(make_job(), 100, CommissionConfig(default_rate=0)).should_auto_charge is False


class TestCommissionSummary:
    def test_empty_job(self):
        data = commission_summary(make_job())
        assert data["status"] is None
        assert data["underReport"] is False

    def test_reflects_commission_block(self):
        job = make_job(commission=JobCommission(rate=0.3, amount=30, status=CommissionStatus.CHARGED, charge_id="SIM-1"))
        data = commission_summary(job)
        assert data["status"] == "charged"
        assert data["chargeId"] == "SIM-1"
        assert data["amount"] == 30
