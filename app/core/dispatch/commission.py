"""
Commission engine.

Pure functions: no I/O, no clock.  Given a job and the amount the vendor
reports at completion, compute the platform commission and decide whether
the report looks like an under-report relative to the price that was
agreed up front.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional

from app.core.dispatch.domain import Job


@dataclass(frozen=True)
class CommissionConfig:
    """Commission policy, built once from settings."""
    enabled: bool = True
    default_rate: float = 0.30
    tolerance_pct: float = 0.15
    tolerance_amount: float = 25.0
    auto_charge: bool = True


@dataclass(frozen=True)
class CommissionSummary:
    reported_amount: float
    commission_rate: float
    commission_amount: float
    expected_revenue: float
    shortfall: float
    pct_drop: float
    flagged: bool
    flag_reason: Optional[str]
    should_auto_charge: bool


_CENT = Decimal("0.01")


def round_currency(value: Any) -> float:
    """Round to cents (half-up).  Non-numeric or non-finite input becomes 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return float(Decimal(str(number)).quantize(_CENT, rounding=ROUND_HALF_UP))


def _non_negative(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


def clamp_rate(rate: Any) -> float:
    try:
        value = float(rate)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return min(max(value, 0.0), 1.0)


def derive_expected_revenue(job: Job) -> float:
    """Best estimate of what the job should have earned.

    The largest of final price, quoted price and any previously stored
    expected revenue, so the figure never goes down once recorded.
    """
    candidates = [
        _non_negative(job.final_price),
        _non_negative(job.quoted_price),
        _non_negative(job.expected_revenue),
    ]
    best = max(candidates)
    return round_currency(best) if best > 0 else 0.0


def evaluate_commission(
    job: Job,
    reported_amount: Any,
    config: CommissionConfig,
    rate: Optional[float] = None,
    expected_revenue: Optional[float] = None,
) -> CommissionSummary:
    reported = round_currency(_non_negative(reported_amount))
    commission_rate = clamp_rate(config.default_rate if rate is None else rate)
    amount = round_currency(reported * commission_rate)

    expected = (
        derive_expected_revenue(job)
        if expected_revenue is None
        else round_currency(_non_negative(expected_revenue))
    )

    shortfall = round_currency(max(expected - reported, 0.0)) if expected > 0 else 0.0
    pct_drop = shortfall / expected if expected > 0 else 0.0

    flagged = (
        expected > 0
        and reported > 0
        and shortfall > 0
        and (shortfall >= config.tolerance_amount or pct_drop >= config.tolerance_pct)
    )

    reason = None
    if flagged:
        reason = (
            f"Reported {reported:.2f} vs expected {expected:.2f} "
            f"(shortfall {shortfall:.2f})"
        )

    return CommissionSummary(
        reported_amount=reported,
        commission_rate=commission_rate,
        commission_amount=amount,
        expected_revenue=expected,
        shortfall=shortfall,
        pct_drop=pct_drop,
        flagged=flagged,
        flag_reason=reason,
        should_auto_charge=bool(config.enabled and config.auto_charge and amount > 0),
    )


def commission_summary(job: Job) -> dict[str, Any]:
    """Display projection of a job's commission state."""
    commission = job.commission
    reported = job.reported_payment
    return {
        "reportedAmount": reported.amount if reported else None,
        "paymentMethod": reported.method if reported else None,
        "rate": commission.rate if commission else None,
        "amount": commission.amount if commission else None,
        "status": commission.status.value if commission else None,
        "chargedAt": commission.charged_at.isoformat() if commission and commission.charged_at else None,
        "chargeId": commission.charge_id if commission else None,
        "failureReason": commission.failure_reason if commission else None,
        "expectedRevenue": job.expected_revenue,
        "underReport": job.flags.under_report,
        "flagReason": job.flags.reason,
    }
