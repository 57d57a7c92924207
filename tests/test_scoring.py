# tests/test_scoring.py
"""Tests for SLA risk, vendor ranking and scorecards"""
import math
from datetime import timedelta

import pytest

from app.core.dispatch.domain import (
    ComplianceIssue,
    GeoPoint,
    JobCommission,
    JobStatus,
    Urgency,
)
from app.core.dispatch.scoring import (
    compute_queue_entry,
    build_vendor_scorecard,
    escalation_queue,
    group_by_vendor,
    haversine_km,
    rank_vendors,
    sla_minutes,
)
from tests.conftest import NOW, make_job, make_vendor

PICKUP = GeoPoint(40.0, -74.0)


def minutes_ago(minutes: float):
    return NOW - timedelta(minutes=minutes)


class TestSlaBudget:
    @pytest.mark.parametrize("urgency,expected", [
        ("emergency", 15),
        ("urgent", 30),
        ("standard", 45),
        (Urgency.URGENT, 30),
        ("whenever", 45),
        (None, 45),
    ])
    def test_budget_by_urgency(self, urgency, expected):
        assert sla_minutes(urgency) == expected


class TestQueueEntry:
    def test_emergency_five_minutes_over_is_at_risk(self):
        job = make_job(urgency=Urgency.EMERGENCY, created_at=minutes_ago(20))
        entry = compute_queue_entry(job, NOW)

        assert entry.open_minutes == 20
        assert entry.minutes_remaining == -5
        assert entry.at_risk is True
        assert entry.severe is False

    def test_emergency_eleven_minutes_over_is_severe(self):
        job = make_job(urgency=Urgency.EMERGENCY, created_at=minutes_ago(26))
        entry = compute_queue_entry(job, NOW)

        assert entry.minutes_remaining == -11
        assert entry.at_risk is True
        assert entry.severe is True

    def test_exactly_at_budget_is_at_risk(self):
        entry = compute_queue_entry(make_job(created_at=minutes_ago(45)), NOW)
        assert entry.minutes_remaining == 0
        assert entry.at_risk is True

    def test_fresh_job_is_not_at_risk(self):
        entry = compute_queue_entry(make_job(created_at=minutes_ago(10)), NOW)
        assert entry.minutes_remaining == 35
        assert entry.at_risk is False
        assert entry.severe is False

    def test_open_minutes_rounds_half_up(self):
        entry = compute_queue_entry(make_job(created_at=NOW - timedelta(seconds=90)), NOW)
        assert entry.open_minutes == 2

    def test_since_assigned(self):
        job = make_job(
            status=JobStatus.ASSIGNED,
            vendor_id="vendor-1",
            created_at=minutes_ago(30),
            assigned_at=minutes_ago(12),
        )
        entry = compute_queue_entry(job, NOW)
        assert entry.since_assigned_minutes == 12

    def test_to_dict_uses_camel_case(self):
        data = compute_queue_entry(make_job(created_at=minutes_ago(5)), NOW).to_dict()
        assert data["jobId"] == "job-1"
        assert data["slaMinutes"] == 45
        assert data["minutesRemaining"] == 40
        assert data["atRisk"] is False
        assert data["createdAt"] == minutes_ago(5).isoformat()


class TestEscalationQueue:
    def test_sorted_most_overdue_first(self):
        entries = [
            compute_queue_entry(make_job(id="a", created_at=minutes_ago(50)), NOW),
            compute_queue_entry(make_job(id="b", created_at=minutes_ago(70)), NOW),
            compute_queue_entry(make_job(id="c", created_at=minutes_ago(5)), NOW),
        ]
        assert [e.job_id for e in escalation_queue(entries)] == ["b", "a"]

    def test_includes_manually_escalated(self):
        entries = [
            compute_queue_entry(make_job(id="a", created_at=minutes_ago(5), escalated_at=NOW), NOW),
            compute_queue_entry(make_job(id="b", created_at=minutes_ago(5)), NOW),
        ]
        queue = escalation_queue(entries)
        assert [e.job_id for e in queue] == ["a"]
        assert queue[0].escalated is True

    def test_empty(self):
        assert escalation_queue([]) == []


class TestHaversine:
    def test_one_degree_of_latitude(self):
        distance = haversine_km(GeoPoint(40.0, -74.0), GeoPoint(41.0, -74.0))
        assert distance == pytest.approx(111.19, abs=0.01)

    def test_same_point(self):
        assert haversine_km(PICKUP, PICKUP) == 0

    def test_missing_point_is_infinite(self):
        assert math.isinf(haversine_km(None, PICKUP))
        assert math.isinf(haversine_km(PICKUP, None))

    def test_non_finite_coordinate_is_infinite(self):
        assert math.isinf(haversine_km(GeoPoint(float("nan"), 0.0), PICKUP))


class TestRankVendors:
    def test_sorted_by_score(self):
        near = make_vendor(id="near", location=GeoPoint(40.01, -74.0))
        far = make_vendor(id="far", location=GeoPoint(40.2, -74.0))

        ranked = rank_vendors(PICKUP, [far, near], backlog={})

        assert [s.vendor_id for s in ranked] == ["near", "far"]
        assert ranked[0].score < ranked[1].score

    def test_backlog_weighs_two_per_job(self):
        busy = make_vendor(id="busy", location=PICKUP)
        ranked = rank_vendors(PICKUP, [busy], backlog={"busy": 3})
        assert ranked[0].score == pytest.approx(6.0)
        assert ranked[0].backlog == 3

    def test_paused_never_outranks_unpaused_at_equal_distance(self):
        paused = make_vendor(id="a-paused", location=PICKUP, updates_paused=True)
        live = make_vendor(id="z-live", location=PICKUP)

        ranked = rank_vendors(PICKUP, [paused, live], backlog={})

        assert [s.vendor_id for s in ranked] == ["z-live", "a-paused"]
        assert ranked[1].score == pytest.approx(5.0)
        assert ranked[1].paused is True

    def test_excludes_vendors_without_coordinates(self):
        nowhere = make_vendor(id="nowhere", location=None)
        here = make_vendor(id="here", location=PICKUP)
        assert [s.vendor_id for s in rank_vendors(PICKUP, [nowhere, here], backlog={})] == ["here"]

    def test_excludes_inactive(self):
        idle = make_vendor(id="idle", location=PICKUP, active=False)
        assert rank_vendors(PICKUP, [idle], backlog={}) == []

    def test_no_pickup_yields_nothing(self):
        assert rank_vendors(None, [make_vendor()], backlog={}) == []

    def test_limited_to_five(self):
        vendors = [
            make_vendor(id=f"v{i}", location=GeoPoint(40.0 + i * 0.01, -74.0))
            for i in range(8)
        ]
        ranked = rank_vendors(PICKUP, vendors, backlog={})
        assert [s.vendor_id for s in ranked] == ["v0", "v1", "v2", "v3", "v4"]

    def test_to_dict_rounds_distance(self):
        vendor = make_vendor(location=GeoPoint(41.0, -74.0), city="Newark", services=["Towing"])
        data = rank_vendors(PICKUP, [vendor], backlog={})[0].to_dict()
        assert data["distanceKm"] == 111.2
        assert data["city"] == "Newark"
        assert data["services"] == ["Towing"]


class TestScorecard:
    def _assigned(self, **overrides):
        data = dict(
            status=JobStatus.COMPLETED,
            vendor_id="vendor-1",
            created_at=minutes_ago(120),
            assigned_at=minutes_ago(100),
        )
        data.update(overrides)
        return make_job(**data)

    def test_aggregates_counts_and_money(self):
        jobs = [
            self._assigned(id="a", final_price=100, commission=JobCommission(rate=0.1, amount=10)),
            self._assigned(id="b", final_price=0, quoted_price=50),
            self._assigned(id="c", status=JobStatus.ASSIGNED, cancelled=True),
        ]
        card = build_vendor_scorecard("vendor-1", jobs, make_vendor())

        assert card.name == "Acme Towing"
        assert card.stats.assigned == 3
        assert card.stats.completed == 2
        assert card.stats.cancelled == 1
        assert card.stats.gross == 150
        assert card.stats.commission == 10

    def test_arrival_sla_hit_rate(self):
        jobs = [
            # standard budget 45: hit
            self._assigned(id="a", arrived_at=minutes_ago(80)),
            # 50 minutes to arrive: miss
            self._assigned(id="b", arrived_at=minutes_ago(50)),
            # emergency budget 15: hit
            self._assigned(id="c", urgency=Urgency.EMERGENCY, arrived_at=minutes_ago(90)),
        ]
        stats = build_vendor_scorecard("vendor-1", jobs, None).stats

        assert stats.avg_arrival_minutes == pytest.approx(26.7)
        assert stats.sla_hit_rate == 67

    def test_completion_and_rating_averages(self):
        jobs = [
            self._assigned(id="a", completed_at=minutes_ago(40), customer_rating=5),
            self._assigned(id="b", completed_at=minutes_ago(30), customer_rating=4),
        ]
        stats = build_vendor_scorecard("vendor-1", jobs, None).stats

        assert stats.avg_completion_minutes == 65.0
        assert stats.avg_rating == 4.5

    def test_no_samples_leaves_averages_empty(self):
        stats = build_vendor_scorecard("vendor-1", [self._assigned()], None).stats
        assert stats.avg_arrival_minutes is None
        assert stats.sla_hit_rate is None
        assert stats.avg_rating is None

    def test_unknown_vendor_uses_defaults(self):
        card = build_vendor_scorecard("ghost", [], None)
        assert card.name == "Vendor"
        assert card.compliance_status == "pending"

    def test_to_dict_includes_compliance(self):
        vendor = make_vendor(
            compliance_status="missing",
            compliance_missing=[ComplianceIssue("insurance", "Insurance", "expired")],
        )
        data = build_vendor_scorecard("vendor-1", [], vendor).to_dict()
        assert data["compliance"] == {
            "status": "missing",
            "issues": [{"key": "insurance", "label": "Insurance", "reason": "expired"}],
        }
        assert data["stats"]["gross"] == 0


def test_group_by_vendor_skips_unassigned():
    jobs = [
        make_job(id="a", vendor_id="v1"),
        make_job(id="b"),
        make_job(id="c", vendor_id="v1"),
        make_job(id="d", vendor_id="v2"),
    ]
    grouped = group_by_vendor(jobs)
    assert sorted(grouped) == ["v1", "v2"]
    assert [j.id for j in grouped["v1"]] == ["a", "c"]
