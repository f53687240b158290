"""
Compliance Journey Platform
Tests — snapshot engine: velocity, estimated completion, daily upsert and
the progress series.
"""

from datetime import date, timedelta
from types import SimpleNamespace

import pytest

from app.core.exceptions import NotFoundError, ValidationError
from app.models.journey import JourneyProgressSnapshot
from app.services import evidence_link_service as evidence_svc
from app.services import journey_service as svc
from app.services import journey_snapshot

# Well after any real run date, so completion-time captures land on earlier days
TODAY = date(2031, 6, 16)


def _snap(day, completed):
    return SimpleNamespace(snapshot_date=day, completed_steps=completed)


@pytest.fixture()
def journey(default_tenant, cqc_template):
    return svc.create_journey(default_tenant.id, cqc_template)


def _complete_first_step(tenant_id, journey):
    step_id = journey["steps"][0]["id"]
    evidence_svc.link_evidence(tenant_id, step_id, "doc-1")
    evidence_svc.link_evidence(tenant_id, step_id, "doc-1")
    svc.update_step(tenant_id, step_id, {"status": "completed"})


class TestVelocity:
    def test_no_history_is_zero(self):
        assert journey_snapshot.compute_velocity([], 3, TODAY) == 0.0

    def test_one_week_delta(self):
        earlier = [_snap(TODAY - timedelta(days=7), 1)]
        assert journey_snapshot.compute_velocity(earlier, 3, TODAY) == 2.0

    def test_uses_latest_snapshot_outside_window(self):
        earlier = [
            _snap(TODAY - timedelta(days=14), 0),
            _snap(TODAY - timedelta(days=7), 2),
            _snap(TODAY - timedelta(days=2), 3),
        ]
        assert journey_snapshot.compute_velocity(earlier, 4, TODAY) == 2.0

    def test_falls_back_to_oldest_when_history_is_short(self):
        earlier = [_snap(TODAY - timedelta(days=2), 1), _snap(TODAY - timedelta(days=1), 2)]
        # (3 - 1) / 2 days * 7
        assert journey_snapshot.compute_velocity(earlier, 3, TODAY) == 7.0

    def test_rounded_to_two_decimals(self):
        earlier = [_snap(TODAY - timedelta(days=3), 0)]
        assert journey_snapshot.compute_velocity(earlier, 1, TODAY) == 2.33


class TestEstimatedCompletion:
    def test_nothing_remaining(self):
        assert journey_snapshot.estimate_completion_date(0, 0.0, TODAY) == TODAY

    def test_no_velocity(self):
        assert journey_snapshot.estimate_completion_date(3, 0.0, TODAY) is None

    def test_projects_forward(self):
        # 3 steps at 2 steps/week → 10.5 days → 11
        assert journey_snapshot.estimate_completion_date(3, 2.0, TODAY) == TODAY + timedelta(days=11)


class TestRecordSnapshot:
    def test_first_snapshot_has_zero_velocity(self, default_tenant, journey):
        snap = journey_snapshot.record_snapshot(default_tenant.id, journey["id"], TODAY)
        assert snap["snapshot_date"] == TODAY.isoformat()
        assert snap["total_steps"] == 5
        assert snap["completed_steps"] == 0
        assert snap["velocity"] == 0.0
        assert snap["estimated_completion_date"] is None

    def test_same_day_overwrites(self, default_tenant, journey):
        journey_snapshot.record_snapshot(default_tenant.id, journey["id"], TODAY)
        _complete_first_step(default_tenant.id, journey)
        snap = journey_snapshot.record_snapshot(default_tenant.id, journey["id"], TODAY)
        assert snap["completed_steps"] == 1
        assert snap["evidence_items_linked"] == 1
        assert snap["progress_percentage"] == 20.0
        rows = JourneyProgressSnapshot.query.filter_by(journey_id=journey["id"], snapshot_date=TODAY).all()
        assert len(rows) == 1

    def test_same_artifact_on_two_steps_counts_twice(self, default_tenant, journey):
        evidence_svc.link_evidence(default_tenant.id, journey["steps"][0]["id"], "policy-a")
        evidence_svc.link_evidence(default_tenant.id, journey["steps"][1]["id"], "policy-a")
        snap = journey_snapshot.record_snapshot(default_tenant.id, journey["id"], TODAY)
        assert snap["evidence_items_linked"] == 2

    def test_velocity_from_stored_history(self, default_tenant, journey):
        journey_snapshot.record_snapshot(default_tenant.id, journey["id"], TODAY - timedelta(days=7))
        _complete_first_step(default_tenant.id, journey)
        snap = journey_snapshot.record_snapshot(default_tenant.id, journey["id"], TODAY)
        assert snap["velocity"] == 1.0
        assert snap["estimated_completion_date"] == (TODAY + timedelta(days=28)).isoformat()

    def test_iso_string_date(self, default_tenant, journey):
        snap = journey_snapshot.record_snapshot(default_tenant.id, journey["id"], "2026-10-01")
        assert snap["snapshot_date"] == "2026-10-01"

    def test_bad_date(self, default_tenant, journey):
        with pytest.raises(ValidationError):
            journey_snapshot.record_snapshot(default_tenant.id, journey["id"], "yesterday")

    def test_missing_journey(self, default_tenant, cqc_template):
        with pytest.raises(NotFoundError):
            journey_snapshot.record_snapshot(default_tenant.id, "missing", TODAY)

    def test_other_tenant(self, other_tenant, journey):
        with pytest.raises(NotFoundError):
            journey_snapshot.record_snapshot(other_tenant.id, journey["id"], TODAY)


class TestRecordAll:
    def test_skips_cancelled(self, default_tenant, other_tenant, cqc_template):
        keep = svc.create_journey(default_tenant.id, cqc_template)
        svc.create_journey(other_tenant.id, cqc_template)
        dropped = svc.create_journey(default_tenant.id, cqc_template)
        svc.update_journey(default_tenant.id, dropped["id"], {"status": "cancelled"})

        result = journey_snapshot.record_all_snapshots(TODAY)
        assert result == {"snapshot_date": TODAY.isoformat(), "snapshots_recorded": 2, "failed": 0}
        assert JourneyProgressSnapshot.query.filter_by(journey_id=keep["id"]).count() == 1
        assert JourneyProgressSnapshot.query.filter_by(journey_id=dropped["id"]).count() == 0


class TestProgressSeries:
    def test_ascending_and_windowed(self, default_tenant, journey):
        for offset in (40, 20, 5, 1):
            journey_snapshot.record_snapshot(default_tenant.id, journey["id"], TODAY - timedelta(days=offset))
        journey_snapshot.record_snapshot(default_tenant.id, journey["id"], TODAY - timedelta(days=5))

        series = journey_snapshot.get_progress_series(default_tenant.id, journey["id"], 30, TODAY)
        expected = [(TODAY - timedelta(days=d)).isoformat() for d in (20, 5, 1)]
        assert series["dates"] == expected
        assert len(series["dates"]) == len(set(series["dates"]))
        assert series["window_days"] == 30
        assert len(series["progress_percentages"]) == 3
        assert len(series["completed_steps"]) == 3
        assert len(series["evidence_linked"]) == 3
        assert len(series["velocity"]) == 3

    def test_zero_window_is_today_only(self, default_tenant, journey):
        journey_snapshot.record_snapshot(default_tenant.id, journey["id"], TODAY)
        journey_snapshot.record_snapshot(default_tenant.id, journey["id"], TODAY - timedelta(days=1))
        series = journey_snapshot.get_progress_series(default_tenant.id, journey["id"], 0, TODAY)
        assert series["dates"] == [TODAY.isoformat()]

    def test_empty_series(self, default_tenant, journey):
        series = journey_snapshot.get_progress_series(default_tenant.id, journey["id"], 30, TODAY)
        assert series["dates"] == []

    @pytest.mark.parametrize("window", [-1, "30", 2.5])
    def test_bad_window(self, default_tenant, journey, window):
        with pytest.raises(ValidationError):
            journey_snapshot.get_progress_series(default_tenant.id, journey["id"], window, TODAY)
