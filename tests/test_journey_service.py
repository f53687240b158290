"""
Compliance Journey Platform
Tests — journey service (instantiation, step state machine, journey
state machine, reviews, milestones) against the SQL store.

Covers:
    1. create_journey
    2. update_step guards (transitions, prerequisites, evidence)
    3. progress / status derivation through step updates
    4. update_journey (pause, resume, cancel, terminal)
    5. list_journeys / list_steps filters
    6. review_step, celebrate_milestone
    7. End-to-end scenarios
"""

from datetime import date, timedelta
from unittest import mock

import pytest

from app.core.exceptions import (
    ConcurrencyConflictError,
    CreationFailedError,
    InsufficientEvidenceError,
    InvalidRangeError,
    InvalidTransitionError,
    JourneyPausedError,
    JourneyTerminalError,
    NotFoundError,
    PrerequisiteNotMetError,
    StorageUnavailableError,
    ValidationError,
)
from app.models.journey import JourneyProgressSnapshot, JourneyStepInstance, PracticeJourney
from app.services import evidence_link_service as evidence_svc
from app.services import journey_service as svc
from app.services.journey_repository import SqlJourneyRepository
from app.services.template_catalog import CQC_TEMPLATE_ID

MIN_EVIDENCE = {1: 1, 2: 5, 3: 3, 4: 2, 5: 2}


def _def_id(n):
    return f"{CQC_TEMPLATE_ID}-step-{n}"


def _step_ids(journey):
    return {s["step_number"]: s["id"] for s in journey["steps"]}


def _link(tenant_id, step_id, count, prefix="doc"):
    for i in range(count):
        evidence_svc.link_evidence(tenant_id, step_id, f"{prefix}-{step_id[:8]}-{i}")


def _complete(tenant_id, journey, n):
    step_id = _step_ids(journey)[n]
    _link(tenant_id, step_id, MIN_EVIDENCE[n])
    return svc.update_step(tenant_id, step_id, {"status": "completed"}, actor="tester")


def _add_failing_on_step(real_add, step_number):
    """Wrap repo.add so adding the given step instance raises a storage error."""
    def _add(obj):
        if isinstance(obj, JourneyStepInstance) and obj.step_number == step_number:
            raise StorageUnavailableError("step store unavailable")
        real_add(obj)
    return _add


@pytest.fixture()
def journey(default_tenant, cqc_template):
    return svc.create_journey(default_tenant.id, cqc_template, assigned_to="alice", created_by="owner")


# ═══════════════════════════════════════════════════════════════════════════
#  1. create_journey
# ═══════════════════════════════════════════════════════════════════════════


class TestCreateJourney:
    def test_creates_journey_and_all_steps(self, journey, default_tenant):
        assert journey["status"] == "not_started"
        assert journey["progress_percentage"] == 0.0
        assert journey["practice_id"] == default_tenant.id
        assert journey["version"] == 1
        assert [s["step_number"] for s in journey["steps"]] == [1, 2, 3, 4, 5]
        assert all(s["status"] == "not_started" for s in journey["steps"])
        assert all(s["completion_percentage"] == 0 for s in journey["steps"])
        assert all(s["assigned_to"] == "alice" for s in journey["steps"])
        assert journey["steps"][0]["step_id"] == _def_id(1)

    def test_target_date_parsed(self, default_tenant, cqc_template):
        created = svc.create_journey(default_tenant.id, cqc_template,
                                     target_completion_date="2026-12-31")
        assert created["target_completion_date"] == "2026-12-31"

    def test_bad_target_date(self, default_tenant, cqc_template):
        with pytest.raises(ValidationError):
            svc.create_journey(default_tenant.id, cqc_template, target_completion_date="31/12/2026")

    def test_unknown_template(self, default_tenant, cqc_template):
        with pytest.raises(NotFoundError):
            svc.create_journey(default_tenant.id, "no-such-template")

    def test_inactive_template(self, default_tenant, cqc_template):
        from app.models import db
        from app.models.journey import JourneyTemplate
        db.session.get(JourneyTemplate, cqc_template).is_active = False
        db.session.commit()
        with pytest.raises(NotFoundError):
            svc.create_journey(default_tenant.id, cqc_template)

    def test_two_journeys_from_same_template(self, default_tenant, cqc_template):
        first = svc.create_journey(default_tenant.id, cqc_template)
        second = svc.create_journey(default_tenant.id, cqc_template)
        assert first["id"] != second["id"]
        assert set(_step_ids(first).values()).isdisjoint(_step_ids(second).values())

    def test_step_failure_rolls_back_everything(self, default_tenant, cqc_template):
        repo = SqlJourneyRepository()
        with mock.patch.object(repo, "add", side_effect=_add_failing_on_step(repo.add, 3)):
            with pytest.raises(CreationFailedError) as exc_info:
                svc.create_journey(default_tenant.id, cqc_template, repo=repo)
        assert exc_info.value.details["template_id"] == cqc_template
        assert PracticeJourney.query.count() == 0
        assert JourneyStepInstance.query.count() == 0
        assert svc.list_journeys(default_tenant.id)["total_count"] == 0


# ═══════════════════════════════════════════════════════════════════════════
#  2. update_step guards
# ═══════════════════════════════════════════════════════════════════════════


class TestUpdateStep:
    def test_start_first_step(self, journey, default_tenant):
        step_id = _step_ids(journey)[1]
        result = svc.update_step(default_tenant.id, step_id, {"status": "in_progress"})
        assert result["status"] == "in_progress"
        assert result["started_at"] is not None
        assert result["journey"]["status"] == "in_progress"
        assert result["journey"]["version"] == 2
        assert result["step"]["title"] == "Understand CQC Requirements"

    def test_prerequisite_not_met(self, journey, default_tenant):
        step_id = _step_ids(journey)[2]
        with pytest.raises(PrerequisiteNotMetError) as exc:
            svc.update_step(default_tenant.id, step_id, {"status": "in_progress"})
        assert exc.value.details["incomplete_prerequisites"] == [_def_id(1)]

        after = svc.get_journey(default_tenant.id, journey["id"])
        assert after["steps"][1]["status"] == "not_started"
        assert after["version"] == 1

    def test_skipped_prerequisite_does_not_unlock(self, journey, default_tenant):
        ids = _step_ids(journey)
        svc.update_step(default_tenant.id, ids[1], {"status": "skipped"})
        with pytest.raises(PrerequisiteNotMetError):
            svc.update_step(default_tenant.id, ids[2], {"status": "in_progress"})

    def test_skip_and_block_are_not_gated(self, journey, default_tenant):
        ids = _step_ids(journey)
        assert svc.update_step(default_tenant.id, ids[3], {"status": "skipped"})["status"] == "skipped"

    def test_insufficient_evidence(self, journey, default_tenant):
        step_id = _step_ids(journey)[1]
        with pytest.raises(InsufficientEvidenceError) as exc:
            svc.update_step(default_tenant.id, step_id, {"status": "completed"})
        assert exc.value.details == {"step_id": step_id, "linked": 0, "required": 1}

    def test_duplicate_links_count_once(self, journey, default_tenant):
        ids = _step_ids(journey)
        _complete(default_tenant.id, journey, 1)
        for _ in range(5):
            evidence_svc.link_evidence(default_tenant.id, ids[2], "same-policy")
        with pytest.raises(InsufficientEvidenceError) as exc:
            svc.update_step(default_tenant.id, ids[2], {"status": "completed"})
        assert exc.value.details["linked"] == 1

    def test_invalid_transition(self, journey, default_tenant):
        step_id = _step_ids(journey)[1]
        with pytest.raises(InvalidTransitionError):
            svc.update_step(default_tenant.id, step_id, {"status": "blocked"})

    def test_completed_is_terminal(self, journey, default_tenant):
        _complete(default_tenant.id, journey, 1)
        step_id = _step_ids(journey)[1]
        with pytest.raises(InvalidTransitionError):
            svc.update_step(default_tenant.id, step_id, {"status": "in_progress"})

    def test_same_status_is_noop(self, journey, default_tenant):
        step_id = _step_ids(journey)[1]
        svc.update_step(default_tenant.id, step_id, {"status": "in_progress"})
        result = svc.update_step(default_tenant.id, step_id, {"status": "in_progress"})
        assert result["status"] == "in_progress"
        assert result["milestones_achieved"] == []

    def test_completion_forces_100(self, journey, default_tenant):
        step_id = _step_ids(journey)[1]
        evidence_svc.link_evidence(default_tenant.id, step_id, "ev-1")
        result = svc.update_step(default_tenant.id, step_id,
                                 {"status": "completed", "completion_percentage": 30})
        assert result["completion_percentage"] == 100
        assert result["completed_at"] is not None

    def test_percentage_implicitly_starts(self, journey, default_tenant):
        step_id = _step_ids(journey)[1]
        result = svc.update_step(default_tenant.id, step_id, {"completion_percentage": 50})
        assert result["status"] == "in_progress"
        assert result["completion_percentage"] == 50
        assert result["journey"]["progress_percentage"] == 10.0

    def test_percentage_out_of_range(self, journey, default_tenant):
        step_id = _step_ids(journey)[1]
        with pytest.raises(InvalidRangeError):
            svc.update_step(default_tenant.id, step_id, {"completion_percentage": 101})
        with pytest.raises(InvalidRangeError):
            svc.update_step(default_tenant.id, step_id, {"completion_percentage": -1})

    def test_percentage_not_a_number(self, journey, default_tenant):
        step_id = _step_ids(journey)[1]
        with pytest.raises(ValidationError):
            svc.update_step(default_tenant.id, step_id, {"completion_percentage": "lots"})

    def test_percentage_of_completed_step_is_frozen(self, journey, default_tenant):
        _complete(default_tenant.id, journey, 1)
        with pytest.raises(ValidationError):
            svc.update_step(default_tenant.id, _step_ids(journey)[1], {"completion_percentage": 40})

    def test_unknown_field_rejected(self, journey, default_tenant):
        with pytest.raises(ValidationError):
            svc.update_step(default_tenant.id, _step_ids(journey)[1], {"progress_percentage": 50})

    def test_unknown_status_rejected(self, journey, default_tenant):
        with pytest.raises(ValidationError):
            svc.update_step(default_tenant.id, _step_ids(journey)[1], {"status": "done"})

    def test_metadata_update(self, journey, default_tenant):
        step_id = _step_ids(journey)[1]
        result = svc.update_step(default_tenant.id, step_id,
                                 {"notes": "Reading the guidance", "due_date": "2026-11-01",
                                  "assigned_to": "bob"})
        assert result["notes"] == "Reading the guidance"
        assert result["due_date"] == "2026-11-01"
        assert result["assigned_to"] == "bob"
        assert result["status"] == "not_started"

    def test_block_and_unblock(self, journey, default_tenant):
        step_id = _step_ids(journey)[1]
        svc.update_step(default_tenant.id, step_id, {"status": "in_progress"})
        assert svc.update_step(default_tenant.id, step_id, {"status": "blocked"})["status"] == "blocked"
        assert svc.update_step(default_tenant.id, step_id, {"status": "in_progress"})["status"] == "in_progress"

    def test_stale_expected_version(self, journey, default_tenant):
        step_id = _step_ids(journey)[1]
        svc.update_step(default_tenant.id, step_id, {"notes": "v2"})
        with pytest.raises(ConcurrencyConflictError) as exc:
            svc.update_step(default_tenant.id, step_id, {"notes": "v3"}, expected_version=1)
        assert exc.value.retryable is False

    def test_matching_expected_version(self, journey, default_tenant):
        step_id = _step_ids(journey)[1]
        result = svc.update_step(default_tenant.id, step_id, {"notes": "ok"}, expected_version=1)
        assert result["journey"]["version"] == 2

    def test_other_tenant_cannot_see_step(self, journey, other_tenant):
        with pytest.raises(NotFoundError):
            svc.update_step(other_tenant.id, _step_ids(journey)[1], {"status": "in_progress"})

    def test_completion_records_snapshot(self, journey, default_tenant):
        _complete(default_tenant.id, journey, 1)
        snaps = JourneyProgressSnapshot.query.filter_by(journey_id=journey["id"]).all()
        assert len(snaps) == 1
        assert snaps[0].completed_steps == 1


# ═══════════════════════════════════════════════════════════════════════════
#  3. update_journey
# ═══════════════════════════════════════════════════════════════════════════


class TestUpdateJourney:
    def test_pause_blocks_step_changes(self, journey, default_tenant):
        paused = svc.update_journey(default_tenant.id, journey["id"], {"status": "paused"})
        assert paused["status"] == "paused"
        with pytest.raises(JourneyPausedError):
            svc.update_step(default_tenant.id, _step_ids(journey)[1], {"status": "in_progress"})
        with pytest.raises(JourneyPausedError):
            evidence_svc.link_evidence(default_tenant.id, _step_ids(journey)[1], "ev-1")

    def test_cannot_request_completed(self, journey, default_tenant):
        with pytest.raises(InvalidTransitionError):
            svc.update_journey(default_tenant.id, journey["id"], {"status": "completed"})

    def test_progress_is_not_writable(self, journey, default_tenant):
        with pytest.raises(ValidationError):
            svc.update_journey(default_tenant.id, journey["id"], {"progress_percentage": 90})

    def test_cancel_is_terminal(self, journey, default_tenant):
        svc.update_journey(default_tenant.id, journey["id"], {"status": "cancelled"})
        with pytest.raises(JourneyTerminalError):
            svc.update_step(default_tenant.id, _step_ids(journey)[1], {"status": "in_progress"})
        with pytest.raises(JourneyTerminalError):
            svc.update_journey(default_tenant.id, journey["id"], {"assigned_to": "carol"})
        with pytest.raises(JourneyTerminalError):
            svc.update_journey(default_tenant.id, journey["id"], {"status": "in_progress"})

    def test_resume_from_not_started_pause(self, journey, default_tenant):
        svc.update_journey(default_tenant.id, journey["id"], {"status": "paused"})
        resumed = svc.update_journey(default_tenant.id, journey["id"], {"status": "in_progress"})
        assert resumed["status"] == "not_started"

    def test_owner_and_target_date(self, journey, default_tenant):
        updated = svc.update_journey(default_tenant.id, journey["id"],
                                     {"assigned_to": "carol", "target_completion_date": "2027-01-31"})
        assert updated["assigned_to"] == "carol"
        assert updated["target_completion_date"] == "2027-01-31"
        assert updated["version"] == 2

    def test_stale_version(self, journey, default_tenant):
        svc.update_journey(default_tenant.id, journey["id"], {"assigned_to": "carol"})
        with pytest.raises(ConcurrencyConflictError):
            svc.update_journey(default_tenant.id, journey["id"], {"assigned_to": "dave"},
                               expected_version=1)

    def test_missing_journey(self, default_tenant, cqc_template):
        with pytest.raises(NotFoundError):
            svc.update_journey(default_tenant.id, "missing", {"status": "paused"})


# ═══════════════════════════════════════════════════════════════════════════
#  4. Reads and filters
# ═══════════════════════════════════════════════════════════════════════════


class TestReads:
    def test_get_journey_detail(self, journey, default_tenant):
        _complete(default_tenant.id, journey, 1)
        detail = svc.get_journey(default_tenant.id, journey["id"])
        assert detail["template"]["id"] == CQC_TEMPLATE_ID
        assert detail["steps"][0]["step"]["min_evidence_count"] == 1
        assert len(detail["steps"][0]["evidence"]) == 1
        assert detail["progress_percentage"] == 20.0
        assert detail["milestones"] == []

    def test_get_journey_other_tenant(self, journey, other_tenant):
        with pytest.raises(NotFoundError):
            svc.get_journey(other_tenant.id, journey["id"])

    def test_list_journeys_filters(self, journey, default_tenant, other_tenant, cqc_template):
        second = svc.create_journey(default_tenant.id, cqc_template, assigned_to="bob")
        svc.update_journey(default_tenant.id, second["id"], {"status": "paused"})
        svc.create_journey(other_tenant.id, cqc_template)

        everything = svc.list_journeys(default_tenant.id)
        assert everything["total_count"] == 2
        assert everything["journeys"][0]["template_name"] == "CQC Registration & Compliance Journey"

        paused = svc.list_journeys(default_tenant.id, {"status": ["paused"]})
        assert [j["id"] for j in paused["journeys"]] == [second["id"]]
        assert paused["filters_applied"] == {"status": ["paused"]}

        mine = svc.list_journeys(default_tenant.id, {"assigned_to": "alice"})
        assert [j["id"] for j in mine["journeys"]] == [journey["id"]]

        found = svc.list_journeys(default_tenant.id, {"search_term": "registration"})
        assert found["total_count"] == 2
        none = svc.list_journeys(default_tenant.id, {"search_term": "dentistry"})
        assert none["total_count"] == 0

    def test_list_journeys_overdue(self, default_tenant, cqc_template):
        late = svc.create_journey(default_tenant.id, cqc_template,
                                  target_completion_date=date.today() - timedelta(days=3))
        svc.create_journey(default_tenant.id, cqc_template,
                           target_completion_date=date.today() + timedelta(days=30))
        result = svc.list_journeys(default_tenant.id, {"overdue_only": True})
        assert [j["id"] for j in result["journeys"]] == [late["id"]]

    def test_list_journeys_pagination(self, default_tenant, cqc_template):
        for _ in range(3):
            svc.create_journey(default_tenant.id, cqc_template)
        page = svc.list_journeys(default_tenant.id, {"page": 2, "page_size": 2})
        assert page["total_count"] == 3
        assert len(page["journeys"]) == 1
        assert page["page"] == 2

    def test_list_journeys_bad_status(self, default_tenant):
        with pytest.raises(ValidationError):
            svc.list_journeys(default_tenant.id, {"status": ["finished"]})

    def test_list_steps_filters(self, journey, default_tenant):
        _complete(default_tenant.id, journey, 1)
        done = svc.list_steps(default_tenant.id, journey["id"], {"status": ["completed"]})
        assert [s["step_number"] for s in done["steps"]] == [1]

        training = svc.list_steps(default_tenant.id, journey["id"], {"category": ["training"]})
        assert [s["step_number"] for s in training["steps"]] == [3]

        missing = svc.list_steps(default_tenant.id, journey["id"], {"missing_evidence": True})
        assert [s["step_number"] for s in missing["steps"]] == [2, 3, 4, 5]

    def test_list_steps_overdue(self, journey, default_tenant):
        step_id = _step_ids(journey)[1]
        svc.update_step(default_tenant.id, step_id,
                        {"due_date": (date.today() - timedelta(days=1)).isoformat()})
        result = svc.list_steps(default_tenant.id, journey["id"], {"overdue_only": True})
        assert [s["id"] for s in result["steps"]] == [step_id]


# ═══════════════════════════════════════════════════════════════════════════
#  5. Reviews and milestones
# ═══════════════════════════════════════════════════════════════════════════


class TestReviewAndMilestones:
    def test_review_completed_step(self, journey, default_tenant):
        _complete(default_tenant.id, journey, 1)
        reviewed = svc.review_step(default_tenant.id, _step_ids(journey)[1], "approved",
                                   reviewed_by="auditor", review_notes="Looks good")
        assert reviewed["review_status"] == "approved"
        assert reviewed["reviewed_by"] == "auditor"
        assert reviewed["status"] == "completed"

    def test_needs_revision_does_not_reopen(self, journey, default_tenant):
        _complete(default_tenant.id, journey, 1)
        reviewed = svc.review_step(default_tenant.id, _step_ids(journey)[1], "needs_revision")
        assert reviewed["status"] == "completed"

    def test_review_requires_completed_step(self, journey, default_tenant):
        with pytest.raises(ValidationError):
            svc.review_step(default_tenant.id, _step_ids(journey)[1], "approved")

    def test_review_bad_verdict(self, journey, default_tenant):
        with pytest.raises(ValidationError):
            svc.review_step(default_tenant.id, _step_ids(journey)[1], "rejected")

    def test_celebrate(self, journey, default_tenant):
        _complete(default_tenant.id, journey, 1)
        result = _complete(default_tenant.id, journey, 2)
        milestone = result["milestones_achieved"][0]
        assert milestone["milestone_type"] == "progress_25"
        assert milestone["is_celebrated"] is False
        celebrated = svc.celebrate_milestone(default_tenant.id, milestone["id"])
        assert celebrated["is_celebrated"] is True

    def test_celebrate_other_tenant(self, journey, default_tenant, other_tenant):
        _complete(default_tenant.id, journey, 1)
        result = _complete(default_tenant.id, journey, 2)
        with pytest.raises(NotFoundError):
            svc.celebrate_milestone(other_tenant.id, result["milestones_achieved"][0]["id"])


# ═══════════════════════════════════════════════════════════════════════════
#  6. End-to-end scenarios
# ═══════════════════════════════════════════════════════════════════════════


@pytest.mark.scenario
class TestScenarios:
    def test_full_journey_to_completion(self, journey, default_tenant):
        expected = {1: 20.0, 2: 40.0, 3: 60.0, 4: 80.0, 5: 100.0}
        achieved = []
        for n in (1, 2, 3, 4, 5):
            result = _complete(default_tenant.id, journey, n)
            assert result["journey"]["progress_percentage"] == expected[n]
            achieved.extend(m["milestone_type"] for m in result["milestones_achieved"])

        assert result["journey"]["status"] == "completed"
        assert sorted(achieved) == sorted(
            ["progress_25", "progress_50", "progress_75", "progress_100", "journey_completed"]
        )
        detail = svc.get_journey(default_tenant.id, journey["id"])
        assert detail["actual_completion_date"] is not None
        assert len(detail["milestones"]) == 5

        with pytest.raises(JourneyTerminalError):
            svc.update_journey(default_tenant.id, journey["id"], {"status": "paused"})

    def test_insufficient_evidence_then_link_and_retry(self, journey, default_tenant):
        ids = _step_ids(journey)
        _complete(default_tenant.id, journey, 1)
        _link(default_tenant.id, ids[2], 4)

        with pytest.raises(InsufficientEvidenceError) as exc:
            svc.update_step(default_tenant.id, ids[2], {"status": "completed"})
        assert exc.value.details["linked"] == 4
        assert exc.value.details["required"] == 5
        assert svc.get_journey(default_tenant.id, journey["id"])["progress_percentage"] == 20.0

        evidence_svc.link_evidence(default_tenant.id, ids[2], "policy-five")
        result = svc.update_step(default_tenant.id, ids[2], {"status": "completed"})
        assert result["status"] == "completed"
        assert result["journey"]["progress_percentage"] == 40.0

    def test_pause_at_forty_and_resume(self, journey, default_tenant):
        _complete(default_tenant.id, journey, 1)
        _complete(default_tenant.id, journey, 2)
        ids = _step_ids(journey)

        paused = svc.update_journey(default_tenant.id, journey["id"], {"status": "paused"})
        assert paused["status"] == "paused"
        assert paused["progress_percentage"] == 40.0
        with pytest.raises(JourneyPausedError):
            svc.update_step(default_tenant.id, ids[3], {"status": "in_progress"})

        resumed = svc.update_journey(default_tenant.id, journey["id"], {"status": "in_progress"})
        assert resumed["status"] == "in_progress"
        assert resumed["progress_percentage"] == 40.0

        result = svc.update_step(default_tenant.id, ids[3], {"status": "in_progress"})
        assert result["status"] == "in_progress"
