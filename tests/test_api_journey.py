"""
Compliance Journey Platform
Tests — journey REST API (blueprint wiring, status codes, error envelopes).
"""

import pytest

from app.services.template_catalog import CQC_FRAMEWORK_ID, CQC_TEMPLATE_ID


def _create(client, headers, **body):
    body.setdefault("template_id", CQC_TEMPLATE_ID)
    res = client.post("/api/v1/journeys", json=body, headers=headers)
    assert res.status_code == 201, res.get_json()
    return res.get_json()


@pytest.fixture()
def journey(client, headers, cqc_template):
    return _create(client, headers)


# ═════════════════════════════════════════════════════════════════════════
# Catalog
# ═════════════════════════════════════════════════════════════════════════


class TestCatalog:
    def test_list_frameworks(self, client, cqc_template):
        res = client.get("/api/v1/journey-frameworks")
        assert res.status_code == 200
        assert [f["id"] for f in res.get_json()["frameworks"]] == [CQC_FRAMEWORK_ID]

    def test_list_templates_by_framework(self, client, cqc_template):
        res = client.get(f"/api/v1/journey-templates?framework_id={CQC_FRAMEWORK_ID}")
        assert res.status_code == 200
        assert res.get_json()["total_count"] == 1

        res = client.get("/api/v1/journey-templates?framework_id=unknown")
        assert res.get_json()["total_count"] == 0

    def test_get_template(self, client, cqc_template):
        res = client.get(f"/api/v1/journey-templates/{CQC_TEMPLATE_ID}")
        assert res.status_code == 200
        body = res.get_json()
        assert [s["step_number"] for s in body["steps"]] == [1, 2, 3, 4, 5]
        assert body["framework"]["id"] == CQC_FRAMEWORK_ID

    def test_unknown_template_404(self, client, cqc_template):
        res = client.get("/api/v1/journey-templates/nope")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


# ═════════════════════════════════════════════════════════════════════════
# Journeys
# ═════════════════════════════════════════════════════════════════════════


class TestJourneyEndpoints:
    def test_create(self, client, headers, cqc_template):
        body = _create(client, headers, assigned_to="alice", target_completion_date="2027-01-31")
        assert body["status"] == "not_started"
        assert body["progress_percentage"] == 0.0
        assert body["assigned_to"] == "alice"
        assert len(body["steps"]) == 5

    def test_create_requires_tenant(self, client, cqc_template):
        res = client.post("/api/v1/journeys", json={"template_id": CQC_TEMPLATE_ID})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_unknown_tenant_forbidden(self, client, cqc_template):
        res = client.get("/api/v1/journeys", headers={"X-Tenant-ID": "99999"})
        assert res.status_code == 403

    def test_create_requires_template_id(self, client, headers):
        res = client.post("/api/v1/journeys", json={}, headers=headers)
        assert res.status_code == 400

    def test_create_unknown_template(self, client, headers, cqc_template):
        res = client.post("/api/v1/journeys", json={"template_id": "nope"}, headers=headers)
        assert res.status_code == 404

    def test_non_json_body_rejected(self, client, headers):
        res = client.post("/api/v1/journeys", data="template_id=x", headers=headers,
                          content_type="text/plain")
        assert res.status_code == 415

    def test_list_and_filter(self, client, headers, journey):
        _create(client, headers, assigned_to="bob")
        res = client.get("/api/v1/journeys", headers=headers)
        assert res.status_code == 200
        assert res.get_json()["total_count"] == 2

        res = client.get("/api/v1/journeys?assigned_to=bob", headers=headers)
        assert res.get_json()["total_count"] == 1

    def test_get_unknown_404(self, client, headers, cqc_template):
        res = client.get("/api/v1/journeys/does-not-exist", headers=headers)
        assert res.status_code == 404

    def test_other_tenant_gets_404(self, client, other_tenant, journey):
        res = client.get(f"/api/v1/journeys/{journey['id']}",
                         headers={"X-Tenant-ID": str(other_tenant.id)})
        assert res.status_code == 404

    def test_pause(self, client, headers, journey):
        res = client.put(f"/api/v1/journeys/{journey['id']}", json={"status": "paused"},
                         headers=headers)
        assert res.status_code == 200
        assert res.get_json()["status"] == "paused"

    def test_stale_if_match_conflict(self, client, headers, journey):
        url = f"/api/v1/journeys/{journey['id']}"
        client.put(url, json={"assigned_to": "alice"}, headers=headers)
        res = client.put(url, json={"assigned_to": "bob"}, headers={**headers, "If-Match": "1"})
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONCURRENCY_CONFLICT"

    def test_progress_percentage_not_writable(self, client, headers, journey):
        res = client.put(f"/api/v1/journeys/{journey['id']}", json={"progress_percentage": 90},
                         headers=headers)
        assert res.status_code == 422

    def test_analytics(self, client, headers, journey):
        res = client.get("/api/v1/journeys/analytics", headers=headers)
        assert res.status_code == 200
        body = res.get_json()
        assert body["total_journeys"] == 1
        assert body["by_status"]["not_started"] == 1

    def test_progress_series(self, client, headers, journey):
        res = client.post(f"/api/v1/journeys/{journey['id']}/snapshots", json={}, headers=headers)
        assert res.status_code == 201
        res = client.get(f"/api/v1/journeys/{journey['id']}/progress?days=30", headers=headers)
        assert res.status_code == 200
        assert len(res.get_json()["dates"]) == 1

    @pytest.mark.parametrize("days", ["-1", "soon"])
    def test_progress_bad_days(self, client, headers, journey, days):
        res = client.get(f"/api/v1/journeys/{journey['id']}/progress?days={days}", headers=headers)
        assert res.status_code == 400

    def test_list_steps_filter(self, client, headers, journey):
        res = client.get(f"/api/v1/journeys/{journey['id']}/steps?category=policy,training",
                         headers=headers)
        assert res.status_code == 200
        assert [s["step_number"] for s in res.get_json()["steps"]] == [2, 3]


# ═════════════════════════════════════════════════════════════════════════
# Steps & evidence
# ═════════════════════════════════════════════════════════════════════════


class TestStepEndpoints:
    def test_prerequisite_not_met(self, client, headers, journey):
        step_two = journey["steps"][1]["id"]
        res = client.put(f"/api/v1/journey-steps/{step_two}", json={"status": "in_progress"},
                         headers=headers)
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_PREREQUISITE_NOT_MET"
        assert body["details"]["incomplete_prerequisites"] == [journey["steps"][0]["step_id"]]

    def test_insufficient_evidence(self, client, headers, journey):
        step_one = journey["steps"][0]["id"]
        res = client.put(f"/api/v1/journey-steps/{step_one}", json={"status": "completed"},
                         headers=headers)
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_INSUFFICIENT_EVIDENCE"

    def test_link_complete_and_unlink(self, client, headers, journey):
        step_one = journey["steps"][0]["id"]
        res = client.post(f"/api/v1/journey-steps/{step_one}/evidence",
                          json={"evidence_item_id": "doc-1", "relevance_score": 8},
                          headers={**headers, "Idempotency-Key": "req-1"})
        assert res.status_code == 201
        link = res.get_json()
        assert link["linked_by"] == "practice-manager"

        replay = client.post(f"/api/v1/journey-steps/{step_one}/evidence",
                             json={"evidence_item_id": "doc-1", "relevance_score": 8},
                             headers={**headers, "Idempotency-Key": "req-1"})
        assert replay.get_json()["id"] == link["id"]

        res = client.put(f"/api/v1/journey-steps/{step_one}", json={"status": "completed"},
                         headers=headers)
        assert res.status_code == 200
        assert res.get_json()["journey"]["progress_percentage"] == 20.0

        res = client.get(f"/api/v1/journey-steps/{step_one}/evidence", headers=headers)
        assert res.get_json()["total_count"] == 1

        res = client.delete(f"/api/v1/journey-evidence/{link['id']}", headers=headers)
        assert res.status_code == 200
        assert [w["code"] for w in res.get_json()["warnings"]] == ["EVIDENCE_BELOW_MINIMUM"]

    def test_link_requires_evidence_id(self, client, headers, journey):
        step_one = journey["steps"][0]["id"]
        res = client.post(f"/api/v1/journey-steps/{step_one}/evidence", json={}, headers=headers)
        assert res.status_code == 400

    def test_relevance_out_of_range(self, client, headers, journey):
        step_one = journey["steps"][0]["id"]
        res = client.post(f"/api/v1/journey-steps/{step_one}/evidence",
                          json={"evidence_item_id": "doc-1", "relevance_score": 11},
                          headers=headers)
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_INVALID_RANGE"

    def test_step_write_on_paused_journey(self, client, headers, journey):
        client.put(f"/api/v1/journeys/{journey['id']}", json={"status": "paused"}, headers=headers)
        step_one = journey["steps"][0]["id"]
        res = client.put(f"/api/v1/journey-steps/{step_one}", json={"completion_percentage": 10},
                         headers=headers)
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_JOURNEY_PAUSED"

    def test_review_requires_status(self, client, headers, journey):
        step_one = journey["steps"][0]["id"]
        res = client.post(f"/api/v1/journey-steps/{step_one}/review", json={}, headers=headers)
        assert res.status_code == 400

    def test_celebrate_unknown_milestone(self, client, headers, cqc_template):
        res = client.post("/api/v1/journey-milestones/nope/celebrate", headers=headers)
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════
# Health
# ═════════════════════════════════════════════════════════════════════════


class TestHealth:
    def test_ready(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.status_code == 200

    def test_live(self, client):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        checks = res.get_json()["checks"]
        assert checks["database"]["status"] == "ok"
        assert checks["journey_repository"]["kind"] == "sql"

    def test_health(self, client):
        res = client.get("/api/v1/health")
        assert res.get_json()["app"] == "Compliance Journey Platform"
