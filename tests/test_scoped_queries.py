"""
Tests for app/services/helpers/scoped_queries.py

Security-critical: these helpers are the only way the SQL repository loads a
journey, step or evidence link by id.

Scenarios covered:
  1. ValueError when called with no scope parameter at all
  2. ValueError when the provided scope field does not exist on the model
  3. NotFoundError when PK is correct but tenant does not match
  4. Correct entity returned when PK + scope both match
  5. get_scoped_or_none returns None instead of raising NotFoundError
"""

import pytest

from app.core.exceptions import NotFoundError
from app.models.journey import JourneyStepDefinition, JourneyStepInstance, PracticeJourney
from app.services import journey_service as svc
from app.services.helpers.scoped_queries import get_scoped, get_scoped_or_none


@pytest.fixture()
def journey(default_tenant, cqc_template):
    return svc.create_journey(default_tenant.id, cqc_template)


class TestScopeRequired:
    def test_no_scope_raises(self, journey):
        with pytest.raises(ValueError, match="requires at least one scope"):
            get_scoped(PracticeJourney, journey["id"])

    def test_none_scope_values_count_as_missing(self, journey):
        with pytest.raises(ValueError):
            get_scoped(PracticeJourney, journey["id"], tenant_id=None, journey_id=None)

    def test_scope_column_missing_on_model(self, cqc_template):
        # Step definitions are global catalog rows with no tenant column
        with pytest.raises(ValueError, match="has no column"):
            get_scoped(JourneyStepDefinition, "any", tenant_id=1)

    def test_or_none_still_raises_value_error(self, journey):
        with pytest.raises(ValueError):
            get_scoped_or_none(PracticeJourney, journey["id"])


class TestTenantIsolation:
    def test_match_returns_entity(self, default_tenant, journey):
        found = get_scoped(PracticeJourney, journey["id"], tenant_id=default_tenant.id)
        assert found.id == journey["id"]

    def test_other_tenant_not_found(self, other_tenant, journey):
        with pytest.raises(NotFoundError) as exc_info:
            get_scoped(PracticeJourney, journey["id"], tenant_id=other_tenant.id)
        assert exc_info.value.resource == "PracticeJourney"

    def test_other_tenant_or_none(self, other_tenant, journey):
        assert get_scoped_or_none(PracticeJourney, journey["id"], tenant_id=other_tenant.id) is None

    def test_journey_scope_narrows_steps(self, default_tenant, journey, cqc_template):
        second = svc.create_journey(default_tenant.id, cqc_template)
        step_id = journey["steps"][0]["id"]
        found = get_scoped(JourneyStepInstance, step_id, tenant_id=default_tenant.id,
                           journey_id=journey["id"])
        assert found.id == step_id
        with pytest.raises(NotFoundError):
            get_scoped(JourneyStepInstance, step_id, tenant_id=default_tenant.id,
                       journey_id=second["id"])
