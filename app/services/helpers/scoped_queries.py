"""
Tenant-scoped query helpers.

Every get-by-id against a tenant-owned journey table goes through these
helpers instead of db.session.get(Model, pk). A bare .get() would let one
practice read another practice's journey by guessing an id.

Usage:
    journey = get_scoped(PracticeJourney, journey_id, tenant_id=tenant_id)
    step = get_scoped(JourneyStepInstance, step_id, tenant_id=tenant_id,
                      journey_id=journey_id)
    link = get_scoped_or_none(JourneyStepEvidence, link_id, tenant_id=tenant_id)

Each keyword maps directly to a column on the model. A scope keyword naming a
column the model lacks raises ValueError so the bug surfaces in tests rather
than silently allowing an unscoped lookup.
"""

import logging

from sqlalchemy import select

from app.core.exceptions import NotFoundError
from app.models import db

logger = logging.getLogger(__name__)


def _applicable_scopes(model, pk, scopes: dict) -> dict:
    provided = {k: v for k, v in scopes.items() if v is not None}
    if not provided:
        raise ValueError(
            f"{model.__name__} id={pk} requires at least one scope filter "
            "(tenant_id or journey_id). Unscoped lookups bypass tenant isolation."
        )
    missing = sorted(f for f in provided if not hasattr(model, f))
    if missing:
        raise ValueError(
            f"{model.__name__} has no column(s) {missing}; refusing to build "
            "a partially scoped lookup."
        )
    return provided


def get_scoped(
    model,
    pk: str,
    *,
    tenant_id: int | None = None,
    journey_id: str | None = None,
):
    """Fetch a single entity by PK with mandatory scope filter.

    Cross-tenant access is indistinguishable from a missing record: both
    raise NotFoundError → HTTP 404.

    Raises:
        ValueError: no scope given, or a scope column missing on the model.
        NotFoundError: entity does not exist or belongs to another scope.
    """
    scopes = _applicable_scopes(model, pk, {"tenant_id": tenant_id, "journey_id": journey_id})

    stmt = select(model).where(model.id == pk)
    for field, value in scopes.items():
        stmt = stmt.where(getattr(model, field) == value)

    result = db.session.execute(stmt).scalar_one_or_none()

    if result is None:
        logger.debug("get_scoped: %s id=%s not found in scope %s",
                     model.__name__, pk, scopes)
        raise NotFoundError(resource=model.__name__, resource_id=pk)

    return result


def get_scoped_or_none(
    model,
    pk: str,
    *,
    tenant_id: int | None = None,
    journey_id: str | None = None,
):
    """Same as get_scoped but returns None instead of raising NotFoundError."""
    try:
        return get_scoped(model, pk, tenant_id=tenant_id, journey_id=journey_id)
    except NotFoundError:
        return None
