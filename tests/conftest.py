"""
Shared pytest fixtures for the Compliance Journey Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - default_tenant: Pre-created Tenant entity
    - other_tenant: Second tenant for isolation checks
    - cqc_template: Seeded CQC framework + five-step template (SQL store)
    - memory_repo: Seeded in-process journey repository
    - headers: Request headers carrying the default tenant
"""

import pytest

from app import create_app
from app.models import db as _db
from app.models.tenant import Tenant


# Default tenant ID used across tests.
DEFAULT_TEST_TENANT_ID = None


def _ensure_default_tenant():
    """Create a default tenant for tests if it doesn't exist.

    Returns the tenant ID.
    """
    global DEFAULT_TEST_TENANT_ID
    t = Tenant.query.filter_by(slug="test-default").first()
    if not t:
        t = Tenant(name="Test Default", slug="test-default")
        _db.session.add(t)
        _db.session.commit()
    DEFAULT_TEST_TENANT_ID = t.id
    return t.id


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        _ensure_default_tenant()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def default_tenant():
    """Return the auto-created default test tenant."""
    return Tenant.query.filter_by(slug="test-default").first()


@pytest.fixture()
def other_tenant():
    t = Tenant(name="Other Practice", slug="other-practice")
    _db.session.add(t)
    _db.session.commit()
    return t


@pytest.fixture()
def headers(default_tenant):
    return {"X-Tenant-ID": str(default_tenant.id), "X-User-ID": "practice-manager"}


# ── Journey fixtures ─────────────────────────────────────────────────────


@pytest.fixture()
def cqc_template():
    """Seed the built-in catalog into the SQL store and return the template id."""
    from app.services.journey_repository import SqlJourneyRepository
    from app.services.template_catalog import CQC_TEMPLATE_ID, seed_default_templates

    repo = SqlJourneyRepository()
    seed_default_templates(repo=repo)
    repo.commit()
    return CQC_TEMPLATE_ID


@pytest.fixture()
def memory_repo():
    """In-process repository pre-loaded with the built-in catalog."""
    from app.services.journey_repository import InMemoryJourneyRepository
    from app.services.template_catalog import seed_default_templates

    repo = InMemoryJourneyRepository()
    seed_default_templates(repo=repo)
    repo.commit()
    return repo

