"""
Compliance Journey Platform
Journey repository — storage boundary of the journey engine.

Services hold every business rule; a repository only loads, stores and
groups writes into a unit of work. Two interchangeable implementations:

    SqlJourneyRepository      db.session (Flask-SQLAlchemy); durable.
                              Optimistic concurrency via PracticeJourney.version.
    InMemoryJourneyRepository process-local dicts of transient ORM instances;
                              per-journey RLock, rollback restores touched rows.

The active repository is chosen by the JOURNEY_REPOSITORY config key and
stored in app.extensions["journey_repository"].

Store failures never leak SQLAlchemy types: inside ``guard()`` stale-version
and integrity failures become a retryable ConcurrencyConflictError, and
connectivity failures become StorageUnavailableError.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from abc import ABC, abstractmethod
from datetime import date

from flask import current_app, has_app_context
from sqlalchemy import inspect as sa_inspect, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import ConcurrencyConflictError, StorageUnavailableError
from app.models import db
from app.models.base import new_id
from app.models.journey import (
    ComplianceFramework,
    JourneyMilestone,
    JourneyProgressSnapshot,
    JourneyStepDefinition,
    JourneyStepEvidence,
    JourneyStepInstance,
    JourneyTemplate,
    PracticeJourney,
)
from app.services.helpers.scoped_queries import get_scoped_or_none

logger = logging.getLogger(__name__)


class JourneyRepository(ABC):
    """Storage operations the journey services rely on."""

    # ── Catalog (global) ─────────────────────────────────────────────────

    @abstractmethod
    def get_framework(self, framework_id: str) -> ComplianceFramework | None: ...

    @abstractmethod
    def list_frameworks(self) -> list[ComplianceFramework]: ...

    @abstractmethod
    def get_template(self, template_id: str) -> JourneyTemplate | None: ...

    @abstractmethod
    def list_templates(self, framework_id: str | None = None) -> list[JourneyTemplate]: ...

    @abstractmethod
    def list_step_definitions(self, template_id: str) -> list[JourneyStepDefinition]:
        """Step definitions of a template ordered by step_number."""

    # ── Journey state (tenant-scoped) ────────────────────────────────────

    @abstractmethod
    def get_journey(self, tenant_id: int, journey_id: str) -> PracticeJourney | None: ...

    @abstractmethod
    def list_journeys(self, tenant_id: int | None) -> list[PracticeJourney]:
        """Journeys of one tenant, or of every tenant when tenant_id is None."""

    @abstractmethod
    def get_step(self, tenant_id: int, step_id: str) -> JourneyStepInstance | None: ...

    @abstractmethod
    def list_steps(self, tenant_id: int, journey_id: str) -> list[JourneyStepInstance]:
        """Step instances of a journey ordered by step_number."""

    @abstractmethod
    def get_evidence(self, tenant_id: int, link_id: str) -> JourneyStepEvidence | None: ...

    @abstractmethod
    def list_evidence(self, tenant_id: int, step_ids: list[str]) -> list[JourneyStepEvidence]: ...

    @abstractmethod
    def find_evidence_by_key(self, tenant_id: int, idempotency_key: str) -> JourneyStepEvidence | None: ...

    @abstractmethod
    def journey_id_of(self, tenant_id: int, model, pk: str) -> str | None:
        """Owning journey id of a step, evidence link or milestone, without loading it for write."""

    @abstractmethod
    def get_milestone(self, tenant_id: int, milestone_id: str) -> JourneyMilestone | None: ...

    @abstractmethod
    def list_milestones(self, tenant_id: int, journey_id: str) -> list[JourneyMilestone]: ...

    @abstractmethod
    def get_snapshot(self, tenant_id: int, journey_id: str, snapshot_date: date) -> JourneyProgressSnapshot | None: ...

    @abstractmethod
    def list_snapshots(self, tenant_id: int, journey_id: str,
                       since: date | None = None, until: date | None = None) -> list[JourneyProgressSnapshot]:
        """Snapshots ascending by date, optionally bounded (inclusive)."""

    # ── Unit of work ─────────────────────────────────────────────────────

    @abstractmethod
    def add(self, obj) -> None: ...

    @abstractmethod
    def delete(self, obj) -> None: ...

    @abstractmethod
    def flush(self) -> None: ...

    @abstractmethod
    def commit(self) -> None: ...

    @abstractmethod
    def rollback(self) -> None: ...

    @abstractmethod
    def guard(self):
        """Context manager translating store failures into journey errors."""

    @abstractmethod
    def journey_lock(self, journey_id: str | None):
        """Context manager serialising writers of one journey."""


# ═════════════════════════════════════════════════════════════════════════════
# SQLAlchemy implementation
# ═════════════════════════════════════════════════════════════════════════════


class SqlJourneyRepository(JourneyRepository):
    """Repository on the Flask-SQLAlchemy session of the current app context."""

    kind = "sql"

    def get_framework(self, framework_id):
        return db.session.get(ComplianceFramework, framework_id)

    def list_frameworks(self):
        stmt = (
            select(ComplianceFramework)
            .where(ComplianceFramework.is_active.is_(True))
            .order_by(ComplianceFramework.name)
        )
        return list(db.session.execute(stmt).scalars())

    def get_template(self, template_id):
        return db.session.get(JourneyTemplate, template_id)

    def list_templates(self, framework_id=None):
        stmt = select(JourneyTemplate).where(JourneyTemplate.is_active.is_(True))
        if framework_id:
            stmt = stmt.where(JourneyTemplate.framework_id == framework_id)
        return list(db.session.execute(stmt.order_by(JourneyTemplate.name)).scalars())

    def list_step_definitions(self, template_id):
        stmt = (
            select(JourneyStepDefinition)
            .where(JourneyStepDefinition.template_id == template_id)
            .order_by(JourneyStepDefinition.step_number)
        )
        return list(db.session.execute(stmt).scalars())

    def get_journey(self, tenant_id, journey_id):
        return get_scoped_or_none(PracticeJourney, journey_id, tenant_id=tenant_id)

    def list_journeys(self, tenant_id):
        stmt = select(PracticeJourney)
        if tenant_id is not None:
            stmt = stmt.where(PracticeJourney.tenant_id == tenant_id)
        stmt = stmt.order_by(PracticeJourney.created_at.desc(), PracticeJourney.id)
        return list(db.session.execute(stmt).scalars())

    def get_step(self, tenant_id, step_id):
        return get_scoped_or_none(JourneyStepInstance, step_id, tenant_id=tenant_id)

    def list_steps(self, tenant_id, journey_id):
        stmt = (
            select(JourneyStepInstance)
            .where(
                JourneyStepInstance.tenant_id == tenant_id,
                JourneyStepInstance.journey_id == journey_id,
            )
            .order_by(JourneyStepInstance.step_number)
        )
        return list(db.session.execute(stmt).scalars())

    def get_evidence(self, tenant_id, link_id):
        return get_scoped_or_none(JourneyStepEvidence, link_id, tenant_id=tenant_id)

    def list_evidence(self, tenant_id, step_ids):
        if not step_ids:
            return []
        stmt = (
            select(JourneyStepEvidence)
            .where(
                JourneyStepEvidence.tenant_id == tenant_id,
                JourneyStepEvidence.journey_step_id.in_(list(step_ids)),
            )
            .order_by(JourneyStepEvidence.linked_at, JourneyStepEvidence.id)
        )
        return list(db.session.execute(stmt).scalars())

    def find_evidence_by_key(self, tenant_id, idempotency_key):
        stmt = select(JourneyStepEvidence).where(
            JourneyStepEvidence.tenant_id == tenant_id,
            JourneyStepEvidence.idempotency_key == idempotency_key,
        )
        return db.session.execute(stmt).scalar_one_or_none()

    def journey_id_of(self, tenant_id, model, pk):
        if model is JourneyStepEvidence:
            stmt = (
                select(JourneyStepInstance.journey_id)
                .join(JourneyStepEvidence, JourneyStepEvidence.journey_step_id == JourneyStepInstance.id)
                .where(JourneyStepEvidence.id == pk, JourneyStepEvidence.tenant_id == tenant_id)
            )
        else:
            stmt = select(model.journey_id).where(model.id == pk, model.tenant_id == tenant_id)
        return db.session.execute(stmt).scalar_one_or_none()

    def get_milestone(self, tenant_id, milestone_id):
        return get_scoped_or_none(JourneyMilestone, milestone_id, tenant_id=tenant_id)

    def list_milestones(self, tenant_id, journey_id):
        stmt = (
            select(JourneyMilestone)
            .where(
                JourneyMilestone.tenant_id == tenant_id,
                JourneyMilestone.journey_id == journey_id,
            )
            .order_by(JourneyMilestone.achieved_at, JourneyMilestone.milestone_type)
        )
        return list(db.session.execute(stmt).scalars())

    def get_snapshot(self, tenant_id, journey_id, snapshot_date):
        stmt = select(JourneyProgressSnapshot).where(
            JourneyProgressSnapshot.tenant_id == tenant_id,
            JourneyProgressSnapshot.journey_id == journey_id,
            JourneyProgressSnapshot.snapshot_date == snapshot_date,
        )
        return db.session.execute(stmt).scalar_one_or_none()

    def list_snapshots(self, tenant_id, journey_id, since=None, until=None):
        stmt = select(JourneyProgressSnapshot).where(
            JourneyProgressSnapshot.tenant_id == tenant_id,
            JourneyProgressSnapshot.journey_id == journey_id,
        )
        if since is not None:
            stmt = stmt.where(JourneyProgressSnapshot.snapshot_date >= since)
        if until is not None:
            stmt = stmt.where(JourneyProgressSnapshot.snapshot_date <= until)
        stmt = stmt.order_by(JourneyProgressSnapshot.snapshot_date)
        return list(db.session.execute(stmt).scalars())

    def add(self, obj):
        db.session.add(obj)

    def delete(self, obj):
        db.session.delete(obj)

    def flush(self):
        with self.guard():
            db.session.flush()

    def commit(self):
        with self.guard():
            db.session.commit()

    def rollback(self):
        db.session.rollback()

    @contextlib.contextmanager
    def guard(self):
        try:
            yield
        except (StaleDataError, IntegrityError) as exc:
            db.session.rollback()
            logger.warning("Journey write conflict: %s", type(exc).__name__)
            raise ConcurrencyConflictError(
                details={"reason": type(exc).__name__},
            ) from exc
        except (OperationalError, DBAPIError) as exc:
            db.session.rollback()
            logger.error("Journey store unavailable: %s", exc)
            raise StorageUnavailableError(
                "Journey store is unavailable", details={"reason": type(exc).__name__},
            ) from exc

    def journey_lock(self, journey_id):
        # Writers are serialised by the version column, not by a lock
        return contextlib.nullcontext()


# ═════════════════════════════════════════════════════════════════════════════
# In-memory implementation
# ═════════════════════════════════════════════════════════════════════════════


def _column_keys(obj) -> list[str]:
    return [attr.key for attr in sa_inspect(type(obj)).column_attrs]


def _column_state(obj) -> dict:
    return {key: getattr(obj, key) for key in _column_keys(obj)}


def _apply_column_defaults(obj) -> None:
    """Fill unset columns from their Python-side defaults, as an INSERT would."""
    mapper = sa_inspect(type(obj))
    for attr in mapper.column_attrs:
        if getattr(obj, attr.key) is not None:
            continue
        column = attr.columns[0]
        default = column.default
        if default is None:
            continue
        if default.is_callable:
            setattr(obj, attr.key, default.arg(None))
        elif default.is_scalar:
            setattr(obj, attr.key, default.arg)


class InMemoryJourneyRepository(JourneyRepository):
    """
    Process-local repository holding transient ORM instances.

    Unit-of-work bookkeeping is per thread: rows added since the last commit
    are discarded on rollback, and rows read inside journey_lock() since the
    last commit get their column values restored. Reads outside a lock are
    not tracked.
    """

    kind = "memory"

    def __init__(self):
        self._rows: dict[type, dict[str, object]] = {}
        self._mutex = threading.RLock()
        self._journey_locks: dict[str, threading.RLock] = {}
        self._uow = threading.local()

    # ── unit-of-work bookkeeping ─────────────────────────────────────────

    def _state(self):
        if not hasattr(self._uow, "added"):
            self._uow.added = []
            self._uow.deleted = []
            self._uow.touched = {}
            self._uow.depth = 0
        return self._uow

    def _touch(self, obj):
        if obj is None:
            return None
        state = self._state()
        if not state.depth:
            return obj
        touched = state.touched
        if id(obj) not in touched:
            touched[id(obj)] = (obj, _column_state(obj))
        return obj

    def _touch_all(self, objs):
        for obj in objs:
            self._touch(obj)
        return objs

    def _table(self, model) -> dict:
        return self._rows.setdefault(model, {})

    def _values(self, model) -> list:
        with self._mutex:
            return list(self._table(model).values())

    # ── catalog ──────────────────────────────────────────────────────────

    def get_framework(self, framework_id):
        with self._mutex:
            return self._table(ComplianceFramework).get(framework_id)

    def list_frameworks(self):
        rows = [f for f in self._values(ComplianceFramework) if f.is_active]
        return sorted(rows, key=lambda f: f.name)

    def get_template(self, template_id):
        with self._mutex:
            return self._table(JourneyTemplate).get(template_id)

    def list_templates(self, framework_id=None):
        rows = [
            t for t in self._values(JourneyTemplate)
            if t.is_active and (not framework_id or t.framework_id == framework_id)
        ]
        return sorted(rows, key=lambda t: t.name)

    def list_step_definitions(self, template_id):
        rows = [d for d in self._values(JourneyStepDefinition) if d.template_id == template_id]
        return sorted(rows, key=lambda d: d.step_number)

    # ── journey state ────────────────────────────────────────────────────

    def _scoped(self, model, tenant_id, pk):
        with self._mutex:
            obj = self._table(model).get(pk)
        if obj is None or obj.tenant_id != tenant_id:
            return None
        return self._touch(obj)

    def get_journey(self, tenant_id, journey_id):
        return self._scoped(PracticeJourney, tenant_id, journey_id)

    def list_journeys(self, tenant_id):
        rows = [
            j for j in self._values(PracticeJourney)
            if tenant_id is None or j.tenant_id == tenant_id
        ]
        rows.sort(key=lambda j: j.id)
        rows.sort(key=lambda j: j.created_at, reverse=True)
        return self._touch_all(rows)

    def get_step(self, tenant_id, step_id):
        return self._scoped(JourneyStepInstance, tenant_id, step_id)

    def list_steps(self, tenant_id, journey_id):
        rows = [
            s for s in self._values(JourneyStepInstance)
            if s.tenant_id == tenant_id and s.journey_id == journey_id
        ]
        return self._touch_all(sorted(rows, key=lambda s: s.step_number))

    def get_evidence(self, tenant_id, link_id):
        return self._scoped(JourneyStepEvidence, tenant_id, link_id)

    def list_evidence(self, tenant_id, step_ids):
        wanted = set(step_ids)
        rows = [
            e for e in self._values(JourneyStepEvidence)
            if e.tenant_id == tenant_id and e.journey_step_id in wanted
        ]
        return self._touch_all(sorted(rows, key=lambda e: (e.linked_at, e.id)))

    def find_evidence_by_key(self, tenant_id, idempotency_key):
        for link in self._values(JourneyStepEvidence):
            if link.tenant_id == tenant_id and link.idempotency_key == idempotency_key:
                return self._touch(link)
        return None

    def journey_id_of(self, tenant_id, model, pk):
        with self._mutex:
            obj = self._table(model).get(pk)
            if obj is None or obj.tenant_id != tenant_id:
                return None
            if model is JourneyStepEvidence:
                step = self._table(JourneyStepInstance).get(obj.journey_step_id)
                return step.journey_id if step is not None else None
            return obj.journey_id

    def get_milestone(self, tenant_id, milestone_id):
        return self._scoped(JourneyMilestone, tenant_id, milestone_id)

    def list_milestones(self, tenant_id, journey_id):
        rows = [
            m for m in self._values(JourneyMilestone)
            if m.tenant_id == tenant_id and m.journey_id == journey_id
        ]
        return self._touch_all(sorted(rows, key=lambda m: (m.achieved_at, m.milestone_type)))

    def get_snapshot(self, tenant_id, journey_id, snapshot_date):
        for snap in self._values(JourneyProgressSnapshot):
            if (snap.tenant_id == tenant_id and snap.journey_id == journey_id
                    and snap.snapshot_date == snapshot_date):
                return self._touch(snap)
        return None

    def list_snapshots(self, tenant_id, journey_id, since=None, until=None):
        rows = [
            s for s in self._values(JourneyProgressSnapshot)
            if s.tenant_id == tenant_id and s.journey_id == journey_id
            and (since is None or s.snapshot_date >= since)
            and (until is None or s.snapshot_date <= until)
        ]
        return self._touch_all(sorted(rows, key=lambda s: s.snapshot_date))

    # ── unit of work ─────────────────────────────────────────────────────

    def add(self, obj):
        if getattr(obj, "id", None) is None:
            obj.id = new_id()
        _apply_column_defaults(obj)
        with self._mutex:
            table = self._table(type(obj))
            if obj.id in table and table[obj.id] is not obj:
                raise ConcurrencyConflictError(
                    f"{type(obj).__name__} id={obj.id} already exists",
                    details={"reason": "duplicate_id"},
                )
            table[obj.id] = obj
        self._state().added.append(obj)

    def delete(self, obj):
        with self._mutex:
            self._table(type(obj)).pop(obj.id, None)
        self._state().deleted.append(obj)

    def flush(self):
        return None

    def commit(self):
        state = self._state()
        for obj, before in state.touched.values():
            if isinstance(obj, PracticeJourney) and _column_state(obj) != before:
                obj.version = (before.get("version") or 0) + 1
        self._reset()

    def rollback(self):
        state = self._state()
        with self._mutex:
            for obj in state.added:
                self._table(type(obj)).pop(obj.id, None)
            for obj in state.deleted:
                self._table(type(obj))[obj.id] = obj
        for obj, before in state.touched.values():
            for key, value in before.items():
                setattr(obj, key, value)
        self._reset()

    def _reset(self):
        self._uow.added = []
        self._uow.deleted = []
        self._uow.touched = {}

    def guard(self):
        return contextlib.nullcontext()

    @contextlib.contextmanager
    def journey_lock(self, journey_id):
        state = self._state()
        if journey_id is None:
            lock = contextlib.nullcontext()
        else:
            with self._mutex:
                lock = self._journey_locks.setdefault(journey_id, threading.RLock())
        with lock:
            state.depth += 1
            try:
                yield
            finally:
                state.depth -= 1


# ── Wiring ───────────────────────────────────────────────────────────────────


def build_journey_repository(kind: str) -> JourneyRepository:
    if kind == "memory":
        return InMemoryJourneyRepository()
    if kind == "sql":
        return SqlJourneyRepository()
    raise ValueError(f"Unknown JOURNEY_REPOSITORY: {kind!r} (expected 'sql' or 'memory')")


def init_journey_repository(app) -> JourneyRepository:
    repo = build_journey_repository(app.config.get("JOURNEY_REPOSITORY", "sql"))
    app.extensions["journey_repository"] = repo
    logger.info("Journey repository: %s", repo.kind)
    return repo


def get_journey_repository() -> JourneyRepository:
    """Repository of the current app; SQL when none is configured."""
    if has_app_context():
        repo = current_app.extensions.get("journey_repository")
        if repo is not None:
            return repo
    return SqlJourneyRepository()
