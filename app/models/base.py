"""
TenantModel — Abstract base class for tenant-scoped models.

All journey-state models inherit from TenantModel instead of db.Model
directly. This adds:
  - tenant_id FK column with index
  - Composite index macro helper
"""

import uuid

from app.models import db


def new_id() -> str:
    """Opaque primary key for journey entities."""
    return str(uuid.uuid4())


class TenantModel(db.Model):
    """Abstract base for tenant-scoped tables."""
    __abstract__ = True

    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def tenant_composite_index(cls, table_name, *extra_cols):
        """Helper to build (tenant_id, ...) composite index name+tuple."""
        name = f"ix_{table_name}_tenant_{'_'.join(extra_cols)}"
        cols = ("tenant_id",) + extra_cols
        return db.Index(name, *cols)
