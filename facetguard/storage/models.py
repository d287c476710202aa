"""
SQLAlchemy Models for facetguard Storage

Async-compatible SQLAlchemy 2.0 ORM models for:
- Facet definitions, assignments and the assignment history ledger
- Entities with their line manager, and the manager change ledger
- Friendships
- Permission audit log

Designed to work with:
- SQLite (via aiosqlite)
- PostgreSQL (via asyncpg)
- MySQL (via aiomysql)

JSON column handling:
- PostgreSQL: Native JSONB
- SQLite/MySQL: TEXT with JSON serialization

Timestamps are stored in UTC and always read back timezone-aware.
"""

import json
from datetime import datetime, timezone

from sqlalchemy import (
    String,
    Text,
    Integer,
    Boolean,
    DateTime,
    Index,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator

from facetguard.clock import utcnow


# =============================================================================
# Custom Types
# =============================================================================

class JSONType(TypeDecorator):
    """
    Platform-agnostic JSON column.

    Uses JSONB on PostgreSQL, TEXT+JSON on SQLite/MySQL.
    """
    impl = Text
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(Text())

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "postgresql":
            return value  # JSONB handles dict directly
        return json.dumps(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "postgresql":
            return value  # JSONB returns dict directly
        if isinstance(value, str):
            return json.loads(value)
        return value


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetime column.

    SQLite and MySQL drop tzinfo; values are normalized to UTC on write and
    re-tagged as UTC on read so comparisons against an aware "now" work.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name != "postgresql":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# =============================================================================
# Base
# =============================================================================

class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# =============================================================================
# Facet Models
# =============================================================================

class FacetDefinitionModel(Base):
    """
    Declared facet kind.

    value is stored as "" when absent so the identity tuple is unique.
    """
    __tablename__ = "facets"

    facet_id: Mapped[str] = mapped_column(String(36), primary_key=True)

    # Identity tuple
    scope: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    value: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Lifecycle defaults
    requires_audit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    expiry_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    requires_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    review_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Hierarchy of facet kinds
    parent_facet_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("facets.facet_id", ondelete="SET NULL"),
        nullable=True
    )
    hierarchy_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("scope", "name", "value", name="uq_facets_scope_name_value"),
        Index("ix_facets_scope_name", "scope", "name"),
        Index("ix_facets_parent_level", "parent_facet_id", "hierarchy_level"),
    )


class FacetAssignmentModel(Base):
    """
    Live binding of a facet to an entity. One row per (facet, entity).
    """
    __tablename__ = "facet_assignments"

    assignment_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    facet_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("facets.facet_id", ondelete="CASCADE"),
        nullable=False
    )
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)

    assigned_by_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    review_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    metadata_json: Mapped[dict] = mapped_column(
        JSONType(),
        nullable=False,
        default=dict,
        name="metadata"
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint(
            "facet_id", "entity_type", "entity_id",
            name="uq_facet_assignments_facet_entity"
        ),
        Index("ix_facet_assignments_entity_active", "entity_type", "entity_id", "is_active"),
        Index("ix_facet_assignments_expires_at", "expires_at"),
        Index("ix_facet_assignments_review_at", "review_at"),
    )


class FacetHistoryModel(Base):
    """
    Append-only assignment ledger.
    """
    __tablename__ = "facet_assignment_history"

    history_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    facet_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("facets.facet_id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    performed_by_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    performed_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        index=True
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    previous_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    metadata_json: Mapped[dict] = mapped_column(
        JSONType(),
        nullable=False,
        default=dict,
        name="metadata"
    )

    __table_args__ = (
        Index("ix_facet_history_entity_performed", "entity_type", "entity_id", "performed_at"),
    )


# =============================================================================
# Entity Models
# =============================================================================

class EntityModel(Base):
    """
    Principal with an optional line manager (self-referential).
    """
    __tablename__ = "entities"

    entity_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False, default="USER")
    line_manager_id: Mapped[str | None] = mapped_column(
        String(255),
        ForeignKey("entities.entity_id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    metadata_json: Mapped[dict] = mapped_column(
        JSONType(),
        nullable=False,
        default=dict,
        name="metadata"
    )


class ManagerChangeModel(Base):
    """
    Append-only line manager change ledger.
    """
    __tablename__ = "line_manager_changes"

    change_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    previous_manager_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    new_manager_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    performed_by_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    performed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)


class FriendshipModel(Base):
    """
    Accepted friendship. Stored once with user_a < user_b.
    """
    __tablename__ = "friendships"

    user_a: Mapped[str] = mapped_column(String(255), primary_key=True)
    user_b: Mapped[str] = mapped_column(String(255), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)


# =============================================================================
# Audit Model
# =============================================================================

class AuditLogModel(Base):
    """
    Persisted permission decision, unique per idempotency key.
    """
    __tablename__ = "permission_audit_logs"

    idempotency_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resource_type: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    operation: Mapped[str] = mapped_column(String(128), nullable=False)
    granted: Mapped[bool] = mapped_column(Boolean, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    reason_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    facets_checked: Mapped[list] = mapped_column(JSONType(), nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        index=True
    )

    __table_args__ = (
        Index("ix_audit_user_created", "user_id", "created_at"),
        Index("ix_audit_resource", "resource_type", "resource_id"),
        Index("ix_audit_operation_granted", "operation", "granted"),
    )
