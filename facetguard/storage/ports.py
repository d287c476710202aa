"""
Storage Port Interfaces

Abstract base classes defining the storage contracts for the access-control
engine. All persistence APIs are async.

These ports follow the hexagonal architecture pattern:
- Facet, hierarchy, policy and audit code depends only on these interfaces
- Adapters (in-memory, SQLAlchemy) implement these interfaces
- Storage is injected via dependency inversion

Write operations that touch a primary row and its history ledger
(upsert_assignment, deactivate_assignment, update_assignment,
set_line_manager) must apply both or neither.

Thread-safety: All implementations must be safe for concurrent async usage.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, TYPE_CHECKING
from uuid import uuid4

from facetguard.clock import utcnow

if TYPE_CHECKING:
    from facetguard.facets.identifier import FacetIdentifier


def _new_id() -> str:
    return str(uuid4())


# =============================================================================
# Facet Records
# =============================================================================

class FacetAction(str, Enum):
    """State transitions recorded in the assignment history ledger."""
    ASSIGNED = "ASSIGNED"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"
    REVIEWED = "REVIEWED"
    EXTENDED = "EXTENDED"
    MODIFIED = "MODIFIED"


@dataclass
class FacetDefinitionRecord:
    """
    A declared facet kind.

    Identity is the (scope, name, value) tuple; value None means the facet
    carries no distinguishing value.
    """
    scope: str
    name: str
    value: str | None = None
    description: str | None = None
    requires_audit: bool = True
    expiry_days: int | None = None
    requires_review: bool = False
    review_days: int | None = None
    parent_facet_id: str | None = None
    hierarchy_level: int = 0
    is_active: bool = True
    facet_id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def identifier(self) -> FacetIdentifier:
        from facetguard.facets.identifier import FacetIdentifier
        return FacetIdentifier(scope=self.scope, name=self.name, value=self.value)


@dataclass
class FacetAssignmentRecord:
    """
    Binding of one facet definition to one (entity_type, entity_id).

    At most one row exists per (facet_id, entity_type, entity_id); re-assigning
    updates it in place. assigned_by_id None means system-assigned.
    """
    facet_id: str
    entity_type: str
    entity_id: str
    assigned_by_id: str | None = None
    assigned_at: datetime = field(default_factory=utcnow)
    expires_at: datetime | None = None
    review_at: datetime | None = None
    reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    assignment_id: str = field(default_factory=_new_id)


@dataclass
class FacetHistoryRecord:
    """Append-only ledger entry. Never mutated or deleted."""
    facet_id: str
    entity_type: str
    entity_id: str
    action: FacetAction
    performed_by_id: str | None = None
    performed_at: datetime = field(default_factory=utcnow)
    reason: str | None = None
    expires_at: datetime | None = None
    previous_expires_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    history_id: str = field(default_factory=_new_id)


@dataclass
class AssignedFacet:
    """An assignment joined with its definition."""
    definition: FacetDefinitionRecord
    assignment: FacetAssignmentRecord


# =============================================================================
# Facet Repository
# =============================================================================

class FacetRepository(ABC):
    """
    Storage interface for facet vocabulary and per-entity assignments.

    Pure data operations: no expiry evaluation, no policy logic. Liveness is
    computed by the facet service against its clock.
    """

    @abstractmethod
    async def create_definition(self, record: FacetDefinitionRecord) -> FacetDefinitionRecord:
        """
        Declare a facet.

        Idempotent on the identity tuple: if a definition with the same
        (scope, name, value) exists it is returned unchanged.
        """
        ...

    @abstractmethod
    async def get_definition(self, identifier: FacetIdentifier) -> FacetDefinitionRecord | None:
        """Get a definition by its exact identity tuple."""
        ...

    @abstractmethod
    async def list_definitions(self, scope: str | None = None) -> list[FacetDefinitionRecord]:
        """List definitions, optionally restricted to one scope."""
        ...

    @abstractmethod
    async def list_active_assignments(
        self,
        entity_type: str,
        entity_id: str,
        scope: str | None = None
    ) -> list[AssignedFacet]:
        """
        List assignments with is_active=True for an entity.

        Expired-but-active rows are included; callers filter on expiry.
        Ordered by assigned_at, newest first.
        """
        ...

    @abstractmethod
    async def get_assignment(
        self,
        facet_id: str,
        entity_type: str,
        entity_id: str
    ) -> FacetAssignmentRecord | None:
        """Get the assignment row for a (facet, entity) pair, active or not."""
        ...

    @abstractmethod
    async def upsert_assignment(
        self,
        record: FacetAssignmentRecord,
        history: FacetHistoryRecord
    ) -> FacetAssignmentRecord:
        """
        Create or replace the assignment keyed by (facet_id, entity_type, entity_id)
        and append the history row, atomically.

        Returns:
            The stored assignment (keeps the existing assignment_id on update)
        """
        ...

    @abstractmethod
    async def deactivate_assignment(
        self,
        facet_id: str,
        entity_type: str,
        entity_id: str,
        history: FacetHistoryRecord
    ) -> bool:
        """
        Flip an active assignment to inactive and append the history row, atomically.

        Returns:
            False (and writes nothing) if there is no active assignment
        """
        ...

    @abstractmethod
    async def update_assignment(
        self,
        record: FacetAssignmentRecord,
        history: FacetHistoryRecord
    ) -> FacetAssignmentRecord:
        """
        Persist changed fields of an existing assignment and append the history
        row, atomically.

        Raises:
            NotFoundError: If the assignment does not exist
        """
        ...

    @abstractmethod
    async def list_lapsed_assignments(self, cutoff: datetime) -> list[FacetAssignmentRecord]:
        """List active assignments whose expires_at is at or before cutoff."""
        ...

    @abstractmethod
    async def list_history(
        self,
        entity_type: str,
        entity_id: str,
        limit: int = 100
    ) -> list[FacetHistoryRecord]:
        """List history rows for an entity, newest first."""
        ...


# =============================================================================
# Entity Store (line management)
# =============================================================================

@dataclass
class EntityRecord:
    """
    A principal in the reporting hierarchy.

    line_manager_id is the only primitive the hierarchy is derived from.
    """
    entity_id: str
    line_manager_id: str | None = None
    entity_type: str = "USER"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ManagerChangeRecord:
    """Append-only ledger entry for a line manager reassignment."""
    entity_id: str
    previous_manager_id: str | None
    new_manager_id: str | None
    performed_by_id: str | None = None
    performed_at: datetime = field(default_factory=utcnow)
    reason: str | None = None
    change_id: str = field(default_factory=_new_id)


class EntityResolver(ABC):
    """
    The only read the hierarchy walk needs from the identity store.
    """

    @abstractmethod
    async def lookup(self, entity_id: str) -> EntityRecord | None:
        """Get an entity, or None if it does not exist."""
        ...


class EntityStore(EntityResolver):
    """
    Storage interface for principals and their line managers.
    """

    @abstractmethod
    async def upsert_entity(self, record: EntityRecord) -> EntityRecord:
        """Create or replace an entity (provisioning; no cycle checks)."""
        ...

    @abstractmethod
    async def list_direct_reports(self, manager_id: str) -> list[str]:
        """IDs of all entities whose line_manager_id equals manager_id."""
        ...

    @abstractmethod
    async def set_line_manager(
        self,
        entity_id: str,
        manager_id: str | None,
        change: ManagerChangeRecord,
        max_depth: int
    ) -> tuple[EntityRecord, ManagerChangeRecord | None]:
        """
        Validate and apply a line manager change as one atomic step.

        Inside a single transaction (or lock) the store loads the entity and
        the proposed manager, walks the proposed manager's chain with
        closes_cycle(), then sets line_manager_id and appends the change.
        previous_manager_id is taken from the stored row, not from change.
        Nothing is written when the manager is unchanged.

        Returns:
            The entity and the appended change (None if nothing changed)

        Raises:
            NotFoundError: If the entity or the proposed manager does not exist
            HierarchyCycleError: If the change would close a reporting loop
        """
        ...

    @abstractmethod
    async def list_manager_changes(self, entity_id: str) -> list[ManagerChangeRecord]:
        """Manager change ledger for an entity, newest first."""
        ...


async def closes_cycle(
    subject_id: str,
    proposed_manager_id: str,
    manager_of: Callable[[str], Awaitable[str | None]],
    max_depth: int
) -> bool:
    """
    True if making proposed_manager_id the manager of subject_id closes a loop:
    the two are the same entity, or subject_id already sits on the proposed
    manager's chain within max_depth hops.

    Args:
        subject_id: Entity being reassigned
        proposed_manager_id: Its new manager
        manager_of: Returns an entity's line_manager_id (None if unset or missing)
        max_depth: Maximum number of hops to follow
    """
    if proposed_manager_id == subject_id:
        return True

    visited = {proposed_manager_id}
    current = await manager_of(proposed_manager_id)
    depth = 0
    while current is not None:
        if current == subject_id:
            return True
        if current in visited or depth >= max_depth:
            return False
        visited.add(current)
        current = await manager_of(current)
        depth += 1
    return False


# =============================================================================
# Relationship Store
# =============================================================================

class RelationshipStore(ABC):
    """
    Storage interface for symmetric social relationships (friendship).
    """

    @abstractmethod
    async def are_friends(self, entity_a: str, entity_b: str) -> bool:
        ...

    @abstractmethod
    async def add_friendship(self, entity_a: str, entity_b: str) -> None:
        ...


# =============================================================================
# Audit Log Store
# =============================================================================

@dataclass
class AuditLogRecord:
    """
    Persisted permission decision.

    idempotency_key is the decision id; the same decision delivered twice
    (broker and fallback path) is stored once.
    """
    idempotency_key: str
    user_id: str | None
    resource_type: str
    resource_id: str | None
    operation: str
    granted: bool
    reason: str
    reason_code: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str | None = None
    facets_checked: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


class AuditLogStore(ABC):
    """
    Append-only store for permission decisions.
    """

    @abstractmethod
    async def append(self, record: AuditLogRecord) -> bool:
        """
        Append a decision.

        Returns:
            False if a record with the same idempotency_key already exists
        """
        ...

    @abstractmethod
    async def query(
        self,
        user_id: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        limit: int = 100
    ) -> list[AuditLogRecord]:
        """Query decisions, newest first."""
        ...


# =============================================================================
# Storage Bundle
# =============================================================================

@dataclass
class StorageBundle:
    """
    Container for all storage adapters.

    Injected into the engine components via dependency inversion.
    """
    facets: FacetRepository
    entities: EntityStore
    relationships: RelationshipStore
    audit: AuditLogStore

    async def close(self) -> None:
        """
        Close all storage connections.

        Called during shutdown.
        """
        pass
