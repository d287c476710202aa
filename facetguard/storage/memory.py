"""
In-Memory Storage Adapters

Thread-safe implementations for development and testing.
Uses asyncio locks for concurrent async safety.

These adapters store everything in memory and are lost on restart.
Use for:
- Local development
- Unit/integration testing
- The fake backing store behind policy tests

Records are copied on the way in and out so callers never alias stored state,
mirroring what a database round-trip would do.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING

from facetguard.errors import HierarchyCycleError, NotFoundError
from facetguard.storage.ports import (
    FacetRepository,
    FacetDefinitionRecord,
    FacetAssignmentRecord,
    FacetHistoryRecord,
    AssignedFacet,
    EntityStore,
    EntityRecord,
    ManagerChangeRecord,
    RelationshipStore,
    AuditLogStore,
    AuditLogRecord,
    closes_cycle,
)

if TYPE_CHECKING:
    from facetguard.facets.identifier import FacetIdentifier


def _copy_assignment(record: FacetAssignmentRecord) -> FacetAssignmentRecord:
    return replace(record, metadata=dict(record.metadata))


def _copy_entity(record: EntityRecord) -> EntityRecord:
    return replace(record, metadata=dict(record.metadata))


class InMemoryFacetRepository(FacetRepository):
    """
    In-memory facet storage.

    Assignments are keyed by (facet_id, entity_type, entity_id) so the
    one-row-per-binding invariant holds structurally.
    """

    def __init__(self):
        self._definitions: dict[str, FacetDefinitionRecord] = {}
        self._by_identity: dict[tuple[str, str, str], str] = {}  # (scope, name, value) -> facet_id
        self._assignments: dict[tuple[str, str, str], FacetAssignmentRecord] = {}
        self._history: list[FacetHistoryRecord] = []
        self._lock = asyncio.Lock()

    @staticmethod
    def _identity(scope: str, name: str, value: str | None) -> tuple[str, str, str]:
        return (scope, name, value or "")

    async def create_definition(self, record: FacetDefinitionRecord) -> FacetDefinitionRecord:
        async with self._lock:
            key = self._identity(record.scope, record.name, record.value)
            existing_id = self._by_identity.get(key)
            if existing_id is not None:
                return replace(self._definitions[existing_id])

            self._definitions[record.facet_id] = replace(record)
            self._by_identity[key] = record.facet_id
            return replace(record)

    async def get_definition(self, identifier: FacetIdentifier) -> FacetDefinitionRecord | None:
        async with self._lock:
            key = self._identity(identifier.scope, identifier.name, identifier.value)
            facet_id = self._by_identity.get(key)
            if facet_id is None:
                return None
            return replace(self._definitions[facet_id])

    async def list_definitions(self, scope: str | None = None) -> list[FacetDefinitionRecord]:
        async with self._lock:
            return [
                replace(d) for d in self._definitions.values()
                if scope is None or d.scope == scope
            ]

    async def list_active_assignments(
        self,
        entity_type: str,
        entity_id: str,
        scope: str | None = None
    ) -> list[AssignedFacet]:
        async with self._lock:
            results = []
            for (facet_id, etype, eid), assignment in self._assignments.items():
                if etype != entity_type or eid != entity_id or not assignment.is_active:
                    continue
                definition = self._definitions.get(facet_id)
                if definition is None:
                    continue
                if scope is not None and definition.scope != scope:
                    continue
                results.append(AssignedFacet(
                    definition=replace(definition),
                    assignment=_copy_assignment(assignment),
                ))
            results.sort(key=lambda af: af.assignment.assigned_at, reverse=True)
            return results

    async def get_assignment(
        self,
        facet_id: str,
        entity_type: str,
        entity_id: str
    ) -> FacetAssignmentRecord | None:
        async with self._lock:
            assignment = self._assignments.get((facet_id, entity_type, entity_id))
            return _copy_assignment(assignment) if assignment else None

    async def upsert_assignment(
        self,
        record: FacetAssignmentRecord,
        history: FacetHistoryRecord
    ) -> FacetAssignmentRecord:
        async with self._lock:
            key = (record.facet_id, record.entity_type, record.entity_id)
            existing = self._assignments.get(key)
            stored = _copy_assignment(record)
            if existing is not None:
                stored.assignment_id = existing.assignment_id
            self._assignments[key] = stored
            self._history.append(replace(history))
            return _copy_assignment(stored)

    async def deactivate_assignment(
        self,
        facet_id: str,
        entity_type: str,
        entity_id: str,
        history: FacetHistoryRecord
    ) -> bool:
        async with self._lock:
            assignment = self._assignments.get((facet_id, entity_type, entity_id))
            if assignment is None or not assignment.is_active:
                return False
            assignment.is_active = False
            self._history.append(replace(history))
            return True

    async def update_assignment(
        self,
        record: FacetAssignmentRecord,
        history: FacetHistoryRecord
    ) -> FacetAssignmentRecord:
        async with self._lock:
            key = (record.facet_id, record.entity_type, record.entity_id)
            if key not in self._assignments:
                raise NotFoundError(
                    f"Assignment of facet {record.facet_id} to "
                    f"{record.entity_type}:{record.entity_id} not found"
                )
            self._assignments[key] = _copy_assignment(record)
            self._history.append(replace(history))
            return _copy_assignment(record)

    async def list_lapsed_assignments(self, cutoff: datetime) -> list[FacetAssignmentRecord]:
        async with self._lock:
            return [
                _copy_assignment(a) for a in self._assignments.values()
                if a.is_active and a.expires_at is not None and a.expires_at <= cutoff
            ]

    async def list_history(
        self,
        entity_type: str,
        entity_id: str,
        limit: int = 100
    ) -> list[FacetHistoryRecord]:
        async with self._lock:
            rows = [
                replace(h) for h in self._history
                if h.entity_type == entity_type and h.entity_id == entity_id
            ]
            # Stable sort keeps append order for identical timestamps
            rows.reverse()
            rows.sort(key=lambda h: h.performed_at, reverse=True)
            return rows[:limit]


class InMemoryEntityStore(EntityStore):
    """
    In-memory entity storage with a secondary index by line manager.
    """

    def __init__(self):
        self._entities: dict[str, EntityRecord] = {}
        self._changes: list[ManagerChangeRecord] = []
        self._lock = asyncio.Lock()

    async def lookup(self, entity_id: str) -> EntityRecord | None:
        async with self._lock:
            record = self._entities.get(entity_id)
            return _copy_entity(record) if record else None

    async def upsert_entity(self, record: EntityRecord) -> EntityRecord:
        async with self._lock:
            self._entities[record.entity_id] = _copy_entity(record)
            return _copy_entity(record)

    async def list_direct_reports(self, manager_id: str) -> list[str]:
        async with self._lock:
            return [
                e.entity_id for e in self._entities.values()
                if e.line_manager_id == manager_id
            ]

    async def set_line_manager(
        self,
        entity_id: str,
        manager_id: str | None,
        change: ManagerChangeRecord,
        max_depth: int
    ) -> tuple[EntityRecord, ManagerChangeRecord | None]:
        async with self._lock:
            record = self._entities.get(entity_id)
            if record is None:
                raise NotFoundError(f"Entity {entity_id} not found")

            if manager_id is not None:
                if manager_id != entity_id and manager_id not in self._entities:
                    raise NotFoundError(f"Entity {manager_id} not found")
                if await closes_cycle(entity_id, manager_id, self._manager_of, max_depth):
                    raise HierarchyCycleError(entity_id, manager_id)

            if record.line_manager_id == manager_id:
                return _copy_entity(record), None

            applied = replace(change, previous_manager_id=record.line_manager_id)
            record.line_manager_id = manager_id
            self._changes.append(applied)
            return _copy_entity(record), replace(applied)

    async def _manager_of(self, entity_id: str) -> str | None:
        # Called with self._lock held
        record = self._entities.get(entity_id)
        return record.line_manager_id if record else None

    async def list_manager_changes(self, entity_id: str) -> list[ManagerChangeRecord]:
        async with self._lock:
            rows = [replace(c) for c in self._changes if c.entity_id == entity_id]
            rows.reverse()
            return rows


class InMemoryRelationshipStore(RelationshipStore):
    """
    In-memory friendship storage. Friendship is symmetric.
    """

    def __init__(self):
        self._friendships: set[frozenset[str]] = set()
        self._lock = asyncio.Lock()

    async def are_friends(self, entity_a: str, entity_b: str) -> bool:
        async with self._lock:
            return frozenset((entity_a, entity_b)) in self._friendships

    async def add_friendship(self, entity_a: str, entity_b: str) -> None:
        async with self._lock:
            self._friendships.add(frozenset((entity_a, entity_b)))


class InMemoryAuditLogStore(AuditLogStore):
    """
    In-memory audit log.

    Append-only with configurable max size; deduplicates on idempotency_key.
    """

    def __init__(self, max_records: int = 100000):
        self._max_records = max_records
        self._records: list[AuditLogRecord] = []
        self._keys: set[str] = set()
        self._lock = asyncio.Lock()

    async def append(self, record: AuditLogRecord) -> bool:
        async with self._lock:
            if record.idempotency_key in self._keys:
                return False
            self._records.append(replace(record, facets_checked=list(record.facets_checked)))
            self._keys.add(record.idempotency_key)

            # Evict oldest 10% when over limit
            if len(self._records) > self._max_records:
                to_remove = self._max_records // 10
                for evicted in self._records[:to_remove]:
                    self._keys.discard(evicted.idempotency_key)
                self._records = self._records[to_remove:]
            return True

    async def query(
        self,
        user_id: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        limit: int = 100
    ) -> list[AuditLogRecord]:
        async with self._lock:
            results = []
            for record in reversed(self._records):
                if user_id is not None and record.user_id != user_id:
                    continue
                if resource_type is not None and record.resource_type != resource_type:
                    continue
                if resource_id is not None and record.resource_id != resource_id:
                    continue
                results.append(replace(record))
                if len(results) >= limit:
                    break
            return results
