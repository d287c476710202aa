"""
Hierarchy Resolver

Line-management queries over the lineManagerId graph:
- direct and transitive reports of a manager
- whether one entity manages another, directly or transitively
- manager reassignment guarded against cycles

Every walk is iterative, tracks visited ids, and stops after max_depth steps,
so a cyclic graph left behind by operator error still terminates.
"""

from __future__ import annotations

import logging

from facetguard.clock import Clock, utcnow
from facetguard.errors import ValidationError
from facetguard.storage.ports import EntityStore, EntityRecord, ManagerChangeRecord

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 10


class HierarchyResolver:
    """
    Answers "does A manage B" and "who reports to M".

    Args:
        entities: Entity store holding line_manager_id
        max_depth: Maximum number of hops any traversal will take
        clock: Time source for the manager change ledger
    """

    def __init__(
        self,
        entities: EntityStore,
        max_depth: int = DEFAULT_MAX_DEPTH,
        clock: Clock = utcnow
    ):
        if max_depth <= 0:
            raise ValidationError(f"max_depth must be positive, got {max_depth}")
        self._entities = entities
        self._max_depth = max_depth
        self._clock = clock

    @property
    def max_depth(self) -> int:
        return self._max_depth

    async def get_direct_reports(self, manager_id: str) -> set[str]:
        """All entities whose line_manager_id equals manager_id."""
        return set(await self._entities.list_direct_reports(manager_id))

    async def get_all_reports(self, manager_id: str) -> set[str]:
        """
        Direct and indirect reports, breadth-first, at most max_depth levels down.

        The manager itself is never part of the result, even if a cycle
        leads back to it.
        """
        visited = {manager_id}
        reports: set[str] = set()
        frontier = [manager_id]
        depth = 0

        while frontier and depth < self._max_depth:
            next_frontier = []
            for current in frontier:
                for report_id in await self._entities.list_direct_reports(current):
                    if report_id in visited:
                        if report_id == manager_id:
                            logger.warning(
                                f"Cycle detected in reporting hierarchy below {manager_id}"
                            )
                        continue
                    visited.add(report_id)
                    reports.add(report_id)
                    next_frontier.append(report_id)
            frontier = next_frontier
            depth += 1

        if frontier:
            logger.warning(
                f"Report traversal for {manager_id} stopped at depth bound {self._max_depth}"
            )
        return reports

    async def is_administrator_for(
        self,
        candidate_manager_id: str,
        subject_id: str,
        include_indirect: bool = True
    ) -> bool:
        """
        Check whether candidate_manager_id manages subject_id.

        Args:
            candidate_manager_id: The would-be manager
            subject_id: The entity being managed
            include_indirect: Also follow the chain above the direct manager

        Returns:
            False for self-management, unknown subjects, cycles and chains
            longer than max_depth
        """
        if candidate_manager_id == subject_id:
            return False

        subject = await self._entities.lookup(subject_id)
        if subject is None:
            return False
        if subject.line_manager_id == candidate_manager_id:
            return True
        if not include_indirect:
            return False

        current = subject.line_manager_id
        visited = {subject_id}
        depth = 0

        while current is not None:
            if current == candidate_manager_id:
                return True
            if current in visited:
                logger.warning(f"Cycle detected in management chain of {subject_id} at {current}")
                return False
            if depth >= self._max_depth:
                logger.warning(
                    f"Management chain of {subject_id} exceeds depth bound {self._max_depth}"
                )
                return False

            visited.add(current)
            manager = await self._entities.lookup(current)
            if manager is None:
                return False
            current = manager.line_manager_id
            depth += 1

        return False

    async def get_management_chain(self, subject_id: str) -> list[str]:
        """
        Managers above subject_id, nearest first. Stops at the top of the
        chain, at a revisited entity, or after max_depth hops.
        """
        chain: list[str] = []
        subject = await self._entities.lookup(subject_id)
        if subject is None:
            return chain

        visited = {subject_id}
        current = subject.line_manager_id
        while current is not None and current not in visited and len(chain) < self._max_depth:
            chain.append(current)
            visited.add(current)
            manager = await self._entities.lookup(current)
            if manager is None:
                break
            current = manager.line_manager_id
        return chain

    async def would_create_cycle(self, subject_id: str, proposed_manager_id: str) -> bool:
        """True if making proposed_manager_id the manager of subject_id closes a loop."""
        if subject_id == proposed_manager_id:
            return True
        return await self.is_administrator_for(subject_id, proposed_manager_id, include_indirect=True)

    async def set_line_manager(
        self,
        subject_id: str,
        proposed_manager_id: str | None,
        actor_id: str | None = None,
        reason: str | None = None
    ) -> EntityRecord:
        """
        Reassign (or clear) an entity's line manager.

        The existence and cycle checks run inside the store's write, so two
        opposing reassignments cannot both pass and close a loop.

        Raises:
            NotFoundError: If the subject or the proposed manager does not exist
            HierarchyCycleError: If the subject already manages the proposed
                manager, directly or transitively, or they are the same entity
        """
        change = ManagerChangeRecord(
            entity_id=subject_id,
            previous_manager_id=None,
            new_manager_id=proposed_manager_id,
            performed_by_id=actor_id,
            performed_at=self._clock(),
            reason=reason,
        )
        updated, applied = await self._entities.set_line_manager(
            subject_id, proposed_manager_id, change, self._max_depth
        )
        if applied is not None:
            logger.info(
                f"Line manager of {subject_id} changed from {applied.previous_manager_id} "
                f"to {proposed_manager_id} by {actor_id or 'system'}"
            )
        return updated

    async def get_manager_changes(self, subject_id: str) -> list[ManagerChangeRecord]:
        """Manager change ledger for an entity, newest first."""
        return await self._entities.list_manager_changes(subject_id)
