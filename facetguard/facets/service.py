"""
Facet Service

Facet vocabulary and per-entity assignments with their lifecycle:
assign, revoke, extend, review, reconcile expiry.

Liveness rule used by every read:
    assignment.is_active and (expires_at is None or expires_at > now)

Expiry is evaluated lazily against the injected clock; reading never flips
is_active. The reconciliation job (expire_lapsed) is the only path that marks
lapsed assignments inactive.

Writes go through the repository as a single call that carries both the
assignment change and its history row, so the two are applied atomically.
Write errors propagate to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any

from facetguard.clock import Clock, utcnow
from facetguard.errors import NotFoundError, ValidationError
from facetguard.facets.identifier import FacetIdentifier, parse_facet
from facetguard.storage.ports import (
    FacetRepository,
    FacetDefinitionRecord,
    FacetAssignmentRecord,
    FacetHistoryRecord,
    FacetAction,
)

logger = logging.getLogger(__name__)

USER_ENTITY = "USER"

FacetLike = str | FacetIdentifier


@dataclass
class FacetWithAssignment:
    """A live (or, on request, lapsed) assignment with computed lifecycle flags."""
    definition: FacetDefinitionRecord
    assignment: FacetAssignmentRecord
    is_expired: bool
    needs_review: bool

    @property
    def identifier(self) -> FacetIdentifier:
        return self.definition.identifier

    @property
    def value(self) -> str:
        """The facet's value, falling back to its name."""
        return self.definition.value or self.definition.name


class FacetService:
    """
    FacetStore operations over an injected FacetRepository.

    All facet arguments accept either the "scope:name[:value]" string form
    or a FacetIdentifier.
    """

    def __init__(self, repository: FacetRepository, clock: Clock = utcnow):
        self._repository = repository
        self._clock = clock

    @property
    def repository(self) -> FacetRepository:
        return self._repository

    def now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _is_live(assignment: FacetAssignmentRecord, now: datetime) -> bool:
        if not assignment.is_active:
            return False
        return assignment.expires_at is None or assignment.expires_at > now

    async def _require_definition(self, facet: FacetIdentifier) -> FacetDefinitionRecord:
        definition = await self._repository.get_definition(facet)
        if definition is None:
            raise NotFoundError(f"Facet not defined: {facet}")
        return definition

    async def _require_active_assignment(
        self,
        definition: FacetDefinitionRecord,
        entity_type: str,
        entity_id: str
    ) -> FacetAssignmentRecord:
        assignment = await self._repository.get_assignment(
            definition.facet_id, entity_type, entity_id
        )
        if assignment is None or not assignment.is_active:
            raise NotFoundError(
                f"No active assignment of {definition.identifier} to {entity_type}:{entity_id}"
            )
        return assignment

    # =========================================================================
    # Vocabulary
    # =========================================================================

    async def define_facet(self, definition: FacetDefinitionRecord) -> FacetDefinitionRecord:
        """
        Declare a facet. Idempotent: an existing definition with the same
        identity tuple is returned unchanged.
        """
        # Validates scope/name
        identifier = definition.identifier
        if definition.expiry_days is not None and definition.expiry_days <= 0:
            raise ValidationError(f"expiry_days must be positive for {identifier}")
        if definition.review_days is not None and definition.review_days <= 0:
            raise ValidationError(f"review_days must be positive for {identifier}")

        stored = await self._repository.create_definition(
            replace(definition, value=identifier.value)
        )
        logger.debug(f"Facet defined: {identifier} (level={stored.hierarchy_level})")
        return stored

    async def get_definition(self, facet: FacetLike) -> FacetDefinitionRecord | None:
        return await self._repository.get_definition(parse_facet(facet))

    async def list_definitions(self, scope: str | None = None) -> list[FacetDefinitionRecord]:
        return await self._repository.list_definitions(scope)

    # =========================================================================
    # Reads
    # =========================================================================

    async def has_facet(self, entity_type: str, entity_id: str, facet: FacetLike) -> bool:
        """True iff a live assignment of exactly this facet exists."""
        identifier = parse_facet(facet)
        definition = await self._repository.get_definition(identifier)
        if definition is None:
            return False
        assignment = await self._repository.get_assignment(
            definition.facet_id, entity_type, entity_id
        )
        return assignment is not None and self._is_live(assignment, self.now())

    async def get_facets(
        self,
        entity_type: str,
        entity_id: str,
        scope: str | None = None,
        include_expired: bool = False
    ) -> list[FacetWithAssignment]:
        """
        List an entity's active assignments, newest first.

        Args:
            entity_type: Entity type (e.g. "USER")
            entity_id: Entity ID
            scope: Restrict to one facet scope
            include_expired: Also return lapsed assignments that were never
                revoked (annotated is_expired=True)
        """
        now = self.now()
        rows = await self._repository.list_active_assignments(entity_type, entity_id, scope)

        results = []
        for row in rows:
            expires_at = row.assignment.expires_at
            is_expired = expires_at is not None and expires_at <= now
            if is_expired and not include_expired:
                continue
            review_at = row.assignment.review_at
            results.append(FacetWithAssignment(
                definition=row.definition,
                assignment=row.assignment,
                is_expired=is_expired,
                needs_review=review_at is not None and review_at <= now,
            ))
        return results

    async def get_facet_value(
        self,
        entity_type: str,
        entity_id: str,
        scope: str,
        name: str
    ) -> str | None:
        """
        Value of the entity's live (scope, name) facet, or the facet's name
        when it carries no value. None if no such facet is live.
        """
        for facet in await self.get_facets(entity_type, entity_id, scope):
            if facet.definition.name == name:
                return facet.value
        return None

    async def get_scope_value(
        self,
        entity_type: str,
        entity_id: str,
        scope: str
    ) -> str | None:
        """
        Value-or-name of the most recently assigned live facet in a scope.

        Handles both encodings of a scoped attribute:
        "org-division:division:sales" and "org-division:sales" both yield "sales".
        """
        facets = await self.get_facets(entity_type, entity_id, scope)
        if not facets:
            return None
        return facets[0].value

    async def has_facet_at_level(
        self,
        entity_type: str,
        entity_id: str,
        facet: FacetLike,
        minimum_level: int
    ) -> bool:
        """
        True iff a live facet matching scope and name (and value, when the
        identifier carries one) has hierarchy_level >= minimum_level.
        """
        identifier = parse_facet(facet)
        for row in await self.get_facets(entity_type, entity_id, identifier.scope):
            definition = row.definition
            if definition.name != identifier.name:
                continue
            if identifier.value is not None and definition.value != identifier.value:
                continue
            if definition.hierarchy_level >= minimum_level:
                return True
        return False

    async def get_history(
        self,
        entity_type: str,
        entity_id: str,
        limit: int = 100
    ) -> list[FacetHistoryRecord]:
        """Assignment ledger for an entity, newest first."""
        return await self._repository.list_history(entity_type, entity_id, limit)

    # =========================================================================
    # Writes
    # =========================================================================

    async def assign_facet(
        self,
        facet: FacetLike,
        entity_type: str,
        entity_id: str,
        actor_id: str | None,
        reason: str | None = None,
        expiry_days: int | None = None,
        metadata: dict[str, Any] | None = None
    ) -> FacetAssignmentRecord:
        """
        Assign a pre-declared facet to an entity (idempotent upsert).

        Args:
            facet: Facet to assign
            entity_type: Entity type
            entity_id: Entity ID
            actor_id: Assigning user, None for system assignments
            reason: Free-text justification
            expiry_days: Overrides the definition's default lifetime
            metadata: Arbitrary assignment metadata

        Returns:
            The stored assignment

        Raises:
            NotFoundError: If the facet is not defined
            ValidationError: If expiry_days is not positive
        """
        identifier = parse_facet(facet)
        if expiry_days is not None and expiry_days <= 0:
            raise ValidationError(f"expiry_days must be positive, got {expiry_days}")

        definition = await self._require_definition(identifier)
        now = self.now()

        lifetime = expiry_days if expiry_days is not None else definition.expiry_days
        expires_at = now + timedelta(days=lifetime) if lifetime else None
        review_at = (
            now + timedelta(days=definition.review_days)
            if definition.review_days else None
        )

        record = FacetAssignmentRecord(
            facet_id=definition.facet_id,
            entity_type=entity_type,
            entity_id=entity_id,
            assigned_by_id=actor_id,
            assigned_at=now,
            expires_at=expires_at,
            review_at=review_at,
            reason=reason,
            metadata=dict(metadata or {}),
            is_active=True,
        )
        history = FacetHistoryRecord(
            facet_id=definition.facet_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=FacetAction.ASSIGNED,
            performed_by_id=actor_id,
            performed_at=now,
            reason=reason,
            expires_at=expires_at,
            metadata=dict(metadata or {}),
        )

        stored = await self._repository.upsert_assignment(record, history)
        logger.info(
            f"Facet {identifier} assigned to {entity_type}:{entity_id} "
            f"by {actor_id or 'system'} (expires_at={expires_at})"
        )
        return stored

    async def revoke_facet(
        self,
        facet: FacetLike,
        entity_type: str,
        entity_id: str,
        actor_id: str | None,
        reason: str | None = None
    ) -> None:
        """
        Revoke a facet. Revoking an undefined facet or an absent assignment
        is a no-op and writes no history.
        """
        identifier = parse_facet(facet)
        definition = await self._repository.get_definition(identifier)
        if definition is None:
            logger.debug(f"Revoke of undefined facet {identifier} ignored")
            return

        history = FacetHistoryRecord(
            facet_id=definition.facet_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=FacetAction.REVOKED,
            performed_by_id=actor_id,
            performed_at=self.now(),
            reason=reason,
        )
        revoked = await self._repository.deactivate_assignment(
            definition.facet_id, entity_type, entity_id, history
        )
        if revoked:
            logger.info(
                f"Facet {identifier} revoked from {entity_type}:{entity_id} "
                f"by {actor_id or 'system'}"
            )
        else:
            logger.debug(f"No active assignment of {identifier} on {entity_type}:{entity_id}")

    async def extend_assignment(
        self,
        facet: FacetLike,
        entity_type: str,
        entity_id: str,
        actor_id: str | None,
        extra_days: int,
        reason: str | None = None
    ) -> FacetAssignmentRecord:
        """
        Push an assignment's expiry forward by extra_days.

        Extends from the current expiry, or from now if the assignment has
        no expiry or has already lapsed.

        Raises:
            NotFoundError: If the facet is undefined or not actively assigned
            ValidationError: If extra_days is not positive
        """
        if extra_days <= 0:
            raise ValidationError(f"extra_days must be positive, got {extra_days}")

        identifier = parse_facet(facet)
        definition = await self._require_definition(identifier)
        assignment = await self._require_active_assignment(definition, entity_type, entity_id)
        now = self.now()

        previous = assignment.expires_at
        base = previous if previous is not None and previous > now else now
        new_expiry = base + timedelta(days=extra_days)

        history = FacetHistoryRecord(
            facet_id=definition.facet_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=FacetAction.EXTENDED,
            performed_by_id=actor_id,
            performed_at=now,
            reason=reason,
            expires_at=new_expiry,
            previous_expires_at=previous,
        )
        stored = await self._repository.update_assignment(
            replace(assignment, expires_at=new_expiry), history
        )
        logger.info(
            f"Facet {identifier} on {entity_type}:{entity_id} extended "
            f"from {previous} to {new_expiry}"
        )
        return stored

    async def mark_reviewed(
        self,
        facet: FacetLike,
        entity_type: str,
        entity_id: str,
        actor_id: str | None,
        reason: str | None = None
    ) -> FacetAssignmentRecord:
        """
        Record a periodic review and schedule the next one.

        Raises:
            NotFoundError: If the facet is undefined or not actively assigned
        """
        identifier = parse_facet(facet)
        definition = await self._require_definition(identifier)
        assignment = await self._require_active_assignment(definition, entity_type, entity_id)
        now = self.now()

        review_at = (
            now + timedelta(days=definition.review_days)
            if definition.review_days else None
        )
        history = FacetHistoryRecord(
            facet_id=definition.facet_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=FacetAction.REVIEWED,
            performed_by_id=actor_id,
            performed_at=now,
            reason=reason,
            expires_at=assignment.expires_at,
        )
        stored = await self._repository.update_assignment(
            replace(assignment, review_at=review_at), history
        )
        logger.info(f"Facet {identifier} on {entity_type}:{entity_id} reviewed, next review {review_at}")
        return stored

    async def expire_lapsed(self) -> int:
        """
        Reconciliation job: deactivate every lapsed assignment.

        Each deactivation appends one EXPIRED row performed by the system.

        Returns:
            Number of assignments expired
        """
        now = self.now()
        lapsed = await self._repository.list_lapsed_assignments(now)

        count = 0
        for assignment in lapsed:
            history = FacetHistoryRecord(
                facet_id=assignment.facet_id,
                entity_type=assignment.entity_type,
                entity_id=assignment.entity_id,
                action=FacetAction.EXPIRED,
                performed_by_id=None,
                performed_at=now,
                reason="Assignment expired",
                expires_at=assignment.expires_at,
            )
            if await self._repository.deactivate_assignment(
                assignment.facet_id, assignment.entity_type, assignment.entity_id, history
            ):
                count += 1

        if count:
            logger.info(f"Expired {count} lapsed facet assignments")
        return count

    # =========================================================================
    # User helpers
    # =========================================================================

    async def user_has_facet(self, user_id: str, facet: FacetLike) -> bool:
        return await self.has_facet(USER_ENTITY, user_id, facet)

    async def user_get_facets(
        self,
        user_id: str,
        scope: str | None = None
    ) -> list[FacetWithAssignment]:
        return await self.get_facets(USER_ENTITY, user_id, scope)

    async def user_get_facet_value(self, user_id: str, scope: str, name: str) -> str | None:
        return await self.get_facet_value(USER_ENTITY, user_id, scope, name)
