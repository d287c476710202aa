"""
Rule Chains

A policy for a resource type is an ordered chain of rules. Each rule may
grant, deny or abstain (return None). The first rule with an opinion decides;
if every rule abstains the chain denies with DEFAULT_DENY.

The whole chain runs inside safe_check, so a rule that raises produces a
PERMISSION_CHECK_ERROR deny instead of an exception or an implicit grant.

Built-in rules, in canonical order:
1. PublicVisibilityRule    -> PUBLIC_*
2. AuthenticatedRule       -> NOT_AUTHENTICATED (deny)
3. OwnerRule / SelfRule    -> OWNER / SELF
4. RelationshipRule        -> FRIENDS
5. FacetRule               -> GLOBAL_ADMIN (or another elevated facet)
6. DivisionalAdminRule     -> DIVISIONAL_ADMIN
7. LineManagerRule         -> MANAGER
8. (chain default)         -> DEFAULT_DENY
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Sequence

from facetguard.clock import Clock, utcnow
from facetguard.facets.catalog import DIVISIONAL_ADMIN, GLOBAL_ADMIN, ORG_DIVISION_SCOPE
from facetguard.facets.identifier import FacetIdentifier, parse_facet
from facetguard.facets.service import FacetService, USER_ENTITY
from facetguard.hierarchy.resolver import HierarchyResolver
from facetguard.permissions.decision import Authentication, Decision, ReasonCode
from facetguard.permissions.engine import grant, deny, safe_check
from facetguard.policies.resources import ResourceSnapshot, Visibility
from facetguard.storage.ports import RelationshipStore

logger = logging.getLogger(__name__)


@dataclass
class PolicyContext:
    """
    Everything a rule may read for one check.

    facets_checked accumulates every facet a rule looked up, in order, and
    ends up in the decision metadata for the audit trail. Decisions are
    stamped by clock.
    """
    auth: Authentication
    operation: str
    resource: ResourceSnapshot | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    facets_checked: list[str] = field(default_factory=list)
    clock: Clock = utcnow

    @property
    def user_id(self) -> str | None:
        return self.auth.user_id

    @property
    def resource_id(self) -> str | None:
        return self.resource.resource_id if self.resource else None

    @property
    def owner_id(self) -> str | None:
        return self.resource.owner_id if self.resource else None

    def grant(self, reason: str, reason_code: str, **metadata: Any) -> Decision:
        return grant(
            self.user_id, self.resource_id, self.operation, reason, reason_code, metadata,
            timestamp=self.clock(),
        )

    def deny(self, reason: str, reason_code: str, **metadata: Any) -> Decision:
        return deny(
            self.user_id, self.resource_id, self.operation, reason, reason_code, metadata,
            timestamp=self.clock(),
        )

    async def has_facet(self, facets: FacetService, facet: str | FacetIdentifier) -> bool:
        """Check a requester facet; anonymous requesters hold none and nothing is recorded."""
        identifier = parse_facet(facet)
        if self.user_id is None:
            return False
        held = await facets.user_has_facet(self.user_id, identifier)
        self.facets_checked.append(str(identifier))
        return held


class Rule:
    """
    Base class for chain rules.

    Override evaluate() to return a Decision, or None to abstain.
    """

    @property
    def name(self) -> str:
        return self.__class__.__name__

    async def evaluate(self, context: PolicyContext) -> Decision | None:
        return None


class RuleChain:
    """
    Ordered rules for one operation on one resource type.
    """

    def __init__(self, operation: str, rules: Sequence[Rule], clock: Clock = utcnow):
        self.operation = operation
        self._rules = list(rules)
        self._clock = clock

    @property
    def rules(self) -> list[Rule]:
        return list(self._rules)

    async def _run(self, context: PolicyContext) -> Decision:
        for rule in self._rules:
            decision = await rule.evaluate(context)
            if decision is None:
                logger.debug(f"{self.operation}: {rule.name} abstained")
                continue
            logger.debug(
                f"{self.operation}: {rule.name} -> "
                f"{'grant' if decision.granted else 'deny'} ({decision.reason_code})"
            )
            return decision
        return context.deny("No permission rules matched", ReasonCode.DEFAULT_DENY)

    async def evaluate(self, context: PolicyContext) -> Decision:
        decision = await safe_check(lambda: self._run(context), context.operation, context.clock)
        if context.facets_checked:
            decision = replace(
                decision,
                metadata={**decision.metadata, "facets_checked": list(context.facets_checked)},
            )
        logger.debug(
            f"Decision {decision.decision_id}: {self.operation} by {context.user_id} "
            f"on {context.resource_id} -> {decision.reason_code}"
        )
        return decision

    async def check(
        self,
        auth: Authentication,
        resource: ResourceSnapshot | None = None,
        **attributes: Any
    ) -> Decision:
        return await self.evaluate(PolicyContext(
            auth=auth,
            operation=self.operation,
            resource=resource,
            attributes=attributes,
            clock=self._clock,
        ))


# =============================================================================
# Rules
# =============================================================================

class PublicVisibilityRule(Rule):
    """Grant when the resource is public and published."""

    def __init__(self, reason_code: str = ReasonCode.PUBLIC_POST, reason: str = "Resource is public"):
        self.reason_code = reason_code
        self.reason = reason

    async def evaluate(self, context: PolicyContext) -> Decision | None:
        if context.resource is not None and context.resource.is_public:
            return context.grant(self.reason, self.reason_code)
        return None


class AuthenticatedRule(Rule):
    """Deny anonymous requesters; abstain otherwise."""

    async def evaluate(self, context: PolicyContext) -> Decision | None:
        if not context.auth.is_authenticated:
            return context.deny("Not authenticated", ReasonCode.NOT_AUTHENTICATED)
        return None


class AllowAuthenticatedRule(Rule):
    """Grant any authenticated requester."""

    async def evaluate(self, context: PolicyContext) -> Decision | None:
        if context.auth.is_authenticated:
            return context.grant("Authenticated user", ReasonCode.AUTHENTICATED)
        return None


class OwnerRule(Rule):
    """Grant when the requester owns the resource."""

    async def evaluate(self, context: PolicyContext) -> Decision | None:
        if context.user_id is not None and context.owner_id == context.user_id:
            return context.grant("Request user is the owner", ReasonCode.OWNER)
        return None


class SelfRule(Rule):
    """Grant when the target of a user operation is the requester."""

    async def evaluate(self, context: PolicyContext) -> Decision | None:
        if context.user_id is not None and context.resource_id == context.user_id:
            return context.grant("Request user is the target", ReasonCode.SELF)
        return None


class RelationshipRule(Rule):
    """
    Grant when requester and owner are friends.

    Args:
        relationships: Friendship store
        visibility: Only apply to resources with this visibility; None applies
            to any visibility
    """

    def __init__(
        self,
        relationships: RelationshipStore,
        visibility: Visibility | None = Visibility.FRIENDS_ONLY
    ):
        self._relationships = relationships
        self.visibility = visibility

    async def evaluate(self, context: PolicyContext) -> Decision | None:
        resource = context.resource
        if resource is None or context.user_id is None or resource.owner_id is None:
            return None
        if self.visibility is not None:
            if resource.visibility != self.visibility or not resource.published:
                return None
        if await self._relationships.are_friends(context.user_id, resource.owner_id):
            return context.grant("Request user is friends with owner", ReasonCode.FRIENDS)
        return None


class FacetRule(Rule):
    """
    Grant when the requester holds a facet.

    Args:
        facets: Facet service
        facet: Facet the requester must hold
        reason_code: Code to grant with
        reason: Human-readable reason
        when: Optional precondition on the context; the facet is only looked
            up when it returns True
    """

    def __init__(
        self,
        facets: FacetService,
        facet: str | FacetIdentifier = GLOBAL_ADMIN,
        reason_code: str = ReasonCode.GLOBAL_ADMIN,
        reason: str | None = None,
        when: Callable[[PolicyContext], bool] | None = None
    ):
        self._facets = facets
        self.facet = parse_facet(facet)
        self.reason_code = reason_code
        self.reason = reason or f"Request user holds {self.facet}"
        self._when = when

    @property
    def name(self) -> str:
        return f"FacetRule({self.facet})"

    async def evaluate(self, context: PolicyContext) -> Decision | None:
        if context.user_id is None:
            return None
        if self._when is not None and not self._when(context):
            return None
        if await context.has_facet(self._facets, self.facet):
            return context.grant(self.reason, self.reason_code)
        return None


class DivisionalAdminRule(Rule):
    """
    Grant when the requester holds the scoped admin facet and shares the
    owner's scope value (e.g. the same org division).
    """

    def __init__(
        self,
        facets: FacetService,
        admin_facet: str | FacetIdentifier = DIVISIONAL_ADMIN,
        scope: str = ORG_DIVISION_SCOPE,
        reason_code: str = ReasonCode.DIVISIONAL_ADMIN
    ):
        self._facets = facets
        self.admin_facet = parse_facet(admin_facet)
        self.scope = scope
        self.reason_code = reason_code

    def subjects(self, context: PolicyContext) -> list[str]:
        """Entities that must share the requester's scope value."""
        return [context.owner_id] if context.owner_id else []

    async def share_scope(self, entity_a: str, entity_b: str) -> bool:
        value_a = await self._facets.get_scope_value(USER_ENTITY, entity_a, self.scope)
        if value_a is None:
            return False
        value_b = await self._facets.get_scope_value(USER_ENTITY, entity_b, self.scope)
        return value_a == value_b

    async def evaluate(self, context: PolicyContext) -> Decision | None:
        subjects = self.subjects(context)
        if context.user_id is None or not subjects:
            return None
        if not await context.has_facet(self._facets, self.admin_facet):
            return None
        for subject in subjects:
            if not await self.share_scope(context.user_id, subject):
                return None
        return context.grant(
            f"Request user is {self.scope} admin for the same {self.scope} as the owner",
            self.reason_code,
        )


class LineManagerRule(Rule):
    """Grant when the requester manages the owner, directly or transitively."""

    def __init__(
        self,
        hierarchy: HierarchyResolver,
        reason_code: str = ReasonCode.MANAGER,
        include_indirect: bool = True
    ):
        self._hierarchy = hierarchy
        self.reason_code = reason_code
        self.include_indirect = include_indirect

    async def evaluate(self, context: PolicyContext) -> Decision | None:
        if context.user_id is None or context.owner_id is None:
            return None
        if await self._hierarchy.is_administrator_for(
            context.user_id, context.owner_id, self.include_indirect
        ):
            return context.grant("Request user is line manager for owner", self.reason_code)
        return None
