"""
Content Policy

Read/update/delete/create checks for user-authored content (posts, media).
The read chain is the canonical ordering:

    public -> authenticated -> owner -> friends -> global admin
           -> divisional admin -> line manager -> default deny
"""

from __future__ import annotations

import logging
from typing import Iterable, TypeVar

from facetguard.facets.catalog import GLOBAL_ADMIN, LOCKED_POSTS, ROLE_MODERATOR
from facetguard.facets.service import FacetService
from facetguard.hierarchy.resolver import HierarchyResolver
from facetguard.permissions.decision import Authentication, Decision, ReasonCode
from facetguard.permissions.engine import PermissionEngine
from facetguard.policies.base import (
    RuleChain,
    PublicVisibilityRule,
    AuthenticatedRule,
    AllowAuthenticatedRule,
    OwnerRule,
    RelationshipRule,
    FacetRule,
    DivisionalAdminRule,
    LineManagerRule,
)
from facetguard.policies.resources import ResourceSnapshot
from facetguard.storage.ports import RelationshipStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ContentPolicy:
    """
    Policy for one content resource type.

    Operations are named "<resource_type>-<verb>", e.g. "post-read".
    """

    def __init__(
        self,
        facets: FacetService,
        hierarchy: HierarchyResolver,
        relationships: RelationshipStore,
        resource_type: str = "post",
        engine: PermissionEngine | None = None
    ):
        self.resource_type = resource_type
        self._engine = engine or PermissionEngine()

        public_code = f"PUBLIC_{resource_type.upper()}"
        self.read_chain = RuleChain(f"{resource_type}-read", [
            PublicVisibilityRule(public_code, f"{resource_type.capitalize()} is public"),
            AuthenticatedRule(),
            OwnerRule(),
            RelationshipRule(relationships),
            FacetRule(facets, GLOBAL_ADMIN, ReasonCode.GLOBAL_ADMIN, "Request user is a global admin"),
            DivisionalAdminRule(facets),
            LineManagerRule(hierarchy),
        ], clock=facets.now)
        self.update_chain = RuleChain(f"{resource_type}-update", [
            AuthenticatedRule(),
            OwnerRule(),
            FacetRule(facets, GLOBAL_ADMIN, ReasonCode.GLOBAL_ADMIN, "Global admin"),
        ], clock=facets.now)
        self.delete_chain = RuleChain(f"{resource_type}-delete", [
            AuthenticatedRule(),
            OwnerRule(),
            FacetRule(facets, GLOBAL_ADMIN, ReasonCode.GLOBAL_ADMIN, "Global admin"),
            FacetRule(facets, ROLE_MODERATOR, ReasonCode.MODERATOR, "Moderator"),
        ], clock=facets.now)
        self.create_chain = RuleChain(f"{resource_type}-create", [
            AuthenticatedRule(),
            AllowAuthenticatedRule(),
        ], clock=facets.now)
        self.create_locked_chain = RuleChain(f"{resource_type}-create-locked", [
            AuthenticatedRule(),
            FacetRule(
                facets,
                LOCKED_POSTS,
                ReasonCode.LOCKED_POSTS_FACET,
                "User has locked posts facet",
            ),
        ], clock=facets.now)

    async def can_read(self, auth: Authentication, resource: ResourceSnapshot) -> Decision:
        return await self.read_chain.check(auth, resource)

    async def can_update(self, auth: Authentication, resource: ResourceSnapshot) -> Decision:
        return await self.update_chain.check(auth, resource)

    async def can_delete(self, auth: Authentication, resource: ResourceSnapshot) -> Decision:
        return await self.delete_chain.check(auth, resource)

    async def can_create(self, auth: Authentication) -> Decision:
        return await self.create_chain.check(auth)

    async def can_create_locked(self, auth: Authentication) -> Decision:
        return await self.create_locked_chain.check(auth)

    async def filter_readable(
        self,
        auth: Authentication,
        resources: Iterable[ResourceSnapshot]
    ) -> list[ResourceSnapshot]:
        """Readable resources, in their original order."""
        return await self._engine.filter_by_permission(
            resources,
            auth,
            lambda resource, a: self.can_read(a, resource),
            fallback_operation=self.read_chain.operation,
        )
