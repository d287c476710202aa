"""
User Policy

Checks on user profiles and the reporting structure around them.
"""

from __future__ import annotations

from facetguard.facets.catalog import DIVISIONAL_ADMIN, GLOBAL_ADMIN, ROLE_HR_ADMIN
from facetguard.facets.service import FacetService
from facetguard.hierarchy.resolver import HierarchyResolver
from facetguard.permissions.decision import Authentication, Decision, ReasonCode
from facetguard.policies.base import (
    PolicyContext,
    RuleChain,
    PublicVisibilityRule,
    AuthenticatedRule,
    AllowAuthenticatedRule,
    SelfRule,
    RelationshipRule,
    FacetRule,
    DivisionalAdminRule,
    LineManagerRule,
)
from facetguard.policies.resources import ResourceSnapshot
from facetguard.storage.ports import RelationshipStore


class DivisionalReassignmentRule(DivisionalAdminRule):
    """
    Divisional admins may move people within their own division: the target
    and, when given, the new manager must share the admin's division.
    """

    def subjects(self, context: PolicyContext) -> list[str]:
        subjects = super().subjects(context)
        new_manager_id = context.attributes.get("new_manager_id")
        if new_manager_id:
            subjects.append(new_manager_id)
        return subjects


class UserPolicy:
    """
    Policy for user-targeted operations. The resource is the target user.
    """

    def __init__(
        self,
        facets: FacetService,
        hierarchy: HierarchyResolver,
        relationships: RelationshipStore
    ):
        global_admin = FacetRule(facets, GLOBAL_ADMIN, ReasonCode.GLOBAL_ADMIN, "Global admin")
        hr_admin = FacetRule(facets, ROLE_HR_ADMIN, ReasonCode.HR_ADMIN, "HR admin")

        self.view_chain = RuleChain("user-view", [
            PublicVisibilityRule(ReasonCode.PUBLIC_PROFILE, "Profile is public"),
            AuthenticatedRule(),
            SelfRule(),
            LineManagerRule(hierarchy),
            global_admin,
            hr_admin,
            RelationshipRule(relationships, visibility=None),
        ], clock=facets.now)
        self.update_chain = RuleChain("user-update", [
            AuthenticatedRule(),
            SelfRule(),
            global_admin,
            hr_admin,
        ], clock=facets.now)
        self.set_line_manager_chain = RuleChain("user-set-line-manager", [
            AuthenticatedRule(),
            global_admin,
            hr_admin,
            DivisionalReassignmentRule(facets, DIVISIONAL_ADMIN),
        ], clock=facets.now)
        self.view_line_manager_chain = RuleChain("user-view-line-manager", [
            AuthenticatedRule(),
            SelfRule(),
            global_admin,
            hr_admin,
            LineManagerRule(hierarchy),
        ], clock=facets.now)
        self.view_direct_reports_chain = RuleChain("user-view-direct-reports", [
            AuthenticatedRule(),
            SelfRule(),
            global_admin,
            hr_admin,
            LineManagerRule(hierarchy, reason_code=ReasonCode.SENIOR_MANAGER),
        ], clock=facets.now)
        self.view_org_hierarchy_chain = RuleChain("org-hierarchy-view", [
            AuthenticatedRule(),
            global_admin,
            hr_admin,
            AllowAuthenticatedRule(),
        ], clock=facets.now)

    async def can_view_user(
        self,
        auth: Authentication,
        target_user_id: str,
        is_private: bool = True
    ) -> Decision:
        return await self.view_chain.check(
            auth, ResourceSnapshot.for_user(target_user_id, is_private)
        )

    async def can_update_user(self, auth: Authentication, target_user_id: str) -> Decision:
        return await self.update_chain.check(auth, ResourceSnapshot.for_user(target_user_id))

    async def can_set_line_manager(
        self,
        auth: Authentication,
        target_user_id: str,
        new_manager_id: str | None = None
    ) -> Decision:
        return await self.set_line_manager_chain.check(
            auth,
            ResourceSnapshot.for_user(target_user_id),
            new_manager_id=new_manager_id,
        )

    async def can_view_line_manager(self, auth: Authentication, target_user_id: str) -> Decision:
        return await self.view_line_manager_chain.check(
            auth, ResourceSnapshot.for_user(target_user_id)
        )

    async def can_view_direct_reports(self, auth: Authentication, manager_id: str) -> Decision:
        return await self.view_direct_reports_chain.check(
            auth, ResourceSnapshot.for_user(manager_id)
        )

    async def can_view_org_hierarchy(self, auth: Authentication) -> Decision:
        return await self.view_org_hierarchy_chain.check(auth)
