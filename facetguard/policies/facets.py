"""
Facet Administration Policy

Who may assign, revoke and inspect facets.

- Facet admins and global admins may assign or revoke anything.
- Divisional admins may assign org-division facets.
- HR admins may assign and revoke org-division / org-department facets.
- Managers may assign user-role facets other than admin and hr-admin.
"""

from __future__ import annotations

from facetguard.facets.catalog import (
    DIVISIONAL_ADMIN,
    FACET_ADMIN,
    GLOBAL_ADMIN,
    ORG_DEPARTMENT_SCOPE,
    ORG_DIVISION_SCOPE,
    ROLE_HR_ADMIN,
    ROLE_MANAGER,
    USER_ROLE_SCOPE,
)
from facetguard.facets.identifier import FacetIdentifier, parse_facet
from facetguard.facets.service import FacetService
from facetguard.permissions.decision import Authentication, Decision, ReasonCode
from facetguard.policies.base import (
    PolicyContext,
    RuleChain,
    AuthenticatedRule,
    AllowAuthenticatedRule,
    SelfRule,
    FacetRule,
)
from facetguard.policies.resources import ResourceSnapshot

ORG_SCOPES = frozenset({ORG_DIVISION_SCOPE, ORG_DEPARTMENT_SCOPE})
PROTECTED_ROLES = frozenset({"admin", "hr-admin"})


def _target_facet(context: PolicyContext) -> FacetIdentifier:
    # Raises ValidationError inside the chain, which fails closed
    return parse_facet(context.attributes["facet"])


def _is_division_facet(context: PolicyContext) -> bool:
    return _target_facet(context).scope == ORG_DIVISION_SCOPE


def _is_org_facet(context: PolicyContext) -> bool:
    return _target_facet(context).scope in ORG_SCOPES


def _is_delegable_role(context: PolicyContext) -> bool:
    facet = _target_facet(context)
    return facet.scope == USER_ROLE_SCOPE and facet.name not in PROTECTED_ROLES


class FacetAdminPolicy:
    """
    Policy for facet administration operations.
    """

    def __init__(self, facets: FacetService):
        facet_admin = FacetRule(facets, FACET_ADMIN, ReasonCode.GLOBAL_FACET_ADMIN, "User is global facet admin")
        global_admin = FacetRule(facets, GLOBAL_ADMIN, ReasonCode.GLOBAL_ADMIN, "User is global admin")
        hr_admin = FacetRule(facets, ROLE_HR_ADMIN, ReasonCode.HR_ADMIN, "HR admin")

        self.assign_chain = RuleChain("facet-assign", [
            AuthenticatedRule(),
            facet_admin,
            global_admin,
            FacetRule(
                facets,
                DIVISIONAL_ADMIN,
                ReasonCode.DIVISIONAL_ADMIN,
                "Divisional admin assigning divisional facet",
                when=_is_division_facet,
            ),
            FacetRule(
                facets,
                ROLE_HR_ADMIN,
                ReasonCode.HR_ADMIN,
                "HR admin assigning org facet",
                when=_is_org_facet,
            ),
            FacetRule(
                facets,
                ROLE_MANAGER,
                ReasonCode.MANAGER,
                "Manager assigning non-admin role",
                when=_is_delegable_role,
            ),
        ], clock=facets.now)
        self.revoke_chain = RuleChain("facet-revoke", [
            AuthenticatedRule(),
            facet_admin,
            global_admin,
            FacetRule(
                facets,
                ROLE_HR_ADMIN,
                ReasonCode.HR_ADMIN,
                "HR admin revoking org facet",
                when=_is_org_facet,
            ),
        ], clock=facets.now)
        self.history_chain = RuleChain("facet-history-view", [
            AuthenticatedRule(),
            SelfRule(),
            global_admin,
            facet_admin,
            hr_admin,
        ], clock=facets.now)
        self.user_facets_chain = RuleChain("user-facets-view", [
            AuthenticatedRule(),
            SelfRule(),
            global_admin,
            facet_admin,
            hr_admin,
        ], clock=facets.now)
        self.definitions_chain = RuleChain("facet-definitions-view", [
            AuthenticatedRule(),
            AllowAuthenticatedRule(),
        ], clock=facets.now)

    @staticmethod
    def _target(target_user_id: str) -> ResourceSnapshot:
        return ResourceSnapshot.for_user(target_user_id)

    async def can_assign_facet(
        self,
        auth: Authentication,
        target_user_id: str,
        facet: str | FacetIdentifier
    ) -> Decision:
        return await self.assign_chain.check(auth, self._target(target_user_id), facet=facet)

    async def can_revoke_facet(
        self,
        auth: Authentication,
        target_user_id: str,
        facet: str | FacetIdentifier
    ) -> Decision:
        return await self.revoke_chain.check(auth, self._target(target_user_id), facet=facet)

    async def can_view_history(self, auth: Authentication, target_user_id: str) -> Decision:
        return await self.history_chain.check(auth, self._target(target_user_id))

    async def can_view_user_facets(self, auth: Authentication, target_user_id: str) -> Decision:
        return await self.user_facets_chain.check(auth, self._target(target_user_id))

    async def can_view_definitions(self, auth: Authentication) -> Decision:
        return await self.definitions_chain.check(auth)
