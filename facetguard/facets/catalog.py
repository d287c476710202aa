"""
Default Facet Catalog

Well-known facet identifiers referenced by the built-in policies, and the
default vocabulary declared by seed_default_facets().
"""

from __future__ import annotations

import logging
from typing import Iterable, TYPE_CHECKING

from facetguard.facets.identifier import FacetIdentifier
from facetguard.storage.ports import FacetDefinitionRecord

if TYPE_CHECKING:
    from facetguard.facets.service import FacetService

logger = logging.getLogger(__name__)


# =============================================================================
# Well-known facets
# =============================================================================

GLOBAL_ADMIN = FacetIdentifier("reedi-admin", "global")
DIVISIONAL_ADMIN = FacetIdentifier("reedi-admin", "divisional")
FACET_ADMIN = FacetIdentifier("reedi-facet-admin", "global")
LOCKED_POSTS = FacetIdentifier("feature-access", "locked-posts")

USER_ROLE_SCOPE = "user-role"
ROLE_ADMIN = FacetIdentifier(USER_ROLE_SCOPE, "admin")
ROLE_MANAGER = FacetIdentifier(USER_ROLE_SCOPE, "manager")
ROLE_DIRECTOR = FacetIdentifier(USER_ROLE_SCOPE, "director")
ROLE_HR_ADMIN = FacetIdentifier(USER_ROLE_SCOPE, "hr-admin")
ROLE_MODERATOR = FacetIdentifier(USER_ROLE_SCOPE, "moderator")

ORG_DIVISION_SCOPE = "org-division"
ORG_DEPARTMENT_SCOPE = "org-department"

DEFAULT_DIVISIONS = ("engineering", "sales", "marketing", "hr", "finance")
DEFAULT_DEPARTMENTS = (
    "development",
    "design",
    "qa",
    "devops",
    "product",
    "customer-success",
    "accounting",
    "recruiting",
)

# (role facet, description, hierarchy level)
_ROLES = (
    (ROLE_ADMIN, "User has admin role", 50),
    (ROLE_MANAGER, "User has manager role", 40),
    (ROLE_DIRECTOR, "User has director role", 45),
    (ROLE_HR_ADMIN, "User has HR admin role", 35),
    (ROLE_MODERATOR, "User has moderator role", 30),
)


def division_facet(division: str) -> FacetIdentifier:
    return FacetIdentifier(ORG_DIVISION_SCOPE, "division", division)


def department_facet(department: str) -> FacetIdentifier:
    return FacetIdentifier(ORG_DEPARTMENT_SCOPE, "department", department)


def _definition(facet: FacetIdentifier, **attrs) -> FacetDefinitionRecord:
    return FacetDefinitionRecord(
        scope=facet.scope,
        name=facet.name,
        value=facet.value,
        **attrs,
    )


def default_facet_definitions(
    divisions: Iterable[str] = DEFAULT_DIVISIONS,
    departments: Iterable[str] = DEFAULT_DEPARTMENTS,
) -> list[FacetDefinitionRecord]:
    """Build fresh definition records for the default vocabulary."""
    definitions = [
        _definition(
            GLOBAL_ADMIN,
            description="Global administrator with full system access",
            requires_review=True,
            review_days=90,
            hierarchy_level=100,
        ),
        _definition(
            DIVISIONAL_ADMIN,
            description="Divisional administrator with access to division resources",
            requires_review=True,
            review_days=90,
            hierarchy_level=50,
        ),
        _definition(
            FACET_ADMIN,
            description="Can assign and revoke any facet",
            requires_review=True,
            review_days=30,
            hierarchy_level=100,
        ),
        _definition(
            LOCKED_POSTS,
            description="Can create and manage locked/premium posts",
            expiry_days=365,
            hierarchy_level=10,
        ),
    ]

    for facet, description, level in _ROLES:
        definitions.append(_definition(
            facet,
            description=description,
            requires_review=True,
            review_days=180,
            hierarchy_level=level,
        ))

    for division in divisions:
        definitions.append(_definition(
            division_facet(division),
            description=f"User belongs to {division} division",
            requires_audit=False,
        ))

    for department in departments:
        definitions.append(_definition(
            department_facet(department),
            description=f"User belongs to {department} department",
            requires_audit=False,
        ))

    return definitions


async def seed_default_facets(
    service: FacetService,
    divisions: Iterable[str] = DEFAULT_DIVISIONS,
    departments: Iterable[str] = DEFAULT_DEPARTMENTS,
) -> list[FacetDefinitionRecord]:
    """
    Declare the default vocabulary. Safe to run repeatedly.

    Returns:
        The stored definitions (existing ones returned unchanged)
    """
    stored = []
    for definition in default_facet_definitions(divisions, departments):
        stored.append(await service.define_facet(definition))
    logger.info(f"Seeded {len(stored)} default facets")
    return stored
