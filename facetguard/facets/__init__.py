# Facets
# Attribute grants with expiry/review lifecycle
#
# This module provides:
# - FacetIdentifier parsing ("scope:name[:value]")
# - FacetService: reads, assignment lifecycle and reconciliation
# - The default facet catalog used by the built-in policies

from .identifier import FacetIdentifier, parse_facet, facet_to_string
from .service import FacetService, FacetWithAssignment, USER_ENTITY
from .catalog import (
    GLOBAL_ADMIN,
    DIVISIONAL_ADMIN,
    FACET_ADMIN,
    LOCKED_POSTS,
    USER_ROLE_SCOPE,
    ROLE_ADMIN,
    ROLE_MANAGER,
    ROLE_DIRECTOR,
    ROLE_HR_ADMIN,
    ROLE_MODERATOR,
    ORG_DIVISION_SCOPE,
    ORG_DEPARTMENT_SCOPE,
    division_facet,
    department_facet,
    default_facet_definitions,
    seed_default_facets,
)

__all__ = [
    "FacetIdentifier",
    "parse_facet",
    "facet_to_string",
    "FacetService",
    "FacetWithAssignment",
    "USER_ENTITY",
    # Catalog
    "GLOBAL_ADMIN",
    "DIVISIONAL_ADMIN",
    "FACET_ADMIN",
    "LOCKED_POSTS",
    "USER_ROLE_SCOPE",
    "ROLE_ADMIN",
    "ROLE_MANAGER",
    "ROLE_DIRECTOR",
    "ROLE_HR_ADMIN",
    "ROLE_MODERATOR",
    "ORG_DIVISION_SCOPE",
    "ORG_DEPARTMENT_SCOPE",
    "division_facet",
    "department_facet",
    "default_facet_definitions",
    "seed_default_facets",
]
