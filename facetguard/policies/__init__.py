# Policies
# Per-resource-type ordered rule chains
#
# This module provides:
# - Rule / RuleChain / PolicyContext framework
# - Built-in rules (visibility, owner, relationship, facet, division, line manager)
# - Worked policies for content, facet administration and users

from .resources import ResourceSnapshot, Visibility
from .base import (
    PolicyContext,
    Rule,
    RuleChain,
    PublicVisibilityRule,
    AuthenticatedRule,
    AllowAuthenticatedRule,
    OwnerRule,
    SelfRule,
    RelationshipRule,
    FacetRule,
    DivisionalAdminRule,
    LineManagerRule,
)
from .content import ContentPolicy
from .facets import FacetAdminPolicy
from .users import UserPolicy, DivisionalReassignmentRule

__all__ = [
    "ResourceSnapshot",
    "Visibility",
    # Framework
    "PolicyContext",
    "Rule",
    "RuleChain",
    # Rules
    "PublicVisibilityRule",
    "AuthenticatedRule",
    "AllowAuthenticatedRule",
    "OwnerRule",
    "SelfRule",
    "RelationshipRule",
    "FacetRule",
    "DivisionalAdminRule",
    "DivisionalReassignmentRule",
    "LineManagerRule",
    # Policies
    "ContentPolicy",
    "FacetAdminPolicy",
    "UserPolicy",
]
