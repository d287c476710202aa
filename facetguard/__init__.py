# facetguard - Fail-closed attribute-based access control
# Facet grants with expiry/review lifecycles plus line-management visibility

__version__ = "0.1.0"

# Re-export commonly used components for convenience
from facetguard.errors import (
    AccessControlError,
    ValidationError,
    NotFoundError,
    HierarchyCycleError,
    InternalError,
)
from facetguard.permissions import (
    Decision,
    Authentication,
    ReasonCode,
    grant,
    deny,
    require_all,
    require_any,
    safe_check,
    filter_by_permission,
    PermissionEngine,
)
from facetguard.facets import FacetIdentifier, FacetService, parse_facet
from facetguard.hierarchy import HierarchyResolver
from facetguard.policies import (
    ResourceSnapshot,
    Visibility,
    ContentPolicy,
    FacetAdminPolicy,
    UserPolicy,
)
from facetguard.audit import AuditSink, create_audit_publisher
from facetguard.config import EngineSettings, settings_from_env
from facetguard.runtime import AccessControl, create_access_control

__all__ = [
    "__version__",
    # Errors
    "AccessControlError",
    "ValidationError",
    "NotFoundError",
    "HierarchyCycleError",
    "InternalError",
    # Engine
    "Decision",
    "Authentication",
    "ReasonCode",
    "grant",
    "deny",
    "require_all",
    "require_any",
    "safe_check",
    "filter_by_permission",
    "PermissionEngine",
    # Components
    "FacetIdentifier",
    "FacetService",
    "parse_facet",
    "HierarchyResolver",
    "ResourceSnapshot",
    "Visibility",
    "ContentPolicy",
    "FacetAdminPolicy",
    "UserPolicy",
    "AuditSink",
    "create_audit_publisher",
    # Wiring
    "EngineSettings",
    "settings_from_env",
    "AccessControl",
    "create_access_control",
]
