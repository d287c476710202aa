# Permissions
# Decision primitives: construct, compose and safely evaluate

from .decision import Decision, Authentication, ReasonCode
from .engine import (
    grant,
    deny,
    require_all,
    require_any,
    safe_check,
    filter_by_permission,
    PermissionEngine,
    DEFAULT_MAX_CONCURRENCY,
)

__all__ = [
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
    "DEFAULT_MAX_CONCURRENCY",
]
