"""
Decision Types

Decision: the ephemeral result of one permission check.
Authentication: who is asking, plus request context carried to the audit trail.
ReasonCode: stable machine-readable tags for the rule that decided.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from facetguard.clock import utcnow


class ReasonCode:
    """Reason codes produced by the built-in rules and primitives."""
    PUBLIC_MEDIA = "PUBLIC_MEDIA"
    PUBLIC_POST = "PUBLIC_POST"
    PUBLIC_PROFILE = "PUBLIC_PROFILE"
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    OWNER = "OWNER"
    SELF = "SELF"
    FRIENDS = "FRIENDS"
    GLOBAL_ADMIN = "GLOBAL_ADMIN"
    GLOBAL_FACET_ADMIN = "GLOBAL_FACET_ADMIN"
    DIVISIONAL_ADMIN = "DIVISIONAL_ADMIN"
    HR_ADMIN = "HR_ADMIN"
    MODERATOR = "MODERATOR"
    MANAGER = "MANAGER"
    SENIOR_MANAGER = "SENIOR_MANAGER"
    LOCKED_POSTS_FACET = "LOCKED_POSTS_FACET"
    AUTHENTICATED = "AUTHENTICATED"
    DEFAULT_DENY = "DEFAULT_DENY"
    PERMISSION_CHECK_ERROR = "PERMISSION_CHECK_ERROR"


@dataclass(frozen=True)
class Decision:
    """
    Result of a permission check.

    decision_id is unique per decision and doubles as the audit idempotency key.
    """
    granted: bool
    user_id: str | None
    resource_id: str | None
    operation: str
    reason: str
    reason_code: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    decision_id: str = field(default_factory=lambda: str(uuid4()))

    @property
    def denied(self) -> bool:
        return not self.granted

    @property
    def facets_checked(self) -> list[str]:
        return list(self.metadata.get("facets_checked", []))

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "granted": self.granted,
            "user_id": self.user_id,
            "resource_id": self.resource_id,
            "operation": self.operation,
            "reason": self.reason,
            "reason_code": self.reason_code,
            "metadata": dict(self.metadata),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Authentication:
    """
    Requester context supplied by the route layer.

    user_id None means an anonymous request.
    """
    user_id: str | None
    user: dict[str, Any] | None = None
    session_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @classmethod
    def anonymous(cls, **context: Any) -> Authentication:
        return cls(user_id=None, **context)
