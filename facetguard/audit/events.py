"""
Audit Events

Wire and storage shape of an audited permission decision.

The idempotency key is the decision id: the same decision delivered through
the broker and through the direct-write fallback lands as one audit row.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from facetguard.clock import utcnow
from facetguard.permissions.decision import Authentication, Decision
from facetguard.storage.ports import AuditLogRecord


class AuditEvent(BaseModel):
    """
    A permission decision with its request context.
    """
    # Identity
    idempotency_key: str = Field(
        ...,
        description="Decision id; deduplicates at-least-once delivery"
    )

    # Decision
    user_id: str | None = Field(
        default=None,
        description="Requester (None for anonymous)"
    )
    resource_type: str = Field(
        ...,
        description="Kind of resource checked, e.g. post, media, user, facet"
    )
    resource_id: str | None = Field(
        default=None,
        description="Resource checked (if any)"
    )
    operation: str = Field(
        ...,
        description="Operation checked, e.g. post-read"
    )
    granted: bool = Field(
        ...,
        description="Outcome"
    )
    reason: str = Field(
        ...,
        description="Human-readable reason"
    )
    reason_code: str | None = Field(
        default=None,
        description="Rule that decided"
    )

    # Request context
    ip_address: str | None = Field(default=None)
    user_agent: str | None = Field(default=None)
    request_id: str | None = Field(default=None)
    facets_checked: list[str] = Field(
        default_factory=list,
        description="Facets looked up while deciding"
    )

    created_at: datetime = Field(
        default_factory=utcnow,
        description="When the decision was made"
    )

    @classmethod
    def from_decision(
        cls,
        decision: Decision,
        auth: Authentication | None,
        resource_type: str
    ) -> AuditEvent:
        return cls(
            idempotency_key=decision.decision_id,
            user_id=decision.user_id,
            resource_type=resource_type,
            resource_id=decision.resource_id,
            operation=decision.operation,
            granted=decision.granted,
            reason=decision.reason,
            reason_code=decision.reason_code,
            ip_address=auth.ip_address if auth else None,
            user_agent=auth.user_agent if auth else None,
            request_id=auth.request_id if auth else None,
            facets_checked=decision.facets_checked,
            created_at=decision.timestamp,
        )

    def to_record(self) -> AuditLogRecord:
        return AuditLogRecord(**self.model_dump())

    def to_dict(self) -> dict[str, Any]:
        """Serialize for broker payloads."""
        return self.model_dump(mode="json")
