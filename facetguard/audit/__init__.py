# Permission decision auditing
from facetguard.audit.events import AuditEvent
from facetguard.audit.publishers import AuditPublisher, InMemoryAuditPublisher
from facetguard.audit.factory import (
    VALID_BACKENDS,
    DEFAULT_AUDIT_TOPIC,
    create_audit_publisher,
    get_available_backends,
)
from facetguard.audit.sink import AuditSink

__all__ = [
    "AuditEvent",
    "AuditPublisher",
    "InMemoryAuditPublisher",
    "VALID_BACKENDS",
    "DEFAULT_AUDIT_TOPIC",
    "create_audit_publisher",
    "get_available_backends",
    "AuditSink",
]
