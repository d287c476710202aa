# Storage Layer
# Pluggable persistence for the facetguard access-control engine
#
# This module provides:
# - Port interfaces (ABCs) defining storage contracts
# - In-memory implementations for development/testing
# - SQLAlchemy implementations for production persistence
# - Factory for configuration-based adapter selection

from .ports import (
    FacetAction,
    FacetRepository,
    FacetDefinitionRecord,
    FacetAssignmentRecord,
    FacetHistoryRecord,
    AssignedFacet,
    EntityResolver,
    EntityStore,
    EntityRecord,
    ManagerChangeRecord,
    RelationshipStore,
    AuditLogStore,
    AuditLogRecord,
    StorageBundle,
    closes_cycle,
)
from .memory import (
    InMemoryFacetRepository,
    InMemoryEntityStore,
    InMemoryRelationshipStore,
    InMemoryAuditLogStore,
)
from .factory import (
    StorageSettings,
    StorageBackend,
    parse_database_url,
    create_storage,
    create_memory_storage,
    create_sqlite_storage,
    create_postgres_storage,
)

__all__ = [
    # Ports
    "FacetAction",
    "FacetRepository",
    "FacetDefinitionRecord",
    "FacetAssignmentRecord",
    "FacetHistoryRecord",
    "AssignedFacet",
    "EntityResolver",
    "EntityStore",
    "EntityRecord",
    "ManagerChangeRecord",
    "RelationshipStore",
    "AuditLogStore",
    "AuditLogRecord",
    "StorageBundle",
    "closes_cycle",
    # In-memory adapters
    "InMemoryFacetRepository",
    "InMemoryEntityStore",
    "InMemoryRelationshipStore",
    "InMemoryAuditLogStore",
    # Factory
    "StorageSettings",
    "StorageBackend",
    "parse_database_url",
    "create_storage",
    "create_memory_storage",
    "create_sqlite_storage",
    "create_postgres_storage",
]
