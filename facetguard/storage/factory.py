"""
Storage Factory

Builds the StorageBundle (facets, entities, relationships, audit log) for a
configured backend.

Backends:
- memory: per-process stores guarded by asyncio locks; nothing survives a restart
- sqlite: aiosqlite, tables created on first start, transactions serialized
- postgresql: asyncpg with a sized connection pool
- mysql: aiomysql with a sized connection pool

Usage:
    bundle = await create_storage(StorageSettings(
        backend=StorageBackend.POSTGRESQL,
        database_url="postgresql://facetguard@db/facetguard",
    ))
    facets = FacetService(bundle.facets)
    ...
    await bundle.close()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
)

from .ports import (
    StorageBundle,
    FacetRepository,
    EntityStore,
    RelationshipStore,
    AuditLogStore,
)
from .memory import (
    InMemoryFacetRepository,
    InMemoryEntityStore,
    InMemoryRelationshipStore,
    InMemoryAuditLogStore,
)
from .sqlalchemy import (
    SqlAlchemyFacetRepository,
    SqlAlchemyEntityStore,
    SqlAlchemyRelationshipStore,
    SqlAlchemyAuditLogStore,
)
from .models import Base

logger = logging.getLogger(__name__)


class StorageBackend(str, Enum):
    """Supported storage backends."""
    MEMORY = "memory"
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


@dataclass
class StorageSettings:
    """
    Configuration for storage layer.

    Attributes:
        backend: Storage backend type
        database_url: SQLAlchemy async connection URL (for SQL backends)
        pool_size: Connection pool size for SQL (ignored for SQLite)
        pool_max_overflow: Max overflow for connection pool (ignored for SQLite)
        echo_sql: Whether to log SQL queries
        create_tables: Whether to auto-create tables on startup
        audit_max_records: Retention bound for the in-memory audit log
    """
    backend: StorageBackend = StorageBackend.MEMORY
    database_url: str | None = None
    pool_size: int = 5
    pool_max_overflow: int = 10
    echo_sql: bool = False
    create_tables: bool = True
    audit_max_records: int = 100000


@dataclass
class StorageBundleImpl(StorageBundle):
    """
    StorageBundle implementation with cleanup support.
    """
    facets: FacetRepository
    entities: EntityStore
    relationships: RelationshipStore
    audit: AuditLogStore
    _engine: AsyncEngine | None = field(default=None, repr=False)

    async def close(self) -> None:
        """Close all storage connections."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None


def parse_database_url(url: str) -> StorageBackend:
    """Determine backend from database URL."""
    if url.startswith("sqlite"):
        return StorageBackend.SQLITE
    elif url.startswith("postgresql") or url.startswith("postgres"):
        return StorageBackend.POSTGRESQL
    elif url.startswith("mysql"):
        return StorageBackend.MYSQL
    else:
        raise ValueError(f"Unsupported database URL scheme: {url}")


def _async_url(backend: StorageBackend, url: str) -> str:
    """Ensure the async driver is in the URL."""
    if backend == StorageBackend.SQLITE:
        if "+aiosqlite" not in url:
            url = url.replace("sqlite://", "sqlite+aiosqlite://")
    elif backend == StorageBackend.POSTGRESQL:
        if "+asyncpg" not in url:
            url = url.replace("postgresql://", "postgresql+asyncpg://")
            url = url.replace("postgres://", "postgresql+asyncpg://")
    elif backend == StorageBackend.MYSQL:
        if "+aiomysql" not in url:
            url = url.replace("mysql://", "mysql+aiomysql://")
    return url


def _serialize_sqlite_writes(engine: AsyncEngine, busy_timeout_ms: int = 30000) -> None:
    """
    SQLite ignores SELECT ... FOR UPDATE, so every transaction starts with
    BEGIN IMMEDIATE instead. Read-check-write sequences then run one at a time
    and a second writer waits up to busy_timeout_ms for the lock.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_connect(dbapi_connection, _connection_record) -> None:
        # Stop the driver from issuing its own deferred BEGIN
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        finally:
            cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _sqlite_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


async def create_storage(settings: StorageSettings) -> StorageBundle:
    """
    Create storage bundle from settings.

    Args:
        settings: Storage configuration

    Returns:
        Configured StorageBundle

    Raises:
        ValueError: If settings are invalid
    """
    if settings.backend == StorageBackend.MEMORY:
        logger.info("Using in-memory storage")
        return StorageBundleImpl(
            facets=InMemoryFacetRepository(),
            entities=InMemoryEntityStore(),
            relationships=InMemoryRelationshipStore(),
            audit=InMemoryAuditLogStore(max_records=settings.audit_max_records),
        )

    if not settings.database_url:
        raise ValueError(
            f"database_url required for backend {settings.backend.value}"
        )

    url = _async_url(settings.backend, settings.database_url)

    # SQLite uses a non-queue pool that rejects sizing arguments
    engine_kwargs: dict = {"echo": settings.echo_sql}
    if settings.backend != StorageBackend.SQLITE:
        engine_kwargs["pool_size"] = settings.pool_size
        engine_kwargs["max_overflow"] = settings.pool_max_overflow

    engine = create_async_engine(url, **engine_kwargs)
    if settings.backend == StorageBackend.SQLITE:
        _serialize_sqlite_writes(engine)

    # Create tables if requested
    if settings.create_tables:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    logger.info(f"Using {settings.backend.value} storage")
    return StorageBundleImpl(
        facets=SqlAlchemyFacetRepository(session_factory),
        entities=SqlAlchemyEntityStore(session_factory),
        relationships=SqlAlchemyRelationshipStore(session_factory),
        audit=SqlAlchemyAuditLogStore(session_factory),
        _engine=engine,
    )


# Convenience for quick setup
async def create_memory_storage() -> StorageBundle:
    """Create in-memory storage bundle (for testing)."""
    return await create_storage(StorageSettings(backend=StorageBackend.MEMORY))


async def create_sqlite_storage(
    path: str = ":memory:",
    create_tables: bool = True,
) -> StorageBundle:
    """Create SQLite storage bundle."""
    url = f"sqlite+aiosqlite:///{path}"
    return await create_storage(StorageSettings(
        backend=StorageBackend.SQLITE,
        database_url=url,
        create_tables=create_tables,
    ))


async def create_postgres_storage(
    url: str,
    create_tables: bool = True,
    pool_size: int = 5,
) -> StorageBundle:
    """Create PostgreSQL storage bundle."""
    return await create_storage(StorageSettings(
        backend=StorageBackend.POSTGRESQL,
        database_url=url,
        create_tables=create_tables,
        pool_size=pool_size,
    ))
