"""
SQLAlchemy Storage Adapters

Async SQLAlchemy 2.0 implementations for production persistence.
Uses async engine and session for all operations.

Compatible with:
- SQLite (aiosqlite)
- PostgreSQL (asyncpg)
- MySQL (aiomysql)

All operations are async. No sync DB calls. Every write that pairs a primary
row change with a ledger append runs in a single session.begin() transaction,
locking the rows it reads before writing. Writes that lose a lock or
unique-key race are retried in a fresh transaction (see run_write).
Driver errors are re-raised as InternalError.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING, Awaitable, Callable, Iterator, TypeVar

from sqlalchemy import select, and_, desc
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
)

from facetguard.errors import HierarchyCycleError, InternalError, NotFoundError
from facetguard.storage.ports import (
    FacetRepository,
    FacetDefinitionRecord,
    FacetAssignmentRecord,
    FacetHistoryRecord,
    FacetAction,
    AssignedFacet,
    EntityStore,
    EntityRecord,
    ManagerChangeRecord,
    RelationshipStore,
    AuditLogStore,
    AuditLogRecord,
    closes_cycle,
)
from facetguard.storage.models import (
    FacetDefinitionModel,
    FacetAssignmentModel,
    FacetHistoryModel,
    EntityModel,
    ManagerChangeModel,
    FriendshipModel,
    AuditLogModel,
)

if TYPE_CHECKING:
    from facetguard.facets.identifier import FacetIdentifier

T = TypeVar("T")


logger = logging.getLogger(__name__)

# Attempts per write before a transient failure is surfaced
MAX_WRITE_ATTEMPTS = 3

# Serialization failure and deadlock (PostgreSQL), deadlock and lock wait timeout (MySQL)
_TRANSIENT_SQLSTATES = frozenset({"40001", "40P01"})
_TRANSIENT_MYSQL_ERRNOS = frozenset({1205, 1213})


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    """Re-raise driver failures as InternalError."""
    try:
        yield
    except SQLAlchemyError as exc:
        raise InternalError(f"Storage failure during {operation}: {exc}") from exc


def is_transient_error(exc: DBAPIError) -> bool:
    """True for lock conflicts that a fresh transaction can get past."""
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _TRANSIENT_SQLSTATES:
        return True
    args = getattr(orig, "args", ())
    if args and args[0] in _TRANSIENT_MYSQL_ERRNOS:
        return True
    return "database is locked" in str(orig)


async def run_write(
    operation: str,
    attempt: Callable[[], Awaitable[T]],
    retry_integrity: bool = False
) -> T:
    """
    Run a transactional write, retrying it in a fresh transaction when it
    loses a race.

    Args:
        operation: Name used in log lines and error messages
        attempt: Opens its own session and transaction on every call
        retry_integrity: Also retry unique constraint violations, for
            insert-or-update writes where a concurrent insert won

    Raises:
        InternalError: Once attempts are exhausted or on any other driver failure
    """
    for number in range(1, MAX_WRITE_ATTEMPTS + 1):
        try:
            return await attempt()
        except IntegrityError as exc:
            if not retry_integrity or number == MAX_WRITE_ATTEMPTS:
                raise InternalError(f"Storage failure during {operation}: {exc}") from exc
            logger.info(f"Retrying {operation} after constraint conflict (attempt {number})")
        except DBAPIError as exc:
            if not is_transient_error(exc) or number == MAX_WRITE_ATTEMPTS:
                raise InternalError(f"Storage failure during {operation}: {exc}") from exc
            logger.warning(f"Retrying {operation} after lock conflict (attempt {number}): {exc}")
        except SQLAlchemyError as exc:
            raise InternalError(f"Storage failure during {operation}: {exc}") from exc
    raise InternalError(f"Storage failure during {operation}")


# =============================================================================
# Converters
# =============================================================================

def definition_model_to_record(model: FacetDefinitionModel) -> FacetDefinitionRecord:
    """Convert SQLAlchemy model to port record."""
    return FacetDefinitionRecord(
        facet_id=model.facet_id,
        scope=model.scope,
        name=model.name,
        value=model.value or None,
        description=model.description,
        requires_audit=model.requires_audit,
        expiry_days=model.expiry_days,
        requires_review=model.requires_review,
        review_days=model.review_days,
        parent_facet_id=model.parent_facet_id,
        hierarchy_level=model.hierarchy_level,
        is_active=model.is_active,
        created_at=model.created_at,
    )


def definition_record_to_model(record: FacetDefinitionRecord) -> FacetDefinitionModel:
    """Convert port record to SQLAlchemy model."""
    return FacetDefinitionModel(
        facet_id=record.facet_id,
        scope=record.scope,
        name=record.name,
        value=record.value or "",
        description=record.description,
        requires_audit=record.requires_audit,
        expiry_days=record.expiry_days,
        requires_review=record.requires_review,
        review_days=record.review_days,
        parent_facet_id=record.parent_facet_id,
        hierarchy_level=record.hierarchy_level,
        is_active=record.is_active,
        created_at=record.created_at,
    )


def assignment_model_to_record(model: FacetAssignmentModel) -> FacetAssignmentRecord:
    """Convert SQLAlchemy model to port record."""
    return FacetAssignmentRecord(
        assignment_id=model.assignment_id,
        facet_id=model.facet_id,
        entity_type=model.entity_type,
        entity_id=model.entity_id,
        assigned_by_id=model.assigned_by_id,
        assigned_at=model.assigned_at,
        expires_at=model.expires_at,
        review_at=model.review_at,
        reason=model.reason,
        metadata=dict(model.metadata_json or {}),
        is_active=model.is_active,
    )


def _apply_assignment(model: FacetAssignmentModel, record: FacetAssignmentRecord) -> None:
    """Copy mutable assignment fields onto an existing row."""
    model.assigned_by_id = record.assigned_by_id
    model.assigned_at = record.assigned_at
    model.expires_at = record.expires_at
    model.review_at = record.review_at
    model.reason = record.reason
    model.metadata_json = dict(record.metadata)
    model.is_active = record.is_active


def history_record_to_model(record: FacetHistoryRecord) -> FacetHistoryModel:
    """Convert port record to SQLAlchemy model."""
    return FacetHistoryModel(
        history_id=record.history_id,
        facet_id=record.facet_id,
        entity_type=record.entity_type,
        entity_id=record.entity_id,
        action=FacetAction(record.action).value,
        performed_by_id=record.performed_by_id,
        performed_at=record.performed_at,
        reason=record.reason,
        expires_at=record.expires_at,
        previous_expires_at=record.previous_expires_at,
        metadata_json=dict(record.metadata),
    )


def history_model_to_record(model: FacetHistoryModel) -> FacetHistoryRecord:
    """Convert SQLAlchemy model to port record."""
    return FacetHistoryRecord(
        history_id=model.history_id,
        facet_id=model.facet_id,
        entity_type=model.entity_type,
        entity_id=model.entity_id,
        action=FacetAction(model.action),
        performed_by_id=model.performed_by_id,
        performed_at=model.performed_at,
        reason=model.reason,
        expires_at=model.expires_at,
        previous_expires_at=model.previous_expires_at,
        metadata=dict(model.metadata_json or {}),
    )


def entity_model_to_record(model: EntityModel) -> EntityRecord:
    """Convert SQLAlchemy model to port record."""
    return EntityRecord(
        entity_id=model.entity_id,
        entity_type=model.entity_type,
        line_manager_id=model.line_manager_id,
        metadata=dict(model.metadata_json or {}),
    )


def change_model_to_record(model: ManagerChangeModel) -> ManagerChangeRecord:
    """Convert SQLAlchemy model to port record."""
    return ManagerChangeRecord(
        change_id=model.change_id,
        entity_id=model.entity_id,
        previous_manager_id=model.previous_manager_id,
        new_manager_id=model.new_manager_id,
        performed_by_id=model.performed_by_id,
        performed_at=model.performed_at,
        reason=model.reason,
    )


def audit_record_to_model(record: AuditLogRecord) -> AuditLogModel:
    """Convert port record to SQLAlchemy model."""
    return AuditLogModel(
        idempotency_key=record.idempotency_key,
        user_id=record.user_id,
        resource_type=record.resource_type,
        resource_id=record.resource_id,
        operation=record.operation,
        granted=record.granted,
        reason=record.reason,
        reason_code=record.reason_code,
        ip_address=record.ip_address,
        user_agent=record.user_agent,
        request_id=record.request_id,
        facets_checked=list(record.facets_checked),
        created_at=record.created_at,
    )


def audit_model_to_record(model: AuditLogModel) -> AuditLogRecord:
    """Convert SQLAlchemy model to port record."""
    return AuditLogRecord(
        idempotency_key=model.idempotency_key,
        user_id=model.user_id,
        resource_type=model.resource_type,
        resource_id=model.resource_id,
        operation=model.operation,
        granted=model.granted,
        reason=model.reason,
        reason_code=model.reason_code,
        ip_address=model.ip_address,
        user_agent=model.user_agent,
        request_id=model.request_id,
        facets_checked=list(model.facets_checked or []),
        created_at=model.created_at,
    )


# =============================================================================
# SQLAlchemy Facet Repository
# =============================================================================

class SqlAlchemyFacetRepository(FacetRepository):
    """
    SQLAlchemy implementation of facet storage.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    async def _find_assignment(
        session: AsyncSession,
        facet_id: str,
        entity_type: str,
        entity_id: str,
        for_update: bool = False
    ) -> FacetAssignmentModel | None:
        query = select(FacetAssignmentModel).where(
            and_(
                FacetAssignmentModel.facet_id == facet_id,
                FacetAssignmentModel.entity_type == entity_type,
                FacetAssignmentModel.entity_id == entity_id,
            )
        )
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def create_definition(self, record: FacetDefinitionRecord) -> FacetDefinitionRecord:
        with _translate_errors("create_definition"):
            async with self._session_factory() as session:
                async with session.begin():
                    # Idempotent on the identity tuple
                    result = await session.execute(
                        select(FacetDefinitionModel).where(
                            and_(
                                FacetDefinitionModel.scope == record.scope,
                                FacetDefinitionModel.name == record.name,
                                FacetDefinitionModel.value == (record.value or ""),
                            )
                        )
                    )
                    existing = result.scalar_one_or_none()
                    if existing:
                        return definition_model_to_record(existing)

                    session.add(definition_record_to_model(record))

                return record

    async def get_definition(self, identifier: FacetIdentifier) -> FacetDefinitionRecord | None:
        with _translate_errors("get_definition"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(FacetDefinitionModel).where(
                        and_(
                            FacetDefinitionModel.scope == identifier.scope,
                            FacetDefinitionModel.name == identifier.name,
                            FacetDefinitionModel.value == identifier.storage_value,
                        )
                    )
                )
                model = result.scalar_one_or_none()
                if model is None:
                    return None
                return definition_model_to_record(model)

    async def list_definitions(self, scope: str | None = None) -> list[FacetDefinitionRecord]:
        with _translate_errors("list_definitions"):
            async with self._session_factory() as session:
                query = select(FacetDefinitionModel)
                if scope is not None:
                    query = query.where(FacetDefinitionModel.scope == scope)
                query = query.order_by(
                    FacetDefinitionModel.scope,
                    FacetDefinitionModel.name,
                    FacetDefinitionModel.value,
                )
                result = await session.execute(query)
                return [definition_model_to_record(m) for m in result.scalars().all()]

    async def list_active_assignments(
        self,
        entity_type: str,
        entity_id: str,
        scope: str | None = None
    ) -> list[AssignedFacet]:
        with _translate_errors("list_active_assignments"):
            async with self._session_factory() as session:
                conditions = [
                    FacetAssignmentModel.entity_type == entity_type,
                    FacetAssignmentModel.entity_id == entity_id,
                    FacetAssignmentModel.is_active.is_(True),
                ]
                if scope is not None:
                    conditions.append(FacetDefinitionModel.scope == scope)

                result = await session.execute(
                    select(FacetAssignmentModel, FacetDefinitionModel)
                    .join(
                        FacetDefinitionModel,
                        FacetDefinitionModel.facet_id == FacetAssignmentModel.facet_id,
                    )
                    .where(and_(*conditions))
                    .order_by(desc(FacetAssignmentModel.assigned_at))
                )
                return [
                    AssignedFacet(
                        definition=definition_model_to_record(definition),
                        assignment=assignment_model_to_record(assignment),
                    )
                    for assignment, definition in result.all()
                ]

    async def get_assignment(
        self,
        facet_id: str,
        entity_type: str,
        entity_id: str
    ) -> FacetAssignmentRecord | None:
        with _translate_errors("get_assignment"):
            async with self._session_factory() as session:
                model = await self._find_assignment(session, facet_id, entity_type, entity_id)
                if model is None:
                    return None
                return assignment_model_to_record(model)

    async def upsert_assignment(
        self,
        record: FacetAssignmentRecord,
        history: FacetHistoryRecord
    ) -> FacetAssignmentRecord:
        async def attempt() -> FacetAssignmentRecord:
            async with self._session_factory() as session:
                async with session.begin():
                    model = await self._find_assignment(
                        session, record.facet_id, record.entity_type, record.entity_id,
                        for_update=True,
                    )
                    if model is None:
                        model = FacetAssignmentModel(
                            assignment_id=record.assignment_id,
                            facet_id=record.facet_id,
                            entity_type=record.entity_type,
                            entity_id=record.entity_id,
                        )
                        session.add(model)
                    _apply_assignment(model, record)
                    session.add(history_record_to_model(history))

                return assignment_model_to_record(model)

        # A concurrent first assignment may win the unique key; the retry updates its row
        return await run_write("upsert_assignment", attempt, retry_integrity=True)

    async def deactivate_assignment(
        self,
        facet_id: str,
        entity_type: str,
        entity_id: str,
        history: FacetHistoryRecord
    ) -> bool:
        async def attempt() -> bool:
            async with self._session_factory() as session:
                async with session.begin():
                    model = await self._find_assignment(
                        session, facet_id, entity_type, entity_id, for_update=True
                    )
                    if model is None or not model.is_active:
                        return False
                    model.is_active = False
                    session.add(history_record_to_model(history))
                return True

        return await run_write("deactivate_assignment", attempt)

    async def update_assignment(
        self,
        record: FacetAssignmentRecord,
        history: FacetHistoryRecord
    ) -> FacetAssignmentRecord:
        async def attempt() -> FacetAssignmentRecord:
            async with self._session_factory() as session:
                async with session.begin():
                    model = await self._find_assignment(
                        session, record.facet_id, record.entity_type, record.entity_id,
                        for_update=True,
                    )
                    if model is None:
                        raise NotFoundError(
                            f"Assignment of facet {record.facet_id} to "
                            f"{record.entity_type}:{record.entity_id} not found"
                        )
                    _apply_assignment(model, record)
                    session.add(history_record_to_model(history))

                return assignment_model_to_record(model)

        return await run_write("update_assignment", attempt)

    async def list_lapsed_assignments(self, cutoff: datetime) -> list[FacetAssignmentRecord]:
        with _translate_errors("list_lapsed_assignments"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(FacetAssignmentModel).where(
                        and_(
                            FacetAssignmentModel.is_active.is_(True),
                            FacetAssignmentModel.expires_at.is_not(None),
                            FacetAssignmentModel.expires_at <= cutoff,
                        )
                    )
                )
                return [assignment_model_to_record(m) for m in result.scalars().all()]

    async def list_history(
        self,
        entity_type: str,
        entity_id: str,
        limit: int = 100
    ) -> list[FacetHistoryRecord]:
        with _translate_errors("list_history"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(FacetHistoryModel)
                    .where(
                        and_(
                            FacetHistoryModel.entity_type == entity_type,
                            FacetHistoryModel.entity_id == entity_id,
                        )
                    )
                    .order_by(desc(FacetHistoryModel.performed_at))
                    .limit(limit)
                )
                return [history_model_to_record(m) for m in result.scalars().all()]


# =============================================================================
# SQLAlchemy Entity Store
# =============================================================================

class SqlAlchemyEntityStore(EntityStore):
    """
    SQLAlchemy implementation of the entity / line manager store.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def lookup(self, entity_id: str) -> EntityRecord | None:
        with _translate_errors("lookup"):
            async with self._session_factory() as session:
                model = await session.get(EntityModel, entity_id)
                if model is None:
                    return None
                return entity_model_to_record(model)

    async def upsert_entity(self, record: EntityRecord) -> EntityRecord:
        with _translate_errors("upsert_entity"):
            async with self._session_factory() as session:
                async with session.begin():
                    model = await session.get(EntityModel, record.entity_id)
                    if model is None:
                        model = EntityModel(entity_id=record.entity_id)
                        session.add(model)
                    model.entity_type = record.entity_type
                    model.line_manager_id = record.line_manager_id
                    model.metadata_json = dict(record.metadata)

                return record

    async def list_direct_reports(self, manager_id: str) -> list[str]:
        with _translate_errors("list_direct_reports"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(EntityModel.entity_id).where(
                        EntityModel.line_manager_id == manager_id
                    )
                )
                return list(result.scalars().all())

    @staticmethod
    async def _locked_entity(session: AsyncSession, entity_id: str) -> EntityModel | None:
        result = await session.execute(
            select(EntityModel).where(EntityModel.entity_id == entity_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def set_line_manager(
        self,
        entity_id: str,
        manager_id: str | None,
        change: ManagerChangeRecord,
        max_depth: int
    ) -> tuple[EntityRecord, ManagerChangeRecord | None]:
        async def attempt() -> tuple[EntityRecord, ManagerChangeRecord | None]:
            async with self._session_factory() as session:
                async with session.begin():
                    model = await self._locked_entity(session, entity_id)
                    if model is None:
                        raise NotFoundError(f"Entity {entity_id} not found")

                    if manager_id is not None:
                        if (
                            manager_id != entity_id
                            and await self._locked_entity(session, manager_id) is None
                        ):
                            raise NotFoundError(f"Entity {manager_id} not found")

                        # Every row on the chain stays locked until commit
                        async def manager_of(current_id: str) -> str | None:
                            current = await self._locked_entity(session, current_id)
                            return current.line_manager_id if current else None

                        if await closes_cycle(entity_id, manager_id, manager_of, max_depth):
                            raise HierarchyCycleError(entity_id, manager_id)

                    if model.line_manager_id == manager_id:
                        return entity_model_to_record(model), None

                    applied = replace(change, previous_manager_id=model.line_manager_id)
                    model.line_manager_id = manager_id
                    session.add(ManagerChangeModel(
                        change_id=applied.change_id,
                        entity_id=applied.entity_id,
                        previous_manager_id=applied.previous_manager_id,
                        new_manager_id=applied.new_manager_id,
                        performed_by_id=applied.performed_by_id,
                        performed_at=applied.performed_at,
                        reason=applied.reason,
                    ))

                return entity_model_to_record(model), applied

        return await run_write("set_line_manager", attempt)

    async def list_manager_changes(self, entity_id: str) -> list[ManagerChangeRecord]:
        with _translate_errors("list_manager_changes"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(ManagerChangeModel)
                    .where(ManagerChangeModel.entity_id == entity_id)
                    .order_by(desc(ManagerChangeModel.performed_at))
                )
                return [change_model_to_record(m) for m in result.scalars().all()]


# =============================================================================
# SQLAlchemy Relationship Store
# =============================================================================

class SqlAlchemyRelationshipStore(RelationshipStore):
    """
    SQLAlchemy implementation of friendship storage.

    Each pair is stored once, ordered, so lookups are a primary key get.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    def _key(entity_a: str, entity_b: str) -> tuple[str, str]:
        return (entity_a, entity_b) if entity_a <= entity_b else (entity_b, entity_a)

    async def are_friends(self, entity_a: str, entity_b: str) -> bool:
        with _translate_errors("are_friends"):
            async with self._session_factory() as session:
                model = await session.get(FriendshipModel, self._key(entity_a, entity_b))
                return model is not None

    async def add_friendship(self, entity_a: str, entity_b: str) -> None:
        key = self._key(entity_a, entity_b)
        with _translate_errors("add_friendship"):
            async with self._session_factory() as session:
                async with session.begin():
                    if await session.get(FriendshipModel, key) is None:
                        session.add(FriendshipModel(user_a=key[0], user_b=key[1]))


# =============================================================================
# SQLAlchemy Audit Log Store
# =============================================================================

class SqlAlchemyAuditLogStore(AuditLogStore):
    """
    SQLAlchemy implementation of the permission audit log.

    The idempotency key is the primary key, so a duplicate delivery that races
    past the existence check is rejected by the database and reported as False.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def append(self, record: AuditLogRecord) -> bool:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    existing = await session.get(AuditLogModel, record.idempotency_key)
                    if existing is not None:
                        return False
                    session.add(audit_record_to_model(record))
            return True
        except IntegrityError:
            return False
        except SQLAlchemyError as exc:
            raise InternalError(f"Storage failure during audit append: {exc}") from exc

    async def query(
        self,
        user_id: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        limit: int = 100
    ) -> list[AuditLogRecord]:
        with _translate_errors("audit query"):
            async with self._session_factory() as session:
                conditions = []
                if user_id is not None:
                    conditions.append(AuditLogModel.user_id == user_id)
                if resource_type is not None:
                    conditions.append(AuditLogModel.resource_type == resource_type)
                if resource_id is not None:
                    conditions.append(AuditLogModel.resource_id == resource_id)

                query = select(AuditLogModel)
                if conditions:
                    query = query.where(and_(*conditions))
                query = query.order_by(desc(AuditLogModel.created_at)).limit(limit)

                result = await session.execute(query)
                return [audit_model_to_record(m) for m in result.scalars().all()]
