"""Tests for the SQLAlchemy adapters against a SQLite file database."""

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.exc import IntegrityError, OperationalError

pytest.importorskip("aiosqlite")

from facetguard.facets import (
    FacetService,
    GLOBAL_ADMIN,
    LOCKED_POSTS,
    USER_ENTITY,
    division_facet,
    seed_default_facets,
)
from facetguard.hierarchy import HierarchyResolver
from facetguard.errors import HierarchyCycleError, InternalError
from facetguard.storage import (
    AuditLogRecord,
    FacetAction,
    FacetHistoryRecord,
    ManagerChangeRecord,
    create_sqlite_storage,
)
from facetguard.storage.sqlalchemy import MAX_WRITE_ATTEMPTS, is_transient_error, run_write

from conftest import add_entities


@pytest_asyncio.fixture
async def sql_storage(tmp_path):
    bundle = await create_sqlite_storage(str(tmp_path / "facetguard.db"))
    yield bundle
    await bundle.close()


@pytest_asyncio.fixture
async def sql_facets(sql_storage, clock):
    service = FacetService(sql_storage.facets, clock=clock)
    await seed_default_facets(service)
    return service


class TestSqlFacetRepository:
    """Facet lifecycle persisted through SQLAlchemy."""

    async def test_seeding_is_idempotent(self, sql_facets):
        before = await sql_facets.list_definitions()
        await seed_default_facets(sql_facets)
        after = await sql_facets.list_definitions()
        assert len(before) == len(after)
        assert {d.facet_id for d in before} == {d.facet_id for d in after}

    async def test_assign_revoke_history(self, sql_facets, clock):
        await sql_facets.assign_facet(GLOBAL_ADMIN, USER_ENTITY, "u1", actor_id="root", reason="on-call")
        assert await sql_facets.user_has_facet("u1", "reedi-admin:global")

        clock.advance(minutes=5)
        await sql_facets.revoke_facet(GLOBAL_ADMIN, USER_ENTITY, "u1", actor_id="root")
        assert not await sql_facets.user_has_facet("u1", GLOBAL_ADMIN)

        history = await sql_facets.get_history(USER_ENTITY, "u1")
        assert [h.action for h in history] == [FacetAction.REVOKED, FacetAction.ASSIGNED]
        assert history[1].reason == "on-call"
        assert history[1].performed_by_id == "root"

    async def test_reassign_keeps_single_row(self, sql_facets, sql_storage, clock):
        first = await sql_facets.assign_facet(GLOBAL_ADMIN, USER_ENTITY, "u1", actor_id=None)
        clock.advance(minutes=1)
        second = await sql_facets.assign_facet(GLOBAL_ADMIN, USER_ENTITY, "u1", actor_id=None)
        assert first.assignment_id == second.assignment_id

        facets = await sql_facets.user_get_facets("u1")
        assert len(facets) == 1

    async def test_datetimes_are_timezone_aware(self, sql_facets, clock):
        await sql_facets.assign_facet(LOCKED_POSTS, USER_ENTITY, "u1", actor_id=None)
        [facet] = await sql_facets.user_get_facets("u1")
        assert facet.assignment.assigned_at.tzinfo is not None
        assert facet.assignment.assigned_at == clock.now
        assert facet.assignment.expires_at > clock.now

    async def test_expire_lapsed(self, sql_facets, clock):
        await sql_facets.assign_facet(GLOBAL_ADMIN, USER_ENTITY, "u1", actor_id=None, expiry_days=1)
        await sql_facets.assign_facet(division_facet("sales"), USER_ENTITY, "u1", actor_id=None)

        clock.advance(days=2)
        assert await sql_facets.expire_lapsed() == 1
        assert await sql_facets.expire_lapsed() == 0

        assert await sql_facets.user_get_facet_value("u1", "org-division", "division") == "sales"
        history = await sql_facets.get_history(USER_ENTITY, "u1")
        assert history[0].action == FacetAction.EXPIRED
        assert history[0].performed_by_id is None

    async def test_metadata_round_trips(self, sql_facets):
        await sql_facets.assign_facet(
            GLOBAL_ADMIN, USER_ENTITY, "u1", actor_id=None, metadata={"ticket": "OPS-12"}
        )
        [facet] = await sql_facets.user_get_facets("u1")
        assert facet.assignment.metadata == {"ticket": "OPS-12"}

    async def test_concurrent_first_assignments_share_one_row(self, sql_facets):
        results = await asyncio.gather(*[
            sql_facets.assign_facet(GLOBAL_ADMIN, USER_ENTITY, "u1", actor_id=f"admin-{n}")
            for n in range(3)
        ])

        assert len({r.assignment_id for r in results}) == 1
        assert len(await sql_facets.user_get_facets("u1")) == 1
        history = await sql_facets.get_history(USER_ENTITY, "u1")
        assert [h.action for h in history] == [FacetAction.ASSIGNED] * 3


class TestSqlLedgerAtomicity:
    """A failed ledger append leaves the assignment untouched."""

    async def test_upsert_rolls_back_when_history_insert_fails(self, sql_facets, sql_storage, clock):
        assigned = await sql_facets.assign_facet(
            GLOBAL_ADMIN, USER_ENTITY, "u1", actor_id="root", reason="on-call"
        )
        [existing] = await sql_facets.get_history(USER_ENTITY, "u1")

        changed = replace(assigned, reason="rewritten", expires_at=clock.now + timedelta(days=1))
        duplicate = FacetHistoryRecord(
            facet_id=assigned.facet_id,
            entity_type=USER_ENTITY,
            entity_id="u1",
            action=FacetAction.ASSIGNED,
            history_id=existing.history_id,
        )
        with pytest.raises(InternalError):
            await sql_storage.facets.upsert_assignment(changed, duplicate)

        stored = await sql_storage.facets.get_assignment(assigned.facet_id, USER_ENTITY, "u1")
        assert stored.reason == "on-call"
        assert stored.expires_at == assigned.expires_at
        assert len(await sql_facets.get_history(USER_ENTITY, "u1")) == 1

    async def test_deactivate_rolls_back_when_history_insert_fails(self, sql_facets, sql_storage):
        assigned = await sql_facets.assign_facet(GLOBAL_ADMIN, USER_ENTITY, "u1", actor_id="root")
        [existing] = await sql_facets.get_history(USER_ENTITY, "u1")

        duplicate = FacetHistoryRecord(
            facet_id=assigned.facet_id,
            entity_type=USER_ENTITY,
            entity_id="u1",
            action=FacetAction.REVOKED,
            history_id=existing.history_id,
        )
        with pytest.raises(InternalError):
            await sql_storage.facets.deactivate_assignment(
                assigned.facet_id, USER_ENTITY, "u1", duplicate
            )

        stored = await sql_storage.facets.get_assignment(assigned.facet_id, USER_ENTITY, "u1")
        assert stored.is_active
        assert await sql_facets.user_has_facet("u1", GLOBAL_ADMIN)


class TestSqlEntityStore:
    """Line management persisted through SQLAlchemy."""

    async def test_hierarchy_walk(self, sql_storage, clock):
        await add_entities(sql_storage, ceo=None, vp="ceo", dev="vp")
        hierarchy = HierarchyResolver(sql_storage.entities, clock=clock)

        assert await hierarchy.is_administrator_for("ceo", "dev")
        assert await hierarchy.get_direct_reports("ceo") == {"vp"}
        assert await hierarchy.get_all_reports("ceo") == {"vp", "dev"}

    async def test_set_line_manager_ledger(self, sql_storage, clock):
        await add_entities(sql_storage, ceo=None, vp="ceo", dev="vp")
        hierarchy = HierarchyResolver(sql_storage.entities, clock=clock)

        await hierarchy.set_line_manager("dev", "ceo", actor_id="hr", reason="flattening")
        assert (await sql_storage.entities.lookup("dev")).line_manager_id == "ceo"

        [change] = await sql_storage.entities.list_manager_changes("dev")
        assert change.previous_manager_id == "vp"
        assert change.new_manager_id == "ceo"
        assert change.reason == "flattening"
        assert change.performed_at == clock.now

        with pytest.raises(HierarchyCycleError):
            await hierarchy.set_line_manager("ceo", "dev")

    async def test_opposing_reassignments_cannot_close_a_loop(self, sql_storage, clock):
        await add_entities(sql_storage, a=None, b=None)
        hierarchy = HierarchyResolver(sql_storage.entities, clock=clock)

        results = await asyncio.gather(
            hierarchy.set_line_manager("a", "b"),
            hierarchy.set_line_manager("b", "a"),
            return_exceptions=True,
        )

        assert sum(isinstance(r, HierarchyCycleError) for r in results) == 1
        a = await sql_storage.entities.lookup("a")
        b = await sql_storage.entities.lookup("b")
        assert [a.line_manager_id, b.line_manager_id].count(None) == 1

        changes = (
            await sql_storage.entities.list_manager_changes("a")
            + await sql_storage.entities.list_manager_changes("b")
        )
        assert len(changes) == 1
        assert changes[0].previous_manager_id is None

    async def test_previous_manager_comes_from_stored_row(self, sql_storage):
        await add_entities(sql_storage, ceo=None, vp="ceo", dev="vp")
        stale = ManagerChangeRecord(entity_id="dev", previous_manager_id="ceo", new_manager_id="ceo")

        updated, applied = await sql_storage.entities.set_line_manager("dev", "ceo", stale, max_depth=10)

        assert updated.line_manager_id == "ceo"
        assert applied.previous_manager_id == "vp"
        [change] = await sql_storage.entities.list_manager_changes("dev")
        assert change.previous_manager_id == "vp"

    async def test_store_rejects_cycle_without_writing(self, sql_storage):
        await add_entities(sql_storage, ceo=None, vp="ceo", dev="vp")
        change = ManagerChangeRecord(entity_id="ceo", previous_manager_id=None, new_manager_id="dev")

        with pytest.raises(HierarchyCycleError):
            await sql_storage.entities.set_line_manager("ceo", "dev", change, max_depth=10)
        assert (await sql_storage.entities.lookup("ceo")).line_manager_id is None
        assert await sql_storage.entities.list_manager_changes("ceo") == []


class TestSqlRelationshipStore:
    """Friendship is symmetric and stored once."""

    async def test_friendship(self, sql_storage):
        relationships = sql_storage.relationships
        assert not await relationships.are_friends("a", "b")

        await relationships.add_friendship("b", "a")
        await relationships.add_friendship("a", "b")

        assert await relationships.are_friends("a", "b")
        assert await relationships.are_friends("b", "a")
        assert not await relationships.are_friends("a", "c")


class TestSqlAuditLogStore:
    """Idempotent appends and filtered queries."""

    def _record(self, key: str, user_id: str = "u1", **kwargs) -> AuditLogRecord:
        return AuditLogRecord(
            idempotency_key=key,
            user_id=user_id,
            resource_type=kwargs.pop("resource_type", "post"),
            resource_id="p1",
            operation="post-read",
            granted=False,
            reason="No permission rules matched",
            reason_code="DEFAULT_DENY",
            facets_checked=["reedi-admin:global"],
            **kwargs,
        )

    async def test_duplicate_key_is_rejected(self, sql_storage):
        audit = sql_storage.audit
        assert await audit.append(self._record("d1"))
        assert not await audit.append(self._record("d1"))
        assert len(await audit.query()) == 1

    async def test_query_filters(self, sql_storage):
        audit = sql_storage.audit
        await audit.append(self._record("d1"))
        await audit.append(self._record("d2", user_id="u2"))
        await audit.append(self._record("d3", resource_type="media"))

        assert {r.idempotency_key for r in await audit.query(user_id="u1")} == {"d1", "d3"}
        assert [r.idempotency_key for r in await audit.query(resource_type="media")] == ["d3"]
        assert len(await audit.query(limit=2)) == 2

        [row] = await audit.query(user_id="u2")
        assert row.facets_checked == ["reedi-admin:global"]
        assert row.created_at.tzinfo is not None


class DeadlockDetected(Exception):
    sqlstate = "40P01"


class CountingWrite:
    """Write attempt that fails with the queued errors, then succeeds."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "written"


def unique_violation() -> IntegrityError:
    return IntegrityError("INSERT INTO facet_assignments", {}, Exception("UNIQUE constraint failed"))


class TestRunWrite:
    """Retrying writes that lose a race."""

    async def test_unique_violation_retried_when_allowed(self):
        attempt = CountingWrite(unique_violation())
        assert await run_write("upsert_assignment", attempt, retry_integrity=True) == "written"
        assert attempt.calls == 2

    async def test_unique_violation_surfaces_by_default(self):
        attempt = CountingWrite(unique_violation())
        with pytest.raises(InternalError):
            await run_write("deactivate_assignment", attempt)
        assert attempt.calls == 1

    async def test_deadlock_retried(self):
        attempt = CountingWrite(OperationalError("UPDATE entities", {}, DeadlockDetected()))
        assert await run_write("set_line_manager", attempt) == "written"
        assert attempt.calls == 2

    async def test_gives_up_after_max_attempts(self):
        attempt = CountingWrite(*[unique_violation() for _ in range(MAX_WRITE_ATTEMPTS)])
        with pytest.raises(InternalError):
            await run_write("upsert_assignment", attempt, retry_integrity=True)
        assert attempt.calls == MAX_WRITE_ATTEMPTS

    async def test_other_driver_errors_not_retried(self):
        attempt = CountingWrite(OperationalError("SELECT 1", {}, Exception("disk I/O error")))
        with pytest.raises(InternalError):
            await run_write("update_assignment", attempt)
        assert attempt.calls == 1

    def test_transient_classification(self):
        assert is_transient_error(OperationalError("x", {}, DeadlockDetected()))
        assert is_transient_error(OperationalError("x", {}, Exception("database is locked")))
        assert is_transient_error(OperationalError("x", {}, Exception(1213, "Deadlock found")))
        assert not is_transient_error(OperationalError("x", {}, Exception("no such table")))
