"""Tests for HierarchyResolver traversal and manager reassignment."""

import asyncio

import pytest
import pytest_asyncio

from facetguard.errors import HierarchyCycleError, NotFoundError, ValidationError
from facetguard.hierarchy import HierarchyResolver
from facetguard.storage import InMemoryEntityStore, ManagerChangeRecord, closes_cycle

from conftest import add_entities


@pytest_asyncio.fixture
async def org(storage):
    """ceo <- vp <- mgr <- dev, plus a peer reporting to the ceo."""
    await add_entities(storage, ceo=None, vp="ceo", mgr="vp", dev="mgr", peer="ceo")
    return storage


class TestIsAdministratorFor:
    """Direct, transitive and degenerate management checks."""

    async def test_direct_manager_regardless_of_indirect_flag(self, org, hierarchy):
        assert await hierarchy.is_administrator_for("mgr", "dev", include_indirect=True)
        assert await hierarchy.is_administrator_for("mgr", "dev", include_indirect=False)

    async def test_transitive_manager(self, org, hierarchy):
        assert await hierarchy.is_administrator_for("vp", "dev", include_indirect=True)
        assert await hierarchy.is_administrator_for("ceo", "dev")
        assert not await hierarchy.is_administrator_for("vp", "dev", include_indirect=False)

    async def test_never_self(self, org, hierarchy):
        for entity in ("ceo", "dev", "unknown"):
            assert not await hierarchy.is_administrator_for(entity, entity)

    async def test_reports_do_not_manage_upwards(self, org, hierarchy):
        assert not await hierarchy.is_administrator_for("dev", "ceo")
        assert not await hierarchy.is_administrator_for("peer", "dev")

    async def test_unknown_subject(self, org, hierarchy):
        assert not await hierarchy.is_administrator_for("ceo", "ghost")

    async def test_cycle_terminates(self, storage, hierarchy):
        # a <- c <- b <- a
        await add_entities(storage, a="b", b="c", c="a")
        assert not await hierarchy.is_administrator_for("outsider", "a")
        assert await hierarchy.is_administrator_for("b", "a")
        assert await hierarchy.is_administrator_for("c", "a")

    async def test_dangling_manager_reference(self, storage, hierarchy):
        await add_entities(storage, dev="gone")
        assert await hierarchy.is_administrator_for("gone", "dev")
        assert not await hierarchy.is_administrator_for("someone", "dev")

    async def test_depth_bound(self, storage):
        chain = {f"u{i}": (f"u{i - 1}" if i else None) for i in range(15)}
        await add_entities(storage, **chain)
        shallow = HierarchyResolver(storage.entities, max_depth=3)

        assert await shallow.is_administrator_for("u11", "u14")
        assert not await shallow.is_administrator_for("u0", "u14")

    def test_rejects_non_positive_depth(self):
        with pytest.raises(ValidationError):
            HierarchyResolver(InMemoryEntityStore(), max_depth=0)


class TestReports:
    """Direct and transitive report sets."""

    async def test_direct_reports(self, org, hierarchy):
        assert await hierarchy.get_direct_reports("ceo") == {"vp", "peer"}
        assert await hierarchy.get_direct_reports("dev") == set()

    async def test_all_reports(self, org, hierarchy):
        assert await hierarchy.get_all_reports("ceo") == {"vp", "peer", "mgr", "dev"}
        assert await hierarchy.get_all_reports("mgr") == {"dev"}

    async def test_all_reports_with_cycle(self, storage, hierarchy):
        await add_entities(storage, a="b", b="c", c="a")
        assert await hierarchy.get_all_reports("a") == {"b", "c"}

    async def test_all_reports_depth_bound(self, storage):
        chain = {f"u{i}": (f"u{i - 1}" if i else None) for i in range(15)}
        await add_entities(storage, **chain)
        shallow = HierarchyResolver(storage.entities, max_depth=3)
        assert await shallow.get_all_reports("u0") == {"u1", "u2", "u3"}

    async def test_management_chain(self, org, hierarchy):
        assert await hierarchy.get_management_chain("dev") == ["mgr", "vp", "ceo"]
        assert await hierarchy.get_management_chain("ceo") == []
        assert await hierarchy.get_management_chain("ghost") == []

    async def test_management_chain_with_cycle(self, storage, hierarchy):
        await add_entities(storage, a="b", b="c", c="a")
        assert await hierarchy.get_management_chain("a") == ["b", "c"]


class TestSetLineManager:
    """Reassignment with cycle protection and the change ledger."""

    async def test_reassign_records_change(self, org, hierarchy, clock):
        updated = await hierarchy.set_line_manager("dev", "vp", actor_id="hr", reason="reorg")

        assert updated.line_manager_id == "vp"
        assert not await hierarchy.is_administrator_for("mgr", "dev")
        changes = await hierarchy.get_manager_changes("dev")
        assert len(changes) == 1
        assert changes[0].previous_manager_id == "mgr"
        assert changes[0].new_manager_id == "vp"
        assert changes[0].performed_by_id == "hr"
        assert changes[0].performed_at == clock.now

    async def test_self_management_rejected(self, org, hierarchy):
        with pytest.raises(HierarchyCycleError) as exc_info:
            await hierarchy.set_line_manager("dev", "dev")
        assert exc_info.value.subject_id == "dev"
        assert exc_info.value.proposed_manager_id == "dev"

    async def test_cycle_rejected(self, org, hierarchy):
        with pytest.raises(HierarchyCycleError):
            await hierarchy.set_line_manager("ceo", "dev")
        with pytest.raises(HierarchyCycleError):
            await hierarchy.set_line_manager("vp", "mgr")

        assert (await org.entities.lookup("ceo")).line_manager_id is None
        assert await hierarchy.get_manager_changes("ceo") == []

    async def test_would_create_cycle(self, org, hierarchy):
        assert await hierarchy.would_create_cycle("ceo", "dev")
        assert await hierarchy.would_create_cycle("dev", "dev")
        assert not await hierarchy.would_create_cycle("dev", "peer")

    async def test_unknown_entities(self, org, hierarchy):
        with pytest.raises(NotFoundError):
            await hierarchy.set_line_manager("ghost", "ceo")
        with pytest.raises(NotFoundError):
            await hierarchy.set_line_manager("dev", "ghost")

    async def test_clear_manager(self, org, hierarchy):
        updated = await hierarchy.set_line_manager("dev", None, actor_id="hr")
        assert updated.line_manager_id is None
        assert await hierarchy.get_all_reports("mgr") == set()

    async def test_unchanged_manager_writes_nothing(self, org, hierarchy):
        await hierarchy.set_line_manager("dev", "mgr")
        assert await hierarchy.get_manager_changes("dev") == []

    async def test_opposing_reassignments_cannot_close_a_loop(self, storage, hierarchy):
        await add_entities(storage, a=None, b=None)

        results = await asyncio.gather(
            hierarchy.set_line_manager("a", "b"),
            hierarchy.set_line_manager("b", "a"),
            return_exceptions=True,
        )

        assert sum(isinstance(r, HierarchyCycleError) for r in results) == 1
        a = await storage.entities.lookup("a")
        b = await storage.entities.lookup("b")
        assert [a.line_manager_id, b.line_manager_id].count(None) == 1

    async def test_previous_manager_comes_from_stored_row(self, org):
        stale = ManagerChangeRecord(entity_id="dev", previous_manager_id="ceo", new_manager_id="peer")

        updated, applied = await org.entities.set_line_manager("dev", "peer", stale, max_depth=10)

        assert updated.line_manager_id == "peer"
        assert applied.previous_manager_id == "mgr"
        [change] = await org.entities.list_manager_changes("dev")
        assert change.previous_manager_id == "mgr"

    async def test_store_reports_unchanged_manager(self, org):
        change = ManagerChangeRecord(entity_id="dev", previous_manager_id=None, new_manager_id="mgr")
        updated, applied = await org.entities.set_line_manager("dev", "mgr", change, max_depth=10)
        assert updated.line_manager_id == "mgr"
        assert applied is None


class TestClosesCycle:
    """The chain walk run inside each store's write."""

    @staticmethod
    def managers(**edges):
        async def manager_of(entity_id):
            return edges.get(entity_id)
        return manager_of

    async def test_same_entity(self):
        assert await closes_cycle("a", "a", self.managers(), max_depth=10)

    async def test_subject_above_proposed_manager(self):
        manager_of = self.managers(c="b", b="a")
        assert await closes_cycle("a", "c", manager_of, max_depth=10)
        assert not await closes_cycle("c", "a", manager_of, max_depth=10)

    async def test_existing_loop_terminates(self):
        manager_of = self.managers(b="c", c="b")
        assert not await closes_cycle("a", "b", manager_of, max_depth=10)

    async def test_depth_bound(self):
        manager_of = self.managers(e1="e2", e2="e3", e3="e4", e4="top")
        assert await closes_cycle("top", "e1", manager_of, max_depth=3)
        assert not await closes_cycle("top", "e1", manager_of, max_depth=2)
