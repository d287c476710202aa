"""Tests for decision constructors, combinators, safe_check and filtering."""

import asyncio
from datetime import datetime, timezone

import pytest

from facetguard.errors import InternalError
from facetguard.permissions import (
    Authentication,
    Decision,
    PermissionEngine,
    ReasonCode,
    deny,
    filter_by_permission,
    grant,
    require_all,
    require_any,
    safe_check,
)


def _grant(tag: str = "ok") -> Decision:
    return grant("u1", "r1", "post-read", f"granted {tag}", ReasonCode.OWNER)


def _deny(tag: str = "no") -> Decision:
    return deny("u1", "r1", "post-read", f"denied {tag}", ReasonCode.DEFAULT_DENY)


class TestConstructors:
    """grant / deny."""

    def test_grant_fields(self):
        decision = grant("u1", "r1", "post-read", "Owner", ReasonCode.OWNER, {"k": 1})
        assert decision.granted
        assert not decision.denied
        assert decision.operation == "post-read"
        assert decision.reason_code == "OWNER"
        assert decision.metadata == {"k": 1}
        assert decision.timestamp.tzinfo is not None

    def test_explicit_timestamp_is_kept(self):
        at = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)
        assert grant("u1", "r1", "post-read", "Owner", ReasonCode.OWNER, timestamp=at).timestamp == at
        assert deny("u1", "r1", "post-read", "No", ReasonCode.DEFAULT_DENY, timestamp=at).timestamp == at

    def test_deny_fields(self):
        decision = deny(None, None, "post-read", "Nope")
        assert not decision.granted
        assert decision.reason_code is None
        assert decision.metadata == {}

    def test_decision_ids_are_unique(self):
        assert _grant().decision_id != _grant().decision_id

    def test_metadata_is_copied(self):
        metadata = {"facets_checked": ["a:b"]}
        decision = grant("u1", None, "op", "r", metadata=metadata)
        metadata["facets_checked"].append("c:d")
        metadata["extra"] = True
        assert "extra" not in decision.metadata

    def test_to_dict(self):
        data = _grant().to_dict()
        assert data["granted"] is True
        assert data["reason_code"] == "OWNER"
        assert isinstance(data["timestamp"], str)


class TestCombinators:
    """require_all / require_any."""

    def test_require_all_returns_deny_in_either_order(self):
        g, d = _grant(), _deny()
        assert require_all(g, d) is d
        assert require_all(d, g) is d

    def test_require_all_first_deny_wins(self):
        d1, d2 = _deny("one"), _deny("two")
        assert require_all(_grant(), d1, d2) is d1

    def test_require_all_all_granted_returns_first(self):
        g1, g2 = _grant("one"), _grant("two")
        assert require_all(g1, g2) is g1

    def test_require_any_first_deny_when_none_grant(self):
        d1, d2 = _deny("one"), _deny("two")
        assert require_any(d1, d2) is d1

    def test_require_any_returns_grant(self):
        d, g = _deny(), _grant()
        assert require_any(d, g) is g

    def test_empty_arguments_raise(self):
        with pytest.raises(ValueError):
            require_all()
        with pytest.raises(ValueError):
            require_any()


class TestSafeCheck:
    """The fail-closed boundary."""

    async def test_exception_becomes_deny(self):
        def boom():
            raise RuntimeError("database on fire")

        decision = await safe_check(boom, "op")
        assert not decision.granted
        assert decision.reason_code == ReasonCode.PERMISSION_CHECK_ERROR
        assert decision.operation == "op"
        assert decision.user_id is None
        assert decision.resource_id is None
        assert decision.metadata["error"] == "database on fire"

    async def test_async_exception_becomes_deny(self):
        async def boom():
            raise InternalError("storage down")

        decision = await safe_check(boom, "media-read")
        assert decision.reason_code == ReasonCode.PERMISSION_CHECK_ERROR
        assert decision.reason == "Permission check failed due to internal error"

    async def test_default_fallback_operation(self):
        decision = await safe_check(lambda: 1 / 0)
        assert decision.operation == "unknown-operation"

    async def test_error_decisions_use_injected_clock(self, clock):
        raised = await safe_check(lambda: 1 / 0, "op", clock=clock)
        malformed = await safe_check(lambda: True, "op", clock=clock)
        assert raised.timestamp == clock.now
        assert malformed.timestamp == clock.now

    async def test_non_decision_result_denies(self):
        decision = await safe_check(lambda: True, "op")
        assert not decision.granted
        assert decision.reason_code == ReasonCode.PERMISSION_CHECK_ERROR

    async def test_passes_through_sync_and_async_results(self):
        g = _grant()

        async def check():
            return g

        assert await safe_check(lambda: g) is g
        assert await safe_check(check) is g


class TestFilterByPermission:
    """Bounded concurrent filtering with ordered results."""

    async def test_keeps_granted_in_input_order(self):
        delays = {"a": 0.03, "b": 0.0, "c": 0.0}

        async def check(item, auth):
            await asyncio.sleep(delays[item])
            return _deny(item) if item == "b" else _grant(item)

        result = await filter_by_permission(["a", "b", "c"], Authentication("u1"), check)
        assert result == ["a", "c"]

    async def test_failing_item_is_excluded(self):
        def check(item, auth):
            if item == 2:
                raise RuntimeError("bad row")
            return _grant(str(item))

        result = await filter_by_permission([1, 2, 3], Authentication("u1"), check)
        assert result == [1, 3]

    async def test_concurrency_is_bounded(self):
        running = 0
        peak = 0

        async def check(item, auth):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return _grant()

        engine = PermissionEngine(max_concurrency=2)
        result = await engine.filter_by_permission(range(8), Authentication("u1"), check)
        assert result == list(range(8))
        assert peak <= 2

    async def test_empty_input(self):
        assert await filter_by_permission([], Authentication("u1"), lambda i, a: _grant()) == []

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            PermissionEngine(max_concurrency=0)


class TestAuthentication:
    """Requester context."""

    def test_anonymous(self):
        auth = Authentication.anonymous(ip_address="10.0.0.1")
        assert not auth.is_authenticated
        assert auth.ip_address == "10.0.0.1"

    def test_authenticated(self):
        assert Authentication("u1", request_id="req-1").is_authenticated
