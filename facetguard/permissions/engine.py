"""
Permission Engine

Primitives to construct, compose and safely evaluate decisions.

- grant / deny: pure constructors
- require_all: first deny wins, else the first decision
- require_any: first grant wins, else the first decision (a deny)
- safe_check: fail-closed boundary; any exception becomes a deny
- filter_by_permission: bounded concurrent fan-out, results joined in input order
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Sequence, TypeVar

from facetguard.clock import Clock, utcnow
from facetguard.permissions.decision import Authentication, Decision, ReasonCode

logger = logging.getLogger(__name__)

T = TypeVar("T")

CheckResult = Decision | Awaitable[Decision]
CheckFn = Callable[[], CheckResult]
ItemCheckFn = Callable[[T, Authentication], CheckResult]

DEFAULT_MAX_CONCURRENCY = 16
FALLBACK_OPERATION = "unknown-operation"


# =============================================================================
# Constructors
# =============================================================================

def _decision(
    granted: bool,
    user_id: str | None,
    resource_id: str | None,
    operation: str,
    reason: str,
    reason_code: str | None,
    metadata: dict[str, Any] | None,
    timestamp: datetime | None
) -> Decision:
    return Decision(
        granted=granted,
        user_id=user_id,
        resource_id=resource_id,
        operation=operation,
        reason=reason,
        reason_code=reason_code,
        metadata=dict(metadata or {}),
        timestamp=timestamp or utcnow(),
    )


def grant(
    user_id: str | None,
    resource_id: str | None,
    operation: str,
    reason: str,
    reason_code: str | None = None,
    metadata: dict[str, Any] | None = None,
    timestamp: datetime | None = None
) -> Decision:
    """Build a granting decision, stamped now unless timestamp is given."""
    return _decision(True, user_id, resource_id, operation, reason, reason_code, metadata, timestamp)


def deny(
    user_id: str | None,
    resource_id: str | None,
    operation: str,
    reason: str,
    reason_code: str | None = None,
    metadata: dict[str, Any] | None = None,
    timestamp: datetime | None = None
) -> Decision:
    """Build a denying decision, stamped now unless timestamp is given."""
    return _decision(False, user_id, resource_id, operation, reason, reason_code, metadata, timestamp)


# =============================================================================
# Composition
# =============================================================================

def require_all(*decisions: Decision) -> Decision:
    """
    All must grant.

    Returns:
        The first deny in argument order, or the first decision if all grant

    Raises:
        ValueError: If called with no decisions
    """
    if not decisions:
        raise ValueError("require_all() needs at least one decision")
    for decision in decisions:
        if not decision.granted:
            return decision
    return decisions[0]


def require_any(*decisions: Decision) -> Decision:
    """
    At least one must grant.

    Returns:
        The first grant in argument order, or the first decision (a deny)
        if none grant

    Raises:
        ValueError: If called with no decisions
    """
    if not decisions:
        raise ValueError("require_any() needs at least one decision")
    for decision in decisions:
        if decision.granted:
            return decision
    return decisions[0]


# =============================================================================
# Evaluation
# =============================================================================

def _error_decision(operation: str, error: str, clock: Clock) -> Decision:
    return deny(
        None,
        None,
        operation,
        "Permission check failed due to internal error",
        ReasonCode.PERMISSION_CHECK_ERROR,
        {"error": error},
        timestamp=clock(),
    )


async def safe_check(
    check_fn: CheckFn,
    fallback_operation: str = FALLBACK_OPERATION,
    clock: Clock = utcnow
) -> Decision:
    """
    Run a check and fail closed.

    check_fn may be sync or async. Any exception, or a return value that is
    not a Decision, yields a deny with reason_code PERMISSION_CHECK_ERROR
    stamped by clock.
    """
    try:
        result = check_fn()
        if inspect.isawaitable(result):
            result = await result
    except Exception as exc:
        logger.error(f"Permission check error during {fallback_operation}: {exc}", exc_info=True)
        return _error_decision(fallback_operation, str(exc), clock)

    if not isinstance(result, Decision):
        logger.error(
            f"Permission check for {fallback_operation} returned "
            f"{type(result).__name__}, expected Decision"
        )
        return _error_decision(
            fallback_operation,
            f"check returned {type(result).__name__}, expected Decision",
            clock,
        )
    return result


async def filter_by_permission(
    items: Iterable[T],
    auth: Authentication,
    check_fn: ItemCheckFn,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    fallback_operation: str = FALLBACK_OPERATION
) -> list[T]:
    """
    Keep the items for which check_fn(item, auth) grants.

    Checks run concurrently, at most max_concurrency at a time, each through
    safe_check, so one failing item is excluded without aborting the batch.
    The result preserves the input order.
    """
    if max_concurrency <= 0:
        raise ValueError(f"max_concurrency must be positive, got {max_concurrency}")

    pending: Sequence[T] = list(items)
    semaphore = asyncio.Semaphore(max_concurrency)

    async def check_one(item: T) -> Decision:
        async with semaphore:
            return await safe_check(lambda: check_fn(item, auth), fallback_operation)

    decisions = await asyncio.gather(*(check_one(item) for item in pending))
    return [item for item, decision in zip(pending, decisions) if decision.granted]


class PermissionEngine:
    """
    Engine primitives bound to a configured concurrency limit.

    The module-level functions remain usable directly; this class exists so
    the limit can be injected once from settings.
    """

    def __init__(self, max_concurrency: int = DEFAULT_MAX_CONCURRENCY):
        if max_concurrency <= 0:
            raise ValueError(f"max_concurrency must be positive, got {max_concurrency}")
        self.max_concurrency = max_concurrency

    grant = staticmethod(grant)
    deny = staticmethod(deny)
    require_all = staticmethod(require_all)
    require_any = staticmethod(require_any)
    safe_check = staticmethod(safe_check)

    async def filter_by_permission(
        self,
        items: Iterable[T],
        auth: Authentication,
        check_fn: ItemCheckFn,
        fallback_operation: str = FALLBACK_OPERATION
    ) -> list[T]:
        return await filter_by_permission(
            items,
            auth,
            check_fn,
            max_concurrency=self.max_concurrency,
            fallback_operation=fallback_operation,
        )
