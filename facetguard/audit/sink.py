"""
Audit Sink

Records sensitive permission decisions without slowing the check that
produced them. emit() schedules delivery and returns at once; delivery goes
through the broker publisher when one is configured and falls back to a
direct audit-store write when publishing fails.

Audit failures never change or delay a decision.
"""

from __future__ import annotations

import asyncio
import logging

from facetguard.audit.events import AuditEvent
from facetguard.audit.publishers import AuditPublisher
from facetguard.permissions.decision import Authentication, Decision
from facetguard.storage.ports import AuditLogStore

logger = logging.getLogger(__name__)


class AuditSink:
    """
    Fire-and-forget audit emission with tracked background deliveries.
    """

    def __init__(
        self,
        store: AuditLogStore,
        publisher: AuditPublisher | None = None,
        async_delivery: bool = True,
        audit_all: bool = False,
    ):
        """
        Args:
            store: Audit log store (fallback and direct-write target)
            publisher: Broker publisher; None writes directly to the store
            async_delivery: False bypasses the publisher entirely
            audit_all: Also record decisions emitted with sensitive=False
        """
        self._store = store
        self._publisher = publisher
        self._async_delivery = async_delivery
        self._audit_all = audit_all
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @property
    def uses_publisher(self) -> bool:
        return self._publisher is not None and self._async_delivery

    def emit(
        self,
        decision: Decision,
        auth: Authentication | None,
        resource_type: str,
        *,
        sensitive: bool = True
    ) -> None:
        """
        Schedule delivery of one decision and return immediately.

        Must be called from a running event loop.
        """
        if not sensitive and not self._audit_all:
            return

        event = AuditEvent.from_decision(decision, auth, resource_type)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error(
                f"No running event loop; audit event {event.idempotency_key} dropped"
            )
            return

        task = loop.create_task(self._deliver(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def record(
        self,
        decision: Decision,
        auth: Authentication | None,
        resource_type: str
    ) -> None:
        """Deliver one decision and wait for it to land."""
        await self._deliver(AuditEvent.from_decision(decision, auth, resource_type))

    async def _deliver(self, event: AuditEvent) -> None:
        if self.uses_publisher:
            try:
                await self._publisher.publish(event)
                return
            except Exception as e:
                logger.warning(
                    f"Audit publish failed for {event.idempotency_key}, "
                    f"writing directly to store: {e}"
                )

        try:
            await self._store.append(event.to_record())
        except Exception:
            logger.error(
                f"Audit write failed for {event.idempotency_key} "
                f"({event.operation}, user={event.user_id})",
                exc_info=True
            )

    async def flush(self) -> None:
        """Wait for every outstanding delivery."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.flush()
        if self._publisher is not None:
            await self._publisher.close()
        logger.info("Audit sink closed")
