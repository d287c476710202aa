"""
Audit Publisher Port

Ships audit events to a broker. Adapters:
- InMemoryAuditPublisher (development/testing)
- RedisStreamAuditPublisher (redis_publisher.py)
- KafkaAuditPublisher (kafka_publisher.py)
- RabbitMQAuditPublisher (rabbitmq_publisher.py)

Delivery is at-least-once; consumers deduplicate on idempotency_key.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

from facetguard.audit.events import AuditEvent
from facetguard.errors import InternalError
from facetguard.storage.ports import AuditLogStore

logger = logging.getLogger(__name__)


class AuditPublisher(ABC):
    """
    Broker-facing side of the audit sink.
    """

    @abstractmethod
    async def publish(self, event: AuditEvent) -> None:
        """
        Publish one event.

        Raises:
            Exception: Any transport failure; the sink falls back to a direct write
        """
        ...

    async def close(self) -> None:
        """Release broker connections."""
        pass


class InMemoryAuditPublisher(AuditPublisher):
    """
    In-process broker stand-in.

    Published events are buffered until consume_into() delivers them to an
    audit store, the way a broker consumer would.
    """

    def __init__(self, max_size: int = 10000):
        self._max_size = max_size
        self._events: list[AuditEvent] = []
        self._closed = False
        self._lock = asyncio.Lock()

    @property
    def events(self) -> list[AuditEvent]:
        return list(self._events)

    async def publish(self, event: AuditEvent) -> None:
        async with self._lock:
            if self._closed:
                raise InternalError("Audit publisher is closed")
            if len(self._events) >= self._max_size:
                raise InternalError(f"Audit buffer full ({self._max_size} events)")
            self._events.append(event)

    async def consume_into(self, store: AuditLogStore) -> int:
        """
        Drain buffered events into a store.

        Returns:
            Number of events newly stored (duplicates are skipped by the store)
        """
        async with self._lock:
            events, self._events = self._events, []

        stored = 0
        for event in events:
            if await store.append(event.to_record()):
                stored += 1
        logger.debug(f"Consumed {len(events)} audit events ({stored} new)")
        return stored

    async def close(self) -> None:
        async with self._lock:
            self._closed = True
