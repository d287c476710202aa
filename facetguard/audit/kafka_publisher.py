"""
Kafka Audit Publisher

Sends audit events to a Kafka topic, keyed by idempotency key so redeliveries
of one decision land on the same partition.
"""

from __future__ import annotations

import json
import logging
from typing import Any, TYPE_CHECKING

KAFKA_AVAILABLE = False
try:
    from aiokafka import AIOKafkaProducer
    KAFKA_AVAILABLE = True
except ImportError:
    pass

if TYPE_CHECKING:
    from aiokafka import AIOKafkaProducer

from facetguard.audit.events import AuditEvent
from facetguard.audit.publishers import AuditPublisher

logger = logging.getLogger(__name__)


class KafkaAuditPublisher(AuditPublisher):
    """
    Kafka-backed audit publisher.
    """

    def __init__(
        self,
        bootstrap_servers: str = "localhost:9092",
        topic: str = "permission-audit",
        producer: Any = None,
    ):
        """
        Initialize Kafka publisher.

        Args:
            bootstrap_servers: Kafka broker addresses (comma-separated)
            topic: Topic to publish to
            producer: Pre-started producer (lifecycle is not owned)
        """
        if not KAFKA_AVAILABLE:
            raise ImportError(
                "Kafka audit publisher requires aiokafka. "
                "Install with: pip install facetguard[kafka]"
            )

        self._bootstrap_servers = bootstrap_servers
        self._topic = topic
        self._producer: AIOKafkaProducer | None = producer
        self._owns_producer = producer is None

    async def _ensure_producer(self) -> AIOKafkaProducer:
        """Ensure Kafka producer is connected."""
        if self._producer is None:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self._bootstrap_servers,
                value_serializer=lambda v: json.dumps(v).encode("utf-8"),
                key_serializer=lambda k: k.encode("utf-8") if k else None,
            )
            await self._producer.start()
            logger.info(f"Kafka audit producer connected to {self._bootstrap_servers}")
        return self._producer

    async def publish(self, event: AuditEvent) -> None:
        producer = await self._ensure_producer()
        await producer.send_and_wait(
            self._topic,
            value=event.to_dict(),
            key=event.idempotency_key,
        )
        logger.debug(f"Audit event {event.idempotency_key} sent to {self._topic}")

    async def close(self) -> None:
        if self._producer is not None and self._owns_producer:
            await self._producer.stop()
        self._producer = None
