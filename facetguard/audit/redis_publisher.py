"""
Redis Streams Audit Publisher

Appends audit events to a Redis stream with XADD. A consumer group on the
stream writes them to the audit log.

Entry fields:
- idempotency_key: decision id
- payload: JSON-encoded AuditEvent
"""

from __future__ import annotations

import json
import logging
from typing import Any

import redis.asyncio as aioredis

from facetguard.audit.events import AuditEvent
from facetguard.audit.publishers import AuditPublisher

logger = logging.getLogger(__name__)


class RedisStreamAuditPublisher(AuditPublisher):
    """
    Redis Streams-backed audit publisher.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        stream: str = "permission-audit",
        max_length: int | None = 1000000,
        client: Any = None,
    ):
        """
        Initialize Redis publisher.

        Args:
            redis_url: Redis connection URL
            stream: Stream key to append to
            max_length: Approximate stream cap (None for unbounded)
            client: Pre-built redis.asyncio client (connection is not owned)
        """
        self._redis_url = redis_url
        self._stream = stream
        self._max_length = max_length
        self._redis = client
        self._owns_client = client is None

    async def _ensure_connected(self) -> Any:
        """Ensure Redis connection is established."""
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            logger.info(f"Redis audit publisher connected to {self._redis_url}")
        return self._redis

    async def publish(self, event: AuditEvent) -> None:
        r = await self._ensure_connected()
        fields = {
            "idempotency_key": event.idempotency_key,
            "payload": json.dumps(event.to_dict()),
        }
        if self._max_length is not None:
            await r.xadd(self._stream, fields, maxlen=self._max_length, approximate=True)
        else:
            await r.xadd(self._stream, fields)
        logger.debug(f"Audit event {event.idempotency_key} appended to {self._stream}")

    async def close(self) -> None:
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
        self._redis = None
