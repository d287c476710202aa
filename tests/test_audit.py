"""Tests for audit events, the audit sink and broker publishers."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from facetguard.audit import (
    AuditEvent,
    AuditSink,
    InMemoryAuditPublisher,
    create_audit_publisher,
    get_available_backends,
)
from facetguard.audit.redis_publisher import RedisStreamAuditPublisher
from facetguard.errors import InternalError
from facetguard.permissions import Authentication, ReasonCode, deny, grant
from facetguard.storage import InMemoryAuditLogStore


def make_decision(granted: bool = True, user_id: str = "u1"):
    metadata = {"facets_checked": ["reedi-admin:global"]}
    if granted:
        return grant(user_id, "post-1", "post-read", "Global admin", ReasonCode.GLOBAL_ADMIN, metadata)
    return deny(user_id, "post-1", "post-read", "No permission rules matched", ReasonCode.DEFAULT_DENY, metadata)


REQUEST = Authentication("u1", ip_address="10.0.0.9", user_agent="pytest", request_id="req-7")


class FailingPublisher(InMemoryAuditPublisher):
    async def publish(self, event):
        raise ConnectionError("broker unreachable")


class TestAuditEvent:
    """Building events from decisions."""

    def test_from_decision(self):
        decision = make_decision()
        event = AuditEvent.from_decision(decision, REQUEST, "post")

        assert event.idempotency_key == decision.decision_id
        assert event.resource_type == "post"
        assert event.operation == "post-read"
        assert event.granted is True
        assert event.reason_code == "GLOBAL_ADMIN"
        assert event.ip_address == "10.0.0.9"
        assert event.user_agent == "pytest"
        assert event.request_id == "req-7"
        assert event.facets_checked == ["reedi-admin:global"]
        assert event.created_at == decision.timestamp

    def test_without_auth_context(self):
        event = AuditEvent.from_decision(make_decision(user_id=None), None, "post")
        assert event.user_id is None
        assert event.ip_address is None

    def test_serialization(self):
        event = AuditEvent.from_decision(make_decision(), REQUEST, "post")
        data = event.to_dict()
        assert isinstance(data["created_at"], str)
        json.dumps(data)

        record = event.to_record()
        assert record.idempotency_key == event.idempotency_key
        assert record.created_at == event.created_at


class TestAuditSink:
    """Delivery paths and failure isolation."""

    async def test_direct_write(self):
        store = InMemoryAuditLogStore()
        sink = AuditSink(store)
        assert not sink.uses_publisher

        decision = make_decision(granted=False)
        sink.emit(decision, REQUEST, "post")
        await sink.flush()

        rows = await store.query(user_id="u1")
        assert len(rows) == 1
        assert rows[0].idempotency_key == decision.decision_id
        assert rows[0].granted is False
        assert sink.pending == 0

    async def test_publisher_path_then_consumer(self):
        store = InMemoryAuditLogStore()
        publisher = InMemoryAuditPublisher()
        sink = AuditSink(store, publisher)

        decision = make_decision()
        sink.emit(decision, REQUEST, "post")
        await sink.flush()

        assert await store.query() == []
        assert [e.idempotency_key for e in publisher.events] == [decision.decision_id]

        # Redelivery of the same decision is stored once
        await publisher.publish(AuditEvent.from_decision(decision, REQUEST, "post"))
        assert await publisher.consume_into(store) == 1
        assert len(await store.query()) == 1

    async def test_async_delivery_disabled_bypasses_publisher(self):
        store = InMemoryAuditLogStore()
        publisher = InMemoryAuditPublisher()
        sink = AuditSink(store, publisher, async_delivery=False)

        await sink.record(make_decision(), REQUEST, "post")
        assert publisher.events == []
        assert len(await store.query()) == 1

    async def test_publish_failure_falls_back_to_store(self):
        store = InMemoryAuditLogStore()
        sink = AuditSink(store, FailingPublisher())

        decision = make_decision()
        sink.emit(decision, REQUEST, "post")
        await sink.flush()

        rows = await store.query()
        assert [r.idempotency_key for r in rows] == [decision.decision_id]

    async def test_mocked_publisher_failure(self):
        store = InMemoryAuditLogStore()
        publisher = MagicMock()
        publisher.publish = AsyncMock(side_effect=RuntimeError("timeout"))
        sink = AuditSink(store, publisher)

        await sink.record(make_decision(), REQUEST, "post")
        publisher.publish.assert_awaited_once()
        assert len(await store.query()) == 1

    async def test_store_failure_is_swallowed(self):
        store = MagicMock()
        store.append = AsyncMock(side_effect=RuntimeError("disk full"))
        sink = AuditSink(store)

        sink.emit(make_decision(), REQUEST, "post")
        await sink.flush()
        await sink.record(make_decision(), REQUEST, "post")
        assert store.append.await_count == 2

    async def test_non_sensitive_dropped_unless_audit_all(self):
        store = InMemoryAuditLogStore()
        sink = AuditSink(store)
        sink.emit(make_decision(), REQUEST, "post", sensitive=False)
        await sink.flush()
        assert await store.query() == []

        everything = AuditSink(store, audit_all=True)
        everything.emit(make_decision(), REQUEST, "post", sensitive=False)
        await everything.flush()
        assert len(await store.query()) == 1

    def test_emit_without_loop_drops_event(self):
        store = MagicMock()
        sink = AuditSink(store)
        sink.emit(make_decision(), REQUEST, "post")
        assert sink.pending == 0
        store.append.assert_not_called()

    async def test_close_flushes_and_closes_publisher(self):
        store = InMemoryAuditLogStore()
        publisher = InMemoryAuditPublisher()
        sink = AuditSink(store, publisher)

        sink.emit(make_decision(), REQUEST, "post")
        await sink.close()

        assert len(publisher.events) == 1
        with pytest.raises(InternalError):
            await publisher.publish(AuditEvent.from_decision(make_decision(), REQUEST, "post"))


class TestInMemoryAuditPublisher:
    """Buffer bounds."""

    async def test_full_buffer_raises(self):
        publisher = InMemoryAuditPublisher(max_size=1)
        await publisher.publish(AuditEvent.from_decision(make_decision(), REQUEST, "post"))
        with pytest.raises(InternalError):
            await publisher.publish(AuditEvent.from_decision(make_decision(), REQUEST, "post"))

    async def test_full_buffer_falls_back_in_sink(self):
        store = InMemoryAuditLogStore()
        publisher = InMemoryAuditPublisher(max_size=1)
        sink = AuditSink(store, publisher)

        await sink.record(make_decision(), REQUEST, "post")
        await sink.record(make_decision(), REQUEST, "post")
        assert len(publisher.events) == 1
        assert len(await store.query()) == 1


class TestFactory:
    """create_audit_publisher backend selection."""

    def test_direct_is_none(self):
        assert create_audit_publisher("direct") is None

    def test_default_from_env(self, monkeypatch):
        monkeypatch.setenv("FACETGUARD_AUDIT_BACKEND", "MEMORY")
        assert isinstance(create_audit_publisher(), InMemoryAuditPublisher)

    def test_memory_with_size(self):
        publisher = create_audit_publisher("memory", max_size=5)
        assert isinstance(publisher, InMemoryAuditPublisher)

    def test_redis(self):
        publisher = create_audit_publisher("redis", redis_url="redis://cache:6379/2", topic="audit")
        assert isinstance(publisher, RedisStreamAuditPublisher)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_audit_publisher("carrier-pigeon")

    def test_available_backends(self):
        available = get_available_backends()
        assert {"direct", "memory", "redis"} <= set(available)


class TestRedisStreamAuditPublisher:
    """XADD payloads against a mocked client."""

    async def test_xadd_fields(self):
        client = MagicMock()
        client.xadd = AsyncMock()
        client.aclose = AsyncMock()
        publisher = RedisStreamAuditPublisher(stream="audit", max_length=500, client=client)

        event = AuditEvent.from_decision(make_decision(), REQUEST, "post")
        await publisher.publish(event)

        args, kwargs = client.xadd.call_args
        assert args[0] == "audit"
        assert args[1]["idempotency_key"] == event.idempotency_key
        assert json.loads(args[1]["payload"])["operation"] == "post-read"
        assert kwargs == {"maxlen": 500, "approximate": True}

        # Injected clients are not closed
        await publisher.close()
        client.aclose.assert_not_awaited()

    async def test_unbounded_stream(self):
        client = MagicMock()
        client.xadd = AsyncMock()
        publisher = RedisStreamAuditPublisher(max_length=None, client=client)

        await publisher.publish(AuditEvent.from_decision(make_decision(), REQUEST, "post"))
        _, kwargs = client.xadd.call_args
        assert kwargs == {}


class TestKafkaAuditPublisher:
    """send_and_wait against a mocked producer."""

    async def test_send_keyed_by_idempotency_key(self):
        pytest.importorskip("aiokafka")
        from facetguard.audit.kafka_publisher import KafkaAuditPublisher

        producer = MagicMock()
        producer.send_and_wait = AsyncMock()
        producer.stop = AsyncMock()
        publisher = KafkaAuditPublisher(topic="audit", producer=producer)

        event = AuditEvent.from_decision(make_decision(), REQUEST, "post")
        await publisher.publish(event)

        producer.send_and_wait.assert_awaited_once()
        args, kwargs = producer.send_and_wait.call_args
        assert args == ("audit",)
        assert kwargs["key"] == event.idempotency_key
        assert kwargs["value"]["reason_code"] == "GLOBAL_ADMIN"

        await publisher.close()
        producer.stop.assert_not_awaited()


class TestRabbitMQAuditPublisher:
    """Persistent messages against a mocked connection."""

    async def test_publish_persistent_message(self):
        pytest.importorskip("aio_pika")
        from aio_pika import DeliveryMode
        from facetguard.audit.rabbitmq_publisher import RabbitMQAuditPublisher

        channel = MagicMock(is_closed=False)
        channel.declare_queue = AsyncMock()
        channel.default_exchange.publish = AsyncMock()
        channel.close = AsyncMock()
        connection = MagicMock(is_closed=False)
        connection.channel = AsyncMock(return_value=channel)
        connection.close = AsyncMock()

        publisher = RabbitMQAuditPublisher(queue_name="audit", connection=connection)
        event = AuditEvent.from_decision(make_decision(), REQUEST, "post")
        await publisher.publish(event)
        await publisher.publish(event)

        connection.channel.assert_awaited_once()
        channel.declare_queue.assert_awaited_once_with("audit", durable=True)
        message = channel.default_exchange.publish.call_args.args[0]
        assert channel.default_exchange.publish.call_args.kwargs == {"routing_key": "audit"}
        assert message.message_id == event.idempotency_key
        assert message.delivery_mode == DeliveryMode.PERSISTENT
        assert json.loads(message.body)["idempotency_key"] == event.idempotency_key

        await publisher.close()
        channel.close.assert_awaited_once()
        connection.close.assert_not_awaited()
