"""RabbitMQ topology and messaging for trail generation.

One durable direct exchange routes to the generation queue, its dead-letter
queue and a short-lived notification queue. Generation messages only carry job
references: consumers look the job up and skip deliveries that are no longer
claimable, so duplicates from TTL expiry, redelivery or DLQ replay are safe.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)

from .config import get_settings

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "trail.exchange"
GENERATION_QUEUE = "trail.generation.queue"
DLQ_QUEUE = "trail.generation.dlq"
NOTIFICATION_QUEUE = "trail.notification.queue"

GENERATION_ROUTING_KEY = "trail.generation"
DLQ_ROUTING_KEY = "trail.generation.dlq"
NOTIFICATION_ROUTING_KEY = "trail.notification"

GENERATION_TTL_MS = 300_000
DLQ_TTL_MS = 86_400_000
NOTIFICATION_TTL_MS = 60_000


@dataclass(frozen=True)
class QueueSpec:
    name: str
    routing_key: str
    arguments: Dict[str, Any]
    durable: bool = True


TOPOLOGY: List[QueueSpec] = [
    QueueSpec(
        name=DLQ_QUEUE,
        routing_key=DLQ_ROUTING_KEY,
        arguments={"x-message-ttl": DLQ_TTL_MS},
    ),
    QueueSpec(
        name=GENERATION_QUEUE,
        routing_key=GENERATION_ROUTING_KEY,
        arguments={
            "x-dead-letter-exchange": EXCHANGE_NAME,
            "x-dead-letter-routing-key": DLQ_ROUTING_KEY,
            "x-message-ttl": GENERATION_TTL_MS,
        },
    ),
    QueueSpec(
        name=NOTIFICATION_QUEUE,
        routing_key=NOTIFICATION_ROUTING_KEY,
        arguments={"x-message-ttl": NOTIFICATION_TTL_MS},
    ),
]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TrailGenerationMessage:
    """Job reference published to ``trail.generation``."""

    job_id: str
    trail_id: str
    student_id: str
    job_type: str
    language_code: str
    level_code: str
    curriculum_version: str
    priority: int = 5
    blueprint_id: Optional[str] = None
    preferences: Dict[str, Any] = field(default_factory=dict)
    gaps: Optional[List[Any]] = None
    attempt_number: int = 0
    max_attempts: int = 5
    requested_at: str = field(default_factory=_now_iso)

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "TrailGenerationMessage":
        data = json.loads(raw)
        known = {key: value for key, value in data.items() if key in cls.__dataclass_fields__}
        return cls(**known)


class NotificationType:
    GENERATION_STARTED = "GENERATION_STARTED"
    MODULE_GENERATED = "MODULE_GENERATED"
    LESSON_GENERATED = "LESSON_GENERATED"
    GENERATION_COMPLETED = "GENERATION_COMPLETED"
    GENERATION_FAILED = "GENERATION_FAILED"


@dataclass
class TrailNotificationMessage:
    """Progress push published to ``trail.notification``."""

    type: str
    trail_id: str
    student_id: str
    job_id: Optional[str] = None
    trail_status: Optional[str] = None
    job_status: Optional[str] = None
    progress_percentage: Optional[float] = None
    modules_generated: int = 0
    total_modules: int = 0
    error_message: Optional[str] = None
    timestamp: str = field(default_factory=_now_iso)

    def to_json(self) -> str:
        return json.dumps(asdict(self))


class MessagePublisher(Protocol):
    async def publish_generation(self, message: TrailGenerationMessage) -> bool:  # pragma: no cover - protocol
        ...

    async def publish_notification(self, message: TrailNotificationMessage) -> bool:  # pragma: no cover - protocol
        ...


class TrailBroker:
    """aio_pika client for the trail generation topology."""

    def __init__(self, rabbitmq_url: Optional[str] = None) -> None:
        self.rabbitmq_url = rabbitmq_url or get_settings().rabbitmq_url
        self._connection: Optional[AbstractRobustConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._exchange: Optional[AbstractExchange] = None
        self._queues: Dict[str, AbstractQueue] = {}
        self._consuming = False

    async def connect(self) -> None:
        if self._connection is not None and not self._connection.is_closed:
            return
        logger.info("Connecting to RabbitMQ")
        self._connection = await aio_pika.connect_robust(self.rabbitmq_url, timeout=30.0)
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=1)
        await self.declare_topology(self._channel)

    async def declare_topology(self, channel: AbstractChannel) -> None:
        self._exchange = await channel.declare_exchange(EXCHANGE_NAME, ExchangeType.DIRECT, durable=True)
        for spec in TOPOLOGY:
            queue = await channel.declare_queue(spec.name, durable=spec.durable, arguments=dict(spec.arguments))
            await queue.bind(self._exchange, routing_key=spec.routing_key)
            self._queues[spec.name] = queue
        logger.info("Declared exchange %s with %d queues", EXCHANGE_NAME, len(TOPOLOGY))

    async def close(self) -> None:
        if self._connection is not None and not self._connection.is_closed:
            await self._connection.close()
            logger.info("Disconnected from RabbitMQ")
        self._connection = None
        self._channel = None
        self._exchange = None
        self._queues.clear()

    async def _publish(self, body: str, *, routing_key: str, message_id: Optional[str], headers: Dict[str, Any]) -> None:
        await self.connect()
        assert self._exchange is not None
        message = Message(
            body=body.encode("utf-8"),
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT,
            message_id=message_id,
            timestamp=datetime.now(timezone.utc),
            headers=headers,
        )
        await self._exchange.publish(message, routing_key=routing_key)

    async def publish_generation(self, message: TrailGenerationMessage) -> bool:
        try:
            await self._publish(
                message.to_json(),
                routing_key=GENERATION_ROUTING_KEY,
                message_id=message.job_id,
                headers={
                    "job_id": message.job_id,
                    "trail_id": message.trail_id,
                    "job_type": message.job_type,
                    "priority": message.priority,
                },
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to publish generation job %s: %s", message.job_id, exc)
            return False
        logger.info("Published generation job %s for trail %s", message.job_id, message.trail_id)
        return True

    async def publish_notification(self, message: TrailNotificationMessage) -> bool:
        try:
            await self._publish(
                message.to_json(),
                routing_key=NOTIFICATION_ROUTING_KEY,
                message_id=None,
                headers={"trail_id": message.trail_id, "type": message.type},
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to publish %s notification for trail %s: %s", message.type, message.trail_id, exc)
            return False
        return True

    async def consume(self, handler: Callable[[AbstractIncomingMessage], Awaitable[None]]) -> None:
        """Consume the generation queue until :meth:`stop_consuming` is called.

        A handler exception rejects the delivery without requeue, which routes it
        to the dead-letter queue.
        """
        await self.connect()
        queue = self._queues[GENERATION_QUEUE]

        async def on_message(incoming: AbstractIncomingMessage) -> None:
            async with incoming.process(requeue=False):
                await handler(incoming)

        self._consuming = True
        tag = await queue.consume(on_message)
        logger.info("Consuming %s", GENERATION_QUEUE)
        try:
            while self._consuming:
                await asyncio.sleep(1)
        finally:
            await queue.cancel(tag)

    def stop_consuming(self) -> None:
        self._consuming = False
        logger.info("Stopping consumer")

    async def get_queue_stats(self) -> Dict[str, Dict[str, int]]:
        await self.connect()
        assert self._channel is not None
        stats: Dict[str, Dict[str, int]] = {}
        for spec in TOPOLOGY:
            queue = await self._channel.declare_queue(spec.name, passive=True)
            result = queue.declaration_result
            stats[spec.name] = {"messages": result.message_count, "consumers": result.consumer_count}
        return stats

    async def replay_dead_letters(self, limit: int = 100) -> int:
        """Move up to ``limit`` messages from the DLQ back to the generation key."""
        await self.connect()
        assert self._exchange is not None
        dlq = self._queues[DLQ_QUEUE]
        replayed = 0
        while replayed < limit:
            incoming = await dlq.get(fail=False)
            if incoming is None:
                break
            message = Message(
                body=incoming.body,
                content_type="application/json",
                delivery_mode=DeliveryMode.PERSISTENT,
                message_id=incoming.message_id,
                headers=dict(incoming.headers or {}),
            )
            await self._exchange.publish(message, routing_key=GENERATION_ROUTING_KEY)
            await incoming.ack()
            replayed += 1
        if replayed:
            logger.info("Replayed %d dead-lettered generation messages", replayed)
        return replayed


_broker: Optional[TrailBroker] = None


def get_broker() -> TrailBroker:
    global _broker
    if _broker is None:
        _broker = TrailBroker()
    return _broker


__all__ = [
    "DLQ_QUEUE",
    "DLQ_ROUTING_KEY",
    "EXCHANGE_NAME",
    "GENERATION_QUEUE",
    "GENERATION_ROUTING_KEY",
    "MessagePublisher",
    "NOTIFICATION_QUEUE",
    "NOTIFICATION_ROUTING_KEY",
    "NotificationType",
    "QueueSpec",
    "TOPOLOGY",
    "TrailBroker",
    "TrailGenerationMessage",
    "TrailNotificationMessage",
    "get_broker",
]
