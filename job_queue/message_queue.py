"""
Message Queue — Abstract interface with Redis Streams and in-memory backends.

Queue Topology (per queue kind):
  notifications:<kind>           — Stream of ready messages (consumer group)
  notifications:<kind>:delayed   — Sorted set of nacked messages awaiting redelivery
  notifications:<kind>:dlq       — Dead-letter stream for inspection

Entry Schema:
  {
      "payload":          JSON-encoded job body,
      "redelivery_count": times the entry was redelivered after a nack,
      "dlq_reason":       only on dead-letter entries,
  }

The worker never buffers messages itself: a nacked message goes back to the
backend, which owns redelivery and dead-lettering.
"""
from __future__ import annotations

import json
import time
import uuid
import structlog
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Iterable, Optional

from models.schemas import QueueKind, QueueMessage
from worker.exceptions import QueueConnectionError

logger = structlog.get_logger()

MAX_REDELIVERY_DELAY_S = 3600


# ──────────────────────────────────────────────────────────────
#  Queue Names
# ──────────────────────────────────────────────────────────────

class Queues:
    NOTIFICATION_JOBS = "notifications:jobs"
    COMPLETED_EMAIL = "notifications:completed_email"

    _STREAMS = {
        QueueKind.NOTIFICATION_JOB: NOTIFICATION_JOBS,
        QueueKind.COMPLETED_EMAIL: COMPLETED_EMAIL,
    }

    @classmethod
    def stream(cls, kind: QueueKind) -> str:
        return cls._STREAMS[kind]

    @classmethod
    def delayed(cls, kind: QueueKind) -> str:
        return f"{cls._STREAMS[kind]}:delayed"

    @classmethod
    def dlq(cls, kind: QueueKind) -> str:
        return f"{cls._STREAMS[kind]}:dlq"


def encode_payload(payload: Any) -> str:
    return payload if isinstance(payload, str) else json.dumps(payload, default=str)


def decode_payload(raw: Any) -> Any:
    """Decode a JSON body; malformed bodies are returned untouched for the processor to reject."""
    if not isinstance(raw, (str, bytes)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw


def redelivery_delay_s(redelivery_count: int, base_s: int) -> int:
    """Exponential redelivery delay: base * 2^(count-1), capped at one hour."""
    if base_s <= 0:
        return 0
    return min(base_s * (2 ** max(redelivery_count - 1, 0)), MAX_REDELIVERY_DELAY_S)


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """Abstract message queue interface."""

    def __init__(self, enabled_kinds: Iterable[QueueKind] = (), max_attempts: int = 5):
        self._enabled_kinds = frozenset(enabled_kinds)
        self.max_attempts = max_attempts

    def is_enabled(self, kind: QueueKind) -> bool:
        """Whether this queue kind is configured. Not a connectivity check."""
        return kind in self._enabled_kinds

    @property
    def enabled_kinds(self) -> frozenset[QueueKind]:
        return self._enabled_kinds

    def _exhausted(self, message: QueueMessage) -> bool:
        return message.redelivery_count + 1 >= self.max_attempts

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def ensure_topology(self, kind: QueueKind) -> None:
        """Create the stream/group for a queue kind if missing. Raises on connectivity failure."""
        ...

    @abstractmethod
    async def publish(self, kind: QueueKind, payload: Any) -> str:
        """Publish a job body. Returns the delivery tag of the new entry."""
        ...

    @abstractmethod
    async def fetch_batch(self, kind: QueueKind, max_messages: int) -> list[QueueMessage]:
        """Fetch up to max_messages in delivery order. Empty list on an empty queue."""
        ...

    @abstractmethod
    async def ack(self, message: QueueMessage) -> None:
        """Acknowledge and remove a message."""
        ...

    @abstractmethod
    async def nack(self, message: QueueMessage, requeue: bool = True) -> bool:
        """
        Negative-acknowledge. Returns True when the message was scheduled for
        redelivery, False when it was dead-lettered (requeue=False or attempts
        exhausted).
        """
        ...

    @abstractmethod
    async def queue_length(self, kind: QueueKind) -> int:
        """Return the number of entries in a queue."""
        ...

    @abstractmethod
    async def dead_letters(self, kind: QueueKind, count: int = 10) -> list[QueueMessage]:
        """Peek at dead-lettered messages without consuming them."""
        ...


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis Streams + Sorted Sets.

    - Each queue kind is a stream consumed through a consumer group, so
      competing worker processes never hold the same entry at once
    - Nacked entries wait in a sorted set and are promoted back into the
      stream before each fetch
    - Entries left pending by a crashed consumer are reclaimed with XAUTOCLAIM
    - Dead letters go to a per-kind stream for inspection
    """

    def __init__(
        self,
        redis_url: str,
        enabled_kinds: Iterable[QueueKind] = (),
        consumer_group: str = "notification-workers",
        consumer_name: str = "",
        max_attempts: int = 5,
        retry_backoff_base_s: int = 30,
        reclaim_idle_ms: int = 300_000,
        client: Any = None,
    ):
        super().__init__(enabled_kinds, max_attempts)
        self._redis_url = redis_url
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name or f"worker_{uuid.uuid4().hex[:8]}"
        self.retry_backoff_base_s = retry_backoff_base_s
        self.reclaim_idle_ms = reclaim_idle_ms
        self._ready: set[QueueKind] = set()

        if client is not None:
            self._redis = client
        else:
            import redis.asyncio as aioredis
            # from_url only parses; no connection is made until first command
            self._redis = aioredis.from_url(
                redis_url,
                decode_responses=True,
                max_connections=10,
            )

    async def connect(self):
        from redis.exceptions import RedisError
        try:
            await self._redis.ping()
        except RedisError as e:
            raise QueueConnectionError(f"Redis unreachable: {e}") from e
        logger.info("redis_queue_connected",
                    url=self._redis_url.split("@")[-1],
                    consumer=self.consumer_name)

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
        self._ready.clear()

    async def ensure_topology(self, kind: QueueKind) -> None:
        if kind in self._ready:
            return
        from redis.exceptions import RedisError, ResponseError
        try:
            await self._redis.xgroup_create(
                Queues.stream(kind), self.consumer_group, id="0", mkstream=True,
            )
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise QueueConnectionError(str(e), queue=Queues.stream(kind)) from e
        except RedisError as e:
            raise QueueConnectionError(str(e), queue=Queues.stream(kind)) from e
        self._ready.add(kind)

    async def publish(self, kind: QueueKind, payload: Any, redelivery_count: int = 0) -> str:
        entry_id = await self._redis.xadd(Queues.stream(kind), {
            "payload": encode_payload(payload),
            "redelivery_count": str(redelivery_count),
        })
        logger.debug("job_published", queue=Queues.stream(kind), delivery_tag=entry_id)
        return entry_id

    async def fetch_batch(self, kind: QueueKind, max_messages: int) -> list[QueueMessage]:
        if max_messages <= 0:
            return []
        from redis.exceptions import RedisError
        stream = Queues.stream(kind)
        try:
            await self._promote_delayed(kind)

            messages = await self._reclaim_stale(kind, max_messages)

            remaining = max_messages - len(messages)
            if remaining > 0:
                response = await self._redis.xreadgroup(
                    groupname=self.consumer_group,
                    consumername=self.consumer_name,
                    streams={stream: ">"},
                    count=remaining,
                )
                for _stream_name, entries in response or []:
                    for entry_id, fields in entries:
                        messages.append(self._to_message(kind, entry_id, fields))
        except RedisError as e:
            raise QueueConnectionError(f"Fetch failed: {e}", queue=stream) from e
        return messages[:max_messages]

    async def _reclaim_stale(self, kind: QueueKind, count: int) -> list[QueueMessage]:
        """Take over entries another consumer fetched but never acked."""
        if self.reclaim_idle_ms <= 0:
            return []
        result = await self._redis.xautoclaim(
            Queues.stream(kind),
            self.consumer_group,
            self.consumer_name,
            min_idle_time=self.reclaim_idle_ms,
            start_id="0-0",
            count=count,
        )
        entries = result[1] if result and len(result) > 1 else []
        reclaimed = []
        for entry_id, fields in entries:
            if not fields:
                continue
            message = self._to_message(kind, entry_id, fields)
            message.redelivery_count += 1
            reclaimed.append(message)
        if reclaimed:
            logger.info("stale_jobs_reclaimed", queue=Queues.stream(kind), count=len(reclaimed))
        return reclaimed

    def _to_message(self, kind: QueueKind, entry_id: str, fields: dict[str, Any]) -> QueueMessage:
        try:
            redelivery_count = int(fields.get("redelivery_count", 0))
        except (TypeError, ValueError):
            redelivery_count = 0
        return QueueMessage(
            queue_kind=kind,
            payload=decode_payload(fields.get("payload")),
            delivery_tag=entry_id,
            redelivery_count=redelivery_count,
        )

    async def _remove(self, message: QueueMessage) -> None:
        stream = Queues.stream(message.queue_kind)
        pipe = self._redis.pipeline()
        pipe.xack(stream, self.consumer_group, message.delivery_tag)
        pipe.xdel(stream, message.delivery_tag)
        await pipe.execute()

    async def ack(self, message: QueueMessage) -> None:
        await self._remove(message)
        logger.debug("job_acked", delivery_tag=message.delivery_tag)

    async def nack(self, message: QueueMessage, requeue: bool = True) -> bool:
        if requeue and not self._exhausted(message):
            count = message.redelivery_count + 1
            delay = redelivery_delay_s(count, self.retry_backoff_base_s)
            member = json.dumps({
                "id": uuid.uuid4().hex,
                "payload": encode_payload(message.payload),
                "redelivery_count": count,
            })
            await self._redis.zadd(Queues.delayed(message.queue_kind), {member: time.time() + delay})
            await self._remove(message)
            logger.info("job_scheduled_for_redelivery",
                        delivery_tag=message.delivery_tag,
                        redelivery_count=count,
                        delay_s=delay)
            return True

        reason = "rejected" if not requeue else f"Exceeded {self.max_attempts} attempts"
        await self._redis.xadd(Queues.dlq(message.queue_kind), {
            "payload": encode_payload(message.payload),
            "redelivery_count": str(message.redelivery_count),
            "dlq_reason": reason,
        })
        await self._remove(message)
        logger.warning("job_moved_to_dlq",
                       delivery_tag=message.delivery_tag,
                       attempts=message.redelivery_count + 1,
                       reason=reason)
        return False

    async def _promote_delayed(self, kind: QueueKind) -> None:
        """Move delayed entries whose time has come back into the stream."""
        delayed_key = Queues.delayed(kind)
        ready = await self._redis.zrangebyscore(delayed_key, "-inf", time.time())
        promoted = 0
        for member in ready:
            # zrem decides the winner when several consumers promote at once
            if not await self._redis.zrem(delayed_key, member):
                continue
            data = json.loads(member)
            await self.publish(kind, data["payload"], redelivery_count=int(data.get("redelivery_count", 0)))
            promoted += 1
        if promoted:
            logger.info("delayed_jobs_promoted", queue=Queues.stream(kind), count=promoted)

    async def queue_length(self, kind: QueueKind) -> int:
        return await self._redis.xlen(Queues.stream(kind))

    async def dead_letters(self, kind: QueueKind, count: int = 10) -> list[QueueMessage]:
        entries = await self._redis.xrange(Queues.dlq(kind), count=count)
        return [self._to_message(kind, entry_id, fields) for entry_id, fields in entries]


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by plain deques.
    Single-process only — no consumer groups, no persistence, no redelivery delay.
    """

    def __init__(self, enabled_kinds: Iterable[QueueKind] = tuple(QueueKind), max_attempts: int = 5):
        super().__init__(enabled_kinds, max_attempts)
        self._queues: dict[QueueKind, deque[QueueMessage]] = {kind: deque() for kind in QueueKind}
        self._in_flight: dict[str, QueueMessage] = {}
        self._dlq: dict[QueueKind, list[QueueMessage]] = {kind: [] for kind in QueueKind}
        self.acked: list[str] = []

    async def connect(self):
        logger.info("inmemory_queue_connected")

    async def close(self):
        # In-flight messages go back to the head of their queue, as a broker would redeliver them
        for message in reversed(list(self._in_flight.values())):
            self._queues[message.queue_kind].appendleft(message)
        self._in_flight.clear()

    async def ensure_topology(self, kind: QueueKind) -> None:
        return None

    async def publish(self, kind: QueueKind, payload: Any, redelivery_count: int = 0) -> str:
        tag = f"mem_{uuid.uuid4().hex[:12]}"
        self._queues[kind].append(QueueMessage(
            queue_kind=kind,
            payload=decode_payload(encode_payload(payload)),
            delivery_tag=tag,
            redelivery_count=redelivery_count,
        ))
        return tag

    async def fetch_batch(self, kind: QueueKind, max_messages: int) -> list[QueueMessage]:
        q = self._queues[kind]
        batch = []
        while q and len(batch) < max_messages:
            message = q.popleft()
            self._in_flight[message.delivery_tag] = message
            batch.append(message)
        return batch

    def _take(self, message: QueueMessage) -> QueueMessage:
        held = self._in_flight.pop(message.delivery_tag, None)
        if held is None:
            raise ValueError(f"Unknown or already settled delivery tag: {message.delivery_tag}")
        return held

    async def ack(self, message: QueueMessage) -> None:
        self._take(message)
        self.acked.append(message.delivery_tag)

    async def nack(self, message: QueueMessage, requeue: bool = True) -> bool:
        held = self._take(message)
        if requeue and not self._exhausted(held):
            await self.publish(held.queue_kind, held.payload, redelivery_count=held.redelivery_count + 1)
            return True
        self._dlq[held.queue_kind].append(held)
        logger.warning("job_moved_to_dlq",
                       delivery_tag=held.delivery_tag,
                       attempts=held.redelivery_count + 1)
        return False

    async def queue_length(self, kind: QueueKind) -> int:
        return len(self._queues[kind])

    async def dead_letters(self, kind: QueueKind, count: int = 10) -> list[QueueMessage]:
        return self._dlq[kind][:count]

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[MessageQueue] = None


def _enabled_kinds(config: dict[str, Any]) -> list[QueueKind]:
    if not config.get("enabled", True):
        return []
    kinds = []
    if config.get("notification_jobs_enabled", True):
        kinds.append(QueueKind.NOTIFICATION_JOB)
    if config.get("completed_email_enabled", True):
        kinds.append(QueueKind.COMPLETED_EMAIL)
    return kinds


def create_message_queue(queue_config: dict[str, Any] = None) -> MessageQueue:
    """Factory: create the appropriate queue backend.

    Missing credentials do not fail: the queue is created with no enabled
    kinds, and the batch runners report themselves disabled.
    """
    global _instance
    if _instance:
        return _instance

    config = queue_config or {}
    backend = config.get("backend", "memory")
    kinds = _enabled_kinds(config)
    max_attempts = int(config.get("max_attempts", 5))

    if backend == "redis":
        url = config.get("redis_url", "")
        if not url:
            kinds = []
            url = "redis://localhost:6379"
        _instance = RedisMessageQueue(
            redis_url=url,
            enabled_kinds=kinds,
            consumer_group=config.get("consumer_group", "notification-workers"),
            consumer_name=config.get("consumer_name", ""),
            max_attempts=max_attempts,
            retry_backoff_base_s=int(config.get("retry_backoff_base_s", 30)),
            reclaim_idle_ms=int(config.get("reclaim_idle_ms", 300_000)),
        )
    elif backend == "memory":
        _instance = InMemoryMessageQueue(enabled_kinds=kinds, max_attempts=max_attempts)
    else:
        raise ValueError(f"Unknown queue backend: {backend!r}")

    return _instance


def get_message_queue() -> MessageQueue:
    """Return the singleton queue instance."""
    global _instance
    if _instance is None:
        _instance = create_message_queue()
    return _instance


def reset_message_queue() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
