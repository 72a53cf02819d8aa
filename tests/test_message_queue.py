"""
Tests for the queue backends and factory.

Coverage:
  In-memory: ordering, bound, ack/nack, redelivery counting, dead letters, close
  Redis:     topology, fetch (promote → reclaim → read), ack, nack paths,
             connectivity errors (client mocked)
  Factory:   backend selection, per-kind flags, missing broker URL
"""
import json
import pytest
from unittest.mock import AsyncMock, MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError, ResponseError

from job_queue.message_queue import (
    InMemoryMessageQueue,
    Queues,
    RedisMessageQueue,
    create_message_queue,
    decode_payload,
    get_message_queue,
    redelivery_delay_s,
)
from models.schemas import QueueKind, QueueMessage
from worker.exceptions import QueueConnectionError

JOBS = QueueKind.NOTIFICATION_JOB
EMAILS = QueueKind.COMPLETED_EMAIL


class TestHelpers:

    def test_decode_valid_json(self):
        assert decode_payload('{"kind": "email.raw"}') == {"kind": "email.raw"}

    def test_decode_malformed_returns_raw(self):
        assert decode_payload("{broken") == "{broken"

    def test_redelivery_delay_grows_and_caps(self):
        assert redelivery_delay_s(1, 30) == 30
        assert redelivery_delay_s(2, 30) == 60
        assert redelivery_delay_s(3, 30) == 120
        assert redelivery_delay_s(20, 30) == 3600
        assert redelivery_delay_s(3, 0) == 0

    def test_queue_names(self):
        assert Queues.stream(JOBS) == "notifications:jobs"
        assert Queues.delayed(EMAILS) == "notifications:completed_email:delayed"
        assert Queues.dlq(JOBS) == "notifications:jobs:dlq"


# ══════════════════════════════════════════════════════════════
#  In-memory backend
# ══════════════════════════════════════════════════════════════

class TestInMemoryQueue:

    @pytest.mark.asyncio
    async def test_fifo_and_bound(self, queue):
        for n in range(5):
            await queue.publish(JOBS, {"n": n})
        batch = await queue.fetch_batch(JOBS, 3)
        assert [m.payload["n"] for m in batch] == [0, 1, 2]
        assert await queue.queue_length(JOBS) == 2
        assert queue.in_flight_count == 3

    @pytest.mark.asyncio
    async def test_empty_queue_returns_empty_list(self, queue):
        assert await queue.fetch_batch(EMAILS, 10) == []

    @pytest.mark.asyncio
    async def test_queues_are_separate(self, queue):
        await queue.publish(JOBS, {"n": 1})
        assert await queue.fetch_batch(EMAILS, 10) == []

    @pytest.mark.asyncio
    async def test_ack_once(self, queue):
        await queue.publish(JOBS, {"n": 1})
        [message] = await queue.fetch_batch(JOBS, 1)
        await queue.ack(message)
        assert queue.acked == [message.delivery_tag]
        with pytest.raises(ValueError):
            await queue.ack(message)

    @pytest.mark.asyncio
    async def test_nack_requeues_with_count(self, queue):
        await queue.publish(JOBS, {"n": 1})
        await queue.publish(JOBS, {"n": 2})
        [first] = await queue.fetch_batch(JOBS, 1)

        assert await queue.nack(first) is True

        batch = await queue.fetch_batch(JOBS, 10)
        assert [m.payload["n"] for m in batch] == [2, 1]
        assert batch[1].redelivery_count == 1

    @pytest.mark.asyncio
    async def test_nack_without_requeue_dead_letters(self, queue):
        await queue.publish(JOBS, {"n": 1})
        [message] = await queue.fetch_batch(JOBS, 1)
        assert await queue.nack(message, requeue=False) is False
        assert await queue.queue_length(JOBS) == 0
        assert (await queue.dead_letters(JOBS))[0].payload == {"n": 1}

    @pytest.mark.asyncio
    async def test_attempts_exhausted_dead_letters(self):
        queue = InMemoryMessageQueue(max_attempts=3)
        await queue.publish(JOBS, {"n": 1})
        for expected_count in range(3):
            [message] = await queue.fetch_batch(JOBS, 1)
            assert message.redelivery_count == expected_count
            requeued = await queue.nack(message)
        assert requeued is False
        assert len(await queue.dead_letters(JOBS)) == 1

    @pytest.mark.asyncio
    async def test_close_returns_in_flight_to_head(self, queue):
        for n in range(3):
            await queue.publish(JOBS, {"n": n})
        await queue.fetch_batch(JOBS, 2)
        await queue.close()
        batch = await queue.fetch_batch(JOBS, 10)
        assert [m.payload["n"] for m in batch] == [0, 1, 2]

    def test_enabled_kinds(self):
        queue = InMemoryMessageQueue(enabled_kinds=[EMAILS])
        assert queue.is_enabled(EMAILS)
        assert not queue.is_enabled(JOBS)


# ══════════════════════════════════════════════════════════════
#  Redis backend (mocked client)
# ══════════════════════════════════════════════════════════════

@pytest.fixture
def redis_client():
    client = MagicMock()
    client.ping = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    client.xgroup_create = AsyncMock()
    client.xadd = AsyncMock(return_value="1700000000000-0")
    client.xreadgroup = AsyncMock(return_value=[])
    client.xautoclaim = AsyncMock(return_value=["0-0", [], []])
    client.zrangebyscore = AsyncMock(return_value=[])
    client.zrem = AsyncMock(return_value=1)
    client.zadd = AsyncMock()
    client.xlen = AsyncMock(return_value=0)
    client.xrange = AsyncMock(return_value=[])

    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, 1])
    client.pipeline = MagicMock(return_value=pipe)
    client.pipe = pipe
    return client


@pytest.fixture
def redis_queue(redis_client):
    return RedisMessageQueue(
        redis_url="redis://localhost:6379/0",
        enabled_kinds=[JOBS, EMAILS],
        consumer_name="worker_test",
        max_attempts=3,
        retry_backoff_base_s=30,
        client=redis_client,
    )


def entry(entry_id, body, redelivery_count=0):
    return entry_id, {"payload": json.dumps(body), "redelivery_count": str(redelivery_count)}


class TestRedisQueue:

    @pytest.mark.asyncio
    async def test_ensure_topology_creates_group_once(self, redis_queue, redis_client):
        await redis_queue.ensure_topology(JOBS)
        await redis_queue.ensure_topology(JOBS)
        redis_client.xgroup_create.assert_awaited_once_with(
            "notifications:jobs", "notification-workers", id="0", mkstream=True,
        )

    @pytest.mark.asyncio
    async def test_existing_group_is_fine(self, redis_queue, redis_client):
        redis_client.xgroup_create.side_effect = ResponseError("BUSYGROUP Consumer Group name already exists")
        await redis_queue.ensure_topology(JOBS)

    @pytest.mark.asyncio
    async def test_topology_connection_error(self, redis_queue, redis_client):
        redis_client.xgroup_create.side_effect = RedisConnectionError("refused")
        with pytest.raises(QueueConnectionError):
            await redis_queue.ensure_topology(JOBS)

    @pytest.mark.asyncio
    async def test_connect_failure(self, redis_queue, redis_client):
        redis_client.ping.side_effect = RedisConnectionError("refused")
        with pytest.raises(QueueConnectionError):
            await redis_queue.connect()

    @pytest.mark.asyncio
    async def test_fetch_reads_new_entries(self, redis_queue, redis_client):
        redis_client.xreadgroup.return_value = [
            ["notifications:jobs", [entry("1-0", {"kind": "email.raw"}), entry("2-0", {"kind": "x"}, 1)]],
        ]

        batch = await redis_queue.fetch_batch(JOBS, 50)

        assert [m.delivery_tag for m in batch] == ["1-0", "2-0"]
        assert batch[0].payload == {"kind": "email.raw"}
        assert batch[1].redelivery_count == 1
        kwargs = redis_client.xreadgroup.await_args.kwargs
        assert kwargs["count"] == 50
        assert kwargs["streams"] == {"notifications:jobs": ">"}

    @pytest.mark.asyncio
    async def test_fetch_reclaims_stale_first(self, redis_queue, redis_client):
        redis_client.xautoclaim.return_value = ["0-0", [entry("9-0", {"n": 1})], []]

        batch = await redis_queue.fetch_batch(JOBS, 5)

        assert batch[0].delivery_tag == "9-0"
        assert batch[0].redelivery_count == 1
        assert redis_client.xreadgroup.await_args.kwargs["count"] == 4

    @pytest.mark.asyncio
    async def test_fetch_promotes_due_delayed_entries(self, redis_queue, redis_client):
        member = json.dumps({"id": "abc", "payload": '{"n": 1}', "redelivery_count": 2})
        redis_client.zrangebyscore.return_value = [member]

        await redis_queue.fetch_batch(JOBS, 5)

        redis_client.zrem.assert_awaited_once_with("notifications:jobs:delayed", member)
        redis_client.xadd.assert_awaited_once_with(
            "notifications:jobs", {"payload": '{"n": 1}', "redelivery_count": "2"},
        )

    @pytest.mark.asyncio
    async def test_fetch_zero_does_nothing(self, redis_queue, redis_client):
        assert await redis_queue.fetch_batch(JOBS, 0) == []
        redis_client.xreadgroup.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fetch_connection_error(self, redis_queue, redis_client):
        redis_client.xreadgroup.side_effect = RedisConnectionError("reset")
        with pytest.raises(QueueConnectionError):
            await redis_queue.fetch_batch(JOBS, 5)

    @pytest.mark.asyncio
    async def test_ack_acks_and_deletes(self, redis_queue, redis_client):
        message = QueueMessage(JOBS, {"n": 1}, "5-0")
        await redis_queue.ack(message)
        redis_client.pipe.xack.assert_called_once_with("notifications:jobs", "notification-workers", "5-0")
        redis_client.pipe.xdel.assert_called_once_with("notifications:jobs", "5-0")
        redis_client.pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_nack_schedules_redelivery(self, redis_queue, redis_client):
        message = QueueMessage(EMAILS, {"orderId": "1"}, "5-0", redelivery_count=0)

        assert await redis_queue.nack(message) is True

        key, mapping = redis_client.zadd.await_args.args
        assert key == "notifications:completed_email:delayed"
        [(member, _score)] = mapping.items()
        assert json.loads(member)["redelivery_count"] == 1
        redis_client.pipe.xdel.assert_called_once()

    @pytest.mark.asyncio
    async def test_nack_exhausted_goes_to_dlq(self, redis_queue, redis_client):
        message = QueueMessage(JOBS, {"n": 1}, "5-0", redelivery_count=2)

        assert await redis_queue.nack(message) is False

        stream, fields = redis_client.xadd.await_args.args
        assert stream == "notifications:jobs:dlq"
        assert "3 attempts" in fields["dlq_reason"]
        redis_client.zadd.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_nack_reject_goes_to_dlq(self, redis_queue, redis_client):
        message = QueueMessage(JOBS, "{broken", "5-0")
        assert await redis_queue.nack(message, requeue=False) is False
        _, fields = redis_client.xadd.await_args.args
        assert fields["dlq_reason"] == "rejected"
        assert fields["payload"] == "{broken"

    @pytest.mark.asyncio
    async def test_close(self, redis_queue, redis_client):
        await redis_queue.close()
        redis_client.aclose.assert_awaited_once()


# ══════════════════════════════════════════════════════════════
#  Factory
# ══════════════════════════════════════════════════════════════

class TestFactory:

    def test_memory_backend(self):
        queue = create_message_queue({"backend": "memory"})
        assert isinstance(queue, InMemoryMessageQueue)
        assert queue.enabled_kinds == {JOBS, EMAILS}
        assert get_message_queue() is queue

    def test_redis_without_url_is_disabled(self):
        queue = create_message_queue({"backend": "redis", "redis_url": ""})
        assert isinstance(queue, RedisMessageQueue)
        assert not queue.is_enabled(JOBS)
        assert not queue.is_enabled(EMAILS)

    def test_redis_with_url(self):
        queue = create_message_queue({
            "backend": "redis", "redis_url": "redis://broker:6379/0", "max_attempts": 7,
        })
        assert queue.is_enabled(JOBS)
        assert queue.max_attempts == 7

    def test_per_kind_flags(self):
        queue = create_message_queue({"backend": "memory", "completed_email_enabled": False})
        assert queue.is_enabled(JOBS)
        assert not queue.is_enabled(EMAILS)

    def test_global_switch(self):
        queue = create_message_queue({"backend": "memory", "enabled": False})
        assert queue.enabled_kinds == frozenset()

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_message_queue({"backend": "kafka"})
