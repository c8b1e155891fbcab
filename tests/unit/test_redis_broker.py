"""
Unit tests for the Redis streams broker.

Redis is replaced by mocks; these tests check which commands are issued.
"""

import asyncio
import base64
import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from jobwire.broker.redis_streams import RedisMessage, RedisStreamBroker
from jobwire.constants import BrokerPriority
from jobwire.errors import BrokerTransportError, PopCancelledError


@pytest.fixture
def redis() -> MagicMock:
    redis = MagicMock()
    redis.xadd = AsyncMock()
    redis.zadd = AsyncMock()
    redis.zrem = AsyncMock(return_value=1)
    redis.zrangebyscore = AsyncMock(return_value=[])
    redis.zrange = AsyncMock(return_value=[])
    redis.xgroup_create = AsyncMock()
    redis.xautoclaim = AsyncMock(return_value=[b"0-0", [], []])
    redis.xreadgroup = AsyncMock(return_value=[])
    redis.aclose = AsyncMock()
    redis.promote = AsyncMock(return_value=1)
    redis.register_script = MagicMock(return_value=redis.promote)
    return redis


@pytest.fixture
def broker(redis: MagicMock) -> RedisStreamBroker:
    return RedisStreamBroker(redis, consumer="worker-1", prefix="test")


def mock_pipeline(redis: MagicMock) -> MagicMock:
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, 1])
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=pipe)
    context.__aexit__ = AsyncMock(return_value=False)
    redis.pipeline = MagicMock(return_value=context)
    return pipe


class TestPublish:
    """Tests for RedisStreamBroker.publish."""

    async def test_publish_now(self, broker: RedisStreamBroker, redis: MagicMock):
        """Messages without run_at go straight to their lane."""
        await broker.publish(b"payload", priority=BrokerPriority.HIGH)

        redis.xadd.assert_awaited_once_with("test:lane:high", {"payload": b"payload"})
        redis.zadd.assert_not_awaited()

    async def test_publish_past_run_at(self, broker: RedisStreamBroker, redis: MagicMock):
        past = datetime.now(UTC) - timedelta(minutes=1)

        await broker.publish(b"payload", priority=BrokerPriority.BULK, run_at=past)

        redis.xadd.assert_awaited_once_with("test:lane:bulk", {"payload": b"payload"})

    async def test_publish_future_run_at(self, broker: RedisStreamBroker, redis: MagicMock):
        """Future messages wait in the delayed set, scored by delivery time."""
        future = datetime.now(UTC) + timedelta(hours=1)

        await broker.publish(b"payload", priority=BrokerPriority.NORMAL, run_at=future)

        redis.xadd.assert_not_awaited()
        key, mapping = redis.zadd.await_args.args
        assert key == "test:delayed"
        (member, score), = mapping.items()
        envelope = json.loads(member)
        assert envelope["priority"] == "normal"
        assert base64.b64decode(envelope["payload"]) == b"payload"
        assert score == pytest.approx(future.timestamp())

    async def test_publish_transport_error(self, broker: RedisStreamBroker, redis: MagicMock):
        redis.xadd.side_effect = RedisConnectionError("down")

        with pytest.raises(BrokerTransportError):
            await broker.publish(b"payload", priority=BrokerPriority.NORMAL)


class TestPop:
    """Tests for RedisStreamBroker.pop."""

    async def test_pop_cancelled(self, broker: RedisStreamBroker, redis: MagicMock):
        """A set token interrupts the pop before any command is sent."""
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(PopCancelledError):
            await broker.pop(cancel=cancel)

        redis.xreadgroup.assert_not_awaited()

    async def test_pop_ready_message(self, broker: RedisStreamBroker, redis: MagicMock):
        redis.xreadgroup.side_effect = [
            [[b"test:lane:high", [(b"1-0", {b"payload": b"hello"})]]],
        ]

        message = await broker.pop(timeout=0.1)

        assert message.payload == b"hello"
        assert message.priority == BrokerPriority.HIGH
        assert message.message_id == b"1-0"

    async def test_pop_creates_groups_once(self, broker: RedisStreamBroker, redis: MagicMock):
        await broker.pop(timeout=0.01)
        await broker.pop(timeout=0.01)

        assert redis.xgroup_create.await_count == 3

    async def test_pop_empty(self, broker: RedisStreamBroker, redis: MagicMock):
        assert await broker.pop(timeout=0.01) is None

    async def test_blocking_read_prefers_higher_lane(
        self,
        broker: RedisStreamBroker,
        redis: MagicMock,
    ):
        """Entries from a multi-lane read are handed out highest lane first."""
        blocking_response = [
            [b"test:lane:bulk", [(b"1-0", {b"payload": b"bulk"})]],
            [b"test:lane:high", [(b"2-0", {b"payload": b"high"})]],
        ]
        redis.xreadgroup.side_effect = [[], [], [], blocking_response]

        first = await broker.pop(timeout=0.01)
        second = await broker.pop(timeout=0.01)

        assert first.payload == b"high"
        assert second.payload == b"bulk"

    async def test_promotes_due_messages(self, broker: RedisStreamBroker, redis: MagicMock):
        envelope = json.dumps(
            {"id": "abc", "priority": "high", "payload": base64.b64encode(b"due").decode()}
        )
        redis.zrangebyscore.return_value = [envelope.encode()]

        await broker.pop(timeout=0.01)

        redis.promote.assert_awaited_once_with(
            keys=["test:delayed", "test:lane:high"],
            args=[envelope.encode(), b"due"],
        )
        # The move happens inside the script, never as separate commands
        redis.zrem.assert_not_awaited()
        redis.xadd.assert_not_awaited()

    async def test_promotion_lost_race(self, broker: RedisStreamBroker, redis: MagicMock):
        """Only the consumer whose script removes the entry promotes it."""
        envelope = json.dumps(
            {"id": "abc", "priority": "bulk", "payload": base64.b64encode(b"due").decode()}
        )
        redis.zrangebyscore.return_value = [envelope.encode()]
        redis.promote.return_value = 0

        assert await broker._promote_due() == 0

    async def test_drops_malformed_delayed_entry(
        self, broker: RedisStreamBroker, redis: MagicMock
    ):
        redis.zrangebyscore.return_value = [b"{}"]

        assert await broker._promote_due() == 0

        redis.zrem.assert_awaited_once_with("test:delayed", b"{}")
        redis.promote.assert_not_awaited()

    def test_registers_promotion_script(self, broker: RedisStreamBroker, redis: MagicMock):
        script = redis.register_script.call_args.args[0]

        assert "ZREM" in script
        assert "XADD" in script

    async def test_claims_abandoned_message(self, broker: RedisStreamBroker, redis: MagicMock):
        redis.xautoclaim.return_value = [b"0-0", [(b"5-0", {b"payload": b"orphan"})], []]

        message = await broker.pop(timeout=0.01)

        assert message.payload == b"orphan"
        redis.xreadgroup.assert_not_awaited()

    async def test_pop_transport_error(self, broker: RedisStreamBroker, redis: MagicMock):
        redis.xgroup_create.side_effect = RedisConnectionError("down")

        with pytest.raises(BrokerTransportError):
            await broker.pop(timeout=0.01)


class TestRedisMessage:
    """Tests for RedisMessage.ack."""

    async def test_ack(self, redis: MagicMock):
        pipe = mock_pipeline(redis)
        message = RedisMessage(
            redis, "test:lane:normal", "workers", b"1-0", b"x", BrokerPriority.NORMAL
        )

        await message.ack()

        pipe.xack.assert_called_once_with("test:lane:normal", "workers", b"1-0")
        pipe.xdel.assert_called_once_with("test:lane:normal", b"1-0")
        assert message.acked is True

    async def test_repeat_ack_is_noop(self, redis: MagicMock):
        pipe = mock_pipeline(redis)
        message = RedisMessage(
            redis, "test:lane:normal", "workers", b"1-0", b"x", BrokerPriority.NORMAL
        )

        await message.ack()
        await message.ack()

        assert pipe.execute.await_count == 1

    async def test_ack_transport_error(self, redis: MagicMock):
        pipe = mock_pipeline(redis)
        pipe.execute.side_effect = RedisConnectionError("down")
        message = RedisMessage(
            redis, "test:lane:normal", "workers", b"1-0", b"x", BrokerPriority.NORMAL
        )

        with pytest.raises(BrokerTransportError):
            await message.ack()

        assert message.acked is False
