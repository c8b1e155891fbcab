"""
Redis streams broker.

Layout under the configured prefix:

- ``{prefix}:lane:{priority}``: one stream per priority lane, read through a
  shared consumer group so every message goes to exactly one worker until it
  is acknowledged or abandoned.
- ``{prefix}:delayed``: sorted set of messages scored by delivery time,
  promoted into their lane once due.

Messages left pending longer than the visibility timeout (the consumer
crashed before acknowledging) are claimed by the next worker that pops.
"""

import asyncio
import base64
import json
import logging
import time
from collections import deque
from datetime import datetime
from typing import Any
from uuid import uuid4

from redis.asyncio import Redis
from redis.exceptions import RedisError, ResponseError

from jobwire.constants import PRIORITY_ORDER, BrokerPriority
from jobwire.errors import BrokerTransportError, PopCancelledError
from jobwire.fingerprint import as_utc

logger = logging.getLogger(__name__)

PROMOTE_BATCH_SIZE = 100
MIN_BLOCK_MS = 10

# KEYS: delayed set, target lane. ARGV: member, payload.
# Removes the member and appends it to the lane in one step; only the caller
# whose ZREM succeeds appends.
PROMOTE_SCRIPT = """
if redis.call("ZREM", KEYS[1], ARGV[1]) == 1 then
    redis.call("XADD", KEYS[2], "*", "payload", ARGV[2])
    return 1
end
return 0
"""


class RedisMessage:
    """A stream entry delivered to this consumer."""

    def __init__(
        self,
        redis: Redis,
        stream: str,
        group: str,
        message_id: bytes,
        payload: bytes,
        priority: BrokerPriority,
    ):
        self._redis = redis
        self._stream = stream
        self._group = group
        self.message_id = message_id
        self._payload = payload
        self.priority = priority
        self._acked = False

    @property
    def payload(self) -> bytes:
        return self._payload

    @property
    def acked(self) -> bool:
        return self._acked

    async def ack(self) -> None:
        """Acknowledge and delete the entry. Repeated calls are no-ops."""
        if self._acked:
            logger.warning(
                "Broker message acknowledged twice",
                extra={"stream": self._stream, "message_id": self.message_id.decode()}
            )
            return
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.xack(self._stream, self._group, self.message_id)
                pipe.xdel(self._stream, self.message_id)
                await pipe.execute()
        except RedisError as e:
            raise BrokerTransportError(f"Failed to acknowledge message: {e}") from e
        self._acked = True

    def __repr__(self) -> str:
        return f"RedisMessage(stream={self._stream}, id={self.message_id!r})"


class RedisStreamBroker:
    """
    Broker backed by Redis streams and a delayed-delivery sorted set.

    Each worker process builds its own instance; ``consumer`` identifies it
    inside the consumer group.
    """

    def __init__(
        self,
        redis: Redis,
        consumer: str,
        prefix: str = "jobwire",
        group: str = "workers",
        visibility_timeout_seconds: int = 300,
    ):
        """
        Initialize the broker.

        Args:
            redis: Redis client created with ``decode_responses=False``.
            consumer: Consumer name within the group.
            prefix: Key prefix.
            group: Consumer group shared by all workers.
            visibility_timeout_seconds: Idle time after which a pending
                message is handed to another consumer.
        """
        self._redis = redis
        self._consumer = consumer
        self._prefix = prefix
        self._group = group
        self._visibility_timeout_ms = visibility_timeout_seconds * 1000
        self._groups_ready = False
        self._buffer: deque[RedisMessage] = deque()
        self._promote = redis.register_script(PROMOTE_SCRIPT)

    @classmethod
    def from_url(cls, url: str, consumer: str, **kwargs: Any) -> "RedisStreamBroker":
        """Create a broker with its own Redis connection pool."""
        return cls(Redis.from_url(url, decode_responses=False), consumer, **kwargs)

    @property
    def delayed_key(self) -> str:
        return f"{self._prefix}:delayed"

    def lane_key(self, priority: BrokerPriority | str) -> str:
        return f"{self._prefix}:lane:{BrokerPriority(priority).value}"

    async def publish(
        self,
        payload: bytes,
        *,
        priority: BrokerPriority,
        run_at: datetime | None = None,
    ) -> None:
        """
        Publish a message, deferring it when ``run_at`` is in the future.

        Raises:
            BrokerTransportError: If Redis cannot be reached.
        """
        deliver_at = as_utc(run_at).timestamp() if run_at is not None else None
        try:
            if deliver_at is None or deliver_at <= time.time():
                await self._redis.xadd(self.lane_key(priority), {"payload": payload})
            else:
                envelope = json.dumps(
                    {
                        "id": uuid4().hex,
                        "priority": BrokerPriority(priority).value,
                        "payload": base64.b64encode(payload).decode("ascii"),
                    }
                )
                await self._redis.zadd(self.delayed_key, {envelope: deliver_at})
        except RedisError as e:
            raise BrokerTransportError(f"Failed to publish message: {e}") from e

    async def pop(
        self,
        *,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> RedisMessage | None:
        """
        Pop the next message, highest lane first.

        Order of preference: messages already buffered from a previous
        multi-lane read, abandoned messages past the visibility timeout,
        new messages. Blocks for up to ``timeout`` seconds (shortened to the
        next delayed delivery) when nothing is ready.

        Raises:
            PopCancelledError: If ``cancel`` is set before or while waiting.
            BrokerTransportError: If Redis cannot be reached.
        """
        if self._buffer:
            return self._buffer.popleft()
        if cancel is not None and cancel.is_set():
            raise PopCancelledError("Broker pop cancelled")

        try:
            await self._ensure_groups()
            await self._promote_due()

            message = await self._claim_abandoned() or await self._read_ready()
            if message is not None:
                return message

            wait = timeout if timeout is not None else 5.0
            next_due = await self._seconds_until_next_due()
            if next_due is not None:
                wait = min(wait, next_due)
            return await self._read_blocking(wait, cancel)
        except RedisError as e:
            raise BrokerTransportError(f"Failed to pop message: {e}") from e

    async def close(self) -> None:
        await self._redis.aclose()

    async def _ensure_groups(self) -> None:
        if self._groups_ready:
            return
        for priority in PRIORITY_ORDER:
            try:
                await self._redis.xgroup_create(
                    self.lane_key(priority), self._group, id="0", mkstream=True
                )
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise
        self._groups_ready = True

    async def _promote_due(self) -> int:
        """Move due delayed messages into their lanes."""
        due = await self._redis.zrangebyscore(
            self.delayed_key, "-inf", time.time(), start=0, num=PROMOTE_BATCH_SIZE
        )
        promoted = 0
        for member in due:
            try:
                envelope = json.loads(member)
                payload = base64.b64decode(envelope["payload"])
                priority = BrokerPriority(envelope["priority"])
            except (ValueError, KeyError, TypeError):
                if await self._redis.zrem(self.delayed_key, member):
                    logger.error("Dropping malformed delayed message", extra={"member": repr(member)})
                continue

            if await self._promote(
                keys=[self.delayed_key, self.lane_key(priority)],
                args=[member, payload],
            ):
                promoted += 1

        if promoted:
            logger.debug(f"Promoted {promoted} delayed messages")
        return promoted

    async def _seconds_until_next_due(self) -> float | None:
        head = await self._redis.zrange(self.delayed_key, 0, 0, withscores=True)
        if not head:
            return None
        _, score = head[0]
        return max(0.0, float(score) - time.time())

    async def _claim_abandoned(self) -> RedisMessage | None:
        for priority in PRIORITY_ORDER:
            stream = self.lane_key(priority)
            response = await self._redis.xautoclaim(
                stream,
                self._group,
                self._consumer,
                min_idle_time=self._visibility_timeout_ms,
                start_id="0-0",
                count=1,
            )
            for message_id, fields in response[1]:
                if fields:
                    logger.info(
                        "Claimed abandoned broker message",
                        extra={"stream": stream, "message_id": message_id.decode()}
                    )
                    return self._to_message(stream, message_id, fields)
        return None

    async def _read_ready(self) -> RedisMessage | None:
        for priority in PRIORITY_ORDER:
            stream = self.lane_key(priority)
            response = await self._redis.xreadgroup(
                self._group, self._consumer, {stream: ">"}, count=1
            )
            messages = self._parse_read(response)
            if messages:
                return messages[0]
        return None

    async def _read_blocking(
        self,
        wait: float,
        cancel: asyncio.Event | None,
    ) -> RedisMessage | None:
        streams = {self.lane_key(priority): ">" for priority in PRIORITY_ORDER}
        block_ms = max(MIN_BLOCK_MS, int(wait * 1000))
        read = asyncio.ensure_future(
            self._redis.xreadgroup(
                self._group, self._consumer, streams, count=1, block=block_ms
            )
        )
        waiter = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
        try:
            if waiter is None:
                response = await read
            else:
                done, _ = await asyncio.wait(
                    {read, waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                if read not in done:
                    raise PopCancelledError("Broker pop cancelled")
                response = read.result()
        finally:
            if waiter is not None:
                waiter.cancel()
            if not read.done():
                read.cancel()

        messages = self._parse_read(response)
        if not messages:
            return None
        # One entry per lane at most; hand out the highest lane first.
        self._buffer.extend(messages[1:])
        return messages[0]

    def _parse_read(self, response: Any) -> list[RedisMessage]:
        messages = []
        for stream, entries in response or []:
            stream_name = stream.decode() if isinstance(stream, bytes) else stream
            for message_id, fields in entries:
                if fields:
                    messages.append(self._to_message(stream_name, message_id, fields))
        messages.sort(key=lambda m: PRIORITY_ORDER.index(m.priority))
        return messages

    def _to_message(self, stream: str, message_id: bytes, fields: dict) -> RedisMessage:
        payload = fields.get(b"payload", fields.get("payload", b""))
        priority = BrokerPriority(stream.rsplit(":", 1)[-1])
        return RedisMessage(
            redis=self._redis,
            stream=stream,
            group=self._group,
            message_id=message_id,
            payload=payload,
            priority=priority,
        )
