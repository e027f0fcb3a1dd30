"""
Durable at-least-once queues with visibility timeout and dead-lettering.

A delivered message stays hidden for the visibility timeout. If it is not
acknowledged within that window it becomes deliverable again. Once a message
has been received ``max_receive_count`` times without acknowledgment it is
moved to the dead-letter destination instead of being delivered again.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from itertools import count
from typing import Protocol

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError, ResponseError

from appointment_saga.core.exceptions import OperationException

logger = structlog.get_logger(__name__)

MAX_BATCH_SIZE = 10

# Stage name of the queue carrying confirmed events
CONFIRMATIONS = "confirmations"


@dataclass(frozen=True)
class QueueMessage:
    """A message handed to a consumer."""

    message_id: str
    body: str
    receive_count: int


class MessageQueue(Protocol):
    """Queue contract shared by country queues and the confirmation queue."""

    name: str

    async def send(self, body: str) -> str: ...

    async def receive(self, max_messages: int = MAX_BATCH_SIZE) -> list[QueueMessage]: ...

    async def ack(self, message: QueueMessage) -> None: ...

    async def dead_letter(self, message: QueueMessage, reason: str) -> None: ...

    async def approximate_depth(self) -> int: ...


def _batch_size(max_messages: int) -> int:
    return max(1, min(max_messages, MAX_BATCH_SIZE))


@dataclass
class _Entry:
    message_id: str
    body: str
    sent_at: float
    receive_count: int = 0
    invisible_until: float = 0.0
    reasons: list[str] = field(default_factory=list)


class InMemoryQueue:
    """Process-local queue with the same delivery policy as the Redis queue."""

    def __init__(
        self,
        name: str,
        visibility_timeout: float = 180,
        max_receive_count: int = 3,
        retention_seconds: float = 1_209_600,
        dead_letter_queue: "InMemoryQueue | None" = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.visibility_timeout = visibility_timeout
        self.max_receive_count = max_receive_count
        self.retention_seconds = retention_seconds
        self.dead_letter_queue = dead_letter_queue
        self.clock = clock
        self._entries: dict[str, _Entry] = {}
        self._ids = count(1)
        self._lock = asyncio.Lock()

    async def send(self, body: str) -> str:
        message_id = f"{self.name}-{next(self._ids)}"
        async with self._lock:
            self._entries[message_id] = _Entry(message_id, body, sent_at=self.clock())
        return message_id

    def _purge_expired(self, now: float) -> None:
        expired = [
            e.message_id for e in self._entries.values() if now - e.sent_at > self.retention_seconds
        ]
        for message_id in expired:
            del self._entries[message_id]
            logger.info("message_expired", queue=self.name, message_id=message_id)

    async def _move_to_dead_letter(self, entry: _Entry, reason: str) -> None:
        self._entries.pop(entry.message_id, None)
        if self.dead_letter_queue is not None:
            await self.dead_letter_queue.send(entry.body)
        logger.warning(
            "message_dead_lettered",
            queue=self.name,
            message_id=entry.message_id,
            receive_count=entry.receive_count,
            reason=reason,
        )

    async def receive(self, max_messages: int = MAX_BATCH_SIZE) -> list[QueueMessage]:
        limit = _batch_size(max_messages)
        batch: list[QueueMessage] = []

        async with self._lock:
            now = self.clock()
            self._purge_expired(now)

            for entry in list(self._entries.values()):
                if len(batch) >= limit:
                    break
                if entry.invisible_until > now:
                    continue
                if entry.receive_count >= self.max_receive_count:
                    await self._move_to_dead_letter(entry, reason="max_receive_count_exceeded")
                    continue

                entry.receive_count += 1
                entry.invisible_until = now + self.visibility_timeout
                batch.append(QueueMessage(entry.message_id, entry.body, entry.receive_count))

        return batch

    async def ack(self, message: QueueMessage) -> None:
        async with self._lock:
            self._entries.pop(message.message_id, None)

    async def dead_letter(self, message: QueueMessage, reason: str) -> None:
        async with self._lock:
            entry = self._entries.get(message.message_id)
            if entry is not None:
                await self._move_to_dead_letter(entry, reason=reason)

    async def approximate_depth(self) -> int:
        return len(self._entries)

    def bodies(self) -> list[str]:
        """Bodies currently held, in arrival order."""
        return [e.body for e in self._entries.values()]


class RedisStreamQueue:
    """
    Queue backed by a Redis Stream and one consumer group.

    Unacknowledged entries stay in the group's pending list; XAUTOCLAIM with
    ``min_idle_time`` equal to the visibility timeout hands them out again and
    bumps their delivery counter, which drives dead-lettering.
    """

    def __init__(
        self,
        redis_client: Redis,
        name: str,
        group: str,
        consumer: str,
        visibility_timeout: float = 180,
        max_receive_count: int = 3,
        retention_seconds: float = 1_209_600,
        dead_letter_name: str | None = None,
    ):
        self.redis = redis_client
        self.name = name
        self.group = group
        self.consumer = consumer
        self.visibility_timeout_ms = int(visibility_timeout * 1000)
        self.max_receive_count = max_receive_count
        self.retention_ms = int(retention_seconds * 1000)
        self.dead_letter_name = dead_letter_name or f"{name}:dlq"
        self._group_ready = False

    async def ensure_group(self) -> None:
        """Create the consumer group (and stream) if missing."""
        if self._group_ready:
            return
        try:
            await self.redis.xgroup_create(self.name, self.group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._group_ready = True

    async def send(self, body: str) -> str:
        min_id = f"{int(time.time() * 1000) - self.retention_ms}-0"
        try:
            return await self.redis.xadd(self.name, {"body": body}, minid=min_id, approximate=True)
        except RedisError as e:
            raise OperationException(
                f"Error sending message to {self.name}: {e}", code="QUEUE_SEND_ERROR"
            ) from e

    async def _times_delivered(self, message_id: str) -> int:
        pending = await self.redis.xpending_range(
            self.name, self.group, min=message_id, max=message_id, count=1
        )
        return int(pending[0]["times_delivered"]) if pending else 1

    async def _claim_expired(self, limit: int) -> list[QueueMessage]:
        result = await self.redis.xautoclaim(
            self.name,
            self.group,
            self.consumer,
            min_idle_time=self.visibility_timeout_ms,
            start_id="0-0",
            count=limit,
        )
        claimed: list[QueueMessage] = []
        for message_id, fields in result[1]:
            if not fields:
                # Trimmed by retention while pending
                await self.redis.xack(self.name, self.group, message_id)
                continue

            message = QueueMessage(message_id, fields["body"], await self._times_delivered(message_id))
            if message.receive_count > self.max_receive_count:
                await self.dead_letter(message, reason="max_receive_count_exceeded")
                continue
            claimed.append(message)
        return claimed

    async def receive(self, max_messages: int = MAX_BATCH_SIZE) -> list[QueueMessage]:
        limit = _batch_size(max_messages)
        try:
            await self.ensure_group()
            batch = await self._claim_expired(limit)

            if len(batch) < limit:
                response = await self.redis.xreadgroup(
                    groupname=self.group,
                    consumername=self.consumer,
                    streams={self.name: ">"},
                    count=limit - len(batch),
                )
                for _stream, entries in response or []:
                    for message_id, fields in entries:
                        batch.append(QueueMessage(message_id, fields["body"], 1))
        except RedisError as e:
            raise OperationException(
                f"Error receiving from {self.name}: {e}", code="QUEUE_RECEIVE_ERROR"
            ) from e

        return batch

    async def ack(self, message: QueueMessage) -> None:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.xack(self.name, self.group, message.message_id)
                pipe.xdel(self.name, message.message_id)
                await pipe.execute()
        except RedisError as e:
            raise OperationException(
                f"Error acknowledging on {self.name}: {e}", code="QUEUE_ACK_ERROR"
            ) from e

    async def dead_letter(self, message: QueueMessage, reason: str) -> None:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.xadd(
                    self.dead_letter_name,
                    {
                        "body": message.body,
                        "reason": reason,
                        "source_id": message.message_id,
                        "receive_count": str(message.receive_count),
                    },
                )
                pipe.xack(self.name, self.group, message.message_id)
                pipe.xdel(self.name, message.message_id)
                await pipe.execute()
        except RedisError as e:
            raise OperationException(
                f"Error dead-lettering on {self.name}: {e}", code="QUEUE_DEAD_LETTER_ERROR"
            ) from e

        logger.warning(
            "message_dead_lettered",
            queue=self.name,
            message_id=message.message_id,
            receive_count=message.receive_count,
            reason=reason,
        )

    async def approximate_depth(self) -> int:
        return await self.redis.xlen(self.name)
