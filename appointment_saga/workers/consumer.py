"""
Stage consumer: one invocation pulls a bounded batch from a queue and
processes it sequentially within a wall-clock budget.

Acknowledgment follows ``ack_mode``:

* ``batch``: the invocation succeeds or fails as a whole. One retryable
  failure leaves every message of the batch unacknowledged, so its siblings
  are redelivered too.
* ``message``: each successful message is acknowledged on its own.

Permanent failures are dead-lettered immediately when the stage allows it;
everything else waits for redelivery and the queue's receive limit.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

import structlog

from appointment_saga.core.exceptions import is_permanent
from appointment_saga.messaging.queue import MAX_BATCH_SIZE, MessageQueue, QueueMessage

logger = structlog.get_logger(__name__)

MessageHandler = Callable[[QueueMessage], Awaitable[None]]


class MessageOutcome(str, Enum):
    """Result of handling one message."""

    ACK = "ack"
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


class AckMode(str, Enum):
    """When successful messages are acknowledged."""

    BATCH = "batch"
    MESSAGE = "message"


@dataclass
class BatchResult:
    """Counters for one invocation."""

    received: int = 0
    acked: int = 0
    retried: int = 0
    dead_lettered: int = 0
    timed_out: bool = False


class StageConsumer:
    """Runs a message handler over a queue."""

    def __init__(
        self,
        name: str,
        queue: MessageQueue,
        handler: MessageHandler,
        batch_size: int = MAX_BATCH_SIZE,
        invocation_timeout: float = 30.0,
        ack_mode: AckMode | str = AckMode.BATCH,
        dead_letter_permanent: bool = True,
    ):
        self.name = name
        self.queue = queue
        self.handler = handler
        self.batch_size = batch_size
        self.invocation_timeout = invocation_timeout
        self.ack_mode = AckMode(ack_mode)
        self.dead_letter_permanent = dead_letter_permanent
        self._stop = asyncio.Event()

    async def handle(self, message: QueueMessage) -> tuple[MessageOutcome, str | None]:
        """Run the handler for one message and classify the outcome."""
        structlog.contextvars.bind_contextvars(stage=self.name, message_id=message.message_id)
        try:
            await self.handler(message)
        except Exception as e:
            if self.dead_letter_permanent and is_permanent(e):
                logger.warning("message_rejected_permanently", error=str(e))
                return MessageOutcome.DEAD_LETTER, str(e)

            logger.error(
                "message_processing_failed",
                error=str(e),
                error_type=type(e).__name__,
                receive_count=message.receive_count,
            )
            return MessageOutcome.RETRY, str(e)
        finally:
            structlog.contextvars.unbind_contextvars("stage", "message_id")

        return MessageOutcome.ACK, None

    async def _process_batch(
        self,
        batch: list[QueueMessage],
        outcomes: dict[str, MessageOutcome],
        result: BatchResult,
    ) -> None:
        for message in batch:
            outcome, reason = await self.handle(message)
            outcomes[message.message_id] = outcome

            if outcome is MessageOutcome.DEAD_LETTER:
                await self.queue.dead_letter(message, reason=reason or "permanent_failure")
                result.dead_lettered += 1
            elif outcome is MessageOutcome.RETRY:
                result.retried += 1
            elif self.ack_mode is AckMode.MESSAGE:
                await self.queue.ack(message)
                result.acked += 1

    async def run_once(self) -> BatchResult:
        """
        Perform one invocation.

        Returns:
            Counters for the invocation
        """
        batch = await self.queue.receive(self.batch_size)
        result = BatchResult(received=len(batch))
        if not batch:
            return result

        outcomes: dict[str, MessageOutcome] = {}
        try:
            await asyncio.wait_for(
                self._process_batch(batch, outcomes, result),
                timeout=self.invocation_timeout,
            )
        except asyncio.TimeoutError:
            result.timed_out = True
            logger.error(
                "invocation_timed_out",
                stage=self.name,
                timeout=self.invocation_timeout,
                processed=len(outcomes),
                received=len(batch),
            )

        if self.ack_mode is AckMode.BATCH:
            if result.timed_out or result.retried:
                logger.warning(
                    "batch_left_for_redelivery",
                    stage=self.name,
                    received=len(batch),
                    retried=result.retried,
                )
            else:
                for message in batch:
                    if outcomes.get(message.message_id) is MessageOutcome.ACK:
                        await self.queue.ack(message)
                        result.acked += 1

        logger.info(
            "invocation_completed",
            stage=self.name,
            received=result.received,
            acked=result.acked,
            retried=result.retried,
            dead_lettered=result.dead_lettered,
            timed_out=result.timed_out,
        )
        return result

    def stop(self) -> None:
        """Ask ``run_forever`` to return after the current invocation."""
        self._stop.set()

    async def run_forever(self, poll_interval: float = 1.0) -> None:
        """Invoke repeatedly, sleeping when the queue is empty."""
        logger.info("stage_consumer_started", stage=self.name, queue=self.queue.name)
        while not self._stop.is_set():
            try:
                result = await self.run_once()
            except Exception as e:
                logger.error("invocation_failed", stage=self.name, error=str(e))
                result = BatchResult()

            if result.received == 0:
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info("stage_consumer_stopped", stage=self.name)
