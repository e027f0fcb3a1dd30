"""Tests for the in-memory queue delivery policy."""

import pytest

from appointment_saga.messaging.queue import InMemoryQueue


@pytest.fixture
def dlq(clock) -> InMemoryQueue:
    return InMemoryQueue("orders:dlq", clock=clock)


@pytest.fixture
def queue(clock, dlq: InMemoryQueue) -> InMemoryQueue:
    return InMemoryQueue(
        "orders",
        visibility_timeout=180,
        max_receive_count=3,
        retention_seconds=1_209_600,
        dead_letter_queue=dlq,
        clock=clock,
    )


@pytest.mark.asyncio
async def test_received_message_is_invisible_until_timeout(queue, clock):
    """Test an unacknowledged message reappears after the visibility timeout."""
    await queue.send("hello")

    first = await queue.receive()
    assert [m.body for m in first] == ["hello"]
    assert first[0].receive_count == 1

    clock.advance(179)
    assert await queue.receive() == []

    clock.advance(1)
    second = await queue.receive()
    assert second[0].message_id == first[0].message_id
    assert second[0].receive_count == 2


@pytest.mark.asyncio
async def test_acknowledged_message_is_gone(queue, clock):
    """Test ack removes the message for good."""
    await queue.send("hello")
    [message] = await queue.receive()

    await queue.ack(message)
    clock.advance(600)

    assert await queue.receive() == []
    assert await queue.approximate_depth() == 0


@pytest.mark.asyncio
async def test_dead_letter_after_three_receives(queue, dlq, clock):
    """Test a message received three times without ack moves to the DLQ."""
    await queue.send("poison")

    for attempt in range(1, 4):
        [message] = await queue.receive()
        assert message.receive_count == attempt
        clock.advance(180)

    assert await queue.receive() == []
    assert await queue.approximate_depth() == 0
    assert dlq.bodies() == ["poison"]


@pytest.mark.asyncio
async def test_explicit_dead_letter(queue, dlq):
    """Test a consumer can dead-letter a message directly."""
    await queue.send("bad")
    [message] = await queue.receive()

    await queue.dead_letter(message, reason="permanent_failure")

    assert await queue.approximate_depth() == 0
    assert dlq.bodies() == ["bad"]


@pytest.mark.asyncio
async def test_batches_are_capped_at_ten(queue):
    """Test at most ten messages are delivered per receive."""
    for i in range(15):
        await queue.send(f"m{i}")

    first = await queue.receive(max_messages=50)
    second = await queue.receive(max_messages=50)

    assert len(first) == 10
    assert len(second) == 5
    assert [m.body for m in first] == [f"m{i}" for i in range(10)]


@pytest.mark.asyncio
async def test_messages_expire_after_retention(queue, clock):
    """Test messages older than the retention period are discarded."""
    await queue.send("old")
    clock.advance(1_209_601)

    assert await queue.receive() == []
    assert await queue.approximate_depth() == 0


@pytest.mark.asyncio
async def test_message_ids_are_numbered_per_queue(clock):
    """Test each queue numbers its own messages from one."""
    first = InMemoryQueue("orders", clock=clock)
    second = InMemoryQueue("orders", clock=clock)

    assert await first.send("a") == "orders-1"
    assert await second.send("b") == "orders-1"
    assert await first.send("c") == "orders-2"
