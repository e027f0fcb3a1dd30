"""Tests for the Redis-backed primary store, queue and error sink."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError, WatchError

from appointment_saga.core.exceptions import (
    ConflictException,
    NotFoundException,
    OperationException,
)
from appointment_saga.messaging.queue import QueueMessage, RedisStreamQueue
from appointment_saga.repositories.appointment_repository import RedisAppointmentRepository
from appointment_saga.schemas.appointments import (
    Appointment,
    AppointmentStatus,
    CountryISO,
    utcnow,
)
from appointment_saga.services.notification_service import ErrorNotifier, RedisStreamSink


def make_pipeline() -> MagicMock:
    pipe = MagicMock()
    pipe.__aenter__.return_value = pipe
    pipe.__aexit__.return_value = False
    pipe.execute = AsyncMock(return_value=[])
    pipe.watch = AsyncMock()
    pipe.get = AsyncMock()
    pipe.unwatch = AsyncMock()
    return pipe


@pytest.fixture
def pipe() -> MagicMock:
    return make_pipeline()


@pytest.fixture
def mock_redis(pipe) -> MagicMock:
    redis = MagicMock()
    redis.pipeline.return_value = pipe
    return redis


def stored(status=AppointmentStatus.PENDING, appointment_id="a-1") -> Appointment:
    now = utcnow()
    return Appointment(
        id=appointment_id,
        insured_id="00123",
        schedule_id=100,
        country_iso=CountryISO.PE,
        status=status,
        created_at=now,
        updated_at=now,
    )


class TestRedisAppointmentRepository:
    @pytest.mark.asyncio
    async def test_create(self, mock_redis, pipe):
        """Test create writes the record and both indexes."""
        mock_redis.set = AsyncMock(return_value=True)
        repository = RedisAppointmentRepository(mock_redis)

        appointment = await repository.create("00123", 100, CountryISO.PE)

        key, raw = mock_redis.set.call_args.args
        assert key == f"appointment:{appointment.id}"
        assert mock_redis.set.call_args.kwargs == {"nx": True}
        assert json.loads(raw)["countryISO"] == "PE"
        assert json.loads(raw)["status"] == "pending"
        assert pipe.zadd.call_args.args[0] == "appointments:insured:00123"
        pipe.sadd.assert_called_once_with("appointments:schedule:100", appointment.id)
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_create_existing_id(self, mock_redis, pipe):
        """Test an id collision is an operation error and skips the indexes."""
        mock_redis.set = AsyncMock(return_value=None)
        repository = RedisAppointmentRepository(mock_redis)

        with pytest.raises(OperationException, match="already exists"):
            await repository.create("00123", 100, CountryISO.PE)
        pipe.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_store_unreachable(self, mock_redis):
        """Test Redis errors surface as operation errors."""
        mock_redis.set = AsyncMock(side_effect=RedisConnectionError("refused"))
        repository = RedisAppointmentRepository(mock_redis)

        with pytest.raises(OperationException) as exc_info:
            await repository.create("00123", 100, CountryISO.PE)
        assert exc_info.value.code == "CREATE_ERROR"

    @pytest.mark.asyncio
    async def test_create_index_failure_removes_record(self, mock_redis, pipe):
        """Test a failed index write deletes the record it would orphan."""
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.delete = AsyncMock(return_value=1)
        pipe.execute.side_effect = RedisConnectionError("reset")
        repository = RedisAppointmentRepository(mock_redis)

        with pytest.raises(OperationException) as exc_info:
            await repository.create("00123", 100, CountryISO.PE)

        assert exc_info.value.code == "CREATE_ERROR"
        key = mock_redis.set.call_args.args[0]
        mock_redis.delete.assert_awaited_once_with(key)

    @pytest.mark.asyncio
    async def test_create_rollback_failure_keeps_original_error(self, mock_redis, pipe):
        """Test a failed cleanup does not mask the index error."""
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.delete = AsyncMock(side_effect=RedisConnectionError("gone"))
        pipe.execute.side_effect = RedisConnectionError("reset")
        repository = RedisAppointmentRepository(mock_redis)

        with pytest.raises(OperationException, match="reset"):
            await repository.create("00123", 100, CountryISO.PE)

    @pytest.mark.asyncio
    async def test_find_by_id(self, mock_redis):
        """Test find_by_id parses the stored JSON and handles misses."""
        appointment = stored()
        mock_redis.get = AsyncMock(return_value=appointment.model_dump_json(by_alias=True))
        repository = RedisAppointmentRepository(mock_redis)

        assert await repository.find_by_id("a-1") == appointment
        mock_redis.get.assert_awaited_once_with("appointment:a-1")

        mock_redis.get.return_value = None
        assert await repository.find_by_id("a-2") is None

    @pytest.mark.asyncio
    async def test_find_by_insured_id(self, mock_redis):
        """Test listing reads the insured index newest first."""
        newer, older = stored(appointment_id="a-2"), stored(appointment_id="a-1")
        mock_redis.zrevrange = AsyncMock(return_value=["a-2", "a-1"])
        mock_redis.mget = AsyncMock(
            return_value=[newer.model_dump_json(by_alias=True), older.model_dump_json(by_alias=True)]
        )
        repository = RedisAppointmentRepository(mock_redis)

        result = await repository.find_by_insured_id("00123")

        assert [a.id for a in result] == ["a-2", "a-1"]
        mock_redis.zrevrange.assert_awaited_once_with("appointments:insured:00123", 0, -1)
        mock_redis.mget.assert_awaited_once_with(["appointment:a-2", "appointment:a-1"])

    @pytest.mark.asyncio
    async def test_find_by_insured_id_empty(self, mock_redis):
        """Test an unknown insured party yields an empty list without MGET."""
        mock_redis.zrevrange = AsyncMock(return_value=[])
        mock_redis.mget = AsyncMock()
        repository = RedisAppointmentRepository(mock_redis)

        assert await repository.find_by_insured_id("55555") == []
        mock_redis.mget.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_status(self, mock_redis, pipe):
        """Test a watched read-modify-write of the status."""
        pipe.get.return_value = stored().model_dump_json(by_alias=True)
        repository = RedisAppointmentRepository(mock_redis)

        updated = await repository.update_status(
            "a-1", AppointmentStatus.PROCESSING, expected_status=AppointmentStatus.PENDING
        )

        assert updated.status == AppointmentStatus.PROCESSING
        pipe.watch.assert_awaited_once_with("appointment:a-1")
        pipe.multi.assert_called_once()
        key, raw = pipe.set.call_args.args
        assert key == "appointment:a-1"
        assert json.loads(raw)["status"] == "processing"
        assert pipe.set.call_args.kwargs == {"xx": True}

    @pytest.mark.asyncio
    async def test_update_status_retries_on_watch_error(self, mock_redis, pipe):
        """Test a concurrent write restarts the transaction."""
        pipe.get.return_value = stored().model_dump_json(by_alias=True)
        pipe.execute.side_effect = [WatchError(), []]
        repository = RedisAppointmentRepository(mock_redis)

        updated = await repository.update_status("a-1", AppointmentStatus.FAILED)

        assert updated.status == AppointmentStatus.FAILED
        assert pipe.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_update_status_not_found(self, mock_redis, pipe):
        """Test updating a missing appointment raises not found."""
        pipe.get.return_value = None
        repository = RedisAppointmentRepository(mock_redis)

        with pytest.raises(NotFoundException):
            await repository.update_status("missing", AppointmentStatus.PROCESSING)
        pipe.unwatch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_update_status_stale_expectation(self, mock_redis, pipe):
        """Test a status changed since it was read is a conflict."""
        pipe.get.return_value = stored(AppointmentStatus.COMPLETED).model_dump_json(by_alias=True)
        repository = RedisAppointmentRepository(mock_redis)

        with pytest.raises(ConflictException):
            await repository.update_status(
                "a-1", AppointmentStatus.PROCESSING, expected_status=AppointmentStatus.PENDING
            )
        pipe.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_has_conflicting_appointment(self, mock_redis):
        """Test only active appointments on the slot count as conflicts."""
        mock_redis.smembers = AsyncMock(return_value={"a-1"})
        mock_redis.mget = AsyncMock(return_value=[stored().model_dump_json(by_alias=True)])
        repository = RedisAppointmentRepository(mock_redis)

        assert await repository.has_conflicting_appointment(100) is True

        mock_redis.mget.return_value = [
            stored(AppointmentStatus.COMPLETED).model_dump_json(by_alias=True)
        ]
        assert await repository.has_conflicting_appointment(100) is False

    @pytest.mark.asyncio
    async def test_has_conflicting_appointment_unreachable(self, mock_redis):
        """Test the conflict query reports store failures to the caller."""
        mock_redis.smembers = AsyncMock(side_effect=RedisConnectionError("refused"))
        repository = RedisAppointmentRepository(mock_redis)

        with pytest.raises(OperationException) as exc_info:
            await repository.has_conflicting_appointment(100)
        assert exc_info.value.code == "CONFLICT_CHECK_ERROR"

    @pytest.mark.asyncio
    async def test_ping(self, mock_redis):
        """Test ping reports connectivity."""
        mock_redis.ping = AsyncMock(return_value=True)
        repository = RedisAppointmentRepository(mock_redis)
        assert await repository.ping() is True

        mock_redis.ping.side_effect = RedisConnectionError("refused")
        assert await repository.ping() is False


class TestRedisStreamQueue:
    @pytest.fixture
    def queue(self, mock_redis) -> RedisStreamQueue:
        mock_redis.xgroup_create = AsyncMock()
        mock_redis.xautoclaim = AsyncMock(return_value=["0-0", [], []])
        mock_redis.xpending_range = AsyncMock(return_value=[])
        mock_redis.xreadgroup = AsyncMock(return_value=[])
        mock_redis.xadd = AsyncMock(return_value="1-0")
        mock_redis.xack = AsyncMock()
        return RedisStreamQueue(
            mock_redis,
            "appointments:queue:pe",
            group="appointment-saga",
            consumer="worker-1",
            visibility_timeout=180,
            max_receive_count=3,
        )

    @pytest.mark.asyncio
    async def test_send(self, queue, mock_redis):
        """Test send appends the body with retention trimming."""
        message_id = await queue.send('{"a": 1}')

        assert message_id == "1-0"
        args, kwargs = mock_redis.xadd.call_args
        assert args == ("appointments:queue:pe", {"body": '{"a": 1}'})
        assert kwargs["approximate"] is True
        assert kwargs["minid"].endswith("-0")

    @pytest.mark.asyncio
    async def test_send_failure(self, queue, mock_redis):
        """Test a failed XADD is an operation error."""
        mock_redis.xadd.side_effect = RedisConnectionError("refused")

        with pytest.raises(OperationException) as exc_info:
            await queue.send("{}")
        assert exc_info.value.code == "QUEUE_SEND_ERROR"

    @pytest.mark.asyncio
    async def test_receive_new_and_expired(self, queue, mock_redis):
        """Test receive reclaims expired entries before reading new ones."""
        mock_redis.xautoclaim.return_value = ["0-0", [("1-0", {"body": "old"})], []]
        mock_redis.xpending_range.return_value = [{"message_id": "1-0", "times_delivered": 2}]
        mock_redis.xreadgroup.return_value = [
            ["appointments:queue:pe", [("2-0", {"body": "new"})]]
        ]

        batch = await queue.receive(10)

        assert batch == [QueueMessage("1-0", "old", 2), QueueMessage("2-0", "new", 1)]
        mock_redis.xgroup_create.assert_awaited_once_with(
            "appointments:queue:pe", "appointment-saga", id="0", mkstream=True
        )
        assert mock_redis.xautoclaim.call_args.kwargs["min_idle_time"] == 180_000
        assert mock_redis.xreadgroup.call_args.kwargs["count"] == 9

    @pytest.mark.asyncio
    async def test_receive_dead_letters_exhausted_entries(self, queue, mock_redis, pipe):
        """Test an entry delivered more than the receive limit goes to the DLQ."""
        mock_redis.xautoclaim.return_value = ["0-0", [("1-0", {"body": "poison"})], []]
        mock_redis.xpending_range.return_value = [{"message_id": "1-0", "times_delivered": 4}]

        batch = await queue.receive(10)

        assert batch == []
        dlq_name, fields = pipe.xadd.call_args.args
        assert dlq_name == "appointments:queue:pe:dlq"
        assert fields["body"] == "poison"
        assert fields["reason"] == "max_receive_count_exceeded"
        pipe.xack.assert_called_once_with("appointments:queue:pe", "appointment-saga", "1-0")
        pipe.xdel.assert_called_once_with("appointments:queue:pe", "1-0")

    @pytest.mark.asyncio
    async def test_existing_group_is_reused(self, queue, mock_redis):
        """Test BUSYGROUP from an existing consumer group is tolerated."""
        mock_redis.xgroup_create.side_effect = ResponseError(
            "BUSYGROUP Consumer Group name already exists"
        )

        assert await queue.receive() == []

    @pytest.mark.asyncio
    async def test_receive_failure(self, queue, mock_redis):
        """Test read errors are operation errors."""
        mock_redis.xreadgroup.side_effect = RedisConnectionError("refused")

        with pytest.raises(OperationException) as exc_info:
            await queue.receive()
        assert exc_info.value.code == "QUEUE_RECEIVE_ERROR"

    @pytest.mark.asyncio
    async def test_ack(self, queue, pipe):
        """Test ack removes the entry from the pending list and the stream."""
        await queue.ack(QueueMessage("1-0", "{}", 1))

        pipe.xack.assert_called_once_with("appointments:queue:pe", "appointment-saga", "1-0")
        pipe.xdel.assert_called_once_with("appointments:queue:pe", "1-0")
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_ack_failure(self, queue, pipe):
        """Test ack errors are operation errors."""
        pipe.execute.side_effect = RedisConnectionError("refused")

        with pytest.raises(OperationException) as exc_info:
            await queue.ack(QueueMessage("1-0", "{}", 1))
        assert exc_info.value.code == "QUEUE_ACK_ERROR"

    @pytest.mark.asyncio
    async def test_dead_letter_failure(self, queue, pipe):
        """Test dead-letter errors are operation errors."""
        pipe.execute.side_effect = RedisConnectionError("refused")

        with pytest.raises(OperationException) as exc_info:
            await queue.dead_letter(QueueMessage("1-0", "{}", 3), "poison")
        assert exc_info.value.code == "QUEUE_DEAD_LETTER_ERROR"


class TestErrorNotifier:
    @pytest.mark.asyncio
    async def test_redis_stream_sink(self, mock_redis):
        """Test error events are appended to the error stream."""
        mock_redis.xadd = AsyncMock()
        notifier = ErrorNotifier(RedisStreamSink(mock_redis, "appointments:errors"))

        await notifier.notify_error(OperationException("boom", code="X"), {"country": "PE"})

        stream, fields = mock_redis.xadd.call_args.args
        assert stream == "appointments:errors"
        event = json.loads(fields["payload"])
        assert event["eventType"] == "SystemError"
        assert event["error"] == {"message": "boom", "name": "OperationException", "code": "X"}
        assert event["context"] == {"country": "PE"}

    @pytest.mark.asyncio
    async def test_sink_failure_is_swallowed(self, mock_redis):
        """Test a broken error channel never masks the original failure."""
        mock_redis.xadd = AsyncMock(side_effect=RedisConnectionError("refused"))
        notifier = ErrorNotifier(RedisStreamSink(mock_redis, "appointments:errors"))

        await notifier.notify_error(ValueError("original"))

    @pytest.mark.asyncio
    async def test_without_sink(self):
        """Test a notifier without a sink only logs."""
        await ErrorNotifier(None).notify_error(ValueError("original"), {"stage": "reconciler"})
