"""Primary store for canonical appointment records."""

import asyncio
from typing import Protocol
from uuid import uuid4

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from appointment_saga.core.exceptions import (
    ConflictException,
    NotFoundException,
    OperationException,
)
from appointment_saga.schemas.appointments import (
    Appointment,
    AppointmentStatus,
    CountryISO,
    utcnow,
)

logger = structlog.get_logger(__name__)

ACTIVE_STATUSES = frozenset({AppointmentStatus.PENDING, AppointmentStatus.PROCESSING})


class AppointmentRepository(Protocol):
    """Key-value store of appointments with an insured-party index."""

    async def create(
        self,
        insured_id: str,
        schedule_id: int,
        country_iso: CountryISO,
        status: AppointmentStatus = AppointmentStatus.PENDING,
    ) -> Appointment: ...

    async def find_by_id(self, appointment_id: str) -> Appointment | None: ...

    async def find_by_insured_id(self, insured_id: str) -> list[Appointment]: ...

    async def update_status(
        self,
        appointment_id: str,
        status: AppointmentStatus,
        expected_status: AppointmentStatus | None = None,
    ) -> Appointment: ...

    async def has_conflicting_appointment(self, schedule_id: int) -> bool: ...

    async def ping(self) -> bool: ...


def _new_appointment(
    insured_id: str,
    schedule_id: int,
    country_iso: CountryISO,
    status: AppointmentStatus,
) -> Appointment:
    now = utcnow()
    return Appointment(
        id=str(uuid4()),
        insured_id=insured_id,
        schedule_id=schedule_id,
        country_iso=country_iso,
        status=status,
        created_at=now,
        updated_at=now,
    )


def _check_expected(
    appointment: Appointment,
    expected_status: AppointmentStatus | None,
) -> None:
    if expected_status is not None and appointment.status != expected_status:
        raise ConflictException(
            f"Appointment {appointment.id} changed concurrently: "
            f"expected {expected_status.value}, found {appointment.status.value}"
        )


class RedisAppointmentRepository:
    """
    Redis-backed primary store.

    Layout:
        <prefix>:<id>                      appointment JSON
        <prefix>s:insured:<insured_id>     sorted set of ids scored by creation time
        <prefix>s:schedule:<schedule_id>   set of ids booked on the schedule slot
    """

    def __init__(self, redis_client: Redis, key_prefix: str = "appointment"):
        """Initialize repository with Redis client."""
        self.redis = redis_client
        self.key_prefix = key_prefix

    def _key(self, appointment_id: str) -> str:
        return f"{self.key_prefix}:{appointment_id}"

    def _insured_key(self, insured_id: str) -> str:
        return f"{self.key_prefix}s:insured:{insured_id}"

    def _schedule_key(self, schedule_id: int) -> str:
        return f"{self.key_prefix}s:schedule:{schedule_id}"

    async def create(
        self,
        insured_id: str,
        schedule_id: int,
        country_iso: CountryISO,
        status: AppointmentStatus = AppointmentStatus.PENDING,
    ) -> Appointment:
        """
        Insert a new appointment if its id is absent.

        Args:
            insured_id: Insured party id
            schedule_id: Schedule slot id
            country_iso: Country of the appointment
            status: Initial status

        Returns:
            Created appointment

        Raises:
            OperationException: If the write fails or the id already exists
        """
        appointment = _new_appointment(insured_id, schedule_id, country_iso, status)
        key = self._key(appointment.id)

        try:
            created = await self.redis.set(
                key,
                appointment.model_dump_json(by_alias=True),
                nx=True,
            )
        except RedisError as e:
            raise OperationException(
                f"Error creating appointment: {e}", code="CREATE_ERROR"
            ) from e

        if not created:
            raise OperationException(
                f"Appointment {appointment.id} already exists",
                code="CREATE_ERROR",
            )

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zadd(
                    self._insured_key(insured_id),
                    {appointment.id: appointment.created_at.timestamp()},
                )
                pipe.sadd(self._schedule_key(schedule_id), appointment.id)
                await pipe.execute()
        except RedisError as e:
            # An unindexed record would hold the slot without the conflict check seeing it
            await self._discard(key, appointment.id)
            raise OperationException(
                f"Error indexing appointment: {e}", code="CREATE_ERROR"
            ) from e

        return appointment

    async def _discard(self, key: str, appointment_id: str) -> None:
        try:
            await self.redis.delete(key)
        except RedisError as e:
            logger.error(
                "appointment_rollback_failed",
                appointment_id=appointment_id,
                error=str(e),
            )

    async def find_by_id(self, appointment_id: str) -> Appointment | None:
        """Get an appointment by id, or None when absent."""
        try:
            raw = await self.redis.get(self._key(appointment_id))
        except RedisError as e:
            raise OperationException(
                f"Error fetching appointment: {e}", code="FIND_ERROR"
            ) from e

        if raw is None:
            return None
        return Appointment.model_validate_json(raw)

    async def _load_many(self, ids: list[str]) -> list[Appointment]:
        if not ids:
            return []
        raws = await self.redis.mget([self._key(i) for i in ids])
        return [Appointment.model_validate_json(raw) for raw in raws if raw is not None]

    async def find_by_insured_id(self, insured_id: str) -> list[Appointment]:
        """List an insured party's appointments, newest first."""
        try:
            ids = await self.redis.zrevrange(self._insured_key(insured_id), 0, -1)
            return await self._load_many(list(ids))
        except RedisError as e:
            raise OperationException(
                f"Error listing appointments: {e}", code="FIND_BY_INSURED_ERROR"
            ) from e

    async def update_status(
        self,
        appointment_id: str,
        status: AppointmentStatus,
        expected_status: AppointmentStatus | None = None,
    ) -> Appointment:
        """
        Update the status of an existing appointment.

        Args:
            appointment_id: Appointment id
            status: New status
            expected_status: Status the record must still hold for the write to apply

        Returns:
            Updated appointment

        Raises:
            NotFoundException: If the appointment is absent
            ConflictException: If the status changed since it was read
            OperationException: If the store is unreachable
        """
        key = self._key(appointment_id)

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        if raw is None:
                            await pipe.unwatch()
                            raise NotFoundException(f"Appointment {appointment_id} not found")

                        current = Appointment.model_validate_json(raw)
                        _check_expected(current, expected_status)
                        updated = current.model_copy(
                            update={"status": status, "updated_at": utcnow()}
                        )

                        pipe.multi()
                        pipe.set(key, updated.model_dump_json(by_alias=True), xx=True)
                        await pipe.execute()
                        return updated
                    except WatchError:
                        logger.debug("appointment_update_retry", appointment_id=appointment_id)
                        continue
        except RedisError as e:
            raise OperationException(
                f"Error updating appointment status: {e}", code="UPDATE_STATUS_ERROR"
            ) from e

    async def has_conflicting_appointment(self, schedule_id: int) -> bool:
        """
        Check for a pending or processing appointment on the same schedule slot.

        Raises:
            OperationException: If the store is unreachable
        """
        try:
            ids = await self.redis.smembers(self._schedule_key(schedule_id))
            appointments = await self._load_many(sorted(ids))
        except RedisError as e:
            raise OperationException(
                f"Error checking schedule conflicts: {e}", code="CONFLICT_CHECK_ERROR"
            ) from e

        return any(a.status in ACTIVE_STATUSES for a in appointments)

    async def ping(self) -> bool:
        """Check store connectivity."""
        try:
            await self.redis.ping()
            return True
        except RedisError:
            return False


class InMemoryAppointmentRepository:
    """Process-local primary store used for development and tests."""

    def __init__(self) -> None:
        self._items: dict[str, Appointment] = {}
        self._lock = asyncio.Lock()

    async def create(
        self,
        insured_id: str,
        schedule_id: int,
        country_iso: CountryISO,
        status: AppointmentStatus = AppointmentStatus.PENDING,
    ) -> Appointment:
        appointment = _new_appointment(insured_id, schedule_id, country_iso, status)
        async with self._lock:
            if appointment.id in self._items:
                raise OperationException(
                    f"Appointment {appointment.id} already exists",
                    code="CREATE_ERROR",
                )
            self._items[appointment.id] = appointment
        return appointment

    async def find_by_id(self, appointment_id: str) -> Appointment | None:
        return self._items.get(appointment_id)

    async def find_by_insured_id(self, insured_id: str) -> list[Appointment]:
        matches = [a for a in self._items.values() if a.insured_id == insured_id]
        return sorted(matches, key=lambda a: a.created_at, reverse=True)

    async def update_status(
        self,
        appointment_id: str,
        status: AppointmentStatus,
        expected_status: AppointmentStatus | None = None,
    ) -> Appointment:
        async with self._lock:
            current = self._items.get(appointment_id)
            if current is None:
                raise NotFoundException(f"Appointment {appointment_id} not found")
            _check_expected(current, expected_status)
            updated = current.model_copy(update={"status": status, "updated_at": utcnow()})
            self._items[appointment_id] = updated
        return updated

    async def has_conflicting_appointment(self, schedule_id: int) -> bool:
        return any(
            a.schedule_id == schedule_id and a.status in ACTIVE_STATUSES
            for a in self._items.values()
        )

    async def ping(self) -> bool:
        return True
