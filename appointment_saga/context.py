"""Process-wide service context shared by the API and stage workers."""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import cached_property

import structlog
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine

from appointment_saga.config import Settings
from appointment_saga.core.redis_client import create_redis_client
from appointment_saga.database import create_regional_engines
from appointment_saga.messaging.event_bus import EventBus, confirmation_rule
from appointment_saga.messaging.queue import InMemoryQueue, MessageQueue, RedisStreamQueue
from appointment_saga.messaging.router import AppointmentTopic
from appointment_saga.repositories.appointment_repository import (
    AppointmentRepository,
    InMemoryAppointmentRepository,
    RedisAppointmentRepository,
)
from appointment_saga.repositories.regional_repository import RegionalAppointmentRepository
from appointment_saga.schemas.appointments import CountryISO
from appointment_saga.services.appointment_service import AppointmentService
from appointment_saga.services.notification_service import (
    ErrorNotifier,
    InMemorySink,
    RedisStreamSink,
)

logger = structlog.get_logger(__name__)

MEMORY = "memory"
REDIS = "redis"


@dataclass
class ServiceContext:
    """Store and transport handles, built once per process and passed to every stage."""

    settings: Settings
    appointments: AppointmentRepository
    regional: dict[CountryISO, RegionalAppointmentRepository]
    country_queues: dict[CountryISO, MessageQueue]
    confirmation_queue: MessageQueue
    topic: AppointmentTopic
    event_bus: EventBus
    notifier: ErrorNotifier
    redis: Redis | None = None
    engines: dict[CountryISO, AsyncEngine] = field(default_factory=dict)

    @cached_property
    def appointment_service(self) -> AppointmentService:
        """Intake and status service bound to this context's handles."""
        return AppointmentService(
            repository=self.appointments,
            topic=self.topic,
            conflict_check_fail_open=self.settings.conflict_check_fail_open,
        )

    async def close(self) -> None:
        """Release connections."""
        for engine in self.engines.values():
            await engine.dispose()
        if self.redis is not None:
            await self.redis.aclose()
        logger.info("service_context_closed")


def _memory_queue(name: str, settings: Settings, clock: Callable[[], float]) -> InMemoryQueue:
    return InMemoryQueue(
        name,
        visibility_timeout=settings.visibility_timeout_seconds,
        max_receive_count=settings.max_receive_count,
        retention_seconds=settings.message_retention_seconds,
        dead_letter_queue=InMemoryQueue(f"{name}:dlq", clock=clock),
        clock=clock,
    )


def _redis_queue(name: str, settings: Settings, client: Redis) -> RedisStreamQueue:
    return RedisStreamQueue(
        client,
        name,
        group=settings.consumer_group,
        consumer=settings.consumer_name,
        visibility_timeout=settings.visibility_timeout_seconds,
        max_receive_count=settings.max_receive_count,
        retention_seconds=settings.message_retention_seconds,
    )


def build_context(
    settings: Settings,
    engines: dict[CountryISO, AsyncEngine] | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> ServiceContext:
    """
    Construct the service context.

    Args:
        settings: Application settings (STORE_BACKEND / BROKER_BACKEND pick redis or memory)
        engines: Regional engines; built from RDS_<CC>_* settings when omitted
        clock: Time source for in-memory queues

    Returns:
        Wired service context
    """
    uses_redis = REDIS in (settings.store_backend, settings.broker_backend)
    client = create_redis_client(settings) if uses_redis else None

    if settings.store_backend == REDIS:
        appointments: AppointmentRepository = RedisAppointmentRepository(
            client, key_prefix=settings.appointments_key_prefix
        )
    else:
        appointments = InMemoryAppointmentRepository()

    if settings.broker_backend == REDIS:

        def make_queue(name: str) -> MessageQueue:
            return _redis_queue(name, settings, client)

        notifier = ErrorNotifier(RedisStreamSink(client, settings.error_stream_name))
    else:

        def make_queue(name: str) -> MessageQueue:
            return _memory_queue(name, settings, clock)

        notifier = ErrorNotifier(InMemorySink())

    engines = engines if engines is not None else create_regional_engines(settings)
    regional = {
        country: RegionalAppointmentRepository(country, engine) for country, engine in engines.items()
    }

    topic = AppointmentTopic()
    country_queues: dict[CountryISO, MessageQueue] = {}
    for country in CountryISO:
        queue = make_queue(settings.country_queue_name(country.value))
        topic.subscribe(queue, {"countryISO": [country.value]})
        country_queues[country] = queue

    confirmation_queue = make_queue(settings.confirmation_queue_name)
    event_bus = EventBus(settings.event_bus_name)
    event_bus.add_rule(confirmation_rule(confirmation_queue))

    logger.info(
        "service_context_built",
        store_backend=settings.store_backend,
        broker_backend=settings.broker_backend,
    )

    return ServiceContext(
        settings=settings,
        appointments=appointments,
        regional=regional,
        country_queues=country_queues,
        confirmation_queue=confirmation_queue,
        topic=topic,
        event_bus=event_bus,
        notifier=notifier,
        redis=client,
        engines=engines,
    )
