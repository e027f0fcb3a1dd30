"""Country processor: turns a created event into a regional record and a confirmation."""

from datetime import datetime

import structlog

from appointment_saga.core.exceptions import CountryMismatchException, ValidationException
from appointment_saga.messaging.event_bus import EventBus
from appointment_saga.repositories.regional_repository import RegionalAppointmentRepository
from appointment_saga.schemas.appointments import (
    AppointmentConfirmedEvent,
    AppointmentCreatedEvent,
    AppointmentStatus,
    RegionalRecord,
    ScheduleInfo,
    utcnow,
)
from appointment_saga.services.country_rules import CountryStrategy
from appointment_saga.services.notification_service import ErrorNotifier

logger = structlog.get_logger(__name__)


def validate_event(strategy: CountryStrategy, event: AppointmentCreatedEvent) -> None:
    """
    Check required fields and that the event belongs to this country.

    Raises:
        ValidationException: If a field is missing or invalid
        CountryMismatchException: If the event is for another country
    """
    if not event.appointment_id:
        raise ValidationException("Appointment ID is required")
    if not event.insured_id:
        raise ValidationException("Insured ID is required")
    if event.schedule_id <= 0:
        raise ValidationException("Valid Schedule ID is required")
    if event.country_iso != strategy.country:
        raise CountryMismatchException(
            f"Country mismatch: expected {strategy.country.value}, got {event.country_iso.value}"
        )


def derive_schedule_info(schedule_id: int, now: datetime | None = None) -> ScheduleInfo:
    """
    Split a schedule id into center, specialty and medic ids.

    Placeholder for a schedule lookup: thousands and above give the center,
    the hundreds digit the specialty and the tens digit the medic; zero
    components fall back to 1.
    """
    return ScheduleInfo(
        center_id=schedule_id // 1000 or 1,
        specialty_id=(schedule_id % 1000) // 100 or 1,
        medic_id=(schedule_id % 100) // 10 or 1,
        appointment_date=now or utcnow(),
    )


async def process_appointment(
    strategy: CountryStrategy,
    event: AppointmentCreatedEvent,
    regional_repository: RegionalAppointmentRepository,
    event_bus: EventBus,
    notifier: ErrorNotifier,
) -> RegionalRecord:
    """
    Process one created event for the strategy's country.

    Every run inserts a new regional record; a redelivered event produces
    another row.

    Args:
        strategy: Country hook set
        event: Created event
        regional_repository: The country's regional store
        event_bus: Bus receiving the confirmation
        notifier: Error side channel

    Returns:
        The inserted regional record
    """
    log = logger.bind(
        country=strategy.country.value,
        appointment_id=event.appointment_id,
        schedule_id=event.schedule_id,
    )

    try:
        validate_event(strategy, event)
        await strategy.validate_insured_id(event)
        await strategy.apply_business_rules(event)

        schedule = derive_schedule_info(event.schedule_id)
        record = await regional_repository.create(
            insured_id=event.insured_id,
            schedule_id=event.schedule_id,
            schedule=schedule,
            status=AppointmentStatus.PROCESSING,
        )

        await event_bus.publish_confirmed(
            AppointmentConfirmedEvent(
                appointment_id=event.appointment_id,
                country_iso=strategy.country,
                status=AppointmentStatus.COMPLETED,
                confirmed_at=utcnow(),
            )
        )
    except Exception as e:
        await notifier.notify_error(
            e,
            {
                "country": strategy.country.value,
                "appointmentId": event.appointment_id,
                "scheduleId": event.schedule_id,
            },
        )
        raise

    log.info("appointment_processed", regional_record_id=record.id)
    return record
