"""Reconciler: applies confirmations to the primary store."""

import structlog

from appointment_saga.schemas.appointments import (
    Appointment,
    AppointmentConfirmedEvent,
    AppointmentStatus,
)
from appointment_saga.services.appointment_service import AppointmentService
from appointment_saga.services.notification_service import ErrorNotifier

logger = structlog.get_logger(__name__)


async def reconcile_confirmation(
    service: AppointmentService,
    event: AppointmentConfirmedEvent,
    notifier: ErrorNotifier,
) -> Appointment:
    """
    Move an appointment to the status carried by its confirmation.

    A pending appointment confirmed as completed passes through processing,
    so each write stays inside the transition table. A confirmation whose
    status the appointment already holds is treated as a duplicate delivery.

    Raises:
        NotFoundException: If the appointment does not exist
        ValidationException: If the transition is not allowed
    """
    target = event.status

    try:
        current = await service.get_appointment(event.appointment_id)

        if current.status == target:
            logger.info(
                "duplicate_confirmation_ignored",
                appointment_id=event.appointment_id,
                status=target.value,
            )
            return current

        if current.status == AppointmentStatus.PENDING and target == AppointmentStatus.COMPLETED:
            await service.update_status(event.appointment_id, AppointmentStatus.PROCESSING)

        updated = await service.update_status(event.appointment_id, target)
    except Exception as e:
        await notifier.notify_error(
            e,
            {
                "stage": "reconciler",
                "appointmentId": event.appointment_id,
                "country": event.country_iso.value,
                "status": target.value,
            },
        )
        raise

    logger.info(
        "appointment_reconciled",
        appointment_id=event.appointment_id,
        country=event.country_iso.value,
        status=updated.status.value,
    )
    return updated
