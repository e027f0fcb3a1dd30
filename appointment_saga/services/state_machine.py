"""Appointment status transitions."""

from appointment_saga.core.exceptions import ValidationException
from appointment_saga.schemas.appointments import AppointmentStatus

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset({AppointmentStatus.PROCESSING, AppointmentStatus.FAILED}),
    AppointmentStatus.PROCESSING: frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.FAILED}),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.FAILED: frozenset(),
}


def can_transition(current: AppointmentStatus, new: AppointmentStatus) -> bool:
    """Check whether ``current -> new`` is in the transition table."""
    return new in ALLOWED_TRANSITIONS[current]


def is_terminal(status: AppointmentStatus) -> bool:
    """Terminal statuses allow no further transition."""
    return not ALLOWED_TRANSITIONS[status]


def validate_transition(current: AppointmentStatus, new: AppointmentStatus) -> None:
    """
    Reject transitions outside the table.

    Raises:
        ValidationException: If the transition is not allowed
    """
    if not can_transition(current, new):
        raise ValidationException(f"Invalid status transition: {current.value} -> {new.value}")
