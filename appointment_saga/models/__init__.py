"""Database models."""

from appointment_saga.models.regional_appointments import appointments, metadata

__all__ = [
    "appointments",
    "metadata",
]
