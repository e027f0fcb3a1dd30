"""Appointment schemas for requests, responses and pipeline events."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CountryISO(str, Enum):
    """Countries served by the booking pipeline."""

    PE = "PE"
    CL = "CL"


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(UTC)


class CamelModel(BaseModel):
    """Base model exposing camelCase field names on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )


class AppointmentCreate(CamelModel):
    """Schema for creating a new appointment."""

    insured_id: str = Field(..., pattern=r"^\d{5}$", description="5-digit insured party id")
    schedule_id: int = Field(..., ge=1)
    country_iso: CountryISO = Field(..., alias="countryISO")


class Appointment(CamelModel):
    """Canonical appointment record held by the primary store."""

    id: str
    insured_id: str
    schedule_id: int
    country_iso: CountryISO = Field(..., alias="countryISO")
    status: AppointmentStatus
    created_at: datetime
    updated_at: datetime


class AppointmentData(CamelModel):
    """Payload returned after a successful create."""

    appointment_id: str
    status: AppointmentStatus


class AppointmentResponse(BaseModel):
    """Create response envelope."""

    success: bool
    message: str
    data: AppointmentData | None = None
    error: str | None = None


class AppointmentListResponse(BaseModel):
    """List response envelope."""

    success: bool
    data: list[Appointment]
    total: int


class AppointmentCreatedEvent(CamelModel):
    """Emitted once per successful intake call."""

    appointment_id: str
    insured_id: str
    schedule_id: int
    country_iso: CountryISO = Field(..., alias="countryISO")
    created_at: datetime


class AppointmentConfirmedEvent(CamelModel):
    """Emitted once per successful country processor run."""

    appointment_id: str
    country_iso: CountryISO = Field(..., alias="countryISO")
    status: AppointmentStatus
    confirmed_at: datetime


class ScheduleInfo(BaseModel):
    """Schedule metadata derived from a schedule id."""

    center_id: int
    specialty_id: int
    medic_id: int
    appointment_date: datetime


class RegionalRecord(BaseModel):
    """Country-specific appointment row in a regional store."""

    id: str
    insured_id: str
    schedule_id: int
    center_id: int
    specialty_id: int
    medic_id: int
    appointment_date: datetime
    status: AppointmentStatus
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
