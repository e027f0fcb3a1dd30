"""Appointment service: intake, listing and status updates on the primary store."""

import re
from typing import Any

import structlog
from fastapi import status
from pydantic import ValidationError

from appointment_saga.core.exceptions import (
    AppException,
    ConflictException,
    NotFoundException,
    OperationException,
    ValidationException,
)
from appointment_saga.messaging.router import AppointmentTopic
from appointment_saga.repositories.appointment_repository import AppointmentRepository
from appointment_saga.schemas.appointments import (
    Appointment,
    AppointmentCreate,
    AppointmentCreatedEvent,
    AppointmentData,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentStatus,
)
from appointment_saga.services.state_machine import validate_transition

logger = structlog.get_logger(__name__)

INSURED_ID_PATTERN = re.compile(r"^\d{5}$")

ERROR_MESSAGES = {
    ValidationException: "Invalid request data",
    ConflictException: "Request conflict",
    NotFoundException: "Resource not found",
}


class AppointmentService:
    """Service for creating and tracking appointments."""

    def __init__(
        self,
        repository: AppointmentRepository,
        topic: AppointmentTopic,
        conflict_check_fail_open: bool = True,
    ):
        """
        Initialize service.

        Args:
            repository: Primary store
            topic: Router receiving created events
            conflict_check_fail_open: Treat a failed conflict query as "no conflict"
        """
        self.repository = repository
        self.topic = topic
        self.conflict_check_fail_open = conflict_check_fail_open

    async def create_appointment(self, payload: Any) -> tuple[int, AppointmentResponse]:
        """
        Create a new appointment and start its pipeline.

        Args:
            payload: Raw request body

        Returns:
            Tuple of (HTTP status code, response body)
        """
        try:
            request = self.validate_request(payload)
            await self.check_existing_conflicts(request.schedule_id)
            appointment = await self.repository.create(
                insured_id=request.insured_id,
                schedule_id=request.schedule_id,
                country_iso=request.country_iso,
                status=AppointmentStatus.PENDING,
            )
            await self.publish_created_event(appointment)
        except AppException as e:
            return self.build_error_response(e)
        except Exception as e:
            logger.exception("appointment_create_failed", error=str(e))
            return status.HTTP_500_INTERNAL_SERVER_ERROR, AppointmentResponse(
                success=False,
                message="Internal server error",
                error="An unexpected error occurred",
            )

        logger.info(
            "appointment_created",
            appointment_id=appointment.id,
            insured_id=appointment.insured_id,
            schedule_id=appointment.schedule_id,
            country=appointment.country_iso.value,
        )
        return status.HTTP_201_CREATED, AppointmentResponse(
            success=True,
            message="Appointment scheduling is in progress",
            data=AppointmentData(appointment_id=appointment.id, status=appointment.status),
        )

    @staticmethod
    def validate_request(payload: Any) -> AppointmentCreate:
        """
        Validate the create request shape.

        Raises:
            ValidationException: If the payload is invalid
        """
        try:
            return AppointmentCreate.model_validate(payload)
        except ValidationError as e:
            details = ", ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in e.errors()
            )
            raise ValidationException(f"Invalid request data: {details}") from e

    async def check_existing_conflicts(self, schedule_id: int) -> None:
        """
        Reject a booking when the schedule slot already has an active appointment.

        The check and the following insert are separate operations; two
        concurrent requests for one slot can both pass.

        Raises:
            ConflictException: If an active appointment exists for the slot
        """
        try:
            has_conflict = await self.repository.has_conflicting_appointment(schedule_id)
        except OperationException as e:
            if not self.conflict_check_fail_open:
                raise
            logger.warning("conflict_check_failed_open", schedule_id=schedule_id, error=str(e))
            has_conflict = False

        if has_conflict:
            raise ConflictException(f"An appointment already exists for schedule {schedule_id}")

    async def publish_created_event(self, appointment: Appointment) -> None:
        """Publish the created event for a stored appointment."""
        event = AppointmentCreatedEvent(
            appointment_id=appointment.id,
            insured_id=appointment.insured_id,
            schedule_id=appointment.schedule_id,
            country_iso=appointment.country_iso,
            created_at=appointment.created_at,
        )
        try:
            await self.topic.publish(event)
        except AppException:
            # No outbox: the stored record stays pending
            logger.error("appointment_stuck_pending", appointment_id=appointment.id)
            raise

    @staticmethod
    def build_error_response(exc: AppException) -> tuple[int, AppointmentResponse]:
        """Translate an application exception into the create response shape."""
        logger.warning("appointment_request_rejected", error=exc.message, code=exc.code)
        message = next(
            (text for cls, text in ERROR_MESSAGES.items() if isinstance(exc, cls)),
            "Processing error",
        )
        return exc.status_code, AppointmentResponse(success=False, message=message, error=exc.message)

    async def list_appointments(self, insured_id: str) -> tuple[int, AppointmentListResponse]:
        """
        List appointments for an insured party.

        Args:
            insured_id: 5-digit insured party id

        Returns:
            Tuple of (HTTP status code, response body); an unknown id yields an empty list
        """
        if not INSURED_ID_PATTERN.match(insured_id or ""):
            logger.warning("invalid_insured_id", insured_id=insured_id)
            return status.HTTP_400_BAD_REQUEST, AppointmentListResponse(success=False, data=[], total=0)

        try:
            appointments = await self.repository.find_by_insured_id(insured_id)
        except Exception as e:
            logger.error("appointment_list_failed", insured_id=insured_id, error=str(e))
            return status.HTTP_500_INTERNAL_SERVER_ERROR, AppointmentListResponse(
                success=False, data=[], total=0
            )

        return status.HTTP_200_OK, AppointmentListResponse(
            success=True,
            data=appointments,
            total=len(appointments),
        )

    async def get_appointment(self, appointment_id: str) -> Appointment:
        """
        Get appointment by ID.

        Raises:
            NotFoundException: If appointment not found
        """
        appointment = await self.repository.find_by_id(appointment_id)
        if appointment is None:
            raise NotFoundException(f"Appointment {appointment_id} not found")
        return appointment

    async def update_status(
        self,
        appointment_id: str,
        new_status: AppointmentStatus,
    ) -> Appointment:
        """
        Move an appointment to a new status.

        Args:
            appointment_id: Appointment ID
            new_status: Target status

        Returns:
            Updated appointment

        Raises:
            NotFoundException: If appointment not found
            ValidationException: If the transition is not allowed
            ConflictException: If the status changed between read and write
        """
        current = await self.get_appointment(appointment_id)
        validate_transition(current.status, new_status)

        updated = await self.repository.update_status(
            appointment_id,
            new_status,
            expected_status=current.status,
        )
        logger.info(
            "appointment_status_updated",
            appointment_id=appointment_id,
            old_status=current.status.value,
            new_status=new_status.value,
        )
        return updated
