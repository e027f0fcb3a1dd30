"""Appointment endpoints."""

from typing import Annotated, Any

from fastapi import APIRouter, Body, Response, status

from appointment_saga.dependencies import AppointmentServiceDep
from appointment_saga.schemas.appointments import AppointmentListResponse, AppointmentResponse

router = APIRouter()


@router.post(
    "",
    response_model=AppointmentResponse,
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
    summary="Create new appointment",
    responses={
        400: {"model": AppointmentResponse, "description": "Invalid request data"},
        409: {"model": AppointmentResponse, "description": "Schedule already booked"},
        500: {"model": AppointmentResponse, "description": "Store or transport failure"},
    },
)
async def create_appointment(
    payload: Annotated[
        dict[str, Any],
        Body(examples=[{"insuredId": "00123", "scheduleId": 100, "countryISO": "PE"}]),
    ],
    response: Response,
    service: AppointmentServiceDep,
) -> AppointmentResponse:
    """
    Book an appointment. Processing continues asynchronously; the returned
    status is ``pending``.

    Args:
        payload: Create request body
        response: Outgoing response (status code set from the result)
        service: Appointment service

    Returns:
        Create response
    """
    status_code, result = await service.create_appointment(payload)
    response.status_code = status_code
    return result


@router.get(
    "/{insured_id}",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    summary="List appointments of an insured party",
)
async def list_appointments(
    insured_id: str,
    response: Response,
    service: AppointmentServiceDep,
) -> AppointmentListResponse:
    """
    List appointments for an insured party, newest first.

    Args:
        insured_id: 5-digit insured party id
        response: Outgoing response (status code set from the result)
        service: Appointment service

    Returns:
        Appointment list
    """
    status_code, result = await service.list_appointments(insured_id)
    response.status_code = status_code
    return result
