"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends, Request

from appointment_saga.context import ServiceContext
from appointment_saga.services.appointment_service import AppointmentService


def get_context(request: Request) -> ServiceContext:
    """Service context built at startup."""
    return request.app.state.context


def get_appointment_service(
    ctx: Annotated[ServiceContext, Depends(get_context)],
) -> AppointmentService:
    """Appointment service bound to the process context."""
    return ctx.appointment_service


# Type aliases for dependency injection
Context = Annotated[ServiceContext, Depends(get_context)]
AppointmentServiceDep = Annotated[AppointmentService, Depends(get_appointment_service)]
