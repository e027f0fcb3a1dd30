"""Parse queue message bodies into pipeline events.

A body is either a bare event, or an event wrapped once by the transport:
a topic notification carrying the event as a JSON string in ``Message``,
or a bus envelope carrying it as an object in ``detail``. Created events
published by the topic additionally nest the payload under ``data``.
"""

import json
from typing import Any

from pydantic import ValidationError

from appointment_saga.core.exceptions import MessageFormatException
from appointment_saga.schemas.appointments import (
    AppointmentConfirmedEvent,
    AppointmentCreatedEvent,
)


def _loads(raw: str | bytes) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MessageFormatException(f"Invalid message format: {e}") from e


def unwrap_event_body(raw: str | bytes | dict[str, Any]) -> dict[str, Any]:
    """
    Strip at most one transport envelope and return the event payload.

    Raises:
        MessageFormatException: If the body is not a JSON object
    """
    body = _loads(raw) if isinstance(raw, str | bytes) else raw
    if not isinstance(body, dict):
        raise MessageFormatException("Invalid message format: expected a JSON object")

    if "Message" in body:
        inner = body["Message"]
        body = _loads(inner) if isinstance(inner, str | bytes) else inner
    elif "detail" in body:
        inner = body["detail"]
        body = _loads(inner) if isinstance(inner, str | bytes) else inner

    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        body = body["data"]

    if not isinstance(body, dict):
        raise MessageFormatException("Invalid message format: expected a JSON object")
    return body


def parse_created_event(raw: str | bytes | dict[str, Any]) -> AppointmentCreatedEvent:
    """Parse a created event from a queue message body."""
    try:
        return AppointmentCreatedEvent.model_validate(unwrap_event_body(raw))
    except ValidationError as e:
        raise MessageFormatException(f"Invalid created event: {e.error_count()} field error(s)") from e


def parse_confirmed_event(raw: str | bytes | dict[str, Any]) -> AppointmentConfirmedEvent:
    """Parse a confirmed event from a queue message body."""
    try:
        return AppointmentConfirmedEvent.model_validate(unwrap_event_body(raw))
    except ValidationError as e:
        raise MessageFormatException(f"Invalid confirmed event: {e.error_count()} field error(s)") from e
