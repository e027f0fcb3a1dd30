"""Event bus with pattern rules forwarding matching events to queues."""

import json
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

import structlog

from appointment_saga.core.exceptions import AppException, OperationException
from appointment_saga.messaging.queue import MessageQueue
from appointment_saga.schemas.appointments import AppointmentConfirmedEvent, utcnow

logger = structlog.get_logger(__name__)

CONFIRMATION_SOURCE = "appointment.service"
CONFIRMED_DETAIL_TYPE = "Appointment Confirmed"


@dataclass
class EventRule:
    """Forward events whose envelope matches every pattern key to a queue."""

    name: str
    target: MessageQueue
    pattern: dict[str, list[str]] = field(default_factory=dict)

    def matches(self, envelope: dict[str, Any]) -> bool:
        return all(envelope.get(key) in allowed for key, allowed in self.pattern.items())


class EventBus:
    """Named bus; events that match no rule are discarded."""

    def __init__(self, name: str = "appointment-bus"):
        self.name = name
        self.rules: list[EventRule] = []

    def add_rule(self, rule: EventRule) -> None:
        self.rules.append(rule)

    async def put_event(
        self,
        source: str,
        detail_type: str,
        detail: dict[str, Any],
        resources: list[str] | None = None,
    ) -> int:
        """
        Publish an event and forward it to every matching rule target.

        Returns:
            Number of rule targets the event was forwarded to
        """
        envelope = {
            "version": "0",
            "id": str(uuid4()),
            "detail-type": detail_type,
            "source": source,
            "time": utcnow().isoformat(),
            "resources": resources or [],
            "detail": detail,
        }
        body = json.dumps(envelope)
        forwarded = 0

        for rule in self.rules:
            if not rule.matches(envelope):
                continue
            try:
                await rule.target.send(body)
            except AppException:
                raise
            except Exception as e:
                raise OperationException(
                    f"Error forwarding event on {self.name}: {e}", code="EVENT_BUS_PUBLISH_ERROR"
                ) from e
            forwarded += 1

        logger.debug(
            "bus_event_put",
            bus=self.name,
            source=source,
            detail_type=detail_type,
            forwarded=forwarded,
        )
        return forwarded

    async def publish_confirmed(self, event: AppointmentConfirmedEvent) -> int:
        """Publish an appointment confirmed event."""
        forwarded = await self.put_event(
            CONFIRMATION_SOURCE,
            CONFIRMED_DETAIL_TYPE,
            event.model_dump(mode="json", by_alias=True),
            resources=[f"appointment:{event.appointment_id}"],
        )
        logger.info(
            "confirmed_event_published",
            appointment_id=event.appointment_id,
            country=event.country_iso.value,
            status=event.status.value,
        )
        return forwarded


def confirmation_rule(target: MessageQueue) -> EventRule:
    """Rule accepting only appointment confirmed events."""
    return EventRule(
        name="appointment-confirmed",
        target=target,
        pattern={
            "source": [CONFIRMATION_SOURCE],
            "detail-type": [CONFIRMED_DETAIL_TYPE],
        },
    )
