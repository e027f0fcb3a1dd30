"""Publish/subscribe fan-out of created events to country queues."""

import json
from dataclasses import dataclass, field
from uuid import uuid4

import structlog

from appointment_saga.core.exceptions import AppException, OperationException
from appointment_saga.messaging.queue import MessageQueue
from appointment_saga.schemas.appointments import AppointmentCreatedEvent, utcnow

logger = structlog.get_logger(__name__)

CREATED_EVENT_TYPE = "AppointmentCreated"


@dataclass
class Subscription:
    """Queue subscribed to a topic with an attribute filter policy."""

    queue: MessageQueue
    filter_policy: dict[str, list[str]] = field(default_factory=dict)

    def matches(self, attributes: dict[str, str]) -> bool:
        """Every filtered attribute must be present with one of the allowed values."""
        return all(attributes.get(key) in allowed for key, allowed in self.filter_policy.items())


class AppointmentTopic:
    """Topic that routes each created event to the subscriptions matching its country."""

    def __init__(self, name: str = "appointments"):
        """Initialize an empty topic."""
        self.name = name
        self.subscriptions: list[Subscription] = []

    def subscribe(self, queue: MessageQueue, filter_policy: dict[str, list[str]]) -> None:
        """Attach a queue with a filter policy, e.g. ``{"countryISO": ["PE"]}``."""
        self.subscriptions.append(Subscription(queue, filter_policy))

    @staticmethod
    def build_envelope(event: AppointmentCreatedEvent) -> tuple[str, dict[str, str]]:
        """
        Wrap a created event in the topic's notification envelope.

        Args:
            event: Created event

        Returns:
            Tuple of (serialized envelope, message attributes)
        """
        attributes = {
            "countryISO": event.country_iso.value,
            "eventType": CREATED_EVENT_TYPE,
        }
        message = {
            "eventType": CREATED_EVENT_TYPE,
            "timestamp": utcnow().isoformat(),
            "data": event.model_dump(mode="json", by_alias=True),
        }
        envelope = {
            "Type": "Notification",
            "MessageId": str(uuid4()),
            "Timestamp": utcnow().isoformat(),
            "Subject": f"Appointment Created - {event.country_iso.value}",
            "Message": json.dumps(message),
            "MessageAttributes": {
                key: {"Type": "String", "Value": value} for key, value in attributes.items()
            },
        }
        return json.dumps(envelope), attributes

    async def publish(self, event: AppointmentCreatedEvent) -> int:
        """
        Deliver the event to every matching subscription.

        Returns:
            Number of subscriptions the event was delivered to

        Raises:
            OperationException: If a matching queue rejects the message
        """
        body, attributes = self.build_envelope(event)
        delivered = 0

        for subscription in self.subscriptions:
            if not subscription.matches(attributes):
                continue
            try:
                await subscription.queue.send(body)
            except AppException:
                raise
            except Exception as e:
                raise OperationException(
                    f"Error publishing created event: {e}", code="TOPIC_PUBLISH_ERROR"
                ) from e
            delivered += 1

        if delivered == 0:
            logger.warning(
                "created_event_unrouted",
                topic=self.name,
                appointment_id=event.appointment_id,
                country=event.country_iso.value,
            )
        else:
            logger.info(
                "created_event_published",
                topic=self.name,
                appointment_id=event.appointment_id,
                country=event.country_iso.value,
                subscriptions=delivered,
            )
        return delivered
