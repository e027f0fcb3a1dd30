"""Best-effort error notification side channel."""

import json
from typing import Any, Protocol

import structlog
from redis.asyncio import Redis

from appointment_saga.core.exceptions import AppException
from appointment_saga.schemas.appointments import utcnow

logger = structlog.get_logger(__name__)


class ErrorSink(Protocol):
    """Destination of serialized error events."""

    async def write(self, payload: str) -> None: ...


class RedisStreamSink:
    """Append error events to a capped Redis stream."""

    def __init__(self, redis_client: Redis, stream: str, max_len: int = 10000):
        self.redis = redis_client
        self.stream = stream
        self.max_len = max_len

    async def write(self, payload: str) -> None:
        await self.redis.xadd(self.stream, {"payload": payload}, maxlen=self.max_len, approximate=True)


class InMemorySink:
    """Keep error events in a list."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    async def write(self, payload: str) -> None:
        self.events.append(json.loads(payload))


class ErrorNotifier:
    """Reports pipeline failures out of band. Never raises."""

    def __init__(self, sink: ErrorSink | None):
        """Initialize notifier; a missing sink only logs."""
        self.sink = sink

    @staticmethod
    def build_error_event(error: BaseException, context: dict[str, Any]) -> dict[str, Any]:
        """Serialize an exception and its context."""
        return {
            "eventType": "SystemError",
            "timestamp": utcnow().isoformat(),
            "error": {
                "message": str(error),
                "name": type(error).__name__,
                "code": error.code if isinstance(error, AppException) else None,
            },
            "context": context,
        }

    async def notify_error(self, error: BaseException, context: dict[str, Any] | None = None) -> None:
        """
        Send an error notification.

        Args:
            error: Exception to report
            context: Identifiers of the failed work (country, appointment id, ...)
        """
        event = self.build_error_event(error, context or {})
        logger.error(
            "pipeline_error",
            error=str(error),
            error_type=type(error).__name__,
            context=context or {},
        )

        if self.sink is None:
            return

        try:
            await self.sink.write(json.dumps(event, default=str))
        except Exception as e:
            # Log error but don't affect the primary error path
            logger.warning("failed_to_send_error_notification", error=str(e))
