"""Stage handlers wiring queue messages to the processor and reconciler."""

from functools import partial

from appointment_saga.context import ServiceContext
from appointment_saga.messaging.envelope import parse_confirmed_event, parse_created_event
from appointment_saga.messaging.queue import CONFIRMATIONS, QueueMessage
from appointment_saga.schemas.appointments import CountryISO
from appointment_saga.services.appointment_processor import process_appointment
from appointment_saga.services.country_rules import get_strategy
from appointment_saga.services.reconciler import reconcile_confirmation
from appointment_saga.workers.consumer import BatchResult, StageConsumer


async def handle_country_message(
    ctx: ServiceContext,
    country: CountryISO,
    message: QueueMessage,
) -> None:
    """Process a created event from a country queue."""
    try:
        event = parse_created_event(message.body)
    except Exception as e:
        await ctx.notifier.notify_error(
            e,
            {"country": country.value, "messageId": message.message_id, "body": message.body},
        )
        raise

    await process_appointment(
        get_strategy(country),
        event,
        ctx.regional[country],
        ctx.event_bus,
        ctx.notifier,
    )


async def handle_confirmation_message(ctx: ServiceContext, message: QueueMessage) -> None:
    """Apply a confirmed event to the primary store."""
    try:
        event = parse_confirmed_event(message.body)
    except Exception as e:
        await ctx.notifier.notify_error(
            e,
            {"stage": "reconciler", "messageId": message.message_id, "body": message.body},
        )
        raise

    await reconcile_confirmation(ctx.appointment_service, event, ctx.notifier)


def build_consumers(ctx: ServiceContext) -> dict[str, StageConsumer]:
    """One consumer per country queue plus the confirmation consumer."""
    settings = ctx.settings
    options = {
        "batch_size": settings.batch_size,
        "invocation_timeout": settings.invocation_timeout_seconds,
        "ack_mode": settings.ack_mode,
    }

    consumers = {
        country.value.lower(): StageConsumer(
            f"processor-{country.value.lower()}",
            ctx.country_queues[country],
            partial(handle_country_message, ctx, country),
            **options,
        )
        for country in CountryISO
    }
    # Reconciler failures always go back to the queue
    consumers[CONFIRMATIONS] = StageConsumer(
        "reconciler",
        ctx.confirmation_queue,
        partial(handle_confirmation_message, ctx),
        dead_letter_permanent=False,
        **options,
    )
    return consumers


async def run_pipeline_once(ctx: ServiceContext) -> dict[str, BatchResult]:
    """Run one invocation of every stage, country processors first."""
    results = {}
    for name, consumer in build_consumers(ctx).items():
        results[name] = await consumer.run_once()
    return results
