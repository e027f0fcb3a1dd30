"""Run pipeline stage workers.

Usage:
    python -m appointment_saga.workers.run pe
    python -m appointment_saga.workers.run cl confirmations --init-schema
"""

import argparse
import asyncio
import signal

import structlog

from appointment_saga.config import get_settings
from appointment_saga.context import build_context
from appointment_saga.database import init_regional_schema
from appointment_saga.messaging.queue import CONFIRMATIONS
from appointment_saga.middleware.logging import configure_logging
from appointment_saga.workers.stages import build_consumers

logger = structlog.get_logger(__name__)

STAGES = ("pe", "cl", CONFIRMATIONS)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Appointment pipeline stage workers")
    parser.add_argument("stages", nargs="+", choices=STAGES, help="Stages to run in this process")
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create regional tables before consuming",
    )
    return parser.parse_args(argv)


async def run_stages(stages: list[str], init_schema: bool = False) -> None:
    """Consume the selected stages until SIGINT/SIGTERM."""
    settings = get_settings()
    ctx = build_context(settings)

    try:
        if init_schema:
            for engine in ctx.engines.values():
                await init_regional_schema(engine)

        consumers = build_consumers(ctx)
        selected = [consumers[stage] for stage in stages]

        def stop_all() -> None:
            for consumer in selected:
                consumer.stop()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_all)

        await asyncio.gather(
            *(c.run_forever(poll_interval=settings.poll_interval_seconds) for c in selected)
        )
    finally:
        await ctx.close()


def main(argv: list[str] | None = None) -> None:
    """Entry point for the ``appointment-worker`` script."""
    args = parse_args(argv)
    configure_logging(process="worker")
    logger.info("workers_starting", stages=args.stages)
    asyncio.run(run_stages(args.stages, init_schema=args.init_schema))


if __name__ == "__main__":
    main()
