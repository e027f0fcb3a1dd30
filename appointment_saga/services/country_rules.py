"""Country-specific processing hooks.

Both countries currently only log; the hooks are the place for national
registry lookups and local scheduling rules.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

from appointment_saga.schemas.appointments import AppointmentCreatedEvent, CountryISO

logger = structlog.get_logger(__name__)

Hook = Callable[[AppointmentCreatedEvent], Awaitable[None]]


@dataclass(frozen=True)
class CountryStrategy:
    """Hook set used by the processor for one country."""

    country: CountryISO
    validate_insured_id: Hook
    apply_business_rules: Hook


async def validate_peruvian_insured_id(event: AppointmentCreatedEvent) -> None:
    if event.insured_id.startswith("00"):
        logger.warning("peruvian_insured_id_leading_zeros", insured_id=event.insured_id)


async def apply_peruvian_business_rules(event: AppointmentCreatedEvent) -> None:
    logger.debug("peruvian_business_rules_applied", schedule_id=event.schedule_id)


async def validate_chilean_insured_id(event: AppointmentCreatedEvent) -> None:
    logger.debug("chilean_insured_id_validated", insured_id=event.insured_id)


async def apply_chilean_business_rules(event: AppointmentCreatedEvent) -> None:
    logger.debug("chilean_business_rules_applied", schedule_id=event.schedule_id)


COUNTRY_STRATEGIES: dict[CountryISO, CountryStrategy] = {
    CountryISO.PE: CountryStrategy(
        country=CountryISO.PE,
        validate_insured_id=validate_peruvian_insured_id,
        apply_business_rules=apply_peruvian_business_rules,
    ),
    CountryISO.CL: CountryStrategy(
        country=CountryISO.CL,
        validate_insured_id=validate_chilean_insured_id,
        apply_business_rules=apply_chilean_business_rules,
    ),
}

_missing = set(CountryISO) - set(COUNTRY_STRATEGIES)
if _missing:
    raise RuntimeError(f"No processing strategy for: {sorted(c.value for c in _missing)}")


def get_strategy(country: CountryISO) -> CountryStrategy:
    """Select the hook set for a country."""
    return COUNTRY_STRATEGIES[country]
