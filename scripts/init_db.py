"""Script to create the regional appointments table in every country database."""

import asyncio

from appointment_saga.config import get_settings
from appointment_saga.database import create_regional_engines, init_regional_schema


async def init_db() -> None:
    """Initialize each regional database by creating all tables."""
    engines = create_regional_engines(get_settings())
    try:
        for country, engine in engines.items():
            await init_regional_schema(engine)
            print(f"✓ Regional database {country.value} initialized successfully!")
    finally:
        for engine in engines.values():
            await engine.dispose()


if __name__ == "__main__":
    asyncio.run(init_db())
