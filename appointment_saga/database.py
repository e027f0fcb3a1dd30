"""Regional database configuration and connection management."""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from appointment_saga.config import Settings
from appointment_saga.models.regional_appointments import metadata
from appointment_saga.schemas.appointments import CountryISO


def create_regional_engine(url: str, settings: Settings) -> AsyncEngine:
    """
    Create an async engine for one regional store.

    Args:
        url: SQLAlchemy URL (sync PostgreSQL URLs are upgraded to asyncpg)
        settings: Application settings

    Returns:
        Async engine with connection pooling
    """
    url = url.replace("postgresql://", "postgresql+asyncpg://")
    options: dict[str, Any] = {"echo": settings.debug, "pool_pre_ping": True}

    if url.startswith("postgresql+asyncpg://"):
        options.update(
            pool_size=5,
            max_overflow=10,
            pool_recycle=3600,
            connect_args={
                "server_settings": {
                    "application_name": settings.app_name,
                    "timezone": "UTC",
                },
            },
        )

    return create_async_engine(url, **options)


def create_regional_engines(settings: Settings) -> dict[CountryISO, AsyncEngine]:
    """Create one engine per country from the RDS_<CC>_* settings."""
    return {
        country: create_regional_engine(settings.regional_database_url(country.value), settings)
        for country in CountryISO
    }


async def init_regional_schema(engine: AsyncEngine) -> None:
    """Create the regional appointments table if it does not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

