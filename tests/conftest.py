from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine

from appointment_saga.config import Settings
from appointment_saga.context import ServiceContext, build_context
from appointment_saga.database import create_regional_engine, init_regional_schema
from appointment_saga.main import create_app
from appointment_saga.schemas.appointments import CountryISO


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> ManualClock:
    """Clock shared by the in-memory queues."""
    return ManualClock()


@pytest.fixture
def settings() -> Settings:
    """Settings wired to in-memory backends."""
    return Settings(
        environment="test",
        store_backend="memory",
        broker_backend="memory",
        invocation_timeout_seconds=5.0,
        log_format="console",
    )


@pytest_asyncio.fixture
async def regional_engines(
    tmp_path, settings: Settings
) -> AsyncGenerator[dict[CountryISO, AsyncEngine], None]:
    """One SQLite regional store per country."""
    engines = {
        country: create_regional_engine(
            f"sqlite+aiosqlite:///{tmp_path / f'appointments_{country.value.lower()}.db'}",
            settings,
        )
        for country in CountryISO
    }
    for engine in engines.values():
        await init_regional_schema(engine)

    yield engines

    for engine in engines.values():
        await engine.dispose()


@pytest.fixture
def ctx(
    settings: Settings,
    regional_engines: dict[CountryISO, AsyncEngine],
    clock: ManualClock,
) -> ServiceContext:
    """Service context over in-memory queues and SQLite regional stores."""
    return build_context(settings, engines=regional_engines, clock=clock)


@pytest_asyncio.fixture
async def client(ctx: ServiceContext) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""
    app = create_app(context=ctx)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def create_payload() -> dict:
    """Sample create request."""
    return {"insuredId": "00123", "scheduleId": 100, "countryISO": "PE"}
