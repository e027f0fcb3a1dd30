"""Regional store holding country-specific appointment rows."""

from datetime import datetime
from uuid import uuid4

import structlog
from sqlalchemy import func, insert, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from appointment_saga.core.exceptions import OperationException
from appointment_saga.models.regional_appointments import appointments
from appointment_saga.schemas.appointments import (
    AppointmentStatus,
    CountryISO,
    RegionalRecord,
    ScheduleInfo,
    utcnow,
)

logger = structlog.get_logger(__name__)


class RegionalAppointmentRepository:
    """Repository for one country's relational appointment store."""

    def __init__(self, country: CountryISO, engine: AsyncEngine):
        """Initialize repository with the country's engine."""
        self.country = country
        self.engine = engine

    async def create(
        self,
        insured_id: str,
        schedule_id: int,
        schedule: ScheduleInfo,
        status: AppointmentStatus,
    ) -> RegionalRecord:
        """
        Insert a regional appointment row with a freshly generated id.

        Args:
            insured_id: Insured party id
            schedule_id: Schedule slot id
            schedule: Derived schedule metadata
            status: Status recorded at creation time

        Returns:
            Created regional record

        Raises:
            OperationException: If the insert fails
        """
        now = utcnow()
        values = {
            "id": str(uuid4()),
            "insured_id": insured_id,
            "schedule_id": schedule_id,
            "center_id": schedule.center_id,
            "specialty_id": schedule.specialty_id,
            "medic_id": schedule.medic_id,
            "appointment_date": schedule.appointment_date,
            "status": status.value,
            "created_at": now,
            "updated_at": now,
        }

        try:
            async with self.engine.begin() as conn:
                await conn.execute(insert(appointments).values(**values))
        except SQLAlchemyError as e:
            raise OperationException(
                f"Error creating appointment in {self.country.value} regional store: {e}",
                code="CREATE_RDS_ERROR",
            ) from e

        return RegionalRecord.model_validate(values)

    async def find_by_id(self, record_id: str) -> RegionalRecord | None:
        """Get a regional record by id."""
        stmt = select(appointments).where(appointments.c.id == record_id)
        try:
            async with self.engine.connect() as conn:
                row = (await conn.execute(stmt)).fetchone()
        except SQLAlchemyError as e:
            raise OperationException(
                f"Error fetching appointment in {self.country.value} regional store: {e}",
                code="FIND_RDS_ERROR",
            ) from e

        if row is None:
            return None
        return RegionalRecord.model_validate(dict(row._mapping))

    async def find_by_insured_id(self, insured_id: str) -> list[RegionalRecord]:
        """List regional records for an insured party, newest first."""
        stmt = (
            select(appointments)
            .where(appointments.c.insured_id == insured_id)
            .order_by(appointments.c.created_at.desc())
        )
        try:
            async with self.engine.connect() as conn:
                rows = (await conn.execute(stmt)).fetchall()
        except SQLAlchemyError as e:
            raise OperationException(
                f"Error listing appointments in {self.country.value} regional store: {e}",
                code="FIND_BY_INSURED_RDS_ERROR",
            ) from e

        return [RegionalRecord.model_validate(dict(row._mapping)) for row in rows]

    async def count_by_schedule_id(self, schedule_id: int) -> int:
        """Count regional records booked on a schedule slot."""
        stmt = (
            select(func.count())
            .select_from(appointments)
            .where(appointments.c.schedule_id == schedule_id)
        )
        try:
            async with self.engine.connect() as conn:
                return (await conn.execute(stmt)).scalar() or 0
        except SQLAlchemyError as e:
            raise OperationException(
                f"Error counting appointments in {self.country.value} regional store: {e}",
                code="COUNT_RDS_ERROR",
            ) from e

    async def ping(self) -> bool:
        """Check regional store connectivity."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning("regional_store_unhealthy", country=self.country.value, error=str(e))
            return False

