"""Regional appointments table model using SQLAlchemy Core."""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
)

# Metadata shared by every regional database (same schema per country)
metadata = MetaData()

appointments = Table(
    "appointments",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("insured_id", String(5), nullable=False),
    Column("schedule_id", Integer, nullable=False),
    # Derived schedule metadata
    Column("center_id", Integer, nullable=False),
    Column("specialty_id", Integer, nullable=False),
    Column("medic_id", Integer, nullable=False),
    Column("appointment_date", DateTime(timezone=True), nullable=False),
    # Recorded once at creation, never updated by the pipeline
    Column("status", String(20), nullable=False),
    # Audit fields
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint(
        "status IN ('pending', 'processing', 'completed', 'failed')",
        name="appointments_status_check",
    ),
    Index("idx_appointments_insured_id", "insured_id"),
    Index("idx_appointments_schedule_id", "schedule_id"),
)
