"""Doctor model definition using SQLAlchemy Core."""

from uuid import uuid4

from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, Text, Uuid, func, text

metadata = MetaData()

doctors = Table(
    "doctors",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("full_name", Text, nullable=False),
    Column("specialization", String(200), index=True),
    # Fallback when there is too little consultation history
    Column("consultation_duration_minutes", Integer, server_default=text("15")),
    # Metadata
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
