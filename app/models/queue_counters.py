"""Per-doctor daily queue position counters."""

from sqlalchemy import Column, Date, DateTime, Integer, MetaData, Table, Uuid, func

metadata = MetaData()

queue_counters = Table(
    "queue_counters",
    metadata,
    Column("doctor_id", Uuid, primary_key=True),
    Column("queue_date", Date, primary_key=True),
    Column("last_position", Integer, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
