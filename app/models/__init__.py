"""Database models."""

from sqlalchemy import MetaData

from app.models.appointments import appointments
from app.models.doctors import doctors
from app.models.queue_counters import queue_counters
from app.models.wallet_transactions import wallet_transactions

# Every table in one MetaData for create_all and autogenerate
metadata = MetaData()
for _table in (appointments, doctors, queue_counters, wallet_transactions):
    _table.to_metadata(metadata)

__all__ = [
    "appointments",
    "doctors",
    "metadata",
    "queue_counters",
    "wallet_transactions",
]
