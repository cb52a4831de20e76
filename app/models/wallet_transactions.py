"""Wallet ledger model."""

from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)

metadata = MetaData()

wallet_transactions = Table(
    "wallet_transactions",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("user_id", Uuid, nullable=False),
    Column("transaction_type", String(20), nullable=False, server_default="credit"),
    Column("amount", Numeric(10, 2), nullable=False),
    Column("description", Text, nullable=False),
    Column("reference_id", String(100), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint("amount > 0", name="wallet_transactions_amount_check"),
    CheckConstraint(
        "transaction_type IN ('credit', 'debit')",
        name="wallet_transactions_type_check",
    ),
    UniqueConstraint(
        "user_id",
        "reference_id",
        "transaction_type",
        name="unique_wallet_transaction_reference",
    ),
    Index("idx_wallet_transactions_user", "user_id"),
)
