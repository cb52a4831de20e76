"""Initial schema - appointments, doctors, queue counters and wallet ledger.

Revision ID: 001
Revises:
Create Date: 2025-03-01 00:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_SLOT = sa.text("status IN ('pending', 'confirmed', 'in_progress')")
LIVE_TOKEN = sa.text("token IS NOT NULL AND queue_status <> 'expired'")


def timestamp(name: str, nullable: bool = True, default_now: bool = False) -> sa.Column:
    return sa.Column(
        name,
        postgresql.TIMESTAMP(timezone=True),
        server_default=sa.text("NOW()") if default_now else None,
        nullable=nullable,
    )


def upgrade() -> None:
    """Upgrade database schema."""
    # Enable pgcrypto extension
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    op.create_table(
        "doctors",
        sa.Column(
            "id", postgresql.UUID(), server_default=sa.text("gen_random_uuid()"), nullable=False
        ),
        sa.Column("full_name", sa.Text(), nullable=False),
        sa.Column("specialization", sa.VARCHAR(length=200), nullable=True),
        sa.Column(
            "consultation_duration_minutes",
            sa.Integer(),
            server_default=sa.text("15"),
            nullable=True,
        ),
        timestamp("created_at", nullable=False, default_now=True),
        timestamp("updated_at", nullable=False, default_now=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_doctors_specialization", "doctors", ["specialization"])

    op.create_table(
        "appointments",
        sa.Column(
            "id", postgresql.UUID(), server_default=sa.text("gen_random_uuid()"), nullable=False
        ),
        sa.Column("patient_id", postgresql.UUID(), nullable=False),
        sa.Column("doctor_id", postgresql.UUID(), nullable=False),
        sa.Column("clinic_id", postgresql.UUID(), nullable=True),
        sa.Column("appointment_date", sa.Date(), nullable=False),
        sa.Column("appointment_time", sa.Time(), nullable=False),
        timestamp("starts_at", nullable=False),
        sa.Column(
            "consultation_type", sa.VARCHAR(length=20), server_default="in_person", nullable=False
        ),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("status", sa.VARCHAR(length=20), server_default="pending", nullable=False),
        sa.Column("queue_status", sa.VARCHAR(length=20), server_default="waiting", nullable=False),
        # Check-in token
        sa.Column("token", sa.VARCHAR(length=32), nullable=True),
        timestamp("token_generated_at"),
        timestamp("token_expires_at"),
        timestamp("verified_at"),
        sa.Column("queue_position", sa.Integer(), nullable=True),
        sa.Column("estimated_wait_minutes", sa.Integer(), nullable=True),
        sa.Column("queue_alert_position", sa.Integer(), nullable=True),
        # Online consultation
        sa.Column("meet_link", sa.Text(), nullable=True),
        sa.Column("meet_link_provider", sa.VARCHAR(length=30), nullable=True),
        sa.Column(
            "meet_link_generated", sa.Boolean(), server_default=sa.text("false"), nullable=False
        ),
        timestamp("meet_link_generated_at"),
        sa.Column(
            "meet_link_sent_to_patient",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        sa.Column(
            "meet_link_sent_to_doctor",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        timestamp("consultation_start_at"),
        timestamp("consultation_end_at"),
        sa.Column(
            "consultation_duration_seconds", sa.Integer(), server_default="0", nullable=False
        ),
        # Payment
        sa.Column("amount_paid", sa.Numeric(10, 2), server_default="0", nullable=False),
        sa.Column(
            "payment_status", sa.VARCHAR(length=20), server_default="pending", nullable=False
        ),
        sa.Column("payment_transaction_id", sa.VARCHAR(length=100), nullable=True),
        # Refund snapshot
        sa.Column("refund_policy_applied", sa.VARCHAR(length=30), nullable=True),
        sa.Column("refund_percentage", sa.Integer(), nullable=True),
        sa.Column("refund_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("refund_gateway_fee", sa.Numeric(10, 2), nullable=True),
        sa.Column("refund_platform_retained", sa.Numeric(10, 2), nullable=True),
        sa.Column("wallet_credit_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("hours_before_appointment", sa.Numeric(10, 2), nullable=True),
        sa.Column("refund_reason", sa.Text(), nullable=True),
        timestamp("refund_calculated_at"),
        sa.Column("refund_status", sa.VARCHAR(length=20), nullable=True),
        sa.Column("refund_id", sa.VARCHAR(length=100), nullable=True),
        sa.Column("refund_error", sa.Text(), nullable=True),
        sa.Column(
            "wallet_credit_processed",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        # Cancellation
        sa.Column("cancelled_by", sa.VARCHAR(length=20), nullable=True),
        timestamp("cancelled_at"),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        timestamp("created_at", nullable=False, default_now=True),
        timestamp("updated_at", nullable=False, default_now=True),
        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'in_progress', 'completed', 'cancelled')",
            name="appointments_status_check",
        ),
        sa.CheckConstraint(
            "queue_status IN ('waiting', 'verified', 'in_queue', 'completed', 'expired', 'no_show')",
            name="appointments_queue_status_check",
        ),
        sa.CheckConstraint(
            "consultation_type IN ('in_person', 'online')",
            name="appointments_consultation_type_check",
        ),
        sa.CheckConstraint(
            "cancelled_by IS NULL OR cancelled_by IN ('patient', 'doctor', 'clinic', 'system')",
            name="appointments_cancelled_by_check",
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    # One active booking per doctor slot
    op.create_index(
        "uq_appointments_active_slot",
        "appointments",
        ["doctor_id", "appointment_date", "appointment_time"],
        unique=True,
        postgresql_where=ACTIVE_SLOT,
    )
    # Tokens are unique until they expire
    op.create_index(
        "uq_appointments_live_token",
        "appointments",
        ["token"],
        unique=True,
        postgresql_where=LIVE_TOKEN,
    )
    op.create_index(
        "idx_appointments_doctor_date_queue",
        "appointments",
        ["doctor_id", "appointment_date", "queue_status"],
    )
    op.create_index(
        "idx_appointments_online_starts", "appointments", ["consultation_type", "starts_at"]
    )
    op.create_index("idx_appointments_token", "appointments", ["token"])

    op.create_table(
        "queue_counters",
        sa.Column("doctor_id", postgresql.UUID(), nullable=False),
        sa.Column("queue_date", sa.Date(), nullable=False),
        sa.Column("last_position", sa.Integer(), nullable=False),
        timestamp("updated_at", nullable=False, default_now=True),
        sa.PrimaryKeyConstraint("doctor_id", "queue_date"),
    )

    op.create_table(
        "wallet_transactions",
        sa.Column(
            "id", postgresql.UUID(), server_default=sa.text("gen_random_uuid()"), nullable=False
        ),
        sa.Column("user_id", postgresql.UUID(), nullable=False),
        sa.Column(
            "transaction_type", sa.VARCHAR(length=20), server_default="credit", nullable=False
        ),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("reference_id", sa.VARCHAR(length=100), nullable=False),
        timestamp("created_at", nullable=False, default_now=True),
        sa.CheckConstraint("amount > 0", name="wallet_transactions_amount_check"),
        sa.CheckConstraint(
            "transaction_type IN ('credit', 'debit')",
            name="wallet_transactions_type_check",
        ),
        sa.UniqueConstraint(
            "user_id",
            "reference_id",
            "transaction_type",
            name="unique_wallet_transaction_reference",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_wallet_transactions_user", "wallet_transactions", ["user_id"])


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index("idx_wallet_transactions_user", table_name="wallet_transactions")
    op.drop_table("wallet_transactions")

    op.drop_table("queue_counters")

    op.drop_index("idx_appointments_token", table_name="appointments")
    op.drop_index("idx_appointments_online_starts", table_name="appointments")
    op.drop_index("idx_appointments_doctor_date_queue", table_name="appointments")
    op.drop_index("uq_appointments_live_token", table_name="appointments")
    op.drop_index("uq_appointments_active_slot", table_name="appointments")
    op.drop_table("appointments")

    op.drop_index("ix_doctors_specialization", table_name="doctors")
    op.drop_table("doctors")
