"""Appointments table model using SQLAlchemy Core."""

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    Time,
    Uuid,
    func,
    text,
)

# Metadata for all tables
metadata = MetaData()

ACTIVE_SLOT_CONDITION = text("status IN ('pending', 'confirmed', 'in_progress')")
LIVE_TOKEN_CONDITION = text("token IS NOT NULL AND queue_status <> 'expired'")

# Appointments table
appointments = Table(
    "appointments",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    # Ownership / references
    Column("patient_id", Uuid, nullable=False),
    Column("doctor_id", Uuid, nullable=False),
    Column("clinic_id", Uuid, nullable=True),
    # Scheduling
    Column("appointment_date", Date, nullable=False),
    Column("appointment_time", Time, nullable=False),
    Column("starts_at", DateTime(timezone=True), nullable=False),
    Column("consultation_type", String(20), nullable=False, server_default="in_person"),
    Column("reason", Text, nullable=True),
    # Status management
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("queue_status", String(20), nullable=False, server_default="waiting"),
    # Check-in token
    Column("token", String(32), nullable=True),
    Column("token_generated_at", DateTime(timezone=True), nullable=True),
    Column("token_expires_at", DateTime(timezone=True), nullable=True),
    Column("verified_at", DateTime(timezone=True), nullable=True),
    # Queue metadata
    Column("queue_position", Integer, nullable=True),
    Column("estimated_wait_minutes", Integer, nullable=True),
    # Lowest live position a turn alert was sent at
    Column("queue_alert_position", Integer, nullable=True),
    # Online consultation
    Column("meet_link", Text, nullable=True),
    Column("meet_link_provider", String(30), nullable=True),
    Column("meet_link_generated", Boolean, nullable=False, server_default=text("false")),
    Column("meet_link_generated_at", DateTime(timezone=True), nullable=True),
    Column("meet_link_sent_to_patient", Boolean, nullable=False, server_default=text("false")),
    Column("meet_link_sent_to_doctor", Boolean, nullable=False, server_default=text("false")),
    Column("consultation_start_at", DateTime(timezone=True), nullable=True),
    Column("consultation_end_at", DateTime(timezone=True), nullable=True),
    Column("consultation_duration_seconds", Integer, nullable=False, server_default="0"),
    # Payment
    Column("amount_paid", Numeric(10, 2), nullable=False, server_default="0"),
    Column("payment_status", String(20), nullable=False, server_default="pending"),
    Column("payment_transaction_id", String(100), nullable=True),
    # Refund snapshot (written once)
    Column("refund_policy_applied", String(30), nullable=True),
    Column("refund_percentage", Integer, nullable=True),
    Column("refund_amount", Numeric(10, 2), nullable=True),
    Column("refund_gateway_fee", Numeric(10, 2), nullable=True),
    Column("refund_platform_retained", Numeric(10, 2), nullable=True),
    Column("wallet_credit_amount", Numeric(10, 2), nullable=True),
    Column("hours_before_appointment", Numeric(10, 2), nullable=True),
    Column("refund_reason", Text, nullable=True),
    Column("refund_calculated_at", DateTime(timezone=True), nullable=True),
    # Refund side effects
    Column("refund_status", String(20), nullable=True),
    Column("refund_id", String(100), nullable=True),
    Column("refund_error", Text, nullable=True),
    Column("wallet_credit_processed", Boolean, nullable=False, server_default=text("false")),
    # Cancellation
    Column("cancelled_by", String(20), nullable=True),
    Column("cancelled_at", DateTime(timezone=True), nullable=True),
    Column("cancellation_reason", Text, nullable=True),
    # Audit fields
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    # Constraints
    CheckConstraint(
        "status IN ('pending', 'confirmed', 'in_progress', 'completed', 'cancelled')",
        name="appointments_status_check",
    ),
    CheckConstraint(
        "queue_status IN ('waiting', 'verified', 'in_queue', 'completed', 'expired', 'no_show')",
        name="appointments_queue_status_check",
    ),
    CheckConstraint(
        "consultation_type IN ('in_person', 'online')",
        name="appointments_consultation_type_check",
    ),
    CheckConstraint(
        "cancelled_by IS NULL OR cancelled_by IN ('patient', 'doctor', 'clinic', 'system')",
        name="appointments_cancelled_by_check",
    ),
    # One active booking per doctor slot
    Index(
        "uq_appointments_active_slot",
        "doctor_id",
        "appointment_date",
        "appointment_time",
        unique=True,
        postgresql_where=ACTIVE_SLOT_CONDITION,
        sqlite_where=ACTIVE_SLOT_CONDITION,
    ),
    # Tokens are unique until they expire
    Index(
        "uq_appointments_live_token",
        "token",
        unique=True,
        postgresql_where=LIVE_TOKEN_CONDITION,
        sqlite_where=LIVE_TOKEN_CONDITION,
    ),
    Index("idx_appointments_doctor_date_queue", "doctor_id", "appointment_date", "queue_status"),
    Index("idx_appointments_online_starts", "consultation_type", "starts_at"),
    Index("idx_appointments_token", "token"),
)
