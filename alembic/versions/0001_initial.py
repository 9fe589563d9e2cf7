"""initial booking engine schema

Revision ID: 0001_initial
Revises:
Create Date: 2025-11-24 09:00:00

"""
from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "service_packages",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("duration", sa.String(60), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("deposit", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "booking_drafts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("customer_id", sa.String(64), nullable=False, unique=True),
        sa.Column("customer_phone", sa.String(20), nullable=True),
        sa.Column("service", sa.String(200), nullable=True),
        sa.Column("date", sa.String(60), nullable=True),
        sa.Column("time", sa.String(60), nullable=True),
        sa.Column("date_time_utc", sa.DateTime(timezone=True), nullable=True),
        sa.Column("name", sa.String(120), nullable=True),
        sa.Column("recipient_name", sa.String(120), nullable=True),
        sa.Column("recipient_phone", sa.String(20), nullable=True),
        sa.Column("is_for_someone_else", sa.Boolean(), nullable=False),
        sa.Column("step", sa.String(40), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("draft_id", sa.Uuid(), nullable=False),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("draft_snapshot", sa.JSON(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("phone", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("checkout_request_id", sa.String(100), nullable=True, unique=True),
        sa.Column("mpesa_receipt", sa.String(20), nullable=True),
        sa.Column("result_code", sa.String(10), nullable=True),
        sa.Column("result_desc", sa.String(255), nullable=True),
        sa.Column("initiated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_payments_draft_created", "payments", ["draft_id", "created_at"])
    op.create_index("ix_payments_customer_id", "payments", ["customer_id"])
    op.create_index("ix_payments_mpesa_receipt", "payments", ["mpesa_receipt"])

    op.create_table(
        "bookings",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("service_name", sa.String(200), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("recipient_name", sa.String(120), nullable=True),
        sa.Column("recipient_phone", sa.String(20), nullable=True),
        sa.Column("payment_id", sa.Uuid(), nullable=True, unique=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_bookings_status_start", "bookings", ["status", "start_at"])
    op.create_index("ix_bookings_customer_id", "bookings", ["customer_id"])

    op.create_table(
        "booking_reminders",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("booking_id", sa.Uuid(), nullable=False),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("days_before", sa.Integer(), nullable=False),
        sa.Column("fire_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("booking_id", "days_before", name="uq_reminder_booking_offset"),
    )
    op.create_index("ix_booking_reminders_booking_id", "booking_reminders", ["booking_id"])

    op.create_table(
        "receipt_verification_attempts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("receipt", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_receipt_verification_attempts_customer_id", "receipt_verification_attempts", ["customer_id"])
    op.create_index("ix_receipt_verification_attempts_created_at", "receipt_verification_attempts", ["created_at"])

    op.create_table(
        "schedule_guard",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("version", sa.Integer(), nullable=False),
    )
    op.execute("INSERT INTO schedule_guard (id, version) VALUES (1, 0)")


def downgrade() -> None:
    op.drop_table("schedule_guard")
    op.drop_index("ix_receipt_verification_attempts_created_at", table_name="receipt_verification_attempts")
    op.drop_index("ix_receipt_verification_attempts_customer_id", table_name="receipt_verification_attempts")
    op.drop_table("receipt_verification_attempts")
    op.drop_index("ix_booking_reminders_booking_id", table_name="booking_reminders")
    op.drop_table("booking_reminders")
    op.drop_index("ix_bookings_customer_id", table_name="bookings")
    op.drop_index("ix_bookings_status_start", table_name="bookings")
    op.drop_table("bookings")
    op.drop_index("ix_payments_mpesa_receipt", table_name="payments")
    op.drop_index("ix_payments_customer_id", table_name="payments")
    op.drop_index("ix_payments_draft_created", table_name="payments")
    op.drop_table("payments")
    op.drop_table("booking_drafts")
    op.drop_table("service_packages")
