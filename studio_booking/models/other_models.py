import uuid
from datetime import datetime
from sqlalchemy import String, Integer, Enum, Uuid, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from studio_booking.core.database import Base, UTCDateTime, utcnow
from studio_booking.models.enums import ReminderStatus, enum_values


class BookingReminder(Base):
    """T-minus-N-days reminder for a confirmed booking. One row per (booking, offset)."""
    __tablename__ = "booking_reminders"
    __table_args__ = (
        UniqueConstraint("booking_id", "days_before", name="uq_reminder_booking_offset"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    days_before: Mapped[int] = mapped_column(Integer, nullable=False)
    fire_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[ReminderStatus] = mapped_column(
        Enum(
            ReminderStatus,
            name="reminder_status_enum",
            values_callable=enum_values,
            native_enum=False,
            length=20,
        ),
        default=ReminderStatus.SCHEDULED,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class ReceiptVerificationAttempt(Base):
    """One row per manual receipt check, used for the rolling rate limit."""
    __tablename__ = "receipt_verification_attempts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    receipt: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, index=True)


class ScheduleGuard(Base):
    """
    Single-row lock table. Confirm-time writers update this row first so the
    conflict re-check and the insert run serialized across connections.
    """
    __tablename__ = "schedule_guard"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
