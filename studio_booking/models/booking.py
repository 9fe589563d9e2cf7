import uuid
from datetime import datetime, timedelta
from sqlalchemy import String, Integer, Enum, Uuid, Index
from sqlalchemy.orm import Mapped, mapped_column

from studio_booking.core.database import Base, UTCDateTime, utcnow
from studio_booking.models.enums import BookingStatus, enum_values


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_status_start", "status", "start_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    service_name: Mapped[str] = mapped_column(String(200), nullable=False)
    start_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        Enum(
            BookingStatus,
            name="booking_status_enum",
            values_callable=enum_values,
            native_enum=False,
            length=20,
        ),
        default=BookingStatus.PROVISIONAL,
        nullable=False,
    )
    recipient_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    recipient_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    payment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, unique=True, nullable=True)

    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    @property
    def end_at(self) -> datetime:
        return self.start_at + timedelta(minutes=self.duration_minutes)
