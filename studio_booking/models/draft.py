import uuid
from datetime import datetime
from sqlalchemy import String, Integer, Boolean, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from studio_booking.core.database import Base, UTCDateTime, utcnow
from studio_booking.models.enums import DraftStep


class BookingDraft(Base):
    """In-progress booking, one per customer. Mutated only through DraftService.merge."""
    __tablename__ = "booking_drafts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    customer_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)

    service: Mapped[str | None] = mapped_column(String(200), nullable=True)
    date: Mapped[str | None] = mapped_column(String(60), nullable=True)
    time: Mapped[str | None] = mapped_column(String(60), nullable=True)
    date_time_utc: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    recipient_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    recipient_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    is_for_someone_else: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    step: Mapped[str] = mapped_column(String(40), default=DraftStep.COLLECT_SERVICE.value, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    # Fields copied into Payment.draft_snapshot and restored on resend
    SNAPSHOT_FIELDS = (
        "service",
        "date",
        "time",
        "name",
        "recipient_name",
        "recipient_phone",
        "is_for_someone_else",
        "customer_phone",
    )

    def snapshot(self) -> dict:
        data = {field: getattr(self, field) for field in self.SNAPSHOT_FIELDS}
        data["date_time_utc"] = self.date_time_utc.isoformat() if self.date_time_utc else None
        return data
