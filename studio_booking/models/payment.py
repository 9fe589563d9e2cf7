import uuid
from datetime import datetime
from sqlalchemy import String, Integer, Enum, Uuid, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column

from studio_booking.core.database import Base, UTCDateTime, utcnow
from studio_booking.models.enums import PaymentStatus, enum_values


class Payment(Base):
    """
    Deposit attempt for a draft. Rows outlive their draft for audit, so
    draft_id is a plain column and the booking fields are snapshotted.
    """
    __tablename__ = "payments"
    __table_args__ = (
        Index("ix_payments_draft_created", "draft_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    draft_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    draft_snapshot: Mapped[dict] = mapped_column(JSON, default=dict)

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    phone: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(
            PaymentStatus,
            name="payment_status_enum",
            values_callable=enum_values,
            native_enum=False,
            length=20,
        ),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    checkout_request_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    mpesa_receipt: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    result_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    result_desc: Mapped[str | None] = mapped_column(String(255), nullable=True)
    initiated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
