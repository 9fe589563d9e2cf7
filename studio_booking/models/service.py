import uuid
from datetime import datetime
from sqlalchemy import String, Text, Integer, Boolean, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from studio_booking.core.database import Base, UTCDateTime, utcnow


class ServicePackage(Base):
    """A bookable package. Prices and deposits are whole shillings."""
    __tablename__ = "service_packages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration: Mapped[str | None] = mapped_column(String(60), nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deposit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)
