"""SQLAlchemy model for the persisted delivery job table."""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from courier_engine.common.models import Base, TimestampMixin, generate_uuid


class DeliveryJobModel(Base, TimestampMixin):
    __tablename__ = "webhook_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    delivery_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    receive_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
