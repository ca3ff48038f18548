from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from secure_booking.infra.db import Base, UUID_TYPE


class BookingRecord(Base):
    """Firm booking; written exactly once per converted hold."""

    __tablename__ = "booking_records"

    booking_id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, nullable=False)
    vertical: Mapped[str] = mapped_column(String(32), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(128), nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    customer_fingerprint: Mapped[str] = mapped_column(String(128), nullable=False)
    hold_id: Mapped[str] = mapped_column(
        ForeignKey("booking_holds.hold_id"), nullable=False, unique=True
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="confirmed")
    deposit_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deposit_cents: Mapped[int | None] = mapped_column(Integer)
    outcome_recorded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_booking_records_resource_status", "tenant_id", "resource_id", "status"),
        Index("ix_booking_records_customer", "tenant_id", "customer_fingerprint"),
    )
