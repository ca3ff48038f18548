from __future__ import annotations

import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import DateTime, ForeignKey, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from secure_booking.infra.db import Base, UUID_TYPE


class BookingConfirmation(Base):
    __tablename__ = "booking_confirmations"

    confirmation_id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, nullable=False)
    hold_id: Mapped[str] = mapped_column(
        ForeignKey("booking_holds.hold_id", ondelete="CASCADE"), nullable=False
    )
    customer_fingerprint: Mapped[str] = mapped_column(String(128), nullable=False)
    confirmation_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    code: Mapped[str] = mapped_column(String(12), nullable=False)
    recipient: Mapped[str | None] = mapped_column(String(128))
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    response_text: Mapped[str | None] = mapped_column(Text)
    provider_message_id: Mapped[str | None] = mapped_column(String(128))
    delivery_status: Mapped[str | None] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        Index(
            "uq_booking_confirmations_one_pending",
            "hold_id",
            unique=True,
            postgresql_where=sa.text("status = 'pending'"),
            sqlite_where=sa.text("status = 'pending'"),
        ),
        Index("ix_booking_confirmations_status_expires", "status", "expires_at"),
        Index("ix_booking_confirmations_customer", "tenant_id", "customer_fingerprint", "status"),
    )
