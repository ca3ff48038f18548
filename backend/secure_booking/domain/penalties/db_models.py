from __future__ import annotations

import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, Index, Integer, String, event, func
from sqlalchemy.orm import Mapped, mapped_column

from secure_booking.infra.db import Base, UUID_TYPE


class CustomerPenalty(Base):
    __tablename__ = "customer_penalties"

    penalty_id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, nullable=False)
    customer_fingerprint: Mapped[str] = mapped_column(String(128), nullable=False)
    violation_type: Mapped[str] = mapped_column(String(32), nullable=False)
    weight: Mapped[int] = mapped_column(Integer, nullable=False)
    strike_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    related_hold_id: Mapped[str | None] = mapped_column(String(36))
    notes: Mapped[str | None] = mapped_column(String(500))
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_customer_penalties_customer", "tenant_id", "customer_fingerprint", "occurred_at"),
    )


@event.listens_for(CustomerPenalty, "before_update", propagate=True)
def _prevent_penalty_updates(mapper, connection, target) -> None:  # noqa: ARG001
    raise ValueError("Customer penalties are immutable")


@event.listens_for(CustomerPenalty, "before_delete", propagate=True)
def _prevent_penalty_deletes(mapper, connection, target) -> None:  # noqa: ARG001
    raise ValueError("Customer penalties cannot be deleted")


class CustomerBlock(Base):
    __tablename__ = "customer_blocks"

    block_id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, nullable=False)
    customer_fingerprint: Mapped[str] = mapped_column(String(128), nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    blocked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    blocked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_from_penalty_id: Mapped[str | None] = mapped_column(String(36))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    lifted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    lifted_by: Mapped[str | None] = mapped_column(String(100))
    lift_reason: Mapped[str | None] = mapped_column(String(255))
    notes: Mapped[str | None] = mapped_column(String(500))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        Index(
            "uq_customer_blocks_one_active",
            "tenant_id",
            "customer_fingerprint",
            unique=True,
            postgresql_where=sa.text("is_active"),
            sqlite_where=sa.text("is_active = 1"),
        ),
        Index("ix_customer_blocks_active_until", "is_active", "blocked_until"),
    )
