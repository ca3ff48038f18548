from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, UniqueConstraint, event, func
from sqlalchemy.orm import Mapped, mapped_column

from secure_booking.infra.db import Base, UUID_TYPE


class CustomerTrustScore(Base):
    __tablename__ = "customer_trust_scores"

    trust_id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, nullable=False)
    customer_fingerprint: Mapped[str] = mapped_column(String(128), nullable=False)
    vertical: Mapped[str] = mapped_column(String(32), nullable=False, default="general")
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cancelled_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    no_show_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_vip: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "customer_fingerprint", name="uq_customer_trust_scores_customer"),
    )


class TrustEvent(Base):
    """Signed score contribution; the score is always recomputed from these rows."""

    __tablename__ = "customer_trust_events"

    event_id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, nullable=False)
    customer_fingerprint: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    penalty_id: Mapped[str | None] = mapped_column(String(36))
    related_hold_id: Mapped[str | None] = mapped_column(String(36))
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_customer_trust_events_customer", "tenant_id", "customer_fingerprint", "occurred_at"),
    )


@event.listens_for(TrustEvent, "before_update", propagate=True)
def _prevent_trust_event_updates(mapper, connection, target) -> None:  # noqa: ARG001
    raise ValueError("Trust events are immutable")


@event.listens_for(TrustEvent, "before_delete", propagate=True)
def _prevent_trust_event_deletes(mapper, connection, target) -> None:  # noqa: ARG001
    raise ValueError("Trust events cannot be deleted")
