from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from secure_booking.domain.bookings.db_models import BookingRecord
from secure_booking.domain.errors import BookingAlreadyFinal, BookingNotFound
from secure_booking.domain.policies.service import get_policy
from secure_booking.domain.trust import service as trust_service
from secure_booking.infra.locks import resource_lock
from secure_booking.shared.pii_masking import normalize_fingerprint
from secure_booking.shared.timeutils import normalize_utc, resolve_now

logger = logging.getLogger(__name__)

BOOKING_STATUSES = ("confirmed", "completed", "cancelled", "no_show")


async def get_booking(session: AsyncSession, tenant_id: uuid.UUID, booking_id: str) -> BookingRecord:
    stmt = (
        select(BookingRecord)
        .where(BookingRecord.tenant_id == tenant_id, BookingRecord.booking_id == booking_id)
        .execution_options(populate_existing=True)
    )
    booking = (await session.execute(stmt)).scalar_one_or_none()
    if booking is None:
        raise BookingNotFound()
    return booking


async def _finalize(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    booking_id: str,
    status: str,
    now: datetime,
) -> None:
    """Conditional ``confirmed -> status``; the outcome is recorded at most once. Not committed."""
    result = await session.execute(
        update(BookingRecord)
        .where(
            BookingRecord.tenant_id == tenant_id,
            BookingRecord.booking_id == booking_id,
            BookingRecord.status == "confirmed",
        )
        .values(status=status, outcome_recorded_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        current = await get_booking(session, tenant_id, booking_id)
        raise BookingAlreadyFinal(extra={"status": current.status})


async def _record(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    booking_id: str,
    *,
    status: str,
    outcome: str | None,
    now: datetime | None,
) -> BookingRecord:
    """Flip the booking and write its trust outcome in one transaction.

    The customer lock is taken first; if anything fails before the commit the
    booking stays ``confirmed`` and the call can be retried.
    """
    current = resolve_now(now)
    booking = await get_booking(session, tenant_id, booking_id)
    if booking.status != "confirmed":
        raise BookingAlreadyFinal(extra={"status": booking.status})
    policy = await get_policy(session, tenant_id, booking.vertical)
    if outcome is None:
        late_from = normalize_utc(booking.window_start) - timedelta(hours=policy.late_cancel_window_hours)
        outcome = "cancelled_late" if current >= late_from else "cancelled_early"
    fingerprint = normalize_fingerprint(booking.customer_fingerprint)
    hold_id = booking.hold_id

    # Lock acquisition may roll the session back, so only plain values cross it.
    async with resource_lock(session, trust_service.customer_lock_key(tenant_id, fingerprint)):
        await _finalize(session, tenant_id, booking_id, status, current)
        row = await trust_service.ensure_score_row(session, tenant_id, fingerprint, policy, current)
        previous_score = row.score
        penalty_result = await trust_service.apply_outcome(
            session,
            row=row,
            policy=policy,
            outcome=outcome,
            related_hold_id=hold_id,
            now=current,
        )
        await session.commit()
        view = trust_service.build_view(fingerprint, policy, row=row)

    trust_service.report_outcome(
        tenant_id=tenant_id,
        outcome=outcome,
        previous_score=previous_score,
        view=view,
        penalty_result=penalty_result,
    )
    logger.info(
        "booking_outcome_recorded",
        extra={"extra": {"booking_id": booking_id, "status": status, "outcome": outcome}},
    )
    return await get_booking(session, tenant_id, booking_id)


async def complete_booking(
    session: AsyncSession, tenant_id: uuid.UUID, booking_id: str, *, now: datetime | None = None
) -> BookingRecord:
    return await _record(session, tenant_id, booking_id, status="completed", outcome="completed", now=now)


async def cancel_booking(
    session: AsyncSession, tenant_id: uuid.UUID, booking_id: str, *, now: datetime | None = None
) -> BookingRecord:
    """Cancel; inside ``late_cancel_window_hours`` of the start it counts as a late cancellation."""
    return await _record(session, tenant_id, booking_id, status="cancelled", outcome=None, now=now)


async def mark_no_show(
    session: AsyncSession, tenant_id: uuid.UUID, booking_id: str, *, now: datetime | None = None
) -> BookingRecord:
    return await _record(session, tenant_id, booking_id, status="no_show", outcome="no_show", now=now)
