from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from secure_booking.domain.bookings.db_models import BookingRecord
from secure_booking.domain.confirmations.db_models import BookingConfirmation
from secure_booking.domain.errors import (
    BookingError,
    ConfirmationRequired,
    CustomerBlocked,
    HoldAlreadyTerminal,
    HoldNotFound,
    HoldWindowInvalid,
    LockTimeout,
    ResourceConflict,
)
from secure_booking.domain.holds.db_models import BookingHold
from secure_booking.domain.penalties import service as penalty_service
from secure_booking.domain.policies.service import evaluate_requirements, get_policy
from secure_booking.domain.trust import service as trust_service
from secure_booking.infra.locks import resource_lock
from secure_booking.infra.logging import fingerprint_ref
from secure_booking.infra.metrics import metrics
from secure_booking.shared.pii_masking import normalize_fingerprint
from secure_booking.shared.timeutils import normalize_utc, resolve_now

logger = logging.getLogger(__name__)

HOLD_TYPES = ("table", "appointment_slot", "delivery_slot")
HOLD_STATUSES = ("active", "expired", "converted", "released")
TERMINAL_HOLD_STATUSES = frozenset({"expired", "converted", "released"})

HOLD_TRANSITIONS: dict[str, set[str]] = {
    "active": {"expired", "converted", "released"},
    "expired": set(),
    "converted": set(),
    "released": set(),
}

MAX_HOLD_WINDOW_MINUTES = 8 * 60
MAX_HOLD_TTL_MINUTES = 240
MIN_EXTENSION_MINUTES = 1
MAX_EXTENSION_MINUTES = 120


def assert_valid_hold_transition(current: str, target: str) -> None:
    if target not in HOLD_TRANSITIONS.get(current, set()):
        raise HoldAlreadyTerminal(extra={"status": current, "target": target})


def resource_lock_key(tenant_id: uuid.UUID, resource_id: str) -> str:
    return f"hold:{tenant_id}:{resource_id}"


@dataclass
class HoldResult:
    """Outcome of an acquisition attempt.

    Conflicts, blocks and lock timeouts are routine and come back as
    ``success=False`` with an ``error_code`` rather than as exceptions.
    """

    success: bool
    hold_id: str | None = None
    expires_at: datetime | None = None
    error_code: str | None = None
    message: str | None = None
    requires_confirmation: bool = False
    requires_deposit: bool = False
    deposit_cents: int | None = None
    hold: BookingHold | None = None

    @classmethod
    def failure(cls, error: BookingError) -> "HoldResult":
        return cls(success=False, error_code=error.code, message=error.detail)


def _validate_window(
    window_start: datetime, window_end: datetime, now: datetime
) -> tuple[datetime, datetime]:
    start = normalize_utc(window_start)
    end = normalize_utc(window_end)
    if end <= start:
        raise HoldWindowInvalid(detail="window_end must be after window_start.")
    if end <= now:
        raise HoldWindowInvalid(detail="The requested time window is already over.")
    if end - start > timedelta(minutes=MAX_HOLD_WINDOW_MINUTES):
        raise HoldWindowInvalid(
            detail=f"A hold may cover at most {MAX_HOLD_WINDOW_MINUTES} minutes."
        )
    return start, end


async def _expire_pending_confirmations(
    session: AsyncSession, hold_id: str, now: datetime
) -> int:
    result = await session.execute(
        update(BookingConfirmation)
        .where(BookingConfirmation.hold_id == hold_id, BookingConfirmation.status == "pending")
        .values(status="expired", responded_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def _expire_hold_row(session: AsyncSession, hold_id: str, now: datetime) -> bool:
    """Conditional ``active -> expired``; False when another worker got there first."""
    result = await session.execute(
        update(BookingHold)
        .where(
            BookingHold.hold_id == hold_id,
            BookingHold.status == "active",
            BookingHold.expires_at <= now,
        )
        .values(status="expired", release_reason="ttl_elapsed", released_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    await _expire_pending_confirmations(session, hold_id, now)
    return True


async def _expire_resource_holds(
    session: AsyncSession, tenant_id: uuid.UUID, resource_id: str, now: datetime
) -> int:
    stmt = select(BookingHold.hold_id).where(
        BookingHold.tenant_id == tenant_id,
        BookingHold.resource_id == resource_id,
        BookingHold.status == "active",
        BookingHold.expires_at <= now,
    )
    expired = 0
    for hold_id in (await session.execute(stmt)).scalars().all():
        if await _expire_hold_row(session, hold_id, now):
            expired += 1
    return expired


async def _find_conflict(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    resource_id: str,
    window_start: datetime,
    window_end: datetime,
    now: datetime,
) -> str | None:
    hold_stmt = (
        select(BookingHold.hold_id)
        .where(
            BookingHold.tenant_id == tenant_id,
            BookingHold.resource_id == resource_id,
            BookingHold.status == "active",
            BookingHold.expires_at > now,
            BookingHold.window_start < window_end,
            BookingHold.window_end > window_start,
        )
        .limit(1)
    )
    if (await session.execute(hold_stmt)).scalar_one_or_none() is not None:
        return "hold"
    booking_stmt = (
        select(BookingRecord.booking_id)
        .where(
            BookingRecord.tenant_id == tenant_id,
            BookingRecord.resource_id == resource_id,
            BookingRecord.status == "confirmed",
            BookingRecord.window_start < window_end,
            BookingRecord.window_end > window_start,
        )
        .limit(1)
    )
    if (await session.execute(booking_stmt)).scalar_one_or_none() is not None:
        return "booking"
    return None


async def acquire_hold(
    session: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    vertical: str,
    resource_id: str,
    window_start: datetime,
    window_end: datetime,
    customer_fingerprint: str,
    hold_type: str,
    ttl_minutes: int | None = None,
    service_amount_cents: int | None = None,
    lock_timeout_seconds: float | None = None,
    now: datetime | None = None,
) -> HoldResult:
    current = resolve_now(now)
    if hold_type not in HOLD_TYPES:
        raise ValueError(f"unknown_hold_type:{hold_type}")
    if ttl_minutes is not None and not 1 <= ttl_minutes <= MAX_HOLD_TTL_MINUTES:
        raise HoldWindowInvalid(detail=f"ttl_minutes must be between 1 and {MAX_HOLD_TTL_MINUTES}.")
    start, end = _validate_window(window_start, window_end, current)
    fingerprint = normalize_fingerprint(customer_fingerprint)
    log_context = {
        "tenant_id": str(tenant_id),
        "resource_id": resource_id,
        "fingerprint_ref": fingerprint_ref(fingerprint),
    }

    block = await penalty_service.check_block(session, tenant_id, fingerprint, now=current)
    if block.blocked:
        metrics.record_hold("acquire", "customer_blocked")
        logger.info("hold_rejected_blocked", extra={"extra": {**log_context, "reason": block.reason}})
        return HoldResult.failure(CustomerBlocked())

    policy = await get_policy(session, tenant_id, vertical)
    trust = await trust_service.get_score(session, tenant_id, vertical, fingerprint, now=current)
    requirements = evaluate_requirements(
        policy,
        trust_score=trust.score,
        is_vip=trust.is_vip,
        service_amount_cents=service_amount_cents,
    )
    expires_at = current + timedelta(minutes=ttl_minutes or policy.hold_ttl_minutes)

    conflict: str | None = None
    hold: BookingHold | None = None
    try:
        async with resource_lock(
            session, resource_lock_key(tenant_id, resource_id), timeout_seconds=lock_timeout_seconds
        ):
            await _expire_resource_holds(session, tenant_id, resource_id, current)
            conflict = await _find_conflict(session, tenant_id, resource_id, start, end, current)
            if conflict is None:
                hold = BookingHold(
                    hold_id=str(uuid.uuid4()),
                    tenant_id=tenant_id,
                    vertical=policy.vertical,
                    resource_id=resource_id,
                    hold_type=hold_type,
                    window_start=start,
                    window_end=end,
                    customer_fingerprint=fingerprint,
                    status="active",
                    expires_at=expires_at,
                    requires_confirmation=requirements.requires_confirmation,
                    requires_deposit=requirements.requires_deposit,
                    deposit_cents=requirements.deposit_cents,
                    trust_score_at_hold=trust.score,
                )
                session.add(hold)
            try:
                await session.commit()
            except IntegrityError:
                # Postgres exclusion constraint caught an overlap the lock did not.
                await session.rollback()
                conflict, hold = "constraint", None
    except LockTimeout as exc:
        metrics.record_hold("acquire", "lock_timeout")
        logger.info("hold_lock_timeout", extra={"extra": log_context})
        return HoldResult.failure(exc)

    if conflict is not None:
        metrics.record_hold("acquire", "conflict")
        logger.info("hold_conflict", extra={"extra": {**log_context, "conflict_with": conflict}})
        return HoldResult.failure(ResourceConflict())

    metrics.record_hold("acquire", "success")
    logger.info(
        "hold_acquired",
        extra={
            "extra": {
                **log_context,
                "hold_id": hold.hold_id,
                "requires_confirmation": requirements.requires_confirmation,
                "requires_deposit": requirements.requires_deposit,
            }
        },
    )
    return HoldResult(
        success=True,
        hold_id=hold.hold_id,
        expires_at=expires_at,
        requires_confirmation=requirements.requires_confirmation,
        requires_deposit=requirements.requires_deposit,
        deposit_cents=requirements.deposit_cents,
        hold=hold,
    )


async def get_hold(session: AsyncSession, tenant_id: uuid.UUID, hold_id: str) -> BookingHold:
    stmt = select(BookingHold).where(
        BookingHold.tenant_id == tenant_id, BookingHold.hold_id == hold_id
    ).execution_options(populate_existing=True)
    hold = (await session.execute(stmt)).scalar_one_or_none()
    if hold is None:
        raise HoldNotFound()
    return hold


async def list_active_holds(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    resource_id: str,
    *,
    now: datetime | None = None,
) -> list[BookingHold]:
    current = resolve_now(now)
    stmt = (
        select(BookingHold)
        .where(
            BookingHold.tenant_id == tenant_id,
            BookingHold.resource_id == resource_id,
            BookingHold.status == "active",
            BookingHold.expires_at > current,
        )
        .order_by(BookingHold.window_start)
    )
    return list((await session.execute(stmt)).scalars().all())


async def expire_hold_in_place(session: AsyncSession, hold: BookingHold, now: datetime) -> None:
    if await _expire_hold_row(session, hold.hold_id, now):
        metrics.record_sweep("expire_holds", 1)
        logger.info("hold_expired", extra={"extra": {"hold_id": hold.hold_id, "inline": True}})
    await session.commit()
    await session.refresh(hold)


async def extend_hold(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    hold_id: str,
    additional_minutes: int,
    *,
    now: datetime | None = None,
) -> BookingHold:
    if not MIN_EXTENSION_MINUTES <= additional_minutes <= MAX_EXTENSION_MINUTES:
        raise ValueError(
            f"additional_minutes must be between {MIN_EXTENSION_MINUTES} and {MAX_EXTENSION_MINUTES}"
        )
    current = resolve_now(now)
    hold = await get_hold(session, tenant_id, hold_id)
    if hold.status in TERMINAL_HOLD_STATUSES:
        raise HoldAlreadyTerminal(extra={"status": hold.status})
    if normalize_utc(hold.expires_at) <= current:
        await expire_hold_in_place(session, hold, current)
        raise HoldAlreadyTerminal(extra={"status": hold.status})

    previous = hold.expires_at
    new_expires_at = normalize_utc(previous) + timedelta(minutes=additional_minutes)
    result = await session.execute(
        update(BookingHold)
        .where(
            BookingHold.hold_id == hold_id,
            BookingHold.status == "active",
            BookingHold.expires_at == previous,
        )
        .values(expires_at=new_expires_at)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    await session.refresh(hold)
    if result.rowcount != 1:
        if hold.status in TERMINAL_HOLD_STATUSES:
            raise HoldAlreadyTerminal(extra={"status": hold.status})
        # A concurrent extension moved expires_at first; theirs stands.
        return hold
    metrics.record_hold("extend", "success")
    logger.info(
        "hold_extended",
        extra={"extra": {"hold_id": hold_id, "additional_minutes": additional_minutes}},
    )
    return hold


async def release_hold(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    hold_id: str,
    *,
    reason: str = "released",
    now: datetime | None = None,
) -> BookingHold:
    """Release a hold. Releasing a hold that is already terminal is a no-op."""
    current = resolve_now(now)
    hold = await get_hold(session, tenant_id, hold_id)
    if hold.status in TERMINAL_HOLD_STATUSES:
        return hold
    assert_valid_hold_transition(hold.status, "released")

    result = await session.execute(
        update(BookingHold)
        .where(BookingHold.hold_id == hold_id, BookingHold.status == "active")
        .values(status="released", release_reason=reason, released_at=current)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        await _expire_pending_confirmations(session, hold_id, current)
    await session.commit()
    await session.refresh(hold)
    if result.rowcount == 1:
        metrics.record_hold("release", reason)
        logger.info("hold_released", extra={"extra": {"hold_id": hold_id, "reason": reason}})
    return hold


async def _has_confirmed_confirmation(session: AsyncSession, hold_id: str) -> bool:
    stmt = (
        select(BookingConfirmation.confirmation_id)
        .where(BookingConfirmation.hold_id == hold_id, BookingConfirmation.status == "confirmed")
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none() is not None


async def convert_to_booking(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    hold_id: str,
    *,
    now: datetime | None = None,
) -> BookingRecord:
    current = resolve_now(now)
    hold = await get_hold(session, tenant_id, hold_id)
    if hold.status in TERMINAL_HOLD_STATUSES:
        raise HoldAlreadyTerminal(extra={"status": hold.status})
    if normalize_utc(hold.expires_at) <= current:
        await expire_hold_in_place(session, hold, current)
        raise HoldAlreadyTerminal(extra={"status": hold.status})
    if hold.requires_confirmation and not await _has_confirmed_confirmation(session, hold_id):
        metrics.record_hold("convert", "confirmation_required")
        logger.info("hold_conversion_needs_confirmation", extra={"extra": {"hold_id": hold_id}})
        raise ConfirmationRequired()
    assert_valid_hold_transition(hold.status, "converted")

    result = await session.execute(
        update(BookingHold)
        .where(
            BookingHold.hold_id == hold_id,
            BookingHold.status == "active",
            BookingHold.expires_at > current,
        )
        .values(status="converted", converted_at=current)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        await session.refresh(hold)
        raise HoldAlreadyTerminal(extra={"status": hold.status})

    booking = BookingRecord(
        booking_id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        vertical=hold.vertical,
        resource_id=hold.resource_id,
        window_start=normalize_utc(hold.window_start),
        window_end=normalize_utc(hold.window_end),
        customer_fingerprint=hold.customer_fingerprint,
        hold_id=hold_id,
        status="confirmed",
        deposit_required=hold.requires_deposit,
        deposit_cents=hold.deposit_cents,
    )
    session.add(booking)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise HoldAlreadyTerminal(extra={"status": "converted"}) from exc
    await session.refresh(hold)

    metrics.record_hold("convert", "success")
    logger.info(
        "hold_converted",
        extra={"extra": {"hold_id": hold_id, "booking_id": booking.booking_id}},
    )
    return booking


async def expire_stale_holds(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    limit: int | None = None,
) -> int:
    """Sweep ``active`` holds past ``expires_at``. Safe to run from several workers."""
    current = resolve_now(now)
    stmt = (
        select(BookingHold.hold_id)
        .where(BookingHold.status == "active", BookingHold.expires_at <= current)
        .order_by(BookingHold.expires_at)
    )
    if limit:
        stmt = stmt.limit(limit)
    hold_ids = list((await session.execute(stmt)).scalars().all())
    expired = 0
    for hold_id in hold_ids:
        if await _expire_hold_row(session, hold_id, current):
            expired += 1
        await session.commit()
    metrics.record_sweep("expire_holds", expired)
    if expired:
        logger.info("holds_expired", extra={"extra": {"count": expired, "scanned": len(hold_ids)}})
    return expired
