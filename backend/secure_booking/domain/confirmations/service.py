"""Confirmation coordinator.

Tracks "reply YES to confirm" requests for holds. Delivery is delegated to an
injected ``ConfirmationDispatcher``; this module only owns the state machine::

    pending -> confirmed | declined | expired

All three outcomes are terminal. ``declined`` and ``expired`` release the
owning hold.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from secure_booking.domain.confirmations.db_models import BookingConfirmation
from secure_booking.domain.confirmations.parsing import parse_reply
from secure_booking.domain.confirmations.templates import (
    CONFIRMATION_TYPES,
    confirmation_link,
    generate_confirmation_code,
    render_confirmation_message,
)
from secure_booking.domain.errors import (
    AlreadyResponded,
    ConfirmationExpired,
    ConfirmationNotFound,
    HoldNotActive,
)
from secure_booking.domain.holds import service as hold_service
from secure_booking.domain.holds.db_models import BookingHold
from secure_booking.domain.policies.service import get_policy
from secure_booking.infra.communication import ConfirmationDispatcher, OutboundConfirmationCommand
from secure_booking.infra.logging import fingerprint_ref
from secure_booking.infra.metrics import metrics
from secure_booking.settings import settings
from secure_booking.shared.pii_masking import is_phone_fingerprint, normalize_fingerprint
from secure_booking.shared.timeutils import normalize_utc, resolve_now

logger = logging.getLogger(__name__)

RESPONSES = ("confirmed", "declined")


@dataclass
class ReplyResult:
    intent: str
    confirmation: BookingConfirmation | None = None


async def get_confirmation(
    session: AsyncSession, tenant_id: uuid.UUID, confirmation_id: str
) -> BookingConfirmation:
    stmt = select(BookingConfirmation).where(
        BookingConfirmation.tenant_id == tenant_id,
        BookingConfirmation.confirmation_id == confirmation_id,
    ).execution_options(populate_existing=True)
    confirmation = (await session.execute(stmt)).scalar_one_or_none()
    if confirmation is None:
        raise ConfirmationNotFound()
    return confirmation


async def _pending_for_hold(session: AsyncSession, hold_id: str) -> BookingConfirmation | None:
    stmt = select(BookingConfirmation).where(
        BookingConfirmation.hold_id == hold_id, BookingConfirmation.status == "pending"
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def _mark_expired(session: AsyncSession, confirmation_id: str, now: datetime) -> bool:
    result = await session.execute(
        update(BookingConfirmation)
        .where(
            BookingConfirmation.confirmation_id == confirmation_id,
            BookingConfirmation.status == "pending",
        )
        .values(status="expired", responded_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _extend_hold_until(
    session: AsyncSession, hold: BookingHold, expires_at: datetime
) -> None:
    """Push the hold's expiry out to ``expires_at``; never shortens it."""
    if normalize_utc(hold.expires_at) >= expires_at:
        return
    await session.execute(
        update(BookingHold)
        .where(
            BookingHold.hold_id == hold.hold_id,
            BookingHold.status == "active",
            BookingHold.expires_at < expires_at,
        )
        .values(expires_at=expires_at)
        .execution_options(synchronize_session=False)
    )


async def request_confirmation(
    session: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    hold_id: str,
    channel: str,
    dispatcher: ConfirmationDispatcher,
    recipient: str | None = None,
    now: datetime | None = None,
) -> BookingConfirmation:
    if channel not in CONFIRMATION_TYPES:
        raise ValueError(f"unknown_confirmation_type:{channel}")
    current = resolve_now(now)
    hold = await hold_service.get_hold(session, tenant_id, hold_id)
    if hold.status != "active":
        raise HoldNotActive(extra={"status": hold.status})
    if normalize_utc(hold.expires_at) <= current:
        await hold_service.expire_hold_in_place(session, hold, current)
        raise HoldNotActive(extra={"status": hold.status})

    existing = await _pending_for_hold(session, hold_id)
    if existing is not None:
        if normalize_utc(existing.expires_at) > current:
            return existing
        if await _mark_expired(session, existing.confirmation_id, current):
            metrics.record_confirmation("expired")

    policy = await get_policy(session, tenant_id, hold.vertical)
    expires_at = current + timedelta(minutes=policy.confirmation_timeout_minutes)
    if recipient is None and is_phone_fingerprint(hold.customer_fingerprint):
        recipient = hold.customer_fingerprint
    confirmation = BookingConfirmation(
        confirmation_id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        hold_id=hold_id,
        customer_fingerprint=hold.customer_fingerprint,
        confirmation_type=channel,
        status="pending",
        code=generate_confirmation_code(),
        recipient=recipient,
        sent_at=current,
        expires_at=expires_at,
    )
    session.add(confirmation)
    # An unconfirmed hold must outlive its confirmation window.
    await _extend_hold_until(session, hold, expires_at)
    try:
        await session.commit()
    except IntegrityError:
        # Lost the race for the hold's single pending slot; the winner's row stands.
        await session.rollback()
        winner = await _pending_for_hold(session, hold_id)
        if winner is None:
            raise
        return winner

    link = None
    if channel == "link_click" and settings.confirmation_link_base_url:
        link = confirmation_link(
            settings.confirmation_link_base_url, confirmation.confirmation_id, confirmation.code
        )
    command = OutboundConfirmationCommand(
        confirmation_id=confirmation.confirmation_id,
        tenant_id=str(tenant_id),
        hold_id=hold_id,
        channel=channel,
        recipient=recipient,
        code=confirmation.code,
        message=render_confirmation_message(
            channel=channel,
            code=confirmation.code,
            slot_start=normalize_utc(hold.window_start),
            expires_at=expires_at,
            locale=settings.confirmation_locale,
            link=link,
        ),
        expires_at=expires_at,
    )
    dispatch = await dispatcher.send(command)
    confirmation.provider_message_id = dispatch.provider_message_id
    confirmation.delivery_status = dispatch.status
    await session.commit()

    metrics.record_confirmation("pending")
    logger.info(
        "confirmation_requested",
        extra={
            "extra": {
                "tenant_id": str(tenant_id),
                "hold_id": hold_id,
                "confirmation_id": confirmation.confirmation_id,
                "channel": channel,
                "delivery_status": dispatch.status,
                "error_code": dispatch.error_code,
            }
        },
    )
    return confirmation


async def record_response(
    session: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    confirmation_id: str,
    response: str,
    response_text: str | None = None,
    now: datetime | None = None,
) -> BookingConfirmation:
    if response not in RESPONSES:
        raise ValueError(f"unknown_confirmation_response:{response}")
    current = resolve_now(now)
    confirmation = await get_confirmation(session, tenant_id, confirmation_id)
    if confirmation.status != "pending":
        raise AlreadyResponded(extra={"status": confirmation.status})

    if current >= normalize_utc(confirmation.expires_at):
        await _expire_and_release(session, confirmation, current)
        await session.refresh(confirmation)
        if confirmation.status != "expired":
            raise AlreadyResponded(extra={"status": confirmation.status})
        raise ConfirmationExpired()

    hold = await hold_service.get_hold(session, tenant_id, confirmation.hold_id)
    if hold.status != "active":
        await _mark_expired(session, confirmation_id, current)
        await session.commit()
        raise HoldNotActive(extra={"status": hold.status})

    result = await session.execute(
        update(BookingConfirmation)
        .where(
            BookingConfirmation.confirmation_id == confirmation_id,
            BookingConfirmation.status == "pending",
            BookingConfirmation.expires_at > current,
        )
        .values(status=response, responded_at=current, response_text=response_text)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        await session.refresh(confirmation)
        if confirmation.status == "expired":
            raise ConfirmationExpired()
        raise AlreadyResponded(extra={"status": confirmation.status})

    if response == "confirmed":
        policy = await get_policy(session, tenant_id, hold.vertical)
        await _extend_hold_until(session, hold, current + timedelta(minutes=policy.hold_ttl_minutes))
        await session.commit()
    else:
        # Commits the confirmation update together with the release.
        await hold_service.release_hold(
            session, tenant_id, hold.hold_id, reason="confirmation_declined", now=current
        )
    await session.refresh(confirmation)

    metrics.record_confirmation(response)
    logger.info(
        "confirmation_responded",
        extra={
            "extra": {
                "tenant_id": str(tenant_id),
                "confirmation_id": confirmation_id,
                "hold_id": hold.hold_id,
                "response": response,
            }
        },
    )
    return confirmation


async def _expire_and_release(
    session: AsyncSession, confirmation: BookingConfirmation, now: datetime
) -> bool:
    expired = await _mark_expired(session, confirmation.confirmation_id, now)
    if not expired:
        await session.rollback()
        return False
    await hold_service.release_hold(
        session,
        confirmation.tenant_id,
        confirmation.hold_id,
        reason="confirmation_expired",
        now=now,
    )
    metrics.record_confirmation("expired")
    logger.info(
        "confirmation_expired",
        extra={
            "extra": {
                "confirmation_id": confirmation.confirmation_id,
                "hold_id": confirmation.hold_id,
            }
        },
    )
    return True


async def record_reply_text(
    session: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    customer_fingerprint: str,
    text: str,
    now: datetime | None = None,
) -> ReplyResult:
    """Apply an inbound SMS/WhatsApp reply to the customer's latest pending confirmation."""
    parsed = parse_reply(text)
    fingerprint = normalize_fingerprint(customer_fingerprint)
    stmt = (
        select(BookingConfirmation)
        .where(
            BookingConfirmation.tenant_id == tenant_id,
            BookingConfirmation.customer_fingerprint == fingerprint,
            BookingConfirmation.status == "pending",
        )
        .order_by(BookingConfirmation.sent_at.desc())
    )
    pending = list((await session.execute(stmt)).scalars().all())
    target = pending[0] if pending else None
    if parsed.code:
        # Reply words can look like codes ("CANCEL"); only a real match overrides recency.
        target = next((item for item in pending if item.code == parsed.code), target)

    logger.info(
        "confirmation_reply_received",
        extra={
            "extra": {
                "tenant_id": str(tenant_id),
                "fingerprint_ref": fingerprint_ref(fingerprint),
                "intent": parsed.intent,
                "matched": target is not None,
            }
        },
    )
    if target is None or parsed.intent == "unknown":
        return ReplyResult(intent=parsed.intent, confirmation=target)

    confirmation = await record_response(
        session,
        tenant_id=tenant_id,
        confirmation_id=target.confirmation_id,
        response=parsed.intent,
        response_text=text,
        now=now,
    )
    return ReplyResult(intent=parsed.intent, confirmation=confirmation)


async def expire_stale_confirmations(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    limit: int | None = None,
) -> int:
    """Sweep pending confirmations past expiry and release their holds."""
    current = resolve_now(now)
    stmt = (
        select(BookingConfirmation)
        .where(
            BookingConfirmation.status == "pending",
            BookingConfirmation.expires_at <= current,
        )
        .order_by(BookingConfirmation.expires_at)
    )
    if limit:
        stmt = stmt.limit(limit)
    stale = list((await session.execute(stmt)).scalars().all())
    expired = 0
    for confirmation in stale:
        if await _expire_and_release(session, confirmation, current):
            expired += 1
    metrics.record_sweep("expire_confirmations", expired)
    if stale:
        logger.info(
            "confirmations_expired",
            extra={"extra": {"count": expired, "scanned": len(stale)}},
        )
    return expired
