import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import sqlalchemy as sa

from secure_booking.domain.confirmations import service as confirmation_service
from secure_booking.domain.confirmations.db_models import BookingConfirmation
from secure_booking.domain.errors import (
    AlreadyResponded,
    ConfirmationExpired,
    HoldAlreadyTerminal,
    HoldNotActive,
)
from secure_booking.domain.holds import service as hold_service
from secure_booking.infra.communication import NoopConfirmationDispatcher
from tests.conftest import DEFAULT_TENANT_ID, slot

CUSTOMER = "+525512345678"


async def _hold(session, *, now=None, fingerprint=CUSTOMER, resource_id="chair-2"):
    start, end = slot()
    result = await hold_service.acquire_hold(
        session,
        tenant_id=DEFAULT_TENANT_ID,
        vertical="general",
        resource_id=resource_id,
        window_start=start,
        window_end=end,
        customer_fingerprint=fingerprint,
        hold_type="appointment_slot",
        now=now,
    )
    assert result.success is True
    return result


async def _request(session, hold_id, dispatcher=None, *, now=None, channel="whatsapp_reply"):
    return await confirmation_service.request_confirmation(
        session,
        tenant_id=DEFAULT_TENANT_ID,
        hold_id=hold_id,
        channel=channel,
        dispatcher=dispatcher or NoopConfirmationDispatcher(),
        now=now,
    )


@pytest.mark.anyio
async def test_request_confirmation_dispatches_and_extends_hold(async_session_maker):
    now = datetime.now(tz=timezone.utc)
    dispatcher = NoopConfirmationDispatcher()
    async with async_session_maker() as session:
        held = await _hold(session, now=now)
        confirmation = await _request(session, held.hold_id, dispatcher, now=now)

        assert confirmation.status == "pending"
        assert confirmation.recipient == CUSTOMER
        assert confirmation.delivery_status == "skipped"
        assert len(confirmation.code) == 6

        assert len(dispatcher.sent) == 1
        command = dispatcher.sent[0]
        assert command.confirmation_id == confirmation.confirmation_id
        assert command.code in command.message

        hold = await hold_service.get_hold(session, DEFAULT_TENANT_ID, held.hold_id)
        assert hold.expires_at.replace(tzinfo=timezone.utc) == now + timedelta(minutes=120)


@pytest.mark.anyio
async def test_second_request_returns_the_pending_confirmation(async_session_maker):
    async with async_session_maker() as session:
        held = await _hold(session)
        first = await _request(session, held.hold_id)
        second = await _request(session, held.hold_id, channel="sms_reply")
        assert second.confirmation_id == first.confirmation_id


@pytest.mark.anyio
async def test_request_confirmation_on_released_hold_fails(async_session_maker):
    async with async_session_maker() as session:
        held = await _hold(session)
        await hold_service.release_hold(session, DEFAULT_TENANT_ID, held.hold_id)
        with pytest.raises(HoldNotActive):
            await _request(session, held.hold_id)


@pytest.mark.anyio
async def test_confirmed_reply_allows_conversion(async_session_maker):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        held = await _hold(session, now=now)
        await _request(session, held.hold_id, now=now)

        reply = await confirmation_service.record_reply_text(
            session,
            tenant_id=DEFAULT_TENANT_ID,
            customer_fingerprint="+52 55 1234 5678",
            text="Sí, confirmo!",
            now=now + timedelta(minutes=30),
        )
        assert reply.intent == "confirmed"
        assert reply.confirmation.status == "confirmed"

        booking = await hold_service.convert_to_booking(
            session, DEFAULT_TENANT_ID, held.hold_id, now=now + timedelta(minutes=31)
        )
        assert booking.status == "confirmed"
        hold = await hold_service.get_hold(session, DEFAULT_TENANT_ID, held.hold_id)
        assert hold.status == "converted"


@pytest.mark.anyio
async def test_confirmed_response_keeps_hold_alive_for_conversion(async_session_maker):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        held = await _hold(session, now=now)
        confirmation = await _request(session, held.hold_id, now=now)
        responded_at = now + timedelta(minutes=119)
        await confirmation_service.record_response(
            session,
            tenant_id=DEFAULT_TENANT_ID,
            confirmation_id=confirmation.confirmation_id,
            response="confirmed",
            now=responded_at,
        )
        hold = await hold_service.get_hold(session, DEFAULT_TENANT_ID, held.hold_id)
        assert hold.expires_at.replace(tzinfo=timezone.utc) == responded_at + timedelta(minutes=15)


@pytest.mark.anyio
async def test_declined_reply_releases_hold(async_session_maker):
    async with async_session_maker() as session:
        held = await _hold(session)
        await _request(session, held.hold_id)

        reply = await confirmation_service.record_reply_text(
            session, tenant_id=DEFAULT_TENANT_ID, customer_fingerprint=CUSTOMER, text="No puedo, cancelo"
        )
        assert reply.intent == "declined"
        assert reply.confirmation.status == "declined"

        hold = await hold_service.get_hold(session, DEFAULT_TENANT_ID, held.hold_id)
        assert hold.status == "released"
        assert hold.release_reason == "confirmation_declined"


@pytest.mark.anyio
async def test_unclear_reply_changes_nothing(async_session_maker):
    async with async_session_maker() as session:
        held = await _hold(session)
        confirmation = await _request(session, held.hold_id)

        reply = await confirmation_service.record_reply_text(
            session, tenant_id=DEFAULT_TENANT_ID, customer_fingerprint=CUSTOMER, text="si, pero no puedo"
        )
        assert reply.intent == "unknown"
        assert reply.confirmation.confirmation_id == confirmation.confirmation_id

        stored = await confirmation_service.get_confirmation(
            session, DEFAULT_TENANT_ID, confirmation.confirmation_id
        )
        assert stored.status == "pending"


@pytest.mark.anyio
async def test_reply_without_pending_confirmation_is_unmatched(async_session_maker):
    async with async_session_maker() as session:
        reply = await confirmation_service.record_reply_text(
            session, tenant_id=DEFAULT_TENANT_ID, customer_fingerprint=CUSTOMER, text="SI"
        )
        assert reply.intent == "confirmed"
        assert reply.confirmation is None


@pytest.mark.anyio
async def test_reply_code_selects_matching_confirmation(async_session_maker):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        older_hold = await _hold(session, now=now, resource_id="chair-1")
        older = await _request(session, older_hold.hold_id, now=now)
        newer_hold = await _hold(session, now=now + timedelta(minutes=1), resource_id="chair-3")
        await _request(session, newer_hold.hold_id, now=now + timedelta(minutes=1))

        reply = await confirmation_service.record_reply_text(
            session,
            tenant_id=DEFAULT_TENANT_ID,
            customer_fingerprint=CUSTOMER,
            text=f"si {older.code}",
            now=now + timedelta(minutes=2),
        )
        assert reply.confirmation.confirmation_id == older.confirmation_id
        assert reply.confirmation.status == "confirmed"


@pytest.mark.anyio
async def test_unanswered_confirmation_expires_and_releases_hold(async_session_maker):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        held = await _hold(session, now=now)
        confirmation = await _request(session, held.hold_id, now=now)

        later = now + timedelta(minutes=121)
        assert await confirmation_service.expire_stale_confirmations(session, now=later) == 1

        stored = await confirmation_service.get_confirmation(
            session, DEFAULT_TENANT_ID, confirmation.confirmation_id
        )
        assert stored.status == "expired"
        hold = await hold_service.get_hold(session, DEFAULT_TENANT_ID, held.hold_id)
        assert hold.status == "released"
        assert hold.release_reason == "confirmation_expired"

        with pytest.raises(HoldAlreadyTerminal):
            await hold_service.convert_to_booking(session, DEFAULT_TENANT_ID, held.hold_id, now=later)


@pytest.mark.anyio
async def test_late_response_is_rejected_as_expired(async_session_maker):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        held = await _hold(session, now=now)
        confirmation = await _request(session, held.hold_id, now=now)
        with pytest.raises(ConfirmationExpired):
            await confirmation_service.record_response(
                session,
                tenant_id=DEFAULT_TENANT_ID,
                confirmation_id=confirmation.confirmation_id,
                response="confirmed",
                now=now + timedelta(minutes=120),
            )
        hold = await hold_service.get_hold(session, DEFAULT_TENANT_ID, held.hold_id)
        assert hold.status == "released"


@pytest.mark.anyio
async def test_second_response_is_rejected(async_session_maker):
    async with async_session_maker() as session:
        held = await _hold(session)
        confirmation = await _request(session, held.hold_id)
        await confirmation_service.record_response(
            session,
            tenant_id=DEFAULT_TENANT_ID,
            confirmation_id=confirmation.confirmation_id,
            response="confirmed",
        )
        with pytest.raises(AlreadyResponded):
            await confirmation_service.record_response(
                session,
                tenant_id=DEFAULT_TENANT_ID,
                confirmation_id=confirmation.confirmation_id,
                response="declined",
            )


@pytest.mark.anyio
async def test_releasing_hold_expires_pending_confirmation(async_session_maker):
    async with async_session_maker() as session:
        held = await _hold(session)
        confirmation = await _request(session, held.hold_id)
        await hold_service.release_hold(session, DEFAULT_TENANT_ID, held.hold_id)

        stored = await confirmation_service.get_confirmation(
            session, DEFAULT_TENANT_ID, confirmation.confirmation_id
        )
        assert stored.status == "expired"


@pytest.mark.anyio
async def test_concurrent_responses_have_one_winner(file_session_maker):
    async with file_session_maker() as session:
        held = await _hold(session)
        confirmation = await _request(session, held.hold_id)

    async def respond(response: str):
        async with file_session_maker() as session:
            try:
                return await confirmation_service.record_response(
                    session,
                    tenant_id=DEFAULT_TENANT_ID,
                    confirmation_id=confirmation.confirmation_id,
                    response=response,
                )
            except (AlreadyResponded, HoldNotActive) as exc:
                return exc

    outcomes = await asyncio.gather(respond("confirmed"), respond("declined"), respond("confirmed"))

    accepted = [item for item in outcomes if isinstance(item, BookingConfirmation)]
    assert len(accepted) == 1
    async with file_session_maker() as session:
        statuses = (
            await session.execute(
                sa.select(BookingConfirmation.status).where(
                    BookingConfirmation.confirmation_id == confirmation.confirmation_id
                )
            )
        ).scalars().all()
        assert statuses == [accepted[0].status]
