import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import delete

from secure_booking.domain.bookings import service as booking_service
from secure_booking.domain.errors import BookingAlreadyFinal, BookingNotFound, LockTimeout
from secure_booking.domain.holds import service as hold_service
from secure_booking.domain.ops.db_models import ResourceLock
from secure_booking.domain.penalties import service as penalty_service
from secure_booking.domain.policies import service as policy_service
from secure_booking.domain.trust import service as trust_service
from secure_booking.settings import settings
from tests.conftest import DEFAULT_TENANT_ID, slot

CUSTOMER = "+525512345678"


async def _booking(session, *, hours_from_now=72):
    start, end = slot(hours_from_now=hours_from_now)
    held = await hold_service.acquire_hold(
        session,
        tenant_id=DEFAULT_TENANT_ID,
        vertical="retail",
        resource_id="pickup-slot-3",
        window_start=start,
        window_end=end,
        customer_fingerprint=CUSTOMER,
        hold_type="delivery_slot",
    )
    return await hold_service.convert_to_booking(session, DEFAULT_TENANT_ID, held.hold_id)


@pytest.mark.anyio
async def test_completing_booking_rewards_customer(async_session_maker):
    async with async_session_maker() as session:
        booking = await _booking(session)
        completed = await booking_service.complete_booking(session, DEFAULT_TENANT_ID, booking.booking_id)
        assert completed.status == "completed"
        assert completed.outcome_recorded_at is not None

        view = await trust_service.get_score(session, DEFAULT_TENANT_ID, "retail", CUSTOMER)
        assert view.score == 75
        assert view.completed_count == 1


@pytest.mark.anyio
async def test_outcome_is_recorded_once(async_session_maker):
    async with async_session_maker() as session:
        booking = await _booking(session)
        await booking_service.mark_no_show(session, DEFAULT_TENANT_ID, booking.booking_id)
        with pytest.raises(BookingAlreadyFinal):
            await booking_service.mark_no_show(session, DEFAULT_TENANT_ID, booking.booking_id)
        with pytest.raises(BookingAlreadyFinal):
            await booking_service.complete_booking(session, DEFAULT_TENANT_ID, booking.booking_id)

        penalties = await penalty_service.list_penalties(session, DEFAULT_TENANT_ID, CUSTOMER)
        assert [item.violation_type for item in penalties] == ["no_show"]
        assert penalties[0].related_hold_id == booking.hold_id


@pytest.mark.anyio
async def test_no_show_stays_pending_while_customer_is_locked(async_session_maker):
    async with async_session_maker() as session:
        booking = await _booking(session)
        booking_id = booking.booking_id
        lock_key = trust_service.customer_lock_key(DEFAULT_TENANT_ID, CUSTOMER)
        now = datetime.now(timezone.utc)
        session.add(
            ResourceLock(
                lock_key=lock_key,
                owner="other-worker",
                acquired_at=now,
                expires_at=now + timedelta(minutes=5),
            )
        )
        await session.commit()
        settings.hold_lock_timeout_seconds = 0.2

        with pytest.raises(LockTimeout):
            await booking_service.mark_no_show(session, DEFAULT_TENANT_ID, booking_id)

        pending = await booking_service.get_booking(session, DEFAULT_TENANT_ID, booking_id)
        assert pending.status == "confirmed"
        assert pending.outcome_recorded_at is None
        assert await penalty_service.list_penalties(session, DEFAULT_TENANT_ID, CUSTOMER) == []

        await session.execute(delete(ResourceLock).where(ResourceLock.lock_key == lock_key))
        await session.commit()

        recorded = await booking_service.mark_no_show(session, DEFAULT_TENANT_ID, booking_id)
        assert recorded.status == "no_show"
        penalties = await penalty_service.list_penalties(session, DEFAULT_TENANT_ID, CUSTOMER)
        assert [item.violation_type for item in penalties] == ["no_show"]


@pytest.mark.anyio
async def test_failed_trust_write_rolls_back_completion(async_session_maker, monkeypatch):
    async with async_session_maker() as session:
        booking = await _booking(session)
        booking_id = booking.booking_id
        original_apply = trust_service.apply_outcome

        async def failing_apply(*args, **kwargs):
            raise RuntimeError("connection dropped")

        monkeypatch.setattr(trust_service, "apply_outcome", failing_apply)
        with pytest.raises(RuntimeError):
            await booking_service.complete_booking(session, DEFAULT_TENANT_ID, booking_id)

        pending = await booking_service.get_booking(session, DEFAULT_TENANT_ID, booking_id)
        assert pending.status == "confirmed"

        monkeypatch.setattr(trust_service, "apply_outcome", original_apply)
        completed = await booking_service.complete_booking(session, DEFAULT_TENANT_ID, booking_id)
        assert completed.status == "completed"

        view = await trust_service.get_score(session, DEFAULT_TENANT_ID, "retail", CUSTOMER)
        assert view.completed_count == 1


def test_no_show_route_retries_lock_timeout(client, monkeypatch):
    start, end = slot(hours_from_now=72)
    hold = client.post(
        "/v1/holds",
        json={
            "resource_id": "pickup-slot-3",
            "window_start": start.isoformat(),
            "window_end": end.isoformat(),
            "customer_fingerprint": CUSTOMER,
            "hold_type": "delivery_slot",
            "vertical": "retail",
        },
    ).json()
    booking = client.post(f"/v1/holds/{hold['hold_id']}/convert").json()

    real_lock = booking_service.resource_lock
    attempts = []

    def flaky_lock(session, key, **kwargs):
        attempts.append(key)
        if len(attempts) == 1:
            raise LockTimeout()
        return real_lock(session, key, **kwargs)

    monkeypatch.setattr(booking_service, "resource_lock", flaky_lock)
    response = client.post(f"/v1/bookings/{booking['booking_id']}/no-show")

    assert response.status_code == 200
    assert response.json()["status"] == "no_show"
    assert len(attempts) == 2
    penalties = client.get(f"/v1/customers/{CUSTOMER}/penalties").json()
    assert len(penalties) == 1


@pytest.mark.anyio
async def test_early_cancellation_is_not_penalised(async_session_maker):
    async with async_session_maker() as session:
        booking = await _booking(session, hours_from_now=72)
        cancelled = await booking_service.cancel_booking(session, DEFAULT_TENANT_ID, booking.booking_id)
        assert cancelled.status == "cancelled"
        assert await penalty_service.list_penalties(session, DEFAULT_TENANT_ID, CUSTOMER) == []


@pytest.mark.anyio
async def test_cancellation_inside_window_is_late(async_session_maker):
    async with async_session_maker() as session:
        booking = await _booking(session, hours_from_now=1)
        await booking_service.cancel_booking(session, DEFAULT_TENANT_ID, booking.booking_id)
        penalties = await penalty_service.list_penalties(session, DEFAULT_TENANT_ID, CUSTOMER)
        assert [item.violation_type for item in penalties] == ["late_cancel"]


@pytest.mark.anyio
async def test_cancelled_booking_frees_the_slot(async_session_maker):
    async with async_session_maker() as session:
        booking = await _booking(session)
        await booking_service.cancel_booking(session, DEFAULT_TENANT_ID, booking.booking_id)
        retry = await hold_service.acquire_hold(
            session,
            tenant_id=DEFAULT_TENANT_ID,
            vertical="retail",
            resource_id=booking.resource_id,
            window_start=booking.window_start,
            window_end=booking.window_end,
            customer_fingerprint="+525500000009",
            hold_type="delivery_slot",
        )
        assert retry.success is True


@pytest.mark.anyio
async def test_unknown_booking_raises_not_found(async_session_maker):
    async with async_session_maker() as session:
        with pytest.raises(BookingNotFound):
            await booking_service.complete_booking(session, DEFAULT_TENANT_ID, str(uuid.uuid4()))


def test_vertical_defaults():
    dental = policy_service.default_policy("dental")
    assert dental.requires_deposit is True
    assert dental.confirmation_timeout_minutes == 24 * 60

    retail = policy_service.default_policy("retail")
    assert retail.requires_confirmation is False

    general = policy_service.default_policy("General")
    assert general.vertical == "general"
    assert general.hold_ttl_minutes == 15
    assert general.penalty_weight("fraud_signal") == 100

    with pytest.raises(ValueError):
        policy_service.default_policy("spa")


def test_low_trust_triggers_confirmation_and_deposit():
    retail = policy_service.default_policy("retail")
    trusted = policy_service.evaluate_requirements(retail, trust_score=70)
    assert trusted.requires_confirmation is False
    assert trusted.requires_deposit is False

    risky = policy_service.evaluate_requirements(retail, trust_score=20, service_amount_cents=4000)
    assert risky.requires_confirmation is True
    assert risky.requires_deposit is True
    assert risky.deposit_cents == retail.deposit_amount_cents
    assert risky.reasons == ["low_trust_confirmation", "low_trust_deposit"]

    vip = policy_service.evaluate_requirements(policy_service.default_policy("dental"), trust_score=0, is_vip=True)
    assert vip.requires_confirmation is False
    assert vip.requires_deposit is False


@pytest.mark.anyio
async def test_tenant_policy_overrides_merge_with_defaults(async_session_maker):
    async with async_session_maker() as session:
        snapshot = await policy_service.upsert_policy(
            session, DEFAULT_TENANT_ID, "restaurant", {"hold_ttl_minutes": 5}, updated_by="ops"
        )
        assert snapshot.source == "tenant"
        assert snapshot.hold_ttl_minutes == 5

        await policy_service.upsert_policy(session, DEFAULT_TENANT_ID, "restaurant", {"auto_block_no_shows": 2})
        policy = await policy_service.get_policy(session, DEFAULT_TENANT_ID, "restaurant")
        assert policy.hold_ttl_minutes == 5
        assert policy.auto_block_no_shows == 2

        other_tenant = await policy_service.get_policy(session, uuid.uuid4(), "restaurant")
        assert other_tenant.source == "default"
        assert other_tenant.hold_ttl_minutes == 15


@pytest.mark.anyio
async def test_invalid_policy_override_is_rejected(async_session_maker):
    async with async_session_maker() as session:
        with pytest.raises(ValueError):
            await policy_service.upsert_policy(session, DEFAULT_TENANT_ID, "general", {"hold_ttl_minutes": 0})
        with pytest.raises(ValueError):
            await policy_service.upsert_policy(session, DEFAULT_TENANT_ID, "general", {"vertical": "dental"})
        with pytest.raises(ValueError):
            await policy_service.upsert_policy(session, DEFAULT_TENANT_ID, "general", {"surprise": True})


@pytest.mark.anyio
async def test_hold_ttl_follows_tenant_policy(async_session_maker):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        await policy_service.upsert_policy(session, DEFAULT_TENANT_ID, "restaurant", {"hold_ttl_minutes": 5})
        start, end = slot()
        result = await hold_service.acquire_hold(
            session,
            tenant_id=DEFAULT_TENANT_ID,
            vertical="restaurant",
            resource_id="table-1",
            window_start=start,
            window_end=end,
            customer_fingerprint=CUSTOMER,
            hold_type="table",
            now=now,
        )
        assert result.expires_at == now + timedelta(minutes=5)
