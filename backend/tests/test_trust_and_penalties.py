import random
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import sqlalchemy as sa

from secure_booking.domain.errors import BlockNotFound
from secure_booking.domain.holds import service as hold_service
from secure_booking.domain.penalties import service as penalty_service
from secure_booking.domain.penalties.db_models import CustomerBlock
from secure_booking.domain.policies.service import upsert_policy
from secure_booking.domain.trust import service as trust_service
from tests.conftest import DEFAULT_TENANT_ID, slot

CUSTOMER = "+525512345678"


def _event(delta: int, occurred_at: datetime):
    return SimpleNamespace(delta=delta, occurred_at=occurred_at)


async def _penalty(session, violation_type, *, now=None, fingerprint=CUSTOMER, vertical="general"):
    return await penalty_service.record_penalty(
        session,
        tenant_id=DEFAULT_TENANT_ID,
        vertical=vertical,
        customer_fingerprint=fingerprint,
        violation_type=violation_type,
        now=now,
    )


def test_decayed_penalty_weight_is_linear_and_floored():
    now = datetime(2026, 5, 1, tzinfo=timezone.utc)
    assert penalty_service.decayed_penalty_weight(15, now, now, 30) == 15
    assert penalty_service.decayed_penalty_weight(15, now - timedelta(days=15), now, 30) == 7
    assert penalty_service.decayed_penalty_weight(15, now - timedelta(days=29), now, 30) == 0
    assert penalty_service.decayed_penalty_weight(25, now - timedelta(days=45), now, 30) == 0


def test_compute_score_clamps_at_every_step():
    now = datetime(2026, 5, 1, tzinfo=timezone.utc)
    events = [
        _event(-100, now - timedelta(minutes=3)),
        _event(5, now - timedelta(minutes=2)),
        _event(5, now - timedelta(minutes=1)),
    ]
    # 70 -> 0 -> 5 -> 10, not 70 - 100 + 10 = -20 clamped once.
    assert trust_service.compute_score(events, initial=70, decay_days=90, now=now) == 10


def test_compute_score_fades_old_penalties():
    now = datetime(2026, 5, 1, tzinfo=timezone.utc)
    fresh = [_event(-25, now)]
    half_faded = [_event(-25, now - timedelta(days=45))]
    forgotten = [_event(-25, now - timedelta(days=90))]
    assert trust_service.compute_score(fresh, initial=70, decay_days=90, now=now) == 45
    assert trust_service.compute_score(half_faded, initial=70, decay_days=90, now=now) == 58
    assert trust_service.compute_score(forgotten, initial=70, decay_days=90, now=now) == 70


def test_score_stays_in_bounds_for_random_histories():
    rng = random.Random(20260501)
    now = datetime(2026, 5, 1, tzinfo=timezone.utc)
    for _ in range(200):
        events = [
            _event(rng.choice([-100, -25, -15, 0, 5, 30]), now - timedelta(days=rng.uniform(0, 120)))
            for _ in range(rng.randint(0, 40))
        ]
        score = trust_service.compute_score(
            events, initial=rng.randint(0, 100), decay_days=90, now=now
        )
        assert 0 <= score <= 100


def test_trust_levels():
    assert trust_service.trust_level(100) == "excellent"
    assert trust_service.trust_level(80) == "excellent"
    assert trust_service.trust_level(70) == "good"
    assert trust_service.trust_level(30) == "fair"
    assert trust_service.trust_level(0) == "poor"


@pytest.mark.anyio
async def test_new_customer_gets_initial_score(async_session_maker):
    async with async_session_maker() as session:
        view = await trust_service.get_score(session, DEFAULT_TENANT_ID, "general", CUSTOMER)
        assert view.score == 70
        assert view.level == "good"
        assert view.requires_confirmation is True
        assert view.requires_deposit is False


@pytest.mark.anyio
async def test_completed_bookings_raise_score_up_to_ceiling(async_session_maker):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        view = await trust_service.record_outcome(
            session,
            tenant_id=DEFAULT_TENANT_ID,
            vertical="general",
            customer_fingerprint=CUSTOMER,
            outcome="completed",
            now=now,
        )
        assert view.score == 75
        assert view.completed_count == 1

        for step in range(1, 10):
            view = await trust_service.record_outcome(
                session,
                tenant_id=DEFAULT_TENANT_ID,
                vertical="general",
                customer_fingerprint=CUSTOMER,
                outcome="completed",
                now=now + timedelta(minutes=step),
            )
        assert view.score == 100
        assert view.completed_count == 10


@pytest.mark.anyio
async def test_unknown_outcome_is_rejected(async_session_maker):
    async with async_session_maker() as session:
        with pytest.raises(ValueError):
            await trust_service.record_outcome(
                session,
                tenant_id=DEFAULT_TENANT_ID,
                vertical="general",
                customer_fingerprint=CUSTOMER,
                outcome="rescheduled",
            )


@pytest.mark.anyio
async def test_first_no_show_lowers_score_without_blocking(async_session_maker):
    async with async_session_maker() as session:
        result = await _penalty(session, "no_show")
        assert result.strike_count == 1
        assert result.new_score == 45
        assert result.new_block_created is False

        check = await penalty_service.check_block(session, DEFAULT_TENANT_ID, CUSTOMER)
        assert check.blocked is False


@pytest.mark.anyio
async def test_third_no_show_blocks_and_stops_new_holds(async_session_maker):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        for offset in (2, 1):
            result = await _penalty(session, "no_show", now=now - timedelta(days=offset))
            assert result.new_block_created is False

        third = await _penalty(session, "no_show", now=now)
        assert third.strike_count == 3
        assert third.new_block_created is True
        assert third.blocked_until == now + timedelta(hours=720)

        check = await penalty_service.check_block(session, DEFAULT_TENANT_ID, CUSTOMER, now=now)
        assert check.blocked is True
        assert check.reason == "auto_no_shows"
        assert check.permanent is False

        start, end = slot()
        held = await hold_service.acquire_hold(
            session,
            tenant_id=DEFAULT_TENANT_ID,
            vertical="general",
            resource_id="chair-1",
            window_start=start,
            window_end=end,
            customer_fingerprint="+52 (55) 1234-5678",
            hold_type="appointment_slot",
            now=now,
        )
        assert held.success is False
        assert held.error_code == "CUSTOMER_BLOCKED"


@pytest.mark.anyio
async def test_fraud_signal_blocks_permanently(async_session_maker):
    async with async_session_maker() as session:
        result = await _penalty(session, "fraud_signal")
        assert result.new_block_created is True
        assert result.blocked_until is None
        assert result.new_score == 0

        check = await penalty_service.check_block(session, DEFAULT_TENANT_ID, CUSTOMER)
        assert check.blocked is True
        assert check.permanent is True
        assert check.reason == "auto_fraud_signal"


@pytest.mark.anyio
async def test_late_cancellations_reach_threshold(async_session_maker):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        await upsert_policy(session, DEFAULT_TENANT_ID, "general", {"block_threshold_score": 40})
        for offset in (2, 1):
            result = await _penalty(session, "late_cancel", now=now - timedelta(hours=offset))
            assert result.new_block_created is False
        third = await _penalty(session, "late_cancel", now=now)
        assert third.new_block_created is True

        check = await penalty_service.check_block(session, DEFAULT_TENANT_ID, CUSTOMER, now=now)
        assert check.reason == "auto_late_cancellations"


@pytest.mark.anyio
async def test_old_late_cancellation_has_decayed_out_of_the_window(async_session_maker):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        await _penalty(session, "late_cancel", now=now - timedelta(days=29))

        weight = await penalty_service.rolling_penalty_weight(
            session, DEFAULT_TENANT_ID, "general", CUSTOMER, now=now
        )
        assert weight == 0

        await _penalty(session, "late_cancel", now=now)
        weight = await penalty_service.rolling_penalty_weight(
            session, DEFAULT_TENANT_ID, "general", CUSTOMER, now=now
        )
        assert weight == 15


@pytest.mark.anyio
async def test_no_shows_outside_window_do_not_count_as_strikes(async_session_maker):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        await _penalty(session, "no_show", now=now - timedelta(days=60))
        await _penalty(session, "no_show", now=now - timedelta(days=45))
        third = await _penalty(session, "no_show", now=now)
        assert third.strike_count == 3
        assert third.new_block_created is False


@pytest.mark.anyio
async def test_vip_customers_bypass_penalties(async_session_maker):
    async with async_session_maker() as session:
        view = await trust_service.set_vip(
            session,
            tenant_id=DEFAULT_TENANT_ID,
            vertical="general",
            customer_fingerprint=CUSTOMER,
            is_vip=True,
        )
        assert view.is_vip is True
        assert view.requires_confirmation is False

        result = await _penalty(session, "no_show")
        assert result.vip_bypass is True
        assert result.penalty_id is None
        assert result.new_score == 70
        assert await penalty_service.list_penalties(session, DEFAULT_TENANT_ID, CUSTOMER) == []


@pytest.mark.anyio
async def test_new_penalty_never_shortens_active_block(async_session_maker):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        block = await penalty_service.block_customer(
            session,
            tenant_id=DEFAULT_TENANT_ID,
            vertical="general",
            customer_fingerprint=CUSTOMER,
            reason="manual_abuse",
            duration_hours=24 * 60,
            now=now,
        )
        original_until = block.blocked_until.replace(tzinfo=timezone.utc)

        for offset in range(3):
            result = await _penalty(session, "no_show", now=now + timedelta(minutes=offset))
        assert result.new_block_created is False
        assert result.block_extended is False
        assert result.blocked_until == original_until

        fraud = await _penalty(session, "fraud_signal", now=now + timedelta(minutes=5))
        assert fraud.block_extended is True
        assert fraud.blocked_until is None

        active = (
            await session.execute(
                sa.select(CustomerBlock).where(CustomerBlock.is_active.is_(True))
            )
        ).scalars().all()
        assert len(active) == 1


@pytest.mark.anyio
async def test_lifted_block_allows_holds_again(async_session_maker):
    async with async_session_maker() as session:
        block = await penalty_service.block_customer(
            session,
            tenant_id=DEFAULT_TENANT_ID,
            vertical="general",
            customer_fingerprint=CUSTOMER,
            reason="manual_other",
        )
        assert (await penalty_service.check_block(session, DEFAULT_TENANT_ID, CUSTOMER)).blocked is True

        lifted = await penalty_service.lift_block(
            session, tenant_id=DEFAULT_TENANT_ID, block_id=block.block_id, lifted_by="ops"
        )
        assert lifted.is_active is False
        assert lifted.lifted_by == "ops"
        assert (await penalty_service.check_block(session, DEFAULT_TENANT_ID, CUSTOMER)).blocked is False

        again = await penalty_service.lift_block(
            session, tenant_id=DEFAULT_TENANT_ID, block_id=block.block_id, lifted_by="someone-else"
        )
        assert again.lifted_by == "ops"

        with pytest.raises(BlockNotFound):
            await penalty_service.lift_block(session, tenant_id=DEFAULT_TENANT_ID, block_id="missing")


@pytest.mark.anyio
async def test_manual_block_rejects_automatic_reason(async_session_maker):
    async with async_session_maker() as session:
        with pytest.raises(ValueError):
            await penalty_service.block_customer(
                session,
                tenant_id=DEFAULT_TENANT_ID,
                vertical="general",
                customer_fingerprint=CUSTOMER,
                reason="auto_no_shows",
            )


@pytest.mark.anyio
async def test_lapsed_blocks_are_released_by_sweep(async_session_maker):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        await penalty_service.block_customer(
            session,
            tenant_id=DEFAULT_TENANT_ID,
            vertical="general",
            customer_fingerprint=CUSTOMER,
            reason="manual_abuse",
            duration_hours=1,
            now=now - timedelta(hours=2),
        )
        assert (await penalty_service.check_block(session, DEFAULT_TENANT_ID, CUSTOMER, now=now)).blocked is False
        assert await penalty_service.release_expired_blocks(session, now=now) == 1
        assert await penalty_service.release_expired_blocks(session, now=now) == 0


@pytest.mark.anyio
async def test_cancelled_late_outcome_goes_through_penalty_ledger(async_session_maker):
    async with async_session_maker() as session:
        view = await trust_service.record_outcome(
            session,
            tenant_id=DEFAULT_TENANT_ID,
            vertical="general",
            customer_fingerprint=CUSTOMER,
            outcome="cancelled_late",
        )
        assert view.score == 55
        assert view.cancelled_count == 1
        penalties = await penalty_service.list_penalties(session, DEFAULT_TENANT_ID, CUSTOMER)
        assert [item.violation_type for item in penalties] == ["late_cancel"]


@pytest.mark.anyio
async def test_score_recovers_as_penalties_age(async_session_maker):
    now = datetime.now(tz=timezone.utc)
    async with async_session_maker() as session:
        await _penalty(session, "no_show", now=now)
        later = now + timedelta(days=45)
        view = await trust_service.get_score(session, DEFAULT_TENANT_ID, "general", CUSTOMER, now=later)
        assert view.score == 58

        assert await trust_service.decay_scores(session, now=now + timedelta(days=91)) == 1
        view = await trust_service.get_score(
            session, DEFAULT_TENANT_ID, "general", CUSTOMER, now=now + timedelta(days=91)
        )
        assert view.score == 70
