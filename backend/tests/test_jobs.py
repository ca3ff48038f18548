from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from secure_booking.domain.confirmations import service as confirmation_service
from secure_booking.domain.holds import service as hold_service
from secure_booking.domain.ops.db_models import JobHeartbeat
from secure_booking.domain.penalties import service as penalty_service
from secure_booking.domain.penalties.db_models import CustomerBlock
from secure_booking.infra.communication import NoopConfirmationDispatcher
from secure_booking.jobs import run
from secure_booking.jobs.heartbeat import RUNNER_HEARTBEAT
from tests.conftest import DEFAULT_TENANT_ID, slot


async def _stale_hold(session, *, resource_id="table-9", minutes_ago=30):
    start, end = slot()
    result = await hold_service.acquire_hold(
        session,
        tenant_id=DEFAULT_TENANT_ID,
        vertical="restaurant",
        resource_id=resource_id,
        window_start=start,
        window_end=end,
        customer_fingerprint="+525512345678",
        hold_type="table",
        now=datetime.now(tz=timezone.utc) - timedelta(minutes=minutes_ago),
    )
    assert result.success is True
    return result


@pytest.mark.anyio
async def test_run_once_expires_holds_and_records_heartbeats(async_session_maker):
    async with async_session_maker() as session:
        stale = await _stale_hold(session)

    await run.run_once(async_session_maker, ["expire-holds"], runner_id="worker-7")

    async with async_session_maker() as session:
        hold = await hold_service.get_hold(session, DEFAULT_TENANT_ID, stale.hold_id)
        assert hold.status == "expired"

        job_record = await session.get(JobHeartbeat, "expire-holds")
        assert job_record.last_processed == 1
        assert job_record.consecutive_failures == 0
        assert job_record.last_success_at is not None

        runner = await session.get(JobHeartbeat, RUNNER_HEARTBEAT)
        assert runner.runner_id == "worker-7"
        assert runner.last_processed == 1
        assert runner.last_error is None
        assert job_record.runner_id == "worker-7"


@pytest.mark.anyio
async def test_run_once_expires_unanswered_confirmations(async_session_maker):
    async with async_session_maker() as session:
        start, end = slot()
        sent_at = datetime.now(tz=timezone.utc) - timedelta(hours=3)
        held = await hold_service.acquire_hold(
            session,
            tenant_id=DEFAULT_TENANT_ID,
            vertical="general",
            resource_id="chair-5",
            window_start=start,
            window_end=end,
            customer_fingerprint="+525512345678",
            hold_type="appointment_slot",
            now=sent_at,
        )
        confirmation = await confirmation_service.request_confirmation(
            session,
            tenant_id=DEFAULT_TENANT_ID,
            hold_id=held.hold_id,
            channel="sms_reply",
            dispatcher=NoopConfirmationDispatcher(),
            now=sent_at,
        )

    await run.run_once(async_session_maker, ["expire-confirmations"])

    async with async_session_maker() as session:
        stored = await confirmation_service.get_confirmation(
            session, DEFAULT_TENANT_ID, confirmation.confirmation_id
        )
        assert stored.status == "expired"
        hold = await hold_service.get_hold(session, DEFAULT_TENANT_ID, held.hold_id)
        assert hold.status == "released"
        assert hold.release_reason == "confirmation_expired"


@pytest.mark.anyio
async def test_run_once_releases_lapsed_blocks(async_session_maker):
    async with async_session_maker() as session:
        block = await penalty_service.block_customer(
            session,
            tenant_id=DEFAULT_TENANT_ID,
            vertical="general",
            customer_fingerprint="+525512345678",
            reason="manual_other",
            duration_hours=1,
            now=datetime.now(tz=timezone.utc) - timedelta(hours=2),
        )

    await run.run_once(async_session_maker, ["release-blocks"])

    async with async_session_maker() as session:
        status = await penalty_service.check_block(
            session, DEFAULT_TENANT_ID, "+525512345678"
        )
        assert status.blocked is False
        job_record = await session.get(JobHeartbeat, "release-blocks")
        assert job_record.last_processed == 1
        refreshed = (await session.execute(select(CustomerBlock))).scalars().all()
        assert [(item.block_id, item.is_active) for item in refreshed] == [(block.block_id, False)]


@pytest.mark.anyio
async def test_failing_job_is_recorded_and_others_still_run(async_session_maker, monkeypatch):
    async def boom(session):  # noqa: ARG001
        raise RuntimeError("sweep exploded")

    monkeypatch.setitem(run._RUNNERS, "trust-decay", boom)
    async with async_session_maker() as session:
        stale = await _stale_hold(session)

    await run.run_once(async_session_maker, ["trust-decay", "expire-holds"])
    await run.run_once(async_session_maker, ["trust-decay"])

    async with async_session_maker() as session:
        failed = await session.get(JobHeartbeat, "trust-decay")
        assert failed.consecutive_failures == 2
        assert failed.last_error == "RuntimeError"
        assert failed.last_success_at is None

        hold = await hold_service.get_hold(session, DEFAULT_TENANT_ID, stale.hold_id)
        assert hold.status == "expired"
        runner = await session.get(JobHeartbeat, RUNNER_HEARTBEAT)
        assert runner.consecutive_failures == 2
        assert runner.last_error == "trust-decay"


@pytest.mark.anyio
async def test_unknown_job_is_rejected(async_session_maker):
    with pytest.raises(ValueError):
        await run.run_once(async_session_maker, ["vacuum-everything"])
