"""Persistence for sweep results.

Every sweep keeps one ``job_heartbeats`` row named after the sweep; the runner
keeps its own row under ``RUNNER_HEARTBEAT`` summarising the last pass, which
is what readiness treats as the liveness signal.
"""

import socket
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from secure_booking.domain.ops.db_models import JobHeartbeat
from secure_booking.infra.metrics import metrics

JOB_NAMES = ("expire-holds", "expire-confirmations", "release-blocks", "trust-decay")
RUNNER_HEARTBEAT = "jobs-runner"


@dataclass
class SweepStatus:
    name: str
    last_success_at: datetime | None
    last_processed: int
    consecutive_failures: int
    last_error: str | None

    def as_dict(self) -> dict:
        return {
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_processed": self.last_processed,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
        }


def _utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _runner_id(runner_id: str | None) -> str:
    if runner_id and runner_id.strip():
        return runner_id.strip()
    return socket.gethostname()


async def _get_or_create(session: AsyncSession, name: str, now: datetime) -> JobHeartbeat:
    record = await session.get(JobHeartbeat, name)
    if record is None:
        record = JobHeartbeat(name=name, last_heartbeat=now, consecutive_failures=0, last_processed=0)
        session.add(record)
    return record


async def record_sweep_result(
    session_factory: async_sessionmaker,
    sweep: str,
    *,
    processed: int = 0,
    error_reason: str | None = None,
    runner_id: str | None = None,
) -> None:
    """Store one sweep outcome; ``error_reason`` marks a failure and keeps the last good count."""
    now = datetime.now(tz=timezone.utc)
    async with session_factory() as session:
        record = await _get_or_create(session, sweep, now)
        record.last_heartbeat = now
        record.runner_id = _runner_id(runner_id)
        if error_reason is None:
            record.last_success_at = now
            record.last_processed = processed
            record.consecutive_failures = 0
            record.last_error = None
            record.last_error_at = None
        else:
            record.consecutive_failures = (record.consecutive_failures or 0) + 1
            record.last_error = error_reason
            record.last_error_at = now
        await session.commit()
    if error_reason is None:
        metrics.record_job_success(sweep, now.timestamp())
    else:
        metrics.record_job_error(sweep, error_reason)


async def record_runner_pass(
    session_factory: async_sessionmaker,
    *,
    processed: int,
    failed: list[str],
    runner_id: str | None = None,
) -> None:
    """Runner liveness; ``last_error`` lists the sweeps that failed in this pass."""
    now = datetime.now(tz=timezone.utc)
    async with session_factory() as session:
        record = await _get_or_create(session, RUNNER_HEARTBEAT, now)
        record.last_heartbeat = now
        record.runner_id = _runner_id(runner_id)
        record.last_processed = processed
        if failed:
            record.consecutive_failures = (record.consecutive_failures or 0) + 1
            record.last_error = ",".join(failed)[:128]
            record.last_error_at = now
        else:
            record.last_success_at = now
            record.consecutive_failures = 0
            record.last_error = None
            record.last_error_at = None
        await session.commit()
    metrics.record_job_heartbeat(RUNNER_HEARTBEAT, now.timestamp())


async def load_sweep_statuses(session: AsyncSession) -> tuple[JobHeartbeat | None, dict[str, SweepStatus]]:
    rows = (
        await session.execute(
            select(JobHeartbeat).where(JobHeartbeat.name.in_((RUNNER_HEARTBEAT, *JOB_NAMES)))
        )
    ).scalars().all()
    by_name = {row.name: row for row in rows}
    sweeps = {
        name: SweepStatus(
            name=name,
            last_success_at=_utc(row.last_success_at),
            last_processed=row.last_processed or 0,
            consecutive_failures=row.consecutive_failures or 0,
            last_error=row.last_error,
        )
        for name, row in by_name.items()
        if name != RUNNER_HEARTBEAT
    }
    return by_name.get(RUNNER_HEARTBEAT), sweeps
