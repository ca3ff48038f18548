import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from secure_booking.domain.confirmations import service as confirmation_service
from secure_booking.domain.holds import service as hold_service
from secure_booking.domain.penalties import service as penalty_service
from secure_booking.domain.trust import service as trust_service
from secure_booking.infra.db import get_session_factory
from secure_booking.infra.logging import clear_log_context, configure_logging, update_log_context
from secure_booking.infra.metrics import configure_metrics
from secure_booking.jobs.heartbeat import JOB_NAMES, record_runner_pass, record_sweep_result
from secure_booking.settings import settings

logger = logging.getLogger(__name__)

JobRunner = Callable[[AsyncSession], Awaitable[dict[str, int]]]


async def run_expire_holds(session: AsyncSession) -> dict[str, int]:
    expired = await hold_service.expire_stale_holds(session, limit=settings.job_sweep_batch_size)
    return {"processed": expired}


async def run_expire_confirmations(session: AsyncSession) -> dict[str, int]:
    expired = await confirmation_service.expire_stale_confirmations(
        session, limit=settings.job_sweep_batch_size
    )
    return {"processed": expired}


async def run_release_blocks(session: AsyncSession) -> dict[str, int]:
    released = await penalty_service.release_expired_blocks(session)
    return {"processed": released}


async def run_trust_decay(session: AsyncSession) -> dict[str, int]:
    changed = await trust_service.decay_scores(session, limit=settings.job_sweep_batch_size)
    return {"processed": changed}


_RUNNERS: dict[str, JobRunner] = {
    "expire-holds": run_expire_holds,
    "expire-confirmations": run_expire_confirmations,
    "release-blocks": run_release_blocks,
    "trust-decay": run_trust_decay,
}


def _job_runner(name: str) -> JobRunner:
    try:
        return _RUNNERS[name]
    except KeyError:
        raise ValueError(f"unknown_job:{name}") from None


async def _run_job(name: str, session_factory: async_sessionmaker, runner: JobRunner) -> dict[str, int]:
    update_log_context(job=name)
    try:
        async with session_factory() as session:
            result = await runner(session)
        logger.info("job_complete", extra={"extra": {"job": name, **result}})
        return result
    finally:
        clear_log_context()


async def run_once(
    session_factory: async_sessionmaker,
    job_names: list[str] | tuple[str, ...],
    *,
    runner_id: str | None = None,
) -> None:
    """One pass over ``job_names``; a failing job is recorded and does not stop the others."""
    processed = 0
    failed: list[str] = []
    for name in job_names:
        runner = _job_runner(name)
        try:
            result = await _run_job(name, session_factory, runner)
        except Exception as exc:  # noqa: BLE001
            logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
            failed.append(name)
            await record_sweep_result(
                session_factory, name, error_reason=type(exc).__name__, runner_id=runner_id
            )
            continue
        processed += result.get("processed", 0)
        await record_sweep_result(
            session_factory, name, processed=result.get("processed", 0), runner_id=runner_id
        )
    await record_runner_pass(session_factory, processed=processed, failed=failed, runner_id=runner_id)


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run secure booking maintenance sweeps")
    parser.add_argument("--job", action="append", dest="jobs", choices=JOB_NAMES, help="Job name to run")
    parser.add_argument("--interval", type=int, default=60, help="Seconds between loops when not using --once")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    parser.add_argument("--runner-id", dest="runner_id", default=None, help="Identifier stored on heartbeats")
    args = parser.parse_args(argv)

    configure_logging()
    configure_metrics(settings.metrics_enabled)
    session_factory = get_session_factory()
    job_names = args.jobs or list(JOB_NAMES)

    while True:
        await run_once(session_factory, job_names, runner_id=args.runner_id)
        if args.once:
            break
        await asyncio.sleep(max(args.interval, 1))


if __name__ == "__main__":
    asyncio.run(main())
