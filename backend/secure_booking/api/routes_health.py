import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import text

from secure_booking.jobs.heartbeat import load_sweep_statuses

router = APIRouter()
logger = logging.getLogger(__name__)

_CHECK_TIMEOUT_SECONDS = 2.0

CheckResult = tuple[bool, dict[str, Any]]


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.head("/healthz")
async def healthz_head() -> Response:
    return Response(status_code=200)


async def _with_session(request: Request, fn: Callable[[Any], Awaitable[Any]]) -> Any:
    session_factory = getattr(request.app.state, "db_session_factory", None)
    if session_factory is None:
        raise LookupError("database session factory unavailable")

    async def _run():
        async with session_factory() as session:
            return await fn(session)

    return await asyncio.wait_for(_run(), timeout=_CHECK_TIMEOUT_SECONDS)


async def _db_check(request: Request) -> CheckResult:
    await _with_session(request, lambda session: session.execute(text("SELECT 1")))
    return True, {"message": "database reachable"}


async def _jobs_check(request: Request) -> CheckResult:
    """Runner liveness plus the state of every sweep it drives.

    Not ready when the runner heartbeat is missing or older than the TTL, or
    when a sweep has failed ``job_failure_threshold`` passes in a row (expired
    holds and blocks would otherwise silently pile up).
    """
    app_settings = getattr(request.app.state, "app_settings", None)
    if app_settings is None or not app_settings.job_heartbeat_required:
        return True, {"enabled": False, "message": "job heartbeat check disabled"}

    ttl_seconds = app_settings.job_heartbeat_ttl_seconds
    runner, sweeps = await _with_session(request, load_sweep_statuses)
    if runner is None:
        return False, {"enabled": True, "message": "job heartbeat missing", "threshold_seconds": ttl_seconds}

    last_seen = runner.last_heartbeat
    if last_seen.tzinfo is None:
        last_seen = last_seen.replace(tzinfo=timezone.utc)
    age_seconds = (datetime.now(tz=timezone.utc) - last_seen).total_seconds()
    failing = sorted(
        name
        for name, sweep in sweeps.items()
        if sweep.consecutive_failures >= app_settings.job_failure_threshold
    )

    detail: dict[str, Any] = {
        "enabled": True,
        "runner_id": runner.runner_id,
        "last_heartbeat": last_seen.isoformat(),
        "age_seconds": age_seconds,
        "threshold_seconds": ttl_seconds,
        "last_pass_processed": runner.last_processed,
        "sweeps": {name: sweeps[name].as_dict() for name in sorted(sweeps)},
        "failing_sweeps": failing,
    }
    if age_seconds > ttl_seconds:
        detail["message"] = "job heartbeat stale"
        return False, detail
    if failing:
        detail["message"] = "sweeps failing"
        return False, detail
    return True, detail


async def _run_check(name: str, check: Callable[[], Awaitable[CheckResult]]) -> dict[str, Any]:
    start = time.perf_counter()
    try:
        ok, detail = await check()
    except LookupError as exc:
        ok, detail = False, {"message": str(exc)}
    except asyncio.TimeoutError:
        ok, detail = False, {"message": f"{name} check timed out", "timeout_seconds": _CHECK_TIMEOUT_SECONDS}
    except Exception as exc:  # noqa: BLE001
        logger.warning("readiness_check_failed", extra={"extra": {"check": name, "error": type(exc).__name__}})
        ok, detail = False, {"message": f"{name} check failed", "error": type(exc).__name__}
    elapsed_ms = (time.perf_counter() - start) * 1000
    return {"name": name, "ok": ok, "ms": round(elapsed_ms, 2), "detail": detail}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    checks = [
        await _run_check("db", lambda: _db_check(request)),
        await _run_check("jobs", lambda: _jobs_check(request)),
    ]
    overall_ok = all(check["ok"] for check in checks)
    return JSONResponse(status_code=200 if overall_ok else 503, content={"ok": overall_ok, "checks": checks})
