"""Resource-scoped mutual exclusion that holds across processes.

Postgres uses transaction-scoped advisory locks, so the lock lives exactly as
long as the caller's unit of work and is dropped on commit or rollback. Other
databases (SQLite in tests and local dev) fall back to a lease row in
``resource_locks`` whose primary key makes the insert the mutual-exclusion
point.

Locks must be taken before the unit of work loads or changes anything: the
lease path commits the session on acquire and on release, and a failed lease
insert rolls the session back.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from secure_booking.domain.errors import LockTimeout
from secure_booking.domain.ops.db_models import ResourceLock
from secure_booking.infra.metrics import metrics
from secure_booking.settings import settings
from secure_booking.shared.timeutils import utcnow

logger = logging.getLogger(__name__)

_INITIAL_BACKOFF_SECONDS = 0.01
_MAX_BACKOFF_SECONDS = 0.25


def lock_id_for_key(key: str) -> int:
    """Map a lock key onto the signed 64-bit space Postgres advisory locks use."""
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], byteorder="big", signed=True)


def _scope(key: str) -> str:
    return key.split(":", 1)[0] or "unknown"


def _is_postgres(session: AsyncSession) -> bool:
    return session.get_bind().dialect.name == "postgresql"


@asynccontextmanager
async def resource_lock(
    session: AsyncSession,
    key: str,
    *,
    timeout_seconds: float | None = None,
    lease_seconds: float | None = None,
) -> AsyncIterator[None]:
    timeout = settings.hold_lock_timeout_seconds if timeout_seconds is None else timeout_seconds
    started = time.monotonic()
    if _is_postgres(session):
        await _acquire_advisory(session, key, timeout, started)
        metrics.record_lock_wait(_scope(key), time.monotonic() - started)
        yield
        return

    lease = settings.lock_lease_seconds if lease_seconds is None else lease_seconds
    owner = uuid.uuid4().hex
    await _acquire_lease(session, key, owner, timeout, lease, started)
    metrics.record_lock_wait(_scope(key), time.monotonic() - started)
    try:
        yield
    except BaseException:
        await session.rollback()
        await _release_lease(session, key, owner)
        raise
    await _release_lease(session, key, owner)


async def _acquire_advisory(session: AsyncSession, key: str, timeout: float, started: float) -> None:
    lock_id = lock_id_for_key(key)
    delay = _INITIAL_BACKOFF_SECONDS
    while True:
        acquired = (
            await session.execute(sa.select(sa.func.pg_try_advisory_xact_lock(lock_id)))
        ).scalar()
        if acquired:
            return
        delay = await _backoff_or_timeout(key, timeout, started, delay)


async def _acquire_lease(
    session: AsyncSession,
    key: str,
    owner: str,
    timeout: float,
    lease_seconds: float,
    started: float,
) -> None:
    delay = _INITIAL_BACKOFF_SECONDS
    while True:
        now = utcnow()
        expires_at = now + timedelta(seconds=lease_seconds)
        try:
            await session.execute(
                sa.insert(ResourceLock).values(
                    lock_key=key, owner=owner, acquired_at=now, expires_at=expires_at
                )
            )
            await session.commit()
            return
        except IntegrityError:
            await session.rollback()

        # The current holder may have died without releasing; its lease lapses.
        takeover = await session.execute(
            sa.update(ResourceLock)
            .where(ResourceLock.lock_key == key, ResourceLock.expires_at < now)
            .values(owner=owner, acquired_at=now, expires_at=expires_at)
        )
        await session.commit()
        if takeover.rowcount == 1:
            logger.warning("resource_lock_lease_taken_over", extra={"extra": {"scope": _scope(key)}})
            return
        delay = await _backoff_or_timeout(key, timeout, started, delay)


async def _release_lease(session: AsyncSession, key: str, owner: str) -> None:
    await session.execute(
        sa.delete(ResourceLock).where(ResourceLock.lock_key == key, ResourceLock.owner == owner)
    )
    await session.commit()


async def _backoff_or_timeout(key: str, timeout: float, started: float, delay: float) -> float:
    remaining = timeout - (time.monotonic() - started)
    if remaining <= 0:
        metrics.record_lock_timeout(_scope(key))
        logger.warning(
            "resource_lock_timeout",
            extra={"extra": {"scope": _scope(key), "timeout_seconds": timeout}},
        )
        raise LockTimeout()
    await asyncio.sleep(min(delay, remaining))
    return min(delay * 2, _MAX_BACKOFF_SECONDS)
