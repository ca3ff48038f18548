"""Customer trust score.

The stored ``score`` is a cache: it is always recomputed by folding the
customer's ``TrustEvent`` history in chronological order, starting from the
policy's initial score and clamping to [0, 100] after every step. Negative
deltas fade linearly to zero over ``score_decay_days``, so a customer's
standing recovers with time even without new completed bookings.

No-shows and late cancellations are recorded through the penalty engine, which
appends the matching negative event; this module only writes the neutral and
positive outcomes itself.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from secure_booking.domain.policies.service import PolicySnapshot, evaluate_requirements, get_policy
from secure_booking.domain.trust.db_models import CustomerTrustScore, TrustEvent
from secure_booking.infra.locks import resource_lock
from secure_booking.infra.logging import fingerprint_ref
from secure_booking.infra.metrics import metrics
from secure_booking.shared.pii_masking import normalize_fingerprint
from secure_booking.shared.timeutils import normalize_utc, resolve_now

logger = logging.getLogger(__name__)

MIN_SCORE = 0
MAX_SCORE = 100

OUTCOMES = ("completed", "cancelled_early", "cancelled_late", "no_show")
# Outcomes that are violations go through the penalty ledger instead.
PENALTY_OUTCOMES = {"cancelled_late": "late_cancel", "no_show": "no_show"}

TRUST_LEVELS: tuple[tuple[str, int], ...] = (
    ("excellent", 80),
    ("good", 50),
    ("fair", 30),
    ("poor", MIN_SCORE),
)

# Rows untouched for this long are revisited by the decay sweep.
DECAY_SWEEP_STALENESS = timedelta(hours=24)


@dataclass
class TrustScoreView:
    customer_fingerprint: str
    score: int
    level: str
    completed_count: int = 0
    cancelled_count: int = 0
    no_show_count: int = 0
    is_vip: bool = False
    requires_confirmation: bool = False
    requires_deposit: bool = False
    last_updated_at: datetime | None = None


def clamp_score(value: int) -> int:
    return max(MIN_SCORE, min(MAX_SCORE, int(value)))


def trust_level(score: int) -> str:
    for level, floor in TRUST_LEVELS:
        if score >= floor:
            return level
    return TRUST_LEVELS[-1][0]


def decayed_delta(delta: int, occurred_at: datetime, now: datetime, decay_days: int) -> int:
    if delta >= 0:
        return delta
    age_days = max(0.0, (now - normalize_utc(occurred_at)).total_seconds() / 86400)
    factor = max(0.0, 1.0 - age_days / decay_days)
    return -math.floor(abs(delta) * factor)


def compute_score(
    events: Iterable[TrustEvent],
    *,
    initial: int,
    decay_days: int,
    now: datetime,
) -> int:
    score = clamp_score(initial)
    for trust_event in sorted(events, key=lambda item: normalize_utc(item.occurred_at)):
        score = clamp_score(score + decayed_delta(trust_event.delta, trust_event.occurred_at, now, decay_days))
    return score


def customer_lock_key(tenant_id: uuid.UUID, customer_fingerprint: str) -> str:
    return f"customer:{tenant_id}:{customer_fingerprint}"


async def ensure_score_row(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    customer_fingerprint: str,
    policy: PolicySnapshot,
    now: datetime,
) -> CustomerTrustScore:
    """Fetch the customer's row for update, creating it on first interaction."""
    values = dict(
        trust_id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        customer_fingerprint=customer_fingerprint,
        vertical=policy.vertical,
        score=clamp_score(policy.initial_trust_score),
        completed_count=0,
        cancelled_count=0,
        no_show_count=0,
        is_vip=False,
        last_updated_at=now,
    )
    bind = session.get_bind()
    insert_fn = pg_insert if bind.dialect.name == "postgresql" else sqlite_insert
    await session.execute(
        insert_fn(CustomerTrustScore)
        .values(**values)
        .on_conflict_do_nothing(index_elements=["tenant_id", "customer_fingerprint"])
    )
    stmt = (
        select(CustomerTrustScore)
        .where(
            CustomerTrustScore.tenant_id == tenant_id,
            CustomerTrustScore.customer_fingerprint == customer_fingerprint,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one()


async def _load_events(
    session: AsyncSession, tenant_id: uuid.UUID, customer_fingerprint: str
) -> list[TrustEvent]:
    stmt = (
        select(TrustEvent)
        .where(
            TrustEvent.tenant_id == tenant_id,
            TrustEvent.customer_fingerprint == customer_fingerprint,
        )
        .order_by(TrustEvent.occurred_at, TrustEvent.event_id)
    )
    return list((await session.execute(stmt)).scalars().all())


async def recompute_row(
    session: AsyncSession,
    row: CustomerTrustScore,
    policy: PolicySnapshot,
    now: datetime,
) -> int:
    """Refold the history into ``row``; the caller holds the customer lock."""
    await session.flush()
    events = await _load_events(session, row.tenant_id, row.customer_fingerprint)
    row.score = compute_score(
        events, initial=policy.initial_trust_score, decay_days=policy.score_decay_days, now=now
    )
    row.last_updated_at = now
    return row.score


def build_view(
    customer_fingerprint: str,
    policy: PolicySnapshot,
    *,
    row: CustomerTrustScore | None = None,
    score: int | None = None,
) -> TrustScoreView:
    if score is None:
        score = row.score if row is not None else clamp_score(policy.initial_trust_score)
    is_vip = bool(row.is_vip) if row is not None else False
    requirements = evaluate_requirements(policy, trust_score=score, is_vip=is_vip)
    return TrustScoreView(
        customer_fingerprint=customer_fingerprint,
        score=score,
        level=trust_level(score),
        completed_count=row.completed_count if row is not None else 0,
        cancelled_count=row.cancelled_count if row is not None else 0,
        no_show_count=row.no_show_count if row is not None else 0,
        is_vip=is_vip,
        requires_confirmation=requirements.requires_confirmation,
        requires_deposit=requirements.requires_deposit,
        last_updated_at=normalize_utc(row.last_updated_at) if row is not None else None,
    )


async def get_score(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    vertical: str,
    customer_fingerprint: str,
    *,
    now: datetime | None = None,
) -> TrustScoreView:
    """Current score with decay applied.

    The recomputed value is written back with a compare-and-swap on
    ``last_updated_at`` so a concurrent outcome is never overwritten by an older
    view of the history.
    """
    current = resolve_now(now)
    fingerprint = normalize_fingerprint(customer_fingerprint)
    policy = await get_policy(session, tenant_id, vertical)
    stmt = select(CustomerTrustScore).where(
        CustomerTrustScore.tenant_id == tenant_id,
        CustomerTrustScore.customer_fingerprint == fingerprint,
    )
    row = (await session.execute(stmt)).scalar_one_or_none()
    if row is None:
        return build_view(fingerprint, policy)

    events = await _load_events(session, tenant_id, fingerprint)
    score = compute_score(
        events, initial=policy.initial_trust_score, decay_days=policy.score_decay_days, now=current
    )
    if score != row.score:
        result = await session.execute(
            update(CustomerTrustScore)
            .where(
                CustomerTrustScore.trust_id == row.trust_id,
                CustomerTrustScore.last_updated_at == row.last_updated_at,
            )
            .values(score=score, last_updated_at=current)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if result.rowcount == 1:
            logger.info(
                "trust_score_decayed",
                extra={
                    "extra": {
                        "tenant_id": str(tenant_id),
                        "fingerprint_ref": fingerprint_ref(fingerprint),
                        "previous_score": row.score,
                        "score": score,
                    }
                },
            )
    return build_view(fingerprint, policy, row=row, score=score)


async def decay_score(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    vertical: str,
    customer_fingerprint: str,
    *,
    now: datetime | None = None,
) -> TrustScoreView:
    current = resolve_now(now)
    fingerprint = normalize_fingerprint(customer_fingerprint)
    policy = await get_policy(session, tenant_id, vertical)
    async with resource_lock(session, customer_lock_key(tenant_id, fingerprint)):
        row = await ensure_score_row(session, tenant_id, fingerprint, policy, current)
        await recompute_row(session, row, policy, current)
        await session.commit()
        return build_view(fingerprint, policy, row=row)


async def decay_scores(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    limit: int | None = None,
) -> int:
    """Sweep: recompute rows that have not been touched recently. Returns rows changed."""
    current = resolve_now(now)
    stmt = (
        select(
            CustomerTrustScore.tenant_id,
            CustomerTrustScore.vertical,
            CustomerTrustScore.customer_fingerprint,
            CustomerTrustScore.score,
        )
        .where(CustomerTrustScore.last_updated_at < current - DECAY_SWEEP_STALENESS)
        .order_by(CustomerTrustScore.last_updated_at)
    )
    if limit:
        stmt = stmt.limit(limit)
    candidates = (await session.execute(stmt)).all()
    await session.commit()

    changed = 0
    for tenant_id, vertical, fingerprint, previous_score in candidates:
        view = await decay_score(session, tenant_id, vertical, fingerprint, now=current)
        if view.score != previous_score:
            changed += 1
    metrics.record_sweep("trust_decay", changed)
    if candidates:
        logger.info(
            "trust_decay_sweep",
            extra={"extra": {"scanned": len(candidates), "changed": changed}},
        )
    return changed


async def apply_outcome(
    session: AsyncSession,
    *,
    row: CustomerTrustScore,
    policy: PolicySnapshot,
    outcome: str,
    related_hold_id: str | None = None,
    now: datetime,
):
    """Write one outcome under a held customer lock; the caller commits.

    Violations are handed to the penalty engine and its result is returned;
    other outcomes return ``None``.
    """
    if outcome not in OUTCOMES:
        raise ValueError(f"unknown_outcome:{outcome}")
    if outcome in PENALTY_OUTCOMES:
        from secure_booking.domain.penalties import service as penalty_service

        return await penalty_service.apply_penalty(
            session,
            row=row,
            policy=policy,
            violation_type=PENALTY_OUTCOMES[outcome],
            related_hold_id=related_hold_id,
            now=now,
        )

    delta = policy.completed_delta if outcome == "completed" else policy.cancelled_early_delta
    session.add(
        TrustEvent(
            tenant_id=row.tenant_id,
            customer_fingerprint=row.customer_fingerprint,
            kind=outcome,
            delta=delta,
            related_hold_id=related_hold_id,
            occurred_at=now,
        )
    )
    if outcome == "completed":
        row.completed_count += 1
    else:
        row.cancelled_count += 1
    await recompute_row(session, row, policy, now)
    return None


def report_outcome(
    *,
    tenant_id: uuid.UUID,
    outcome: str,
    previous_score: int,
    view: TrustScoreView,
    penalty_result=None,
) -> None:
    metrics.record_trust_outcome(outcome)
    if penalty_result is not None:
        from secure_booking.domain.penalties import service as penalty_service

        penalty_service.report_penalty(
            penalty_result,
            tenant_id=tenant_id,
            customer_fingerprint=view.customer_fingerprint,
            violation_type=PENALTY_OUTCOMES[outcome],
        )
    logger.info(
        "trust_outcome_recorded",
        extra={
            "extra": {
                "tenant_id": str(tenant_id),
                "fingerprint_ref": fingerprint_ref(view.customer_fingerprint),
                "outcome": outcome,
                "previous_score": previous_score,
                "score": view.score,
            }
        },
    )


async def record_outcome(
    session: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    vertical: str,
    customer_fingerprint: str,
    outcome: str,
    related_hold_id: str | None = None,
    now: datetime | None = None,
) -> TrustScoreView:
    if outcome not in OUTCOMES:
        raise ValueError(f"unknown_outcome:{outcome}")
    current = resolve_now(now)
    fingerprint = normalize_fingerprint(customer_fingerprint)
    policy = await get_policy(session, tenant_id, vertical)

    async with resource_lock(session, customer_lock_key(tenant_id, fingerprint)):
        row = await ensure_score_row(session, tenant_id, fingerprint, policy, current)
        previous_score = row.score
        penalty_result = await apply_outcome(
            session,
            row=row,
            policy=policy,
            outcome=outcome,
            related_hold_id=related_hold_id,
            now=current,
        )
        await session.commit()
        view = build_view(fingerprint, policy, row=row)

    report_outcome(
        tenant_id=tenant_id,
        outcome=outcome,
        previous_score=previous_score,
        view=view,
        penalty_result=penalty_result,
    )
    return view


async def set_vip(
    session: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    vertical: str,
    customer_fingerprint: str,
    is_vip: bool,
    now: datetime | None = None,
) -> TrustScoreView:
    current = resolve_now(now)
    fingerprint = normalize_fingerprint(customer_fingerprint)
    policy = await get_policy(session, tenant_id, vertical)
    async with resource_lock(session, customer_lock_key(tenant_id, fingerprint)):
        row = await ensure_score_row(session, tenant_id, fingerprint, policy, current)
        row.is_vip = is_vip
        await recompute_row(session, row, policy, current)
        await session.commit()
        view = build_view(fingerprint, policy, row=row)
    logger.info(
        "trust_vip_updated",
        extra={
            "extra": {
                "tenant_id": str(tenant_id),
                "fingerprint_ref": fingerprint_ref(fingerprint),
                "is_vip": is_vip,
            }
        },
    )
    return view
