from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from secure_booking.domain.errors import BlockNotFound
from secure_booking.domain.penalties.db_models import CustomerBlock, CustomerPenalty
from secure_booking.domain.policies.service import PolicySnapshot, get_policy
from secure_booking.domain.trust import service as trust_service
from secure_booking.domain.trust.db_models import CustomerTrustScore, TrustEvent
from secure_booking.infra.locks import resource_lock
from secure_booking.infra.logging import fingerprint_ref
from secure_booking.infra.metrics import metrics
from secure_booking.shared.pii_masking import normalize_fingerprint
from secure_booking.shared.timeutils import normalize_utc, resolve_now

logger = logging.getLogger(__name__)

VIOLATION_TYPES = ("no_show", "late_cancel", "fraud_signal")

AUTO_BLOCK_REASONS = (
    "auto_no_shows",
    "auto_late_cancellations",
    "auto_penalty_threshold",
    "auto_low_trust",
    "auto_fraud_signal",
)
MANUAL_BLOCK_REASONS = ("manual_abuse", "manual_fraud", "manual_other")
BLOCK_REASONS = AUTO_BLOCK_REASONS + MANUAL_BLOCK_REASONS


@dataclass
class BlockCheckResult:
    blocked: bool
    block: CustomerBlock | None = None
    reason: str | None = None
    blocked_until: datetime | None = None
    permanent: bool = False


@dataclass
class RecordPenaltyResult:
    penalty_id: str | None
    new_block_created: bool = False
    block_id: str | None = None
    block_extended: bool = False
    blocked_until: datetime | None = None
    strike_count: int = 0
    new_score: int | None = None
    vip_bypass: bool = False
    block_reason: str | None = None


def decayed_penalty_weight(weight: int, occurred_at: datetime, now: datetime, window_days: int) -> int:
    """Weight left after linear decay to zero across the rolling window.

    Partial points are dropped, so a 15-point penalty 29 days into a 30-day
    window (0.5 points) no longer counts.
    """
    age_days = max(0.0, (now - normalize_utc(occurred_at)).total_seconds() / 86400)
    factor = max(0.0, 1.0 - age_days / window_days)
    return math.floor(weight * factor)


def _in_force(block: CustomerBlock, now: datetime) -> bool:
    if not block.is_active or block.lifted_at is not None:
        return False
    return block.blocked_until is None or normalize_utc(block.blocked_until) > now


async def check_block(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    customer_fingerprint: str,
    *,
    now: datetime | None = None,
) -> BlockCheckResult:
    """The single place that decides whether a customer is blocked right now."""
    current = resolve_now(now)
    fingerprint = normalize_fingerprint(customer_fingerprint)
    stmt = (
        select(CustomerBlock)
        .where(
            CustomerBlock.tenant_id == tenant_id,
            CustomerBlock.customer_fingerprint == fingerprint,
            CustomerBlock.is_active.is_(True),
        )
        .limit(1)
    )
    block = (await session.execute(stmt)).scalar_one_or_none()
    if block is None or not _in_force(block, current):
        return BlockCheckResult(blocked=False)
    blocked_until = normalize_utc(block.blocked_until) if block.blocked_until is not None else None
    return BlockCheckResult(
        blocked=True,
        block=block,
        reason=block.reason,
        blocked_until=blocked_until,
        permanent=blocked_until is None,
    )


async def rolling_penalty_weight(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    vertical: str,
    customer_fingerprint: str,
    *,
    now: datetime | None = None,
) -> int:
    current = resolve_now(now)
    policy = await get_policy(session, tenant_id, vertical)
    penalties = await _window_penalties(
        session, tenant_id, normalize_fingerprint(customer_fingerprint), policy, current
    )
    return sum(
        decayed_penalty_weight(item.weight, item.occurred_at, current, policy.penalty_window_days)
        for item in penalties
    )


async def _window_penalties(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    customer_fingerprint: str,
    policy: PolicySnapshot,
    now: datetime,
) -> list[CustomerPenalty]:
    window_start = now - timedelta(days=policy.penalty_window_days)
    stmt = select(CustomerPenalty).where(
        CustomerPenalty.tenant_id == tenant_id,
        CustomerPenalty.customer_fingerprint == customer_fingerprint,
        CustomerPenalty.occurred_at > window_start,
        CustomerPenalty.occurred_at <= now,
    )
    return list((await session.execute(stmt)).scalars().all())


async def _evaluate_block(
    session: AsyncSession,
    policy: PolicySnapshot,
    tenant_id: uuid.UUID,
    customer_fingerprint: str,
    violation_type: str,
    score: int,
    now: datetime,
) -> tuple[str | None, bool]:
    """Return (reason, permanent) when the customer's record now warrants a block."""
    if violation_type == "fraud_signal":
        return "auto_fraud_signal", policy.fraud_block_permanent

    penalties = await _window_penalties(session, tenant_id, customer_fingerprint, policy, now)
    no_show_strikes = sum(1 for item in penalties if item.violation_type == "no_show")
    if policy.auto_block_no_shows and no_show_strikes >= policy.auto_block_no_shows:
        return "auto_no_shows", False

    total = sum(
        decayed_penalty_weight(item.weight, item.occurred_at, now, policy.penalty_window_days)
        for item in penalties
    )
    if total >= policy.block_threshold_score:
        if all(item.violation_type == "late_cancel" for item in penalties):
            return "auto_late_cancellations", False
        return "auto_penalty_threshold", False

    if score < policy.trust_threshold_block:
        return "auto_low_trust", False
    return None, False


async def _apply_block(
    session: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    customer_fingerprint: str,
    reason: str,
    blocked_until: datetime | None,
    now: datetime,
    penalty_id: str | None = None,
    notes: str | None = None,
) -> tuple[CustomerBlock, bool, bool]:
    """Create a block or extend the active one. Returns (block, created, extended)."""
    stmt = (
        select(CustomerBlock)
        .where(
            CustomerBlock.tenant_id == tenant_id,
            CustomerBlock.customer_fingerprint == customer_fingerprint,
            CustomerBlock.is_active.is_(True),
        )
        .with_for_update()
    )
    existing = (await session.execute(stmt)).scalar_one_or_none()
    if existing is not None and _in_force(existing, now):
        if existing.blocked_until is None:
            return existing, False, False
        if blocked_until is None or blocked_until > normalize_utc(existing.blocked_until):
            existing.blocked_until = blocked_until
            return existing, False, True
        return existing, False, False

    if existing is not None:
        # Lapsed by time but not yet swept; retire it so the new row can be the active one.
        existing.is_active = False
        await session.flush()

    block = CustomerBlock(
        block_id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        customer_fingerprint=customer_fingerprint,
        reason=reason,
        blocked_at=now,
        blocked_until=blocked_until,
        created_from_penalty_id=penalty_id,
        is_active=True,
        notes=notes,
    )
    session.add(block)
    await session.flush()
    return block, True, False


def _bump_counters(row, violation_type: str) -> None:
    if violation_type == "no_show":
        row.no_show_count += 1
    elif violation_type == "late_cancel":
        row.cancelled_count += 1


async def apply_penalty(
    session: AsyncSession,
    *,
    row: CustomerTrustScore,
    policy: PolicySnapshot,
    violation_type: str,
    related_hold_id: str | None = None,
    notes: str | None = None,
    now: datetime,
) -> RecordPenaltyResult:
    """Write the violation and any block it triggers; the caller holds the customer lock and commits."""
    tenant_id = row.tenant_id
    fingerprint = row.customer_fingerprint
    _bump_counters(row, violation_type)

    if row.is_vip:
        session.add(
            TrustEvent(
                tenant_id=tenant_id,
                customer_fingerprint=fingerprint,
                kind="vip_bypass",
                delta=0,
                related_hold_id=related_hold_id,
                occurred_at=now,
            )
        )
        await session.flush()
        return RecordPenaltyResult(penalty_id=None, vip_bypass=True, new_score=row.score)

    weight = policy.penalty_weight(violation_type)
    prior_strikes = (
        await session.execute(
            select(func.count())
            .select_from(CustomerPenalty)
            .where(
                CustomerPenalty.tenant_id == tenant_id,
                CustomerPenalty.customer_fingerprint == fingerprint,
                CustomerPenalty.violation_type == violation_type,
            )
        )
    ).scalar_one()
    penalty = CustomerPenalty(
        penalty_id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        customer_fingerprint=fingerprint,
        violation_type=violation_type,
        weight=weight,
        strike_count=int(prior_strikes) + 1,
        related_hold_id=related_hold_id,
        notes=notes,
        occurred_at=now,
    )
    session.add(penalty)
    session.add(
        TrustEvent(
            tenant_id=tenant_id,
            customer_fingerprint=fingerprint,
            kind=violation_type,
            delta=-weight,
            penalty_id=penalty.penalty_id,
            related_hold_id=related_hold_id,
            occurred_at=now,
        )
    )
    new_score = await trust_service.recompute_row(session, row, policy, now)

    result = RecordPenaltyResult(
        penalty_id=penalty.penalty_id,
        strike_count=penalty.strike_count,
        new_score=new_score,
    )
    reason, permanent = await _evaluate_block(
        session, policy, tenant_id, fingerprint, violation_type, new_score, now
    )
    if reason is not None:
        blocked_until = None if permanent else now + timedelta(hours=policy.block_duration_hours)
        block, created, extended = await _apply_block(
            session,
            tenant_id=tenant_id,
            customer_fingerprint=fingerprint,
            reason=reason,
            blocked_until=blocked_until,
            now=now,
            penalty_id=penalty.penalty_id,
        )
        result.block_id = block.block_id
        result.block_reason = reason
        result.new_block_created = created
        result.block_extended = extended
        result.blocked_until = (
            normalize_utc(block.blocked_until) if block.blocked_until is not None else None
        )
    return result


def report_penalty(
    result: RecordPenaltyResult,
    *,
    tenant_id: uuid.UUID,
    customer_fingerprint: str,
    violation_type: str,
) -> None:
    """Metrics and logs for a committed ``apply_penalty``."""
    log_context = {
        "tenant_id": str(tenant_id),
        "fingerprint_ref": fingerprint_ref(customer_fingerprint),
        "violation_type": violation_type,
    }
    if result.vip_bypass:
        logger.info("penalty_vip_bypass", extra={"extra": log_context})
        return

    metrics.record_penalty(violation_type)
    logger.info(
        "penalty_recorded",
        extra={
            "extra": {
                **log_context,
                "penalty_id": result.penalty_id,
                "strike_count": result.strike_count,
                "score": result.new_score,
            }
        },
    )
    if result.new_block_created or result.block_extended:
        action = "created" if result.new_block_created else "extended"
        metrics.record_block(action, result.block_reason)
        logger.info(
            "customer_blocked",
            extra={
                "extra": {
                    **log_context,
                    "action": action,
                    "reason": result.block_reason,
                    "block_id": result.block_id,
                    "blocked_until": result.blocked_until.isoformat() if result.blocked_until else None,
                }
            },
        )


async def record_penalty(
    session: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    vertical: str,
    customer_fingerprint: str,
    violation_type: str,
    related_hold_id: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> RecordPenaltyResult:
    """Append a violation, update the trust score and escalate to a block if warranted."""
    if violation_type not in VIOLATION_TYPES:
        raise ValueError(f"unknown_violation_type:{violation_type}")
    current = resolve_now(now)
    fingerprint = normalize_fingerprint(customer_fingerprint)
    policy = await get_policy(session, tenant_id, vertical)

    async with resource_lock(session, trust_service.customer_lock_key(tenant_id, fingerprint)):
        row = await trust_service.ensure_score_row(session, tenant_id, fingerprint, policy, current)
        result = await apply_penalty(
            session,
            row=row,
            policy=policy,
            violation_type=violation_type,
            related_hold_id=related_hold_id,
            notes=notes,
            now=current,
        )
        await session.commit()

    report_penalty(result, tenant_id=tenant_id, customer_fingerprint=fingerprint, violation_type=violation_type)
    return result


async def block_customer(
    session: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    vertical: str,
    customer_fingerprint: str,
    reason: str,
    duration_hours: int | None = None,
    permanent: bool = False,
    notes: str | None = None,
    now: datetime | None = None,
) -> CustomerBlock:
    """Administrative block; extends an active block instead of stacking a second one."""
    if reason not in MANUAL_BLOCK_REASONS:
        raise ValueError(f"invalid_manual_block_reason:{reason}")
    current = resolve_now(now)
    fingerprint = normalize_fingerprint(customer_fingerprint)
    policy = await get_policy(session, tenant_id, vertical)
    hours = duration_hours or policy.block_duration_hours
    blocked_until = None if permanent else current + timedelta(hours=hours)

    async with resource_lock(session, trust_service.customer_lock_key(tenant_id, fingerprint)):
        block, created, extended = await _apply_block(
            session,
            tenant_id=tenant_id,
            customer_fingerprint=fingerprint,
            reason=reason,
            blocked_until=blocked_until,
            now=current,
            notes=notes,
        )
        await session.commit()

    action = "created" if created else ("extended" if extended else "unchanged")
    metrics.record_block(action, reason)
    logger.info(
        "customer_blocked_manually",
        extra={
            "extra": {
                "tenant_id": str(tenant_id),
                "fingerprint_ref": fingerprint_ref(fingerprint),
                "reason": reason,
                "action": action,
                "block_id": block.block_id,
            }
        },
    )
    return block


async def lift_block(
    session: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    block_id: str,
    lifted_by: str | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> CustomerBlock:
    current = resolve_now(now)
    stmt = select(CustomerBlock).where(
        CustomerBlock.tenant_id == tenant_id, CustomerBlock.block_id == block_id
    )
    block = (await session.execute(stmt)).scalar_one_or_none()
    if block is None:
        raise BlockNotFound()
    if not block.is_active:
        return block

    result = await session.execute(
        update(CustomerBlock)
        .where(CustomerBlock.block_id == block_id, CustomerBlock.is_active.is_(True))
        .values(is_active=False, lifted_at=current, lifted_by=lifted_by, lift_reason=reason)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    await session.refresh(block)
    if result.rowcount == 1:
        metrics.record_block("lifted", block.reason)
        logger.info(
            "customer_block_lifted",
            extra={
                "extra": {
                    "tenant_id": str(tenant_id),
                    "block_id": block_id,
                    "lifted_by": lifted_by,
                    "fingerprint_ref": fingerprint_ref(block.customer_fingerprint),
                }
            },
        )
    return block


async def release_expired_blocks(
    session: AsyncSession,
    *,
    now: datetime | None = None,
) -> int:
    """Retire blocks whose ``blocked_until`` has passed.

    ``check_block`` already treats them as lapsed; this only frees the active
    slot and keeps the partial index small.
    """
    current = resolve_now(now)
    result = await session.execute(
        update(CustomerBlock)
        .where(
            CustomerBlock.is_active.is_(True),
            CustomerBlock.blocked_until.is_not(None),
            CustomerBlock.blocked_until <= current,
        )
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    released = int(result.rowcount or 0)
    metrics.record_sweep("release_blocks", released)
    if released:
        logger.info("customer_blocks_released", extra={"extra": {"count": released}})
    return released


async def list_penalties(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    customer_fingerprint: str,
    *,
    limit: int = 100,
) -> list[CustomerPenalty]:
    stmt = (
        select(CustomerPenalty)
        .where(
            CustomerPenalty.tenant_id == tenant_id,
            CustomerPenalty.customer_fingerprint == normalize_fingerprint(customer_fingerprint),
        )
        .order_by(CustomerPenalty.occurred_at.desc())
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars().all())
