from __future__ import annotations

import logging
import uuid
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from secure_booking.domain.policies.db_models import BookingPolicy

logger = logging.getLogger(__name__)

Vertical = Literal["restaurant", "dental", "clinic", "beauty", "retail", "general"]
VERTICALS: tuple[str, ...] = ("restaurant", "dental", "clinic", "beauty", "retail", "general")

ViolationType = Literal["no_show", "late_cancel", "fraud_signal"]


class PolicySnapshot(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tenant_id: uuid.UUID | None = None
    vertical: Vertical = "general"
    source: Literal["default", "tenant"] = "default"

    requires_confirmation: bool = True
    confirmation_timeout_minutes: int = Field(120, ge=5, le=7 * 24 * 60)
    hold_ttl_minutes: int = Field(15, ge=1, le=240)

    no_show_penalty_weight: int = Field(25, ge=0, le=100)
    late_cancel_penalty_weight: int = Field(15, ge=0, le=100)
    fraud_penalty_weight: int = Field(100, ge=0, le=100)
    block_threshold_score: int = Field(75, ge=1)
    block_duration_hours: int = Field(720, ge=1)
    penalty_window_days: int = Field(30, ge=1, le=3650)
    auto_block_no_shows: int = Field(3, ge=0)
    fraud_block_permanent: bool = True

    requires_deposit: bool = False
    deposit_amount_cents: int = Field(10000, ge=0)
    deposit_percent: float | None = Field(None, gt=0, le=1)

    initial_trust_score: int = Field(70, ge=0, le=100)
    completed_delta: int = Field(5, ge=0, le=100)
    cancelled_early_delta: int = Field(0, ge=-100, le=100)
    score_decay_days: int = Field(90, ge=1, le=3650)
    trust_threshold_confirmation: int = Field(80, ge=0, le=101)
    trust_threshold_deposit: int = Field(30, ge=0, le=101)
    trust_threshold_block: int = Field(15, ge=0, le=100)

    late_cancel_window_hours: int = Field(24, ge=0, le=24 * 30)

    def penalty_weight(self, violation_type: str) -> int:
        if violation_type == "no_show":
            return self.no_show_penalty_weight
        if violation_type == "late_cancel":
            return self.late_cancel_penalty_weight
        if violation_type == "fraud_signal":
            return self.fraud_penalty_weight
        raise ValueError(f"unknown_violation_type:{violation_type}")


class BookingRequirements(BaseModel):
    model_config = ConfigDict(extra="forbid")

    requires_confirmation: bool
    requires_deposit: bool
    deposit_cents: int | None = None
    reasons: list[str] = Field(default_factory=list)


# Fields not listed fall back to the PolicySnapshot defaults.
VERTICAL_DEFAULTS: dict[str, dict[str, Any]] = {
    "restaurant": {
        "confirmation_timeout_minutes": 120,
        "hold_ttl_minutes": 15,
    },
    "dental": {
        "confirmation_timeout_minutes": 24 * 60,
        "hold_ttl_minutes": 30,
        "requires_deposit": True,
        "late_cancel_window_hours": 48,
    },
    "clinic": {
        "confirmation_timeout_minutes": 24 * 60,
        "hold_ttl_minutes": 30,
        "requires_deposit": True,
        "late_cancel_window_hours": 48,
    },
    "beauty": {
        "confirmation_timeout_minutes": 12 * 60,
        "hold_ttl_minutes": 20,
    },
    "retail": {
        "requires_confirmation": False,
        "trust_threshold_confirmation": 30,
        "hold_ttl_minutes": 10,
        "late_cancel_window_hours": 2,
    },
    "general": {},
}


def normalize_vertical(vertical: str | None) -> str:
    value = (vertical or "general").strip().lower()
    if value not in VERTICALS:
        raise ValueError(f"unknown_vertical:{vertical}")
    return value


def default_policy(vertical: str, tenant_id: uuid.UUID | None = None) -> PolicySnapshot:
    normalized = normalize_vertical(vertical)
    return PolicySnapshot(
        tenant_id=tenant_id,
        vertical=normalized,
        source="default",
        **VERTICAL_DEFAULTS[normalized],
    )


async def get_policy(session: AsyncSession, tenant_id: uuid.UUID, vertical: str) -> PolicySnapshot:
    normalized = normalize_vertical(vertical)
    stmt = select(BookingPolicy).where(
        BookingPolicy.tenant_id == tenant_id, BookingPolicy.vertical == normalized
    )
    row = (await session.execute(stmt)).scalar_one_or_none()
    if row is None:
        return default_policy(normalized, tenant_id)
    payload = {**VERTICAL_DEFAULTS[normalized], **(row.overrides or {})}
    try:
        return PolicySnapshot(tenant_id=tenant_id, vertical=normalized, source="tenant", **payload)
    except ValidationError:
        # A stored override that no longer validates must not take booking down.
        logger.warning(
            "booking_policy_invalid_override",
            extra={"extra": {"tenant_id": str(tenant_id), "vertical": normalized}},
        )
        return default_policy(normalized, tenant_id)


async def upsert_policy(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    vertical: str,
    changes: dict[str, Any],
    *,
    updated_by: str | None = None,
) -> PolicySnapshot:
    normalized = normalize_vertical(vertical)
    blocked = {"tenant_id", "vertical", "source"} & set(changes)
    if blocked:
        raise ValueError(f"immutable_policy_fields:{','.join(sorted(blocked))}")

    stmt = select(BookingPolicy).where(
        BookingPolicy.tenant_id == tenant_id, BookingPolicy.vertical == normalized
    )
    row = (await session.execute(stmt)).scalar_one_or_none()
    overrides = {**(row.overrides if row else {}), **changes}
    snapshot = PolicySnapshot(
        tenant_id=tenant_id,
        vertical=normalized,
        source="tenant",
        **{**VERTICAL_DEFAULTS[normalized], **overrides},
    )
    if row is None:
        row = BookingPolicy(tenant_id=tenant_id, vertical=normalized, overrides=overrides)
        session.add(row)
    else:
        row.overrides = overrides
    row.updated_by = updated_by
    await session.commit()
    logger.info(
        "booking_policy_updated",
        extra={
            "extra": {
                "tenant_id": str(tenant_id),
                "vertical": normalized,
                "fields": sorted(changes),
            }
        },
    )
    return snapshot


def calculate_deposit_cents(policy: PolicySnapshot, service_amount_cents: int | None = None) -> int:
    if policy.deposit_percent is not None and service_amount_cents:
        return max(1, round(service_amount_cents * policy.deposit_percent))
    return policy.deposit_amount_cents


def evaluate_requirements(
    policy: PolicySnapshot,
    *,
    trust_score: int,
    is_vip: bool = False,
    service_amount_cents: int | None = None,
) -> BookingRequirements:
    if is_vip:
        return BookingRequirements(requires_confirmation=False, requires_deposit=False, reasons=["vip"])

    reasons: list[str] = []
    requires_confirmation = policy.requires_confirmation
    if requires_confirmation:
        reasons.append("policy_confirmation")
    elif trust_score < policy.trust_threshold_confirmation:
        requires_confirmation = True
        reasons.append("low_trust_confirmation")

    requires_deposit = policy.requires_deposit
    if requires_deposit:
        reasons.append("policy_deposit")
    elif trust_score < policy.trust_threshold_deposit:
        requires_deposit = True
        reasons.append("low_trust_deposit")

    deposit_cents = calculate_deposit_cents(policy, service_amount_cents) if requires_deposit else None
    return BookingRequirements(
        requires_confirmation=requires_confirmation,
        requires_deposit=requires_deposit,
        deposit_cents=deposit_cents,
        reasons=reasons,
    )
