import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from secure_booking.api.deps import get_tenant_id
from secure_booking.domain.penalties import schemas as penalty_schemas
from secure_booking.domain.penalties import service as penalty_service
from secure_booking.domain.trust import schemas as trust_schemas
from secure_booking.domain.trust import service as trust_service
from secure_booking.infra.db import get_db_session, retry_db_operation
from secure_booking.settings import settings

router = APIRouter(prefix="/v1/customers")


def _vertical(vertical: str | None = Query(None, max_length=32)) -> str:
    return vertical or settings.default_vertical


@router.get("/{customer_fingerprint}/trust", response_model=trust_schemas.TrustScoreResponse)
async def get_trust_score(
    customer_fingerprint: str,
    vertical: str = Depends(_vertical),
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> trust_schemas.TrustScoreResponse:
    view = await retry_db_operation(
        session,
        lambda: trust_service.get_score(session, tenant_id, vertical, customer_fingerprint),
        name="get_trust_score",
    )
    return trust_schemas.TrustScoreResponse.from_view(view)


@router.post("/{customer_fingerprint}/outcomes", response_model=trust_schemas.TrustScoreResponse)
async def record_outcome(
    customer_fingerprint: str,
    payload: trust_schemas.RecordOutcomeRequest,
    vertical: str = Depends(_vertical),
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> trust_schemas.TrustScoreResponse:
    view = await trust_service.record_outcome(
        session,
        tenant_id=tenant_id,
        vertical=vertical,
        customer_fingerprint=customer_fingerprint,
        outcome=payload.outcome,
        related_hold_id=payload.related_hold_id,
    )
    return trust_schemas.TrustScoreResponse.from_view(view)


@router.get("/{customer_fingerprint}/block", response_model=penalty_schemas.CheckBlockResponse)
async def check_block(
    customer_fingerprint: str,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> penalty_schemas.CheckBlockResponse:
    result = await penalty_service.check_block(session, tenant_id, customer_fingerprint)
    return penalty_schemas.CheckBlockResponse(
        blocked=result.blocked,
        blocked_until=result.blocked_until,
        reason=result.reason,
        permanent=result.permanent,
    )


@router.post(
    "/{customer_fingerprint}/penalties",
    response_model=penalty_schemas.RecordPenaltyResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_penalty(
    customer_fingerprint: str,
    payload: penalty_schemas.RecordPenaltyRequest,
    vertical: str = Depends(_vertical),
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> penalty_schemas.RecordPenaltyResponse:
    # Not retried: a second attempt after a lost commit acknowledgement would add a strike.
    result = await penalty_service.record_penalty(
        session,
        tenant_id=tenant_id,
        vertical=vertical,
        customer_fingerprint=customer_fingerprint,
        violation_type=payload.violation_type,
        related_hold_id=payload.related_hold_id,
        notes=payload.notes,
    )
    return penalty_schemas.RecordPenaltyResponse(
        penalty_id=result.penalty_id,
        new_block_created=result.new_block_created,
        block_id=result.block_id,
        block_extended=result.block_extended,
        blocked_until=result.blocked_until,
        strike_count=result.strike_count,
        new_score=result.new_score,
        vip_bypass=result.vip_bypass,
    )


@router.get("/{customer_fingerprint}/penalties", response_model=list[penalty_schemas.PenaltyOut])
async def list_penalties(
    customer_fingerprint: str,
    limit: int = Query(100, ge=1, le=500),
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> list[penalty_schemas.PenaltyOut]:
    penalties = await penalty_service.list_penalties(session, tenant_id, customer_fingerprint, limit=limit)
    return [penalty_schemas.PenaltyOut.model_validate(item) for item in penalties]
