import logging
import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from secure_booking.api.deps import get_tenant_id, require_admin
from secure_booking.domain.penalties import schemas as penalty_schemas
from secure_booking.domain.penalties import service as penalty_service
from secure_booking.domain.policies import schemas as policy_schemas
from secure_booking.domain.policies import service as policy_service
from secure_booking.domain.trust import schemas as trust_schemas
from secure_booking.domain.trust import service as trust_service
from secure_booking.infra.db import get_db_session
from secure_booking.settings import settings

router = APIRouter(prefix="/v1/admin", dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


@router.post("/blocks/{block_id}/lift", response_model=penalty_schemas.BlockOut)
async def lift_block(
    block_id: str,
    payload: penalty_schemas.LiftBlockRequest | None = None,
    actor: str = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> penalty_schemas.BlockOut:
    block = await penalty_service.lift_block(
        session,
        tenant_id=tenant_id,
        block_id=block_id,
        lifted_by=actor,
        reason=payload.reason if payload else None,
    )
    return penalty_schemas.BlockOut.model_validate(block)


@router.post(
    "/customers/{customer_fingerprint}/block",
    response_model=penalty_schemas.BlockOut,
    status_code=status.HTTP_201_CREATED,
)
async def block_customer(
    customer_fingerprint: str,
    payload: penalty_schemas.ManualBlockRequest,
    vertical: str | None = Query(None, max_length=32),
    actor: str = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> penalty_schemas.BlockOut:
    block = await penalty_service.block_customer(
        session,
        tenant_id=tenant_id,
        vertical=vertical or settings.default_vertical,
        customer_fingerprint=customer_fingerprint,
        reason=payload.reason,
        duration_hours=payload.duration_hours,
        permanent=payload.permanent,
        notes=payload.notes,
    )
    logger.info(
        "admin_block_requested",
        extra={"extra": {"actor": actor, "block_id": block.block_id, "reason": payload.reason}},
    )
    return penalty_schemas.BlockOut.model_validate(block)


@router.post("/customers/{customer_fingerprint}/vip", response_model=trust_schemas.TrustScoreResponse)
async def set_vip(
    customer_fingerprint: str,
    payload: trust_schemas.VipRequest,
    vertical: str | None = Query(None, max_length=32),
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> trust_schemas.TrustScoreResponse:
    view = await trust_service.set_vip(
        session,
        tenant_id=tenant_id,
        vertical=vertical or settings.default_vertical,
        customer_fingerprint=customer_fingerprint,
        is_vip=payload.is_vip,
    )
    return trust_schemas.TrustScoreResponse.from_view(view)


@router.get("/policies/{vertical}", response_model=policy_service.PolicySnapshot)
async def get_policy(
    vertical: str,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> policy_service.PolicySnapshot:
    return await policy_service.get_policy(session, tenant_id, vertical)


@router.put("/policies/{vertical}", response_model=policy_service.PolicySnapshot)
async def update_policy(
    vertical: str,
    payload: policy_schemas.PolicyUpdateRequest,
    actor: str = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> policy_service.PolicySnapshot:
    return await policy_service.upsert_policy(
        session, tenant_id, vertical, payload.changes, updated_by=actor
    )
