import uuid

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from secure_booking.api.deps import get_tenant_id
from secure_booking.api.problem_details import problem_details
from secure_booking.domain.bookings import schemas as booking_schemas
from secure_booking.domain.errors import CustomerBlocked, LockTimeout, ResourceConflict
from secure_booking.domain.holds import schemas as hold_schemas
from secure_booking.domain.holds import service as hold_service
from secure_booking.infra.db import get_db_session, retry_db_operation
from secure_booking.settings import settings

router = APIRouter()

_FAILURE_STATUS = {
    ResourceConflict.code: ResourceConflict,
    CustomerBlocked.code: CustomerBlocked,
    LockTimeout.code: LockTimeout,
}


@router.post(
    "/v1/holds",
    response_model=hold_schemas.AcquireHoldResponse,
    status_code=status.HTTP_201_CREATED,
)
async def acquire_hold(
    payload: hold_schemas.AcquireHoldRequest,
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    result = await retry_db_operation(
        session,
        lambda: hold_service.acquire_hold(
            session,
            tenant_id=tenant_id,
            vertical=payload.vertical or settings.default_vertical,
            resource_id=payload.resource_id,
            window_start=payload.window_start,
            window_end=payload.window_end,
            customer_fingerprint=payload.customer_fingerprint,
            hold_type=payload.hold_type,
            ttl_minutes=payload.ttl_minutes,
            service_amount_cents=payload.service_amount_cents,
        ),
        name="acquire_hold",
    )
    if not result.success:
        error_cls = _FAILURE_STATUS[result.error_code]
        return problem_details(
            request,
            status=error_cls.status_code,
            title=error_cls.title,
            detail=result.message or error_cls.default_detail,
            type_=error_cls().type,
            code=result.error_code,
            headers={"Retry-After": "2"} if error_cls is LockTimeout else None,
        )
    return hold_schemas.AcquireHoldResponse(
        success=True,
        hold_id=result.hold_id,
        expires_at=result.expires_at,
        requires_confirmation=result.requires_confirmation,
        requires_deposit=result.requires_deposit,
        deposit_cents=result.deposit_cents,
    )


@router.get("/v1/holds/{hold_id}", response_model=hold_schemas.HoldResponse)
async def get_hold(
    hold_id: str,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> hold_schemas.HoldResponse:
    hold = await hold_service.get_hold(session, tenant_id, hold_id)
    return hold_schemas.HoldResponse.from_hold(hold)


@router.post("/v1/holds/{hold_id}/extend", response_model=hold_schemas.HoldResponse)
async def extend_hold(
    hold_id: str,
    payload: hold_schemas.ExtendHoldRequest,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> hold_schemas.HoldResponse:
    hold = await retry_db_operation(
        session,
        lambda: hold_service.extend_hold(session, tenant_id, hold_id, payload.additional_minutes),
        name="extend_hold",
    )
    return hold_schemas.HoldResponse.from_hold(hold)


@router.post("/v1/holds/{hold_id}/release", response_model=hold_schemas.HoldResponse)
async def release_hold(
    hold_id: str,
    payload: hold_schemas.ReleaseHoldRequest | None = None,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> hold_schemas.HoldResponse:
    reason = payload.reason if payload else "released"
    hold = await retry_db_operation(
        session,
        lambda: hold_service.release_hold(session, tenant_id, hold_id, reason=reason),
        name="release_hold",
    )
    return hold_schemas.HoldResponse.from_hold(hold)


@router.post(
    "/v1/holds/{hold_id}/convert",
    response_model=booking_schemas.BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
async def convert_hold(
    hold_id: str,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    booking = await retry_db_operation(
        session,
        lambda: hold_service.convert_to_booking(session, tenant_id, hold_id),
        name="convert_to_booking",
    )
    return booking_schemas.BookingResponse.model_validate(booking)
