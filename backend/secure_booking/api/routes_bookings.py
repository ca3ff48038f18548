import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from secure_booking.api.deps import get_tenant_id
from secure_booking.domain.bookings import schemas as booking_schemas
from secure_booking.domain.bookings import service as booking_service
from secure_booking.infra.db import get_db_session, retry_db_operation

router = APIRouter(prefix="/v1/bookings")


@router.get("/{booking_id}", response_model=booking_schemas.BookingResponse)
async def get_booking(
    booking_id: str,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> booking_schemas.BookingResponse:
    booking = await booking_service.get_booking(session, tenant_id, booking_id)
    return booking_schemas.BookingResponse.model_validate(booking)


@router.post("/{booking_id}/complete", response_model=booking_schemas.BookingResponse)
async def complete_booking(
    booking_id: str,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> booking_schemas.BookingResponse:
    booking = await retry_db_operation(
        session,
        lambda: booking_service.complete_booking(session, tenant_id, booking_id),
        name="complete_booking",
    )
    return booking_schemas.BookingResponse.model_validate(booking)


@router.post("/{booking_id}/cancel", response_model=booking_schemas.BookingResponse)
async def cancel_booking(
    booking_id: str,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> booking_schemas.BookingResponse:
    booking = await retry_db_operation(
        session,
        lambda: booking_service.cancel_booking(session, tenant_id, booking_id),
        name="cancel_booking",
    )
    return booking_schemas.BookingResponse.model_validate(booking)


@router.post("/{booking_id}/no-show", response_model=booking_schemas.BookingResponse)
async def mark_no_show(
    booking_id: str,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> booking_schemas.BookingResponse:
    booking = await retry_db_operation(
        session,
        lambda: booking_service.mark_no_show(session, tenant_id, booking_id),
        name="mark_no_show",
    )
    return booking_schemas.BookingResponse.model_validate(booking)
