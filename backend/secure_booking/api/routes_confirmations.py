import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from secure_booking.api.deps import get_confirmation_dispatcher, get_tenant_id
from secure_booking.domain.confirmations import schemas as confirmation_schemas
from secure_booking.domain.confirmations import service as confirmation_service
from secure_booking.infra.communication import ConfirmationDispatcher
from secure_booking.infra.db import get_db_session, retry_db_operation

router = APIRouter()


@router.post(
    "/v1/holds/{hold_id}/confirmations",
    response_model=confirmation_schemas.ConfirmationOut,
    status_code=status.HTTP_201_CREATED,
)
async def request_confirmation(
    hold_id: str,
    payload: confirmation_schemas.RequestConfirmationRequest | None = None,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    dispatcher: ConfirmationDispatcher = Depends(get_confirmation_dispatcher),
) -> confirmation_schemas.ConfirmationOut:
    payload = payload or confirmation_schemas.RequestConfirmationRequest()
    confirmation = await retry_db_operation(
        session,
        lambda: confirmation_service.request_confirmation(
            session,
            tenant_id=tenant_id,
            hold_id=hold_id,
            channel=payload.channel,
            dispatcher=dispatcher,
            recipient=payload.recipient,
        ),
        name="request_confirmation",
    )
    return confirmation_schemas.ConfirmationOut.model_validate(confirmation)


@router.post(
    "/v1/confirmations/{confirmation_id}/response",
    response_model=confirmation_schemas.ConfirmationOut,
)
async def record_confirmation_response(
    confirmation_id: str,
    payload: confirmation_schemas.ConfirmationResponseRequest,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> confirmation_schemas.ConfirmationOut:
    confirmation = await retry_db_operation(
        session,
        lambda: confirmation_service.record_response(
            session,
            tenant_id=tenant_id,
            confirmation_id=confirmation_id,
            response=payload.response,
            response_text=payload.response_text,
        ),
        name="record_confirmation_response",
    )
    return confirmation_schemas.ConfirmationOut.model_validate(confirmation)


@router.post(
    "/v1/confirmations/replies",
    response_model=confirmation_schemas.InboundReplyResponse,
)
async def inbound_reply(
    payload: confirmation_schemas.InboundReplyRequest,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> confirmation_schemas.InboundReplyResponse:
    """Webhook target for free-text SMS/WhatsApp answers."""
    result = await retry_db_operation(
        session,
        lambda: confirmation_service.record_reply_text(
            session,
            tenant_id=tenant_id,
            customer_fingerprint=payload.customer_fingerprint,
            text=payload.text,
        ),
        name="record_reply_text",
    )
    confirmation = (
        confirmation_schemas.ConfirmationOut.model_validate(result.confirmation)
        if result.confirmation is not None
        else None
    )
    return confirmation_schemas.InboundReplyResponse(intent=result.intent, confirmation=confirmation)


@router.get(
    "/v1/confirmations/{confirmation_id}",
    response_model=confirmation_schemas.ConfirmationOut,
)
async def get_confirmation(
    confirmation_id: str,
    session: AsyncSession = Depends(get_db_session),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> confirmation_schemas.ConfirmationOut:
    confirmation = await confirmation_service.get_confirmation(session, tenant_id, confirmation_id)
    return confirmation_schemas.ConfirmationOut.model_validate(confirmation)
