from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from secure_booking.shared.timeutils import UtcDateTime

ConfirmationType = Literal["sms_reply", "whatsapp_reply", "link_click"]


class RequestConfirmationRequest(BaseModel):
    channel: ConfirmationType = "whatsapp_reply"
    recipient: str | None = Field(None, max_length=128)


class ConfirmationResponseRequest(BaseModel):
    response: Literal["confirmed", "declined"]
    response_text: str | None = Field(None, max_length=1000)


class InboundReplyRequest(BaseModel):
    customer_fingerprint: str = Field(min_length=3, max_length=128)
    text: str = Field(max_length=1000)


class ConfirmationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    confirmation_id: str
    hold_id: str
    confirmation_type: str
    status: str
    sent_at: UtcDateTime
    expires_at: UtcDateTime
    responded_at: UtcDateTime | None = None
    delivery_status: str | None = None


class InboundReplyResponse(BaseModel):
    intent: str
    confirmation: ConfirmationOut | None = None
