from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from secure_booking.shared.pii_masking import mask_fingerprint
from secure_booking.shared.timeutils import UtcDateTime

HoldType = Literal["table", "appointment_slot", "delivery_slot"]


class AcquireHoldRequest(BaseModel):
    resource_id: str = Field(min_length=1, max_length=128)
    window_start: datetime
    window_end: datetime
    customer_fingerprint: str = Field(min_length=3, max_length=128)
    hold_type: HoldType = "appointment_slot"
    vertical: str | None = None
    ttl_minutes: int | None = Field(None, ge=1, le=240)
    service_amount_cents: int | None = Field(None, ge=0)


class AcquireHoldResponse(BaseModel):
    success: bool
    hold_id: str | None = None
    expires_at: UtcDateTime | None = None
    error_code: str | None = None
    requires_confirmation: bool = False
    requires_deposit: bool = False
    deposit_cents: int | None = None


class ExtendHoldRequest(BaseModel):
    additional_minutes: int = Field(ge=1, le=120)


class ReleaseHoldRequest(BaseModel):
    reason: str = Field("released", min_length=1, max_length=64)


class HoldResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    hold_id: str
    vertical: str
    resource_id: str
    hold_type: str
    window_start: UtcDateTime
    window_end: UtcDateTime
    customer: str | None = None
    status: str
    expires_at: UtcDateTime
    requires_confirmation: bool
    requires_deposit: bool
    deposit_cents: int | None = None
    release_reason: str | None = None

    @classmethod
    def from_hold(cls, hold) -> "HoldResponse":
        response = cls.model_validate(hold)
        response.customer = mask_fingerprint(hold.customer_fingerprint)
        return response
