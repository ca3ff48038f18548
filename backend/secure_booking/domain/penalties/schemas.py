from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from secure_booking.shared.timeutils import UtcDateTime

ViolationType = Literal["no_show", "late_cancel", "fraud_signal"]
ManualBlockReason = Literal["manual_abuse", "manual_fraud", "manual_other"]


class RecordPenaltyRequest(BaseModel):
    violation_type: ViolationType
    related_hold_id: str | None = Field(None, max_length=36)
    notes: str | None = Field(None, max_length=500)


class RecordPenaltyResponse(BaseModel):
    penalty_id: str | None
    new_block_created: bool
    block_id: str | None = None
    block_extended: bool = False
    blocked_until: UtcDateTime | None = None
    strike_count: int = 0
    new_score: int | None = None
    vip_bypass: bool = False


class PenaltyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    penalty_id: str
    violation_type: str
    weight: int
    strike_count: int
    related_hold_id: str | None = None
    occurred_at: UtcDateTime


class CheckBlockResponse(BaseModel):
    blocked: bool
    blocked_until: UtcDateTime | None = None
    reason: str | None = None
    permanent: bool = False


class BlockOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    block_id: str
    reason: str
    blocked_at: UtcDateTime
    blocked_until: UtcDateTime | None = None
    is_active: bool
    lifted_at: UtcDateTime | None = None
    lifted_by: str | None = None
    lift_reason: str | None = None


class LiftBlockRequest(BaseModel):
    reason: str | None = Field(None, max_length=255)


class ManualBlockRequest(BaseModel):
    reason: ManualBlockReason
    duration_hours: int | None = Field(None, ge=1, le=24 * 365)
    permanent: bool = False
    notes: str | None = Field(None, max_length=500)

    @model_validator(mode="after")
    def validate_duration(self) -> "ManualBlockRequest":
        if self.permanent and self.duration_hours is not None:
            raise ValueError("duration_hours cannot be combined with permanent")
        return self
