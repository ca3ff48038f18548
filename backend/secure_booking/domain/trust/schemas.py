from typing import Literal

from pydantic import BaseModel, Field

from secure_booking.shared.pii_masking import mask_fingerprint
from secure_booking.shared.timeutils import UtcDateTime

Outcome = Literal["completed", "cancelled_early", "cancelled_late", "no_show"]


class RecordOutcomeRequest(BaseModel):
    outcome: Outcome
    related_hold_id: str | None = Field(None, max_length=36)


class TrustScoreResponse(BaseModel):
    customer: str | None
    score: int
    level: str
    completed_count: int
    cancelled_count: int
    no_show_count: int
    is_vip: bool
    requires_confirmation: bool
    requires_deposit: bool
    last_updated_at: UtcDateTime | None = None

    @classmethod
    def from_view(cls, view) -> "TrustScoreResponse":
        return cls(
            customer=mask_fingerprint(view.customer_fingerprint),
            score=view.score,
            level=view.level,
            completed_count=view.completed_count,
            cancelled_count=view.cancelled_count,
            no_show_count=view.no_show_count,
            is_vip=view.is_vip,
            requires_confirmation=view.requires_confirmation,
            requires_deposit=view.requires_deposit,
            last_updated_at=view.last_updated_at,
        )


class VipRequest(BaseModel):
    is_vip: bool
