from pydantic import BaseModel, ConfigDict

from secure_booking.shared.timeutils import UtcDateTime


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    hold_id: str
    vertical: str
    resource_id: str
    window_start: UtcDateTime
    window_end: UtcDateTime
    status: str
    deposit_required: bool
    deposit_cents: int | None = None
    outcome_recorded_at: UtcDateTime | None = None
