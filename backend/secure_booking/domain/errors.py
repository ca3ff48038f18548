from dataclasses import dataclass, field
from typing import ClassVar, List

PROBLEM_TYPE_BASE = "https://secure-booking.dev/problems"


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = f"{PROBLEM_TYPE_BASE}/domain-error"
    errors: List[dict] | None = None


@dataclass
class BookingError(DomainError):
    """Base for booking-flow failures that carry a stable machine code.

    ``category`` groups errors by how a caller should react: ``conflict`` and
    ``policy`` are routine business outcomes, ``temporal`` means the caller acted
    on stale state and must re-fetch, ``infrastructure`` is retryable.
    """

    code: ClassVar[str] = "BOOKING_ERROR"
    category: ClassVar[str] = "domain"
    status_code: ClassVar[int] = 400
    default_detail: ClassVar[str] = "The booking request could not be completed."

    detail: str = ""
    title: str = "Booking Error"
    extra: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.detail:
            self.detail = self.default_detail
        self.type = f"{PROBLEM_TYPE_BASE}/{self.code.lower().replace('_', '-')}"

    def __str__(self) -> str:
        return f"{self.code}: {self.detail}"


@dataclass
class ResourceConflict(BookingError):
    code: ClassVar[str] = "RESOURCE_CONFLICT"
    category: ClassVar[str] = "conflict"
    status_code: ClassVar[int] = 409
    default_detail: ClassVar[str] = "This slot was just taken. Please choose another time."
    title: str = "Slot Unavailable"


@dataclass
class AlreadyResponded(BookingError):
    code: ClassVar[str] = "ALREADY_RESPONDED"
    category: ClassVar[str] = "conflict"
    status_code: ClassVar[int] = 409
    default_detail: ClassVar[str] = "This confirmation has already been answered."
    title: str = "Already Responded"


@dataclass
class CustomerBlocked(BookingError):
    code: ClassVar[str] = "CUSTOMER_BLOCKED"
    category: ClassVar[str] = "policy"
    status_code: ClassVar[int] = 403
    default_detail: ClassVar[str] = (
        "We can't take a booking for this number right now. Please contact the business."
    )
    title: str = "Booking Not Allowed"


@dataclass
class ConfirmationRequired(BookingError):
    code: ClassVar[str] = "CONFIRMATION_REQUIRED"
    category: ClassVar[str] = "policy"
    status_code: ClassVar[int] = 409
    default_detail: ClassVar[str] = "The reservation must be confirmed before it can be finalised."
    title: str = "Confirmation Required"


@dataclass
class HoldAlreadyTerminal(BookingError):
    code: ClassVar[str] = "HOLD_ALREADY_TERMINAL"
    category: ClassVar[str] = "temporal"
    status_code: ClassVar[int] = 409
    default_detail: ClassVar[str] = "This hold is no longer active."
    title: str = "Hold Not Active"


@dataclass
class HoldNotActive(BookingError):
    code: ClassVar[str] = "HOLD_NOT_ACTIVE"
    category: ClassVar[str] = "temporal"
    status_code: ClassVar[int] = 409
    default_detail: ClassVar[str] = "This hold is no longer active."
    title: str = "Hold Not Active"


@dataclass
class ConfirmationExpired(BookingError):
    code: ClassVar[str] = "CONFIRMATION_EXPIRED"
    category: ClassVar[str] = "temporal"
    status_code: ClassVar[int] = 410
    default_detail: ClassVar[str] = "This confirmation request has expired."
    title: str = "Confirmation Expired"


@dataclass
class HoldWindowInvalid(BookingError):
    code: ClassVar[str] = "HOLD_WINDOW_INVALID"
    category: ClassVar[str] = "validation"
    status_code: ClassVar[int] = 422
    default_detail: ClassVar[str] = "The requested time window is not valid."
    title: str = "Invalid Time Window"


@dataclass
class HoldNotFound(BookingError):
    code: ClassVar[str] = "HOLD_NOT_FOUND"
    category: ClassVar[str] = "not_found"
    status_code: ClassVar[int] = 404
    default_detail: ClassVar[str] = "Hold not found."
    title: str = "Not Found"


@dataclass
class ConfirmationNotFound(BookingError):
    code: ClassVar[str] = "CONFIRMATION_NOT_FOUND"
    category: ClassVar[str] = "not_found"
    status_code: ClassVar[int] = 404
    default_detail: ClassVar[str] = "Confirmation not found."
    title: str = "Not Found"


@dataclass
class BlockNotFound(BookingError):
    code: ClassVar[str] = "BLOCK_NOT_FOUND"
    category: ClassVar[str] = "not_found"
    status_code: ClassVar[int] = 404
    default_detail: ClassVar[str] = "Block not found."
    title: str = "Not Found"


@dataclass
class BookingNotFound(BookingError):
    code: ClassVar[str] = "BOOKING_NOT_FOUND"
    category: ClassVar[str] = "not_found"
    status_code: ClassVar[int] = 404
    default_detail: ClassVar[str] = "Booking not found."
    title: str = "Not Found"


@dataclass
class BookingAlreadyFinal(BookingError):
    code: ClassVar[str] = "BOOKING_ALREADY_FINAL"
    category: ClassVar[str] = "temporal"
    status_code: ClassVar[int] = 409
    default_detail: ClassVar[str] = "This booking already has a recorded outcome."
    title: str = "Booking Already Final"


@dataclass
class LockTimeout(BookingError):
    code: ClassVar[str] = "LOCK_TIMEOUT"
    category: ClassVar[str] = "infrastructure"
    status_code: ClassVar[int] = 503
    default_detail: ClassVar[str] = "The slot is busy right now. Please try again in a few seconds."
    title: str = "Try Again"
