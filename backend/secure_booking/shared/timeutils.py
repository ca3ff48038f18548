from datetime import datetime, timezone
from typing import Annotated

from pydantic import AfterValidator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_utc(dt: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def resolve_now(now: datetime | None) -> datetime:
    return normalize_utc(now) if now is not None else utcnow()


# Response fields read back from the database always serialize with an offset.
UtcDateTime = Annotated[datetime, AfterValidator(normalize_utc)]
