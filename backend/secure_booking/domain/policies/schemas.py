from typing import Any

from pydantic import BaseModel, Field


class PolicyUpdateRequest(BaseModel):
    """Partial update; only the fields sent are stored as tenant overrides."""

    changes: dict[str, Any] = Field(min_length=1)
