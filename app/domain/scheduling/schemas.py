"""Scheduling domain schemas - Pydantic models for validation"""

from datetime import date, time
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class UpdateCounts(BaseModel):
    confirmed: int
    completed: int
    archived: int
    total: int


class AutoUpdateResponse(BaseModel):
    """Result of one auto-update batch, as returned to triggers"""

    success: bool
    timestamp: str
    duration: str  # e.g. "42ms"
    updates: UpdateCounts
    errors: list[dict[str, Any]]
    skipped: bool = False
    debug: Optional[list[dict[str, Any]]] = None


class RescheduleRequest(BaseModel):
    """Schema for moving an appointment to a new slot"""

    model_config = ConfigDict(populate_by_name=True)

    new_date: date = Field(alias="newDate")
    new_time: time = Field(alias="newTime")

    @field_validator("new_time")
    @classmethod
    def drop_seconds(cls, v: time) -> time:
        # Slots are minute-aligned
        return v.replace(second=0, microsecond=0)


class RescheduleResponse(BaseModel):
    success: bool
    message: str
    oldDate: str
    oldTime: str
    newDate: str
    newTime: str
