"""Request DTOs for the completion API."""

from datetime import date
from typing import Any

from pydantic import BaseModel, Field


class StartSession(BaseModel):
    """Open a verification session for one task on one day."""

    user_id: str = Field(..., min_length=1)
    family_id: str = Field(..., min_length=1)
    task_kind: str = Field(..., min_length=1)
    target_date: date | None = Field(default=None, description="Defaults to today")


class EvidenceUpload(BaseModel):
    """Proof photo as base64, or no image to complete on trust."""

    image_base64: str | None = Field(default=None, description="Base64-encoded image bytes")
    content_type: str = Field(default="image/jpeg", pattern=r"^image/[a-z0-9.+-]+$")


class SubmitCompletion(StartSession, EvidenceUpload):
    """Scripted submission up to the pending record."""

    confirm_backdate: bool = False
    continue_on_failure: bool = False


class CompletionDetails(BaseModel):
    """Metric values entered for a completion."""

    details: dict[str, Any] = Field(default_factory=dict)


class SlotRef(BaseModel):
    """Identifies one (user, task, day) slot."""

    user_id: str = Field(..., min_length=1)
    task_kind: str = Field(..., min_length=1)
    day: date


class WeeklyGoalUpdate(BaseModel):
    family_id: str = Field(..., min_length=1)
    goal: int = Field(..., ge=0, description="Distinct days per week")
