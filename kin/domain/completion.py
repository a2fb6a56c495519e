"""Completion, verification and ledger domain models."""

from datetime import date, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from kin.core.config import constants


class CompletionStatus(StrEnum):
    """Lifecycle status of a task completion."""

    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class JudgeModel(StrEnum):
    """Provenance tags for verification results that did not come from an AI model."""

    MANUAL = "manual"
    MANUAL_OVERRIDE = "manual-override"


class VerificationResult(BaseModel):
    """Outcome of an AI judgment or a manual override."""

    is_verified: bool = Field(..., description="True if the evidence matches the task")
    confidence: float = Field(default=0.0, description="Judge confidence, clamped to [0, 1]")
    reason: str = Field(default="", description="Short human-readable explanation")
    model: str = Field(..., description="Judge identifier: 'manual', 'manual-override' or a model name")

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return 0.0
        if numeric != numeric:  # NaN
            return 0.0
        return min(1.0, max(0.0, numeric))

    @field_validator("reason", mode="before")
    @classmethod
    def _bound_reason(cls, value: Any) -> str:
        text = str(value).strip() if value is not None else ""
        if not text:
            return "No reasoning provided"
        return text[: constants.VERIFICATION_REASON_MAX_CHARS]

    @classmethod
    def no_evidence(cls) -> "VerificationResult":
        """Synthetic result for completions marked done on trust."""
        return cls(is_verified=True, confidence=1.0, reason="no evidence required", model=JudgeModel.MANUAL)

    @classmethod
    def degraded(cls, reason: str = "verification unavailable, continued by user") -> "VerificationResult":
        """Result used when the user continues despite a failed AI judgment."""
        return cls(is_verified=True, confidence=0.0, reason=reason, model=JudgeModel.MANUAL_OVERRIDE)


class TaskCompletion(BaseModel):
    """One attempt to satisfy a task on a specific calendar day."""

    id: str = Field(..., description="Unique completion ID from database")
    user_id: str
    family_id: str
    task_kind: str
    completed_date: date = Field(..., description="Calendar day the completion counts for")
    proof_ref: str | None = Field(default=None, description="Reference to the uploaded proof image")
    status: CompletionStatus
    verification: VerificationResult | None = None
    details: dict[str, Any] = Field(default_factory=dict, description="Task-specific metrics")
    verified_at: datetime | None = Field(default=None, description="Set on transition into verified")
    created: str | None = None


class PointsEntry(BaseModel):
    """Immutable ledger row. A user's total is the sum of their entries."""

    id: str
    user_id: str
    family_id: str
    points: int
    source: str
    completion_id: str | None = None
    created: str | None = None


class WeekBounds(BaseModel):
    """Inclusive calendar window of one display week."""

    start: date
    end: date


class Achievement(BaseModel):
    """Recorded weekly goal achievement."""

    id: str
    user_id: str
    family_id: str
    achievement_type: str
    week_start: date
    week_end: date
    data: dict[str, Any] = Field(default_factory=dict)


class MemberStats(BaseModel):
    """Cached per-member values. Never the source of truth for points."""

    user_id: str
    family_id: str
    current_streak: int = 0
    weekly_goal: int | None = None


class CompletionOutcome(BaseModel):
    """Read-after-write view returned when a completion is finalized."""

    completion: TaskCompletion
    points_awarded: int
    total_points: int
    current_streak: int
    week: list[bool]
    weekly_goal_achieved: bool = False


class TaskDayState(BaseModel):
    """Today's state of one task for a member."""

    task_kind: str
    name: str
    completed: bool
    completion_id: str | None = None


class UserSummary(BaseModel):
    """Points, streak and week view for one member."""

    user_id: str
    family_id: str
    total_points: int
    current_streak: int
    week_start: date
    week: list[bool]
    today: list[TaskDayState]


class LeaderboardEntry(BaseModel):
    """One member's standing within a family."""

    rank: int = Field(..., ge=1)
    user_id: str
    total_points: int = Field(..., ge=0)
    current_streak: int = Field(..., ge=0)


class ActivityItem(BaseModel):
    """A verified completion as shown in the family feed."""

    completion_id: str
    user_id: str
    task_kind: str
    task_name: str
    completed_date: date
    proof_ref: str | None = None
    verified_at: datetime | None = None
