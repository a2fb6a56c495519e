"""Domain models and DTOs."""

from kin.domain.completion import (
    Achievement,
    ActivityItem,
    CompletionOutcome,
    CompletionStatus,
    JudgeModel,
    LeaderboardEntry,
    MemberStats,
    PointsEntry,
    TaskCompletion,
    TaskDayState,
    UserSummary,
    VerificationResult,
    WeekBounds,
)
from kin.domain.task import (
    BUILTIN_TASKS,
    REQUIRED_TASK_KINDS,
    WEEKLY_GOAL_TASK_KIND,
    MetricDefinition,
    MetricType,
    TaskDefinition,
    TaskKind,
    validate_details,
)


__all__ = [
    "BUILTIN_TASKS",
    "REQUIRED_TASK_KINDS",
    "WEEKLY_GOAL_TASK_KIND",
    "Achievement",
    "ActivityItem",
    "CompletionOutcome",
    "CompletionStatus",
    "JudgeModel",
    "LeaderboardEntry",
    "MemberStats",
    "MetricDefinition",
    "MetricType",
    "PointsEntry",
    "TaskCompletion",
    "TaskDayState",
    "TaskDefinition",
    "TaskKind",
    "UserSummary",
    "VerificationResult",
    "WeekBounds",
    "validate_details",
]
