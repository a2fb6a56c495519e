"""Task definitions: built-in task kinds plus family-defined tasks with metric schemas."""

import math
from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from kin.core.errors import DetailValidationError


class TaskKind(StrEnum):
    """Built-in task kinds every family has."""

    WORKOUT = "workout"
    BIBLE_READING = "bible_reading"


class MetricType(StrEnum):
    """Value type of a task metric."""

    NUMBER = "number"
    TEXT = "text"


class MetricDefinition(BaseModel):
    """One field a user may (or must) fill in when finalizing a completion."""

    name: str = Field(..., pattern=r"^[a-z][a-z0-9_]*$", description="Key used in the details map")
    type: MetricType = Field(default=MetricType.TEXT, description="number or text")
    required: bool = Field(default=False, description="Whether the field must be present")
    unit: str = Field(default="", description="Display unit (e.g. 'min', 'kcal')")


class TaskDefinition(BaseModel):
    """A task a family member can complete once per day."""

    kind: str = Field(..., pattern=r"^[a-z][a-z0-9_]*$", description="Stable identifier stored on completions")
    name: str = Field(..., description="Display name")
    metrics: list[MetricDefinition] = Field(default_factory=list, description="Detail schema")
    points: int = Field(default=10, ge=0, description="Points granted when a completion is finalized")
    verification_prompt: str = Field(default="", description="Task-specific instructions for the AI judge")
    builtin: bool = Field(default=False, description="True for TaskKind members")


WORKOUT_PROMPT = """Task: Verify if this photo shows someone working out or engaging in a fitness activity.
Look for:
- Presence of gym equipment, workout gear, or exercise movements.
- Context that clearly indicates a workout (gym setting, weights, cardio machines, etc.).

If the evidence is unclear or missing, set is_verified to false."""

BIBLE_READING_PROMPT = """Task: Verify if this photo shows someone reading the Bible or engaging in Bible study.
Look for:
- An open Bible or digital scripture clearly visible.
- A person actively reading or studying the Bible.
- Context that indicates faith-based study.

If the evidence is unclear or missing, set is_verified to false."""


BUILTIN_TASKS: dict[str, TaskDefinition] = {
    TaskKind.WORKOUT: TaskDefinition(
        kind=TaskKind.WORKOUT,
        name="Workout",
        metrics=[
            MetricDefinition(name="calories_burned", type=MetricType.NUMBER, unit="kcal"),
            MetricDefinition(name="duration_minutes", type=MetricType.NUMBER, unit="min"),
        ],
        verification_prompt=WORKOUT_PROMPT,
        builtin=True,
    ),
    TaskKind.BIBLE_READING: TaskDefinition(
        kind=TaskKind.BIBLE_READING,
        name="Bible Reading",
        metrics=[MetricDefinition(name="bible_chapter", type=MetricType.TEXT)],
        verification_prompt=BIBLE_READING_PROMPT,
        builtin=True,
    ),
}

# Both built-in tasks must be verified for a day to count towards the streak
REQUIRED_TASK_KINDS: frozenset[str] = frozenset({TaskKind.WORKOUT, TaskKind.BIBLE_READING})

# Task whose distinct completion days are counted against the weekly goal
WEEKLY_GOAL_TASK_KIND: str = TaskKind.WORKOUT


def generic_prompt(task: TaskDefinition) -> str:
    """Fallback judge instructions for family-defined tasks without a custom prompt."""
    return (
        f"Task: Verify if this photo shows someone completing the task '{task.name}'.\n"
        "Look for visual evidence that the activity was actually performed.\n\n"
        "If the evidence is unclear or missing, set is_verified to false."
    )


def _parse_number(value: Any) -> int | float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def validate_details(task: TaskDefinition, details: Mapping[str, Any]) -> dict[str, Any]:
    """Check a details map against a task's metric schema.

    Blank values count as absent. Numbers may arrive as strings and are parsed.

    Args:
        task: Definition whose metrics describe the allowed fields
        details: Raw field values keyed by metric name

    Returns:
        Normalized details containing only the fields that were provided

    Raises:
        DetailValidationError: With one message per offending field
    """
    metrics = {metric.name: metric for metric in task.metrics}
    errors: dict[str, str] = {key: "Unknown field" for key in details if key not in metrics}
    clean: dict[str, Any] = {}

    for metric in task.metrics:
        raw = details.get(metric.name)
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            if metric.required:
                errors[metric.name] = "This field is required"
            continue

        if metric.type == MetricType.NUMBER:
            number = _parse_number(raw)
            if number is None:
                errors[metric.name] = "Must be a number"
                continue
            clean[metric.name] = number
        else:
            clean[metric.name] = str(raw).strip()

    if errors:
        raise DetailValidationError(f"Invalid details for {task.kind}", field_errors=errors)
    return clean
