"""Tests for task definitions and detail validation."""

import pytest

from kin.core.errors import DetailValidationError
from kin.domain.task import (
    BUILTIN_TASKS,
    REQUIRED_TASK_KINDS,
    MetricDefinition,
    MetricType,
    TaskDefinition,
    generic_prompt,
    validate_details,
)


WORKOUT = BUILTIN_TASKS["workout"]
BIBLE = BUILTIN_TASKS["bible_reading"]
RUN = TaskDefinition(
    kind="run",
    name="Morning Run",
    metrics=[
        MetricDefinition(name="distance_km", type=MetricType.NUMBER, required=True, unit="km"),
        MetricDefinition(name="route", type=MetricType.TEXT),
    ],
    points=15,
)


@pytest.mark.unit
class TestBuiltinTasks:
    def test_both_builtins_are_required_for_streaks(self):
        assert REQUIRED_TASK_KINDS == {"workout", "bible_reading"}
        assert all(task.builtin for task in BUILTIN_TASKS.values())

    def test_builtin_metrics_are_optional(self):
        assert validate_details(WORKOUT, {}) == {}
        assert validate_details(BIBLE, {}) == {}

    def test_generic_prompt_names_the_task(self):
        assert "Morning Run" in generic_prompt(RUN)


@pytest.mark.unit
class TestValidateDetails:
    def test_numbers_are_parsed(self):
        clean = validate_details(WORKOUT, {"calories_burned": "350", "duration_minutes": 42.5})

        assert clean == {"calories_burned": 350, "duration_minutes": 42.5}

    def test_text_is_stripped(self):
        assert validate_details(BIBLE, {"bible_chapter": "  John 3  "}) == {"bible_chapter": "John 3"}

    def test_blank_values_are_dropped(self):
        assert validate_details(WORKOUT, {"calories_burned": "  ", "duration_minutes": None}) == {}

    @pytest.mark.parametrize("value", ["forty", True, "nan", "inf", [1]])
    def test_bad_numbers(self, value):
        with pytest.raises(DetailValidationError) as exc_info:
            validate_details(WORKOUT, {"duration_minutes": value})

        assert exc_info.value.field_errors == {"duration_minutes": "Must be a number"}

    def test_required_field_missing(self):
        with pytest.raises(DetailValidationError) as exc_info:
            validate_details(RUN, {"route": "Riverside"})

        assert exc_info.value.field_errors == {"distance_km": "This field is required"}

    def test_blank_required_field_counts_as_missing(self):
        with pytest.raises(DetailValidationError) as exc_info:
            validate_details(RUN, {"distance_km": ""})

        assert exc_info.value.field_errors == {"distance_km": "This field is required"}

    def test_all_errors_reported_together(self):
        with pytest.raises(DetailValidationError) as exc_info:
            validate_details(RUN, {"pace": "5:10", "heart_rate": 150})

        assert exc_info.value.field_errors == {
            "pace": "Unknown field",
            "heart_rate": "Unknown field",
            "distance_km": "This field is required",
        }

    def test_valid_custom_task(self):
        assert validate_details(RUN, {"distance_km": "5", "route": "Park loop"}) == {
            "distance_km": 5,
            "route": "Park loop",
        }


@pytest.mark.unit
class TestTaskDefinition:
    def test_kind_must_be_an_identifier(self):
        with pytest.raises(ValueError):
            TaskDefinition(kind="Morning Run", name="Morning Run")

    def test_points_cannot_be_negative(self):
        with pytest.raises(ValueError):
            TaskDefinition(kind="run", name="Run", points=-1)
