"""Weekly completion map and weekly goal evaluation."""

import logging
from collections.abc import Iterable
from datetime import date, timedelta

from kin.core.config import constants
from kin.core.logging import span
from kin.domain.completion import CompletionStatus, TaskCompletion, WeekBounds
from kin.domain.task import REQUIRED_TASK_KINDS, WEEKLY_GOAL_TASK_KIND
from kin.services.points_ledger import PointsLedger, weekly_goal_source
from kin.services.store import CompletionStore
from kin.services.streak_service import CompletionFact, verified_kinds_by_day


logger = logging.getLogger(__name__)

WEEKLY_GOAL_ACHIEVEMENT = "weekly_goal"


def week_bounds(day: date, week_start_day: int) -> WeekBounds:
    """Return the display week containing ``day``.

    Args:
        day: Any day inside the week
        week_start_day: First weekday of the week (0=Monday ... 6=Sunday)
    """
    offset = (day.weekday() - week_start_day) % constants.DAYS_PER_WEEK
    start = day - timedelta(days=offset)
    return WeekBounds(start=start, end=start + timedelta(days=constants.DAYS_PER_WEEK - 1))


def compute_week(
    completions: Iterable[CompletionFact | TaskCompletion],
    week_start: date,
    required_kinds: Iterable[str] = REQUIRED_TASK_KINDS,
) -> list[bool]:
    """One boolean per day of the week: were all required tasks verified that day."""
    required = {str(kind) for kind in required_kinds}
    by_day = verified_kinds_by_day(completions)
    return [
        bool(required) and required <= by_day.get(week_start + timedelta(days=offset), set())
        for offset in range(constants.DAYS_PER_WEEK)
    ]


async def load_week(
    store: CompletionStore,
    *,
    user_id: str,
    bounds: WeekBounds,
    required_kinds: Iterable[str] = REQUIRED_TASK_KINDS,
) -> list[bool]:
    """Query a week's verified completions and build its map."""
    completions = await store.query_completions(
        user_id, start=bounds.start, end=bounds.end, status=CompletionStatus.VERIFIED
    )
    return compute_week(completions, bounds.start, required_kinds)


async def check_weekly_goal(
    store: CompletionStore,
    ledger: PointsLedger,
    *,
    user_id: str,
    family_id: str,
    goal: int,
    bounds: WeekBounds,
    bonus_points: int,
    task_kind: str = WEEKLY_GOAL_TASK_KIND,
) -> bool:
    """Record the weekly goal achievement and grant its bonus the first time the goal is met.

    Counts distinct days (not rows) with a verified completion of ``task_kind``.
    Calling again in the same week after the goal was recorded returns False
    and grants nothing.

    Returns:
        True only if the achievement was newly recorded by this call
    """
    with span("weekly_service.check_weekly_goal"):
        if goal <= 0:
            return False

        completions = await store.query_completions(
            user_id,
            start=bounds.start,
            end=bounds.end,
            status=CompletionStatus.VERIFIED,
            task_kind=task_kind,
        )
        distinct_days = len({completion.completed_date for completion in completions})
        logger.info("Weekly goal check for %s: %d/%d days of %s", user_id, distinct_days, goal, task_kind)

        if distinct_days < goal:
            return False

        achievement = await store.insert_achievement(
            user_id=user_id,
            family_id=family_id,
            achievement_type=WEEKLY_GOAL_ACHIEVEMENT,
            week_start=bounds.start,
            week_end=bounds.end,
            data={"goal": goal, "actual": distinct_days, "task_kind": task_kind},
        )
        if achievement is None:
            return False

        await ledger.grant(
            user_id=user_id,
            family_id=family_id,
            points=bonus_points,
            source=weekly_goal_source(task_kind),
        )
        logger.info("Weekly goal achieved by %s for week of %s", user_id, bounds.start)
        return True
