"""Streak calculation over a member's completion history."""

import logging
from collections import defaultdict
from collections.abc import Iterable
from datetime import date, timedelta
from typing import NamedTuple

from kin.core.config import constants
from kin.core.logging import span
from kin.domain.completion import CompletionStatus, TaskCompletion
from kin.domain.task import REQUIRED_TASK_KINDS
from kin.services.store import CompletionStore


logger = logging.getLogger(__name__)


class CompletionFact(NamedTuple):
    """The three fields streak and week calculations look at."""

    day: date
    task_kind: str
    status: str


def to_fact(completion: CompletionFact | TaskCompletion) -> CompletionFact:
    """Normalize a completion row or fact tuple."""
    if isinstance(completion, TaskCompletion):
        return CompletionFact(completion.completed_date, completion.task_kind, completion.status)
    return CompletionFact(*completion)


def verified_kinds_by_day(completions: Iterable[CompletionFact | TaskCompletion]) -> dict[date, set[str]]:
    """Group verified completions into the set of task kinds done on each day."""
    by_day: dict[date, set[str]] = defaultdict(set)
    for completion in completions:
        fact = to_fact(completion)
        if fact.status == CompletionStatus.VERIFIED:
            by_day[fact.day].add(str(fact.task_kind))
    return by_day


def compute_streak(
    completions: Iterable[CompletionFact | TaskCompletion],
    *,
    today: date,
    required_kinds: Iterable[str] = REQUIRED_TASK_KINDS,
    lookback_days: int = constants.STREAK_LOOKBACK_DAYS,
) -> int:
    """Count consecutive days, ending today, on which every required task was verified.

    The walk starts at today: if today is not fully complete the streak is 0,
    whatever happened before. No gap skipping and no partial credit.

    Args:
        completions: Completion rows or (day, task_kind, status) tuples
        today: The member's current calendar day
        required_kinds: Task kinds that must all be verified on a day
        lookback_days: Maximum number of days to walk back

    Returns:
        Streak length in days
    """
    required = {str(kind) for kind in required_kinds}
    if not required:
        return 0

    by_day = verified_kinds_by_day(completions)

    streak = 0
    for offset in range(lookback_days):
        day = today - timedelta(days=offset)
        if not required <= by_day.get(day, set()):
            break
        streak += 1
    return streak


async def refresh_streak(
    store: CompletionStore,
    *,
    user_id: str,
    family_id: str,
    today: date,
    required_kinds: Iterable[str] = REQUIRED_TASK_KINDS,
    lookback_days: int = constants.STREAK_LOOKBACK_DAYS,
) -> int:
    """Recompute the streak from scratch over the lookback window and refresh the cache."""
    with span("streak_service.refresh_streak"):
        completions = await store.query_completions(
            user_id,
            start=today - timedelta(days=lookback_days - 1),
            end=today,
            status=CompletionStatus.VERIFIED,
        )
        streak = compute_streak(completions, today=today, required_kinds=required_kinds, lookback_days=lookback_days)
        await store.upsert_streak_cache(user_id, family_id, streak)

        logger.info("Refreshed streak for user %s: %d days", user_id, streak)
        return streak
