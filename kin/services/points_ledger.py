"""Append-only points ledger.

Totals are always derived by summing ledger rows; nothing stores a running
balance that could drift from the rows.
"""

import logging

from kin.core.logging import span
from kin.domain.completion import PointsEntry
from kin.services.store import CompletionStore


logger = logging.getLogger(__name__)


def completion_source(task_kind: str) -> str:
    """Source tag for points earned by finalizing a completion."""
    return f"{task_kind}:completion"


def weekly_goal_source(task_kind: str) -> str:
    """Source tag for the weekly goal bonus."""
    return f"weekly_goal:{task_kind}"


class PointsLedger:
    """Grants and reversals of points for one backing store."""

    def __init__(self, store: CompletionStore) -> None:
        self._store = store

    async def grant(
        self,
        *,
        user_id: str,
        family_id: str,
        points: int,
        source: str,
        completion_id: str | None = None,
    ) -> PointsEntry:
        """Append a grant (or a negative adjustment) to the ledger."""
        with span("points_ledger.grant"):
            entry = await self._store.insert_points_entry(
                user_id=user_id,
                family_id=family_id,
                points=points,
                source=source,
                completion_id=completion_id,
            )
            logger.info("Granted %d points to %s (%s)", points, user_id, source)
            return entry

    async def reverse_completion(self, *, user_id: str, task_kind: str, completion_id: str) -> PointsEntry | None:
        """Remove the grant earned by a completion.

        Uses the row linked to the completion. Rows written without a link fall
        back to the most recent grant with the task's source tag.

        Returns:
            The removed entry, or None if there was nothing to reverse
        """
        with span("points_ledger.reverse_completion"):
            entry = await self._store.find_points_entry_for_completion(completion_id)
            if entry is None:
                entry = await self._store.latest_points_entry(user_id, source=completion_source(task_kind))
                if entry is not None and entry.completion_id not in (None, completion_id):
                    # Belongs to a different, still existing completion
                    entry = None
            if entry is None:
                logger.warning("No points entry to reverse for completion %s", completion_id)
                return None

            await self._store.delete_points_entry(entry.id)
            logger.info("Reversed %d points for %s (completion %s)", entry.points, user_id, completion_id)
            return entry

    async def balance(self, user_id: str) -> int:
        """Raw ledger sum."""
        return await self._store.sum_points(user_id)

    async def total(self, user_id: str) -> int:
        """Displayed total: the ledger sum, never below zero."""
        return max(0, await self.balance(user_id))
