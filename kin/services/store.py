"""Data-access interface for the completion workflow and its SQLite implementation."""

import json
import logging
from datetime import UTC, date, datetime
from typing import Any, Protocol

from kin.core.config import constants
from kin.core.db_client import DBClient, RecordNotFoundError, UniqueConstraintError, sanitize_param
from kin.core.errors import CompletionConflictError, CompletionNotFoundError
from kin.domain.completion import (
    Achievement,
    CompletionStatus,
    MemberStats,
    PointsEntry,
    TaskCompletion,
    VerificationResult,
)
from kin.domain.task import MetricDefinition, TaskDefinition


logger = logging.getLogger(__name__)


class CompletionStore(Protocol):
    """Backing-store operations consumed by the completion workflow."""

    async def insert_completion(
        self,
        *,
        user_id: str,
        family_id: str,
        task_kind: str,
        completed_date: date,
        status: CompletionStatus,
        proof_ref: str | None = None,
        verification: VerificationResult | None = None,
        details: dict[str, Any] | None = None,
    ) -> TaskCompletion: ...

    async def get_completion(self, completion_id: str) -> TaskCompletion: ...

    async def update_completion_status(
        self,
        completion_id: str,
        *,
        status: CompletionStatus,
        expected_status: CompletionStatus | None = None,
        verified_at: datetime | None = None,
        details: dict[str, Any] | None = None,
    ) -> TaskCompletion: ...

    async def update_completion_details(
        self,
        completion_id: str,
        details: dict[str, Any],
        *,
        expected_status: CompletionStatus | None = None,
    ) -> TaskCompletion: ...

    async def delete_completion(
        self, completion_id: str, *, expected_status: CompletionStatus | None = None
    ) -> None: ...

    async def query_completions(
        self,
        user_id: str,
        *,
        start: date,
        end: date,
        status: CompletionStatus | None = None,
        task_kind: str | None = None,
    ) -> list[TaskCompletion]: ...

    async def find_verified_completion(self, user_id: str, task_kind: str, day: date) -> TaskCompletion | None: ...

    async def recent_completions(self, family_id: str, *, limit: int) -> list[TaskCompletion]: ...

    async def insert_points_entry(
        self,
        *,
        user_id: str,
        family_id: str,
        points: int,
        source: str,
        completion_id: str | None = None,
    ) -> PointsEntry: ...

    async def delete_points_entry(self, entry_id: str) -> None: ...

    async def find_points_entry_for_completion(self, completion_id: str) -> PointsEntry | None: ...

    async def latest_points_entry(self, user_id: str, *, source: str) -> PointsEntry | None: ...

    async def sum_points(self, user_id: str) -> int: ...

    async def list_points_entries(self, user_id: str) -> list[PointsEntry]: ...

    async def sum_points_by_member(self, family_id: str) -> dict[str, int]: ...

    async def get_member_stats(self, user_id: str) -> MemberStats | None: ...

    async def list_member_stats(self, family_id: str) -> list[MemberStats]: ...

    async def upsert_streak_cache(self, user_id: str, family_id: str, value: int) -> None: ...

    async def set_weekly_goal(self, user_id: str, family_id: str, goal: int) -> None: ...

    async def get_achievement(
        self, user_id: str, family_id: str, achievement_type: str, week_start: date
    ) -> Achievement | None: ...

    async def insert_achievement(
        self,
        *,
        user_id: str,
        family_id: str,
        achievement_type: str,
        week_start: date,
        week_end: date,
        data: dict[str, Any] | None = None,
    ) -> Achievement | None: ...

    async def create_family_task(self, family_id: str, task: TaskDefinition) -> TaskDefinition: ...

    async def list_family_tasks(self, family_id: str) -> list[TaskDefinition]: ...


def _loads(value: Any, default: Any) -> Any:
    """Decode a JSON column, tolerating NULLs and already-decoded values."""
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def _to_completion(record: dict[str, Any]) -> TaskCompletion:
    verification = _loads(record.get("verification"), None)
    return TaskCompletion(
        id=record["id"],
        user_id=record["user_id"],
        family_id=record["family_id"],
        task_kind=record["task_kind"],
        completed_date=record["completed_date"],
        proof_ref=record.get("proof_ref"),
        status=record["status"],
        verification=VerificationResult(**verification) if verification else None,
        details=_loads(record.get("details"), {}),
        verified_at=record.get("verified_at"),
        created=record.get("created"),
    )


def _to_points_entry(record: dict[str, Any]) -> PointsEntry:
    return PointsEntry(
        id=record["id"],
        user_id=record["user_id"],
        family_id=record["family_id"],
        points=record["points"],
        source=record["source"],
        completion_id=record.get("completion_id"),
        created=record.get("created"),
    )


def _to_member_stats(record: dict[str, Any]) -> MemberStats:
    return MemberStats(
        user_id=record["user_id"],
        family_id=record["family_id"],
        current_streak=record["current_streak"],
        weekly_goal=record.get("weekly_goal"),
    )


def _to_achievement(record: dict[str, Any]) -> Achievement:
    return Achievement(
        id=record["id"],
        user_id=record["user_id"],
        family_id=record["family_id"],
        achievement_type=record["achievement_type"],
        week_start=record["week_start"],
        week_end=record["week_end"],
        data=_loads(record.get("data"), {}),
    )


def _to_task_definition(record: dict[str, Any]) -> TaskDefinition:
    return TaskDefinition(
        kind=record["kind"],
        name=record["name"],
        metrics=[MetricDefinition(**metric) for metric in _loads(record.get("metrics"), [])],
        points=record["points"],
        verification_prompt=record.get("verification_prompt") or "",
        builtin=False,
    )


def _now() -> str:
    return datetime.now(UTC).isoformat()


class SQLiteCompletionStore:
    """CompletionStore backed by the SQLite tables in kin.core.schema."""

    def __init__(self, db: DBClient) -> None:
        self._db = db

    async def _list_all(self, *, collection: str, filter_query: str, sort: str = "") -> list[dict[str, Any]]:
        """Read every matching record, one page at a time."""
        records: list[dict[str, Any]] = []
        page = 1
        while True:
            batch = await self._db.list_records(
                collection=collection,
                filter_query=filter_query,
                sort=sort,
                per_page=constants.DEFAULT_PER_PAGE_LIMIT,
                page=page,
            )
            records.extend(batch)
            if len(batch) < constants.DEFAULT_PER_PAGE_LIMIT:
                return records
            page += 1

    # Completions

    async def insert_completion(
        self,
        *,
        user_id: str,
        family_id: str,
        task_kind: str,
        completed_date: date,
        status: CompletionStatus,
        proof_ref: str | None = None,
        verification: VerificationResult | None = None,
        details: dict[str, Any] | None = None,
    ) -> TaskCompletion:
        """Insert a completion row.

        Raises:
            CompletionConflictError: If a verified row already occupies the slot
        """
        data: dict[str, Any] = {
            "user_id": user_id,
            "family_id": family_id,
            "task_kind": task_kind,
            "completed_date": completed_date,
            "status": status.value,
            "proof_ref": proof_ref,
            "verification": verification.model_dump(mode="json") if verification else None,
            "details": details or {},
        }
        if status == CompletionStatus.VERIFIED:
            data["verified_at"] = _now()

        try:
            record = await self._db.create_record(collection="task_completions", data=data)
        except UniqueConstraintError as e:
            msg = f"{task_kind} is already verified for {user_id} on {completed_date}"
            raise CompletionConflictError(msg) from e
        return _to_completion(record)

    async def get_completion(self, completion_id: str) -> TaskCompletion:
        """Fetch one completion.

        Raises:
            CompletionNotFoundError: If it does not exist
        """
        try:
            record = await self._db.get_record(collection="task_completions", record_id=completion_id)
        except RecordNotFoundError as e:
            raise CompletionNotFoundError(f"Completion not found: {completion_id}") from e
        return _to_completion(record)

    async def update_completion_status(
        self,
        completion_id: str,
        *,
        status: CompletionStatus,
        expected_status: CompletionStatus | None = None,
        verified_at: datetime | None = None,
        details: dict[str, Any] | None = None,
    ) -> TaskCompletion:
        """Move a completion to a new status, optionally only from ``expected_status``.

        Raises:
            CompletionNotFoundError: If the row is gone or no longer in ``expected_status``
            CompletionConflictError: If the slot already has a verified row
        """
        data: dict[str, Any] = {"status": status.value}
        if verified_at is not None:
            data["verified_at"] = verified_at
        if details is not None:
            data["details"] = details

        filter_query = f'status = "{expected_status.value}"' if expected_status else ""
        try:
            record = await self._db.update_record(
                collection="task_completions",
                record_id=completion_id,
                data=data,
                filter_query=filter_query,
            )
        except RecordNotFoundError as e:
            raise CompletionNotFoundError(f"Completion not found or not {expected_status}: {completion_id}") from e
        except UniqueConstraintError as e:
            raise CompletionConflictError(f"Slot already verified for completion {completion_id}") from e
        return _to_completion(record)

    async def update_completion_details(
        self,
        completion_id: str,
        details: dict[str, Any],
        *,
        expected_status: CompletionStatus | None = None,
    ) -> TaskCompletion:
        """Replace the details map of a completion."""
        filter_query = f'status = "{expected_status.value}"' if expected_status else ""
        try:
            record = await self._db.update_record(
                collection="task_completions",
                record_id=completion_id,
                data={"details": details},
                filter_query=filter_query,
            )
        except RecordNotFoundError as e:
            raise CompletionNotFoundError(f"Completion not found or not {expected_status}: {completion_id}") from e
        return _to_completion(record)

    async def delete_completion(self, completion_id: str, *, expected_status: CompletionStatus | None = None) -> None:
        """Delete a completion, optionally only while it is in ``expected_status``.

        Raises:
            CompletionNotFoundError: If nothing was deleted
        """
        filter_query = f'status = "{expected_status.value}"' if expected_status else ""
        try:
            await self._db.delete_record(
                collection="task_completions", record_id=completion_id, filter_query=filter_query
            )
        except RecordNotFoundError as e:
            raise CompletionNotFoundError(f"Completion not found or not {expected_status}: {completion_id}") from e

    async def query_completions(
        self,
        user_id: str,
        *,
        start: date,
        end: date,
        status: CompletionStatus | None = None,
        task_kind: str | None = None,
    ) -> list[TaskCompletion]:
        """List a user's completions with ``start <= completed_date <= end``."""
        conditions = [
            f'user_id = "{sanitize_param(user_id)}"',
            f'completed_date >= "{start.isoformat()}"',
            f'completed_date <= "{end.isoformat()}"',
        ]
        if status is not None:
            conditions.append(f'status = "{status.value}"')
        if task_kind is not None:
            conditions.append(f'task_kind = "{sanitize_param(task_kind)}"')

        records = await self._list_all(
            collection="task_completions", filter_query=" && ".join(conditions), sort="-completed_date"
        )
        return [_to_completion(record) for record in records]

    async def find_verified_completion(self, user_id: str, task_kind: str, day: date) -> TaskCompletion | None:
        """Return the verified completion occupying a slot, if any."""
        record = await self._db.get_first_record(
            collection="task_completions",
            filter_query=(
                f'user_id = "{sanitize_param(user_id)}" && '
                f'task_kind = "{sanitize_param(task_kind)}" && '
                f'completed_date = "{day.isoformat()}" && '
                f'status = "{CompletionStatus.VERIFIED.value}"'
            ),
        )
        return _to_completion(record) if record else None

    async def recent_completions(self, family_id: str, *, limit: int) -> list[TaskCompletion]:
        """The family's most recently verified completions, newest first."""
        records = await self._db.list_records(
            collection="task_completions",
            filter_query=(
                f'family_id = "{sanitize_param(family_id)}" && status = "{CompletionStatus.VERIFIED.value}"'
            ),
            sort="-verified_at",
            per_page=limit,
        )
        return [_to_completion(record) for record in records]

    # Points ledger

    async def insert_points_entry(
        self,
        *,
        user_id: str,
        family_id: str,
        points: int,
        source: str,
        completion_id: str | None = None,
    ) -> PointsEntry:
        """Append one ledger row."""
        record = await self._db.create_record(
            collection="points",
            data={
                "user_id": user_id,
                "family_id": family_id,
                "points": points,
                "source": source,
                "completion_id": int(completion_id) if completion_id else None,
                "created": _now(),
            },
        )
        return _to_points_entry(record)

    async def delete_points_entry(self, entry_id: str) -> None:
        """Remove one ledger row (used only to reverse a completion's grant)."""
        await self._db.delete_record(collection="points", record_id=entry_id)

    async def find_points_entry_for_completion(self, completion_id: str) -> PointsEntry | None:
        """Return the most recent grant linked to a completion."""
        record = await self._db.get_first_record(
            collection="points",
            filter_query=f'completion_id = "{sanitize_param(completion_id)}"',
            sort="-created",
        )
        return _to_points_entry(record) if record else None

    async def latest_points_entry(self, user_id: str, *, source: str) -> PointsEntry | None:
        """Return the user's most recent ledger row with the given source tag."""
        record = await self._db.get_first_record(
            collection="points",
            filter_query=f'user_id = "{sanitize_param(user_id)}" && source = "{sanitize_param(source)}"',
            sort="-created",
        )
        return _to_points_entry(record) if record else None

    async def sum_points(self, user_id: str) -> int:
        """Raw ledger sum (may be negative)."""
        return await self._db.sum_field(
            collection="points", field="points", filter_query=f'user_id = "{sanitize_param(user_id)}"'
        )

    async def list_points_entries(self, user_id: str) -> list[PointsEntry]:
        """All ledger rows for a user, newest first."""
        records = await self._list_all(
            collection="points", filter_query=f'user_id = "{sanitize_param(user_id)}"', sort="-created"
        )
        return [_to_points_entry(record) for record in records]

    async def sum_points_by_member(self, family_id: str) -> dict[str, int]:
        """Raw ledger sum per member for the points earned in one family."""
        return await self._db.sum_field_by(
            collection="points",
            field="points",
            group_by="user_id",
            filter_query=f'family_id = "{sanitize_param(family_id)}"',
        )

    # Member stats

    async def get_member_stats(self, user_id: str) -> MemberStats | None:
        """Cached streak and goal settings for a member."""
        record = await self._db.get_first_record(
            collection="member_stats", filter_query=f'user_id = "{sanitize_param(user_id)}"'
        )
        return _to_member_stats(record) if record else None

    async def list_member_stats(self, family_id: str) -> list[MemberStats]:
        """Cached stats of every member the family has seen."""
        records = await self._list_all(
            collection="member_stats", filter_query=f'family_id = "{sanitize_param(family_id)}"', sort="user_id"
        )
        return [_to_member_stats(record) for record in records]

    async def _upsert_member_stats(self, user_id: str, family_id: str, data: dict[str, Any]) -> None:
        filter_query = f'user_id = "{sanitize_param(user_id)}"'
        payload = {**data, "updated": _now()}
        existing = await self._db.get_first_record(collection="member_stats", filter_query=filter_query)
        if existing:
            await self._db.update_record(collection="member_stats", record_id=existing["id"], data=payload)
            return
        try:
            await self._db.create_record(
                collection="member_stats", data={"user_id": user_id, "family_id": family_id, **payload}
            )
        except UniqueConstraintError:
            # Another writer created the row between our read and insert
            existing = await self._db.get_first_record(collection="member_stats", filter_query=filter_query)
            if existing is None:
                raise
            await self._db.update_record(collection="member_stats", record_id=existing["id"], data=payload)

    async def upsert_streak_cache(self, user_id: str, family_id: str, value: int) -> None:
        """Store the derived streak for fast reads."""
        await self._upsert_member_stats(user_id, family_id, {"current_streak": value})

    async def set_weekly_goal(self, user_id: str, family_id: str, goal: int) -> None:
        """Set the member's weekly goal (distinct days)."""
        await self._upsert_member_stats(user_id, family_id, {"weekly_goal": goal})

    # Achievements

    async def get_achievement(
        self, user_id: str, family_id: str, achievement_type: str, week_start: date
    ) -> Achievement | None:
        """Return the achievement recorded for a week, if any."""
        record = await self._db.get_first_record(
            collection="achievements",
            filter_query=(
                f'user_id = "{sanitize_param(user_id)}" && '
                f'family_id = "{sanitize_param(family_id)}" && '
                f'achievement_type = "{sanitize_param(achievement_type)}" && '
                f'week_start = "{week_start.isoformat()}"'
            ),
        )
        return _to_achievement(record) if record else None

    async def insert_achievement(
        self,
        *,
        user_id: str,
        family_id: str,
        achievement_type: str,
        week_start: date,
        week_end: date,
        data: dict[str, Any] | None = None,
    ) -> Achievement | None:
        """Record an achievement once per week; returns None if it already exists."""
        if await self.get_achievement(user_id, family_id, achievement_type, week_start):
            return None
        try:
            record = await self._db.create_record(
                collection="achievements",
                data={
                    "user_id": user_id,
                    "family_id": family_id,
                    "achievement_type": achievement_type,
                    "week_start": week_start,
                    "week_end": week_end,
                    "data": data or {},
                },
            )
        except UniqueConstraintError:
            return None
        return _to_achievement(record)

    # Family tasks

    async def create_family_task(self, family_id: str, task: TaskDefinition) -> TaskDefinition:
        """Persist a family-defined task definition."""
        record = await self._db.create_record(
            collection="family_tasks",
            data={
                "family_id": family_id,
                "kind": task.kind,
                "name": task.name,
                "metrics": [metric.model_dump(mode="json") for metric in task.metrics],
                "points": task.points,
                "verification_prompt": task.verification_prompt,
            },
        )
        return _to_task_definition(record)

    async def list_family_tasks(self, family_id: str) -> list[TaskDefinition]:
        """Active family-defined tasks."""
        records = await self._list_all(
            collection="family_tasks",
            filter_query=f'family_id = "{sanitize_param(family_id)}" && is_active = "1"',
        )
        return [_to_task_definition(record) for record in records]
