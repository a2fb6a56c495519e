"""Tests for the SQLite-backed completion store."""

from datetime import UTC, date, datetime

import pytest

from kin.core.config import constants
from kin.core.errors import CompletionConflictError, CompletionNotFoundError
from kin.domain.completion import CompletionStatus, VerificationResult
from kin.domain.task import MetricDefinition, MetricType, TaskDefinition
from kin.services.store import SQLiteCompletionStore


DAY = date(2024, 1, 6)


async def _insert(
    store: SQLiteCompletionStore, status: CompletionStatus, *, day: date = DAY, task_kind: str = "workout"
):
    return await store.insert_completion(
        user_id="u1",
        family_id="f1",
        task_kind=task_kind,
        completed_date=day,
        status=status,
        proof_ref="memory://task-proofs/u1/1.jpg",
        verification=VerificationResult(is_verified=True, confidence=0.8, reason="Looks right", model="test-model"),
    )


@pytest.mark.unit
class TestCompletionRows:
    @pytest.mark.asyncio
    async def test_insert_round_trips_fields(self, store: SQLiteCompletionStore):
        completion = await _insert(store, CompletionStatus.PENDING)

        fetched = await store.get_completion(completion.id)

        assert fetched.completed_date == DAY
        assert fetched.status == CompletionStatus.PENDING
        assert fetched.verification is not None
        assert fetched.verification.model == "test-model"
        assert fetched.details == {}
        assert fetched.verified_at is None

    @pytest.mark.asyncio
    async def test_verified_insert_stamps_verified_at(self, store: SQLiteCompletionStore):
        completion = await _insert(store, CompletionStatus.VERIFIED)
        assert completion.verified_at is not None

    @pytest.mark.asyncio
    async def test_second_verified_row_for_slot_conflicts(self, store: SQLiteCompletionStore):
        await _insert(store, CompletionStatus.VERIFIED)

        with pytest.raises(CompletionConflictError):
            await _insert(store, CompletionStatus.VERIFIED)

    @pytest.mark.asyncio
    async def test_pending_and_rejected_rows_do_not_block_slot(self, store: SQLiteCompletionStore):
        await _insert(store, CompletionStatus.REJECTED)
        await _insert(store, CompletionStatus.PENDING)
        await _insert(store, CompletionStatus.PENDING)

        verified = await _insert(store, CompletionStatus.VERIFIED)

        assert verified.status == CompletionStatus.VERIFIED

    @pytest.mark.asyncio
    async def test_promoting_second_pending_row_conflicts(self, store: SQLiteCompletionStore):
        first = await _insert(store, CompletionStatus.PENDING)
        second = await _insert(store, CompletionStatus.PENDING)
        await store.update_completion_status(first.id, status=CompletionStatus.VERIFIED)

        with pytest.raises(CompletionConflictError):
            await store.update_completion_status(
                second.id, status=CompletionStatus.VERIFIED, expected_status=CompletionStatus.PENDING
            )

    @pytest.mark.asyncio
    async def test_status_update_requires_expected_status(self, store: SQLiteCompletionStore):
        completion = await _insert(store, CompletionStatus.PENDING)
        verified_at = datetime(2024, 1, 6, 12, 0, tzinfo=UTC)

        updated = await store.update_completion_status(
            completion.id,
            status=CompletionStatus.VERIFIED,
            expected_status=CompletionStatus.PENDING,
            verified_at=verified_at,
            details={"duration_minutes": 30},
        )
        assert updated.verified_at == verified_at
        assert updated.details == {"duration_minutes": 30}

        with pytest.raises(CompletionNotFoundError):
            await store.update_completion_status(
                completion.id, status=CompletionStatus.VERIFIED, expected_status=CompletionStatus.PENDING
            )

    @pytest.mark.asyncio
    async def test_delete_respects_expected_status(self, store: SQLiteCompletionStore):
        completion = await _insert(store, CompletionStatus.VERIFIED)

        with pytest.raises(CompletionNotFoundError):
            await store.delete_completion(completion.id, expected_status=CompletionStatus.PENDING)

        await store.delete_completion(completion.id, expected_status=CompletionStatus.VERIFIED)
        with pytest.raises(CompletionNotFoundError):
            await store.get_completion(completion.id)

    @pytest.mark.asyncio
    async def test_query_completions_window_and_filters(self, store: SQLiteCompletionStore):
        await _insert(store, CompletionStatus.VERIFIED, day=date(2024, 1, 1))
        await _insert(store, CompletionStatus.VERIFIED, day=date(2024, 1, 3))
        await _insert(store, CompletionStatus.VERIFIED, day=date(2024, 1, 3), task_kind="bible_reading")
        await _insert(store, CompletionStatus.REJECTED, day=date(2024, 1, 4))
        await _insert(store, CompletionStatus.VERIFIED, day=date(2024, 1, 9))

        window = await store.query_completions("u1", start=date(2024, 1, 2), end=date(2024, 1, 8))
        verified_workouts = await store.query_completions(
            "u1",
            start=date(2024, 1, 1),
            end=date(2024, 1, 9),
            status=CompletionStatus.VERIFIED,
            task_kind="workout",
        )

        assert sorted(c.completed_date.day for c in window) == [3, 3, 4]
        assert [c.completed_date.day for c in verified_workouts] == [9, 3, 1]

    @pytest.mark.asyncio
    async def test_find_verified_completion(self, store: SQLiteCompletionStore):
        await _insert(store, CompletionStatus.PENDING)
        assert await store.find_verified_completion("u1", "workout", DAY) is None

        verified = await _insert(store, CompletionStatus.VERIFIED)
        found = await store.find_verified_completion("u1", "workout", DAY)

        assert found is not None
        assert found.id == verified.id


@pytest.mark.unit
class TestPointsRows:
    @pytest.mark.asyncio
    async def test_entry_links_completion(self, store: SQLiteCompletionStore):
        completion = await _insert(store, CompletionStatus.VERIFIED)
        entry = await store.insert_points_entry(
            user_id="u1", family_id="f1", points=10, source="workout:completion", completion_id=completion.id
        )

        found = await store.find_points_entry_for_completion(completion.id)

        assert entry.completion_id == completion.id
        assert found is not None
        assert found.id == entry.id

    @pytest.mark.asyncio
    async def test_deleting_completion_unlinks_entry(self, store: SQLiteCompletionStore):
        completion = await _insert(store, CompletionStatus.VERIFIED)
        await store.insert_points_entry(
            user_id="u1", family_id="f1", points=10, source="workout:completion", completion_id=completion.id
        )

        await store.delete_completion(completion.id)

        assert await store.find_points_entry_for_completion(completion.id) is None
        latest = await store.latest_points_entry("u1", source="workout:completion")
        assert latest is not None
        assert latest.completion_id is None

    @pytest.mark.asyncio
    async def test_sum_points_can_be_negative(self, store: SQLiteCompletionStore):
        await store.insert_points_entry(user_id="u1", family_id="f1", points=10, source="workout:completion")
        await store.insert_points_entry(user_id="u1", family_id="f1", points=-25, source="adjustment")

        assert await store.sum_points("u1") == -15
        assert len(await store.list_points_entries("u1")) == 2


@pytest.mark.unit
class TestMemberStatsAndAchievements:
    @pytest.mark.asyncio
    async def test_streak_cache_upsert(self, store: SQLiteCompletionStore):
        assert await store.get_member_stats("u1") is None

        await store.upsert_streak_cache("u1", "f1", 3)
        await store.upsert_streak_cache("u1", "f1", 4)
        await store.set_weekly_goal("u1", "f1", 5)

        stats = await store.get_member_stats("u1")
        assert stats is not None
        assert stats.current_streak == 4
        assert stats.weekly_goal == 5

    @pytest.mark.asyncio
    async def test_achievement_recorded_once_per_week(self, store: SQLiteCompletionStore):
        kwargs = {
            "user_id": "u1",
            "family_id": "f1",
            "achievement_type": "weekly_goal",
            "week_start": date(2023, 12, 31),
            "week_end": date(2024, 1, 6),
            "data": {"goal": 3, "actual": 3},
        }

        first = await store.insert_achievement(**kwargs)
        second = await store.insert_achievement(**kwargs)

        assert first is not None
        assert first.data == {"goal": 3, "actual": 3}
        assert second is None

    @pytest.mark.asyncio
    async def test_family_tasks(self, store: SQLiteCompletionStore):
        task = TaskDefinition(
            kind="journaling",
            name="Journaling",
            metrics=[MetricDefinition(name="pages", type=MetricType.NUMBER, required=True)],
            points=5,
        )

        await store.create_family_task("f1", task)

        tasks = await store.list_family_tasks("f1")
        assert [t.kind for t in tasks] == ["journaling"]
        assert tasks[0].metrics[0].required is True
        assert tasks[0].builtin is False
        assert await store.list_family_tasks("f2") == []


@pytest.mark.unit
class TestPagedReads:
    @pytest.mark.asyncio
    async def test_points_entries_span_pages(self, store: SQLiteCompletionStore, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(constants, "DEFAULT_PER_PAGE_LIMIT", 2)
        for points in range(1, 6):
            await store.insert_points_entry(user_id="u1", family_id="f1", points=points, source="test")

        entries = await store.list_points_entries("u1")

        assert sorted(entry.points for entry in entries) == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_family_tasks_span_pages(self, store: SQLiteCompletionStore, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(constants, "DEFAULT_PER_PAGE_LIMIT", 2)
        for kind in ("alpha", "beta", "gamma", "delta"):
            await store.create_family_task("f1", TaskDefinition(kind=kind, name=kind.title()))

        tasks = await store.list_family_tasks("f1")

        assert [task.kind for task in tasks] == ["alpha", "beta", "gamma", "delta"]


@pytest.mark.unit
class TestOpaqueIds:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("user_id", ["007", "1.10", "o'neil", 'a"b', "a && b"])
    async def test_lookups_match_stored_text(self, store: SQLiteCompletionStore, user_id: str):
        completion = await store.insert_completion(
            user_id=user_id,
            family_id=user_id,
            task_kind="workout",
            completed_date=DAY,
            status=CompletionStatus.VERIFIED,
        )
        await store.insert_points_entry(user_id=user_id, family_id=user_id, points=10, source="workout:completion")
        await store.upsert_streak_cache(user_id, user_id, 1)
        await store.upsert_streak_cache(user_id, user_id, 2)

        found = await store.find_verified_completion(user_id, "workout", DAY)
        rows = await store.query_completions(user_id, start=DAY, end=DAY)

        assert found is not None and found.id == completion.id
        assert [row.id for row in rows] == [completion.id]
        assert await store.sum_points(user_id) == 10
        assert (await store.get_member_stats(user_id)).current_streak == 2
        assert await store.sum_points_by_member(user_id) == {user_id: 10}
        assert [c.id for c in await store.recent_completions(user_id, limit=5)] == [completion.id]

    @pytest.mark.asyncio
    async def test_numeric_lookalikes_are_distinct(self, store: SQLiteCompletionStore):
        await store.upsert_streak_cache("007", "f1", 3)
        await store.upsert_streak_cache("7", "f1", 1)

        assert (await store.get_member_stats("007")).current_streak == 3
        assert (await store.get_member_stats("7")).current_streak == 1
        assert [stats.user_id for stats in await store.list_member_stats("f1")] == ["007", "7"]
