"""Completion workflow: upload, AI judgment, user decision, provisional record, commit or rollback.

``CompletionService`` is the async adapter around the pure state machine in
``kin.services.verification_machine``. It owns the in-flight sessions and the
judgment tasks, runs the effect each transition asks for, and recomputes the
derived state (points, streak, week map, weekly goal) after every mutation.
"""

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, date, datetime
from typing import Any

from kin.agents.verification_agent import Verifier
from kin.core.config import Settings, constants, settings as default_settings
from kin.core.errors import (
    BackdateConfirmationRequiredError,
    CompletionConflictError,
    CompletionNotFoundError,
    InvalidTransitionError,
    SessionNotFoundError,
    UnknownTaskError,
    VerificationServiceUnavailableError,
)
from kin.core.logging import log_with_user_context, span
from kin.domain.completion import (
    ActivityItem,
    CompletionOutcome,
    CompletionStatus,
    LeaderboardEntry,
    TaskCompletion,
    TaskDayState,
    UserSummary,
)
from kin.domain.task import BUILTIN_TASKS, WEEKLY_GOAL_TASK_KIND, TaskDefinition, validate_details
from kin.interface.storage_client import ObjectStore, build_proof_path
from kin.services.points_ledger import PointsLedger, completion_source
from kin.services.store import CompletionStore
from kin.services.streak_service import refresh_streak
from kin.services.verification_machine import (
    Abandon,
    Accept,
    CancelDetails,
    ConfirmBackdate,
    ContinueDegraded,
    DeclineBackdate,
    DetailsCaptured,
    Effect,
    Event,
    JudgmentFailed,
    JudgmentReceived,
    PendingCreated,
    Reject,
    RetryJudgment,
    Submit,
    Transition,
    VerificationSession,
    VerificationState,
    start_review,
    transition,
)
from kin.services.weekly_service import check_weekly_goal, load_week, week_bounds


logger = logging.getLogger(__name__)


class CompletionService:
    """Drives task completions from evidence to committed, point-bearing records."""

    def __init__(
        self,
        *,
        store: CompletionStore,
        object_store: ObjectStore,
        verifier: Verifier,
        settings: Settings | None = None,
        clock: Callable[[], date] = date.today,
    ) -> None:
        self._store = store
        self._object_store = object_store
        self._verifier = verifier
        self._settings = settings or default_settings
        self._clock = clock
        self._ledger = PointsLedger(store)
        self._sessions: dict[str, VerificationSession] = {}
        self._images: dict[str, tuple[bytes, str]] = {}
        self._judgments: dict[str, asyncio.Task[None]] = {}

    @property
    def ledger(self) -> PointsLedger:
        return self._ledger

    # Task catalog

    async def list_tasks(self, family_id: str) -> list[TaskDefinition]:
        """Built-in tasks followed by the family's own tasks."""
        return [*BUILTIN_TASKS.values(), *await self._store.list_family_tasks(family_id)]

    async def get_task(self, family_id: str, task_kind: str) -> TaskDefinition:
        """Resolve a task kind for a family.

        Raises:
            UnknownTaskError: If the kind is neither built in nor defined by the family
        """
        if task_kind in BUILTIN_TASKS:
            return BUILTIN_TASKS[task_kind]
        for task in await self._store.list_family_tasks(family_id):
            if task.kind == task_kind:
                return task
        raise UnknownTaskError(f"Unknown task '{task_kind}' for family {family_id}")

    async def define_task(self, family_id: str, task: TaskDefinition) -> TaskDefinition:
        """Add a family-defined task.

        Raises:
            ValueError: If the kind collides with a built-in task
        """
        if task.kind in BUILTIN_TASKS:
            raise ValueError(f"'{task.kind}' is a built-in task kind")
        with span("completion_service.define_task"):
            created = await self._store.create_family_task(family_id, task.model_copy(update={"builtin": False}))
            logger.info("Defined task %s for family %s", created.kind, family_id)
            return created

    async def set_weekly_goal(self, user_id: str, family_id: str, goal: int) -> None:
        """Set how many distinct days of the goal task a member aims for each week."""
        if goal < 0:
            raise ValueError("Weekly goal cannot be negative")
        await self._store.set_weekly_goal(user_id, family_id, goal)

    # Session bookkeeping

    def get_session(self, session_id: str) -> VerificationSession:
        """Current snapshot of an in-progress session.

        Raises:
            SessionNotFoundError: If the session finished or never existed
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"No active verification session {session_id}")
        return session

    def _apply(self, session_id: str, event: Event) -> Transition:
        step = transition(self.get_session(session_id), event)
        self._store_snapshot(step.session)
        return step

    def _store_snapshot(self, session: VerificationSession) -> None:
        if session.is_terminal:
            self._sessions.pop(session.id, None)
            self._images.pop(session.id, None)
            self._judgments.pop(session.id, None)
            logger.info("Session %s closed in state %s", session.id, session.state)
        else:
            self._sessions[session.id] = session

    def _session_for_pending(self, pending_id: str) -> VerificationSession | None:
        for session in self._sessions.values():
            if session.pending_id == pending_id:
                return session
        return None

    def _settle(self, pending_id: str, event: Event) -> None:
        """Move the session owning a pending row along after the row was handled directly."""
        session = self._session_for_pending(pending_id)
        if session is not None and session.state == VerificationState.FINALIZING:
            self._store_snapshot(transition(session, event).session)

    async def _run_effect(self, step: Transition) -> VerificationSession:
        session = step.session
        match step.effect:
            case Effect.REQUEST_JUDGMENT:
                await self._request_judgment(session)
            case Effect.CREATE_PENDING:
                pending = await self._store.insert_completion(
                    user_id=session.user_id,
                    family_id=session.family_id,
                    task_kind=session.task_kind,
                    completed_date=session.target_date,
                    status=CompletionStatus.PENDING,
                    proof_ref=session.proof_ref,
                    verification=session.result,
                )
                if session.id not in self._sessions:
                    # Abandoned while the row was being written
                    await self.cancel_pending_completion(pending.id)
                    return session
                return self._apply(session.id, PendingCreated(pending.id)).session
            case Effect.CREATE_REJECTED:
                await self._store.insert_completion(
                    user_id=session.user_id,
                    family_id=session.family_id,
                    task_kind=session.task_kind,
                    completed_date=session.target_date,
                    status=CompletionStatus.REJECTED,
                    proof_ref=session.proof_ref,
                    verification=session.result,
                )
            case Effect.DELETE_PENDING if session.pending_id:
                await self.cancel_pending_completion(session.pending_id)
            case Effect.MARK_INCOMPLETE:
                await self.mark_incomplete(session.user_id, session.task_kind, session.target_date)
            case Effect.OFFER_RECOVERY:
                logger.warning("Judgment failed for session %s: %s", session.id, session.failure)
        return self._sessions.get(session.id, session)

    # Judgment

    async def _request_judgment(self, session: VerificationSession) -> None:
        image, content_type = self._images[session.id]
        task = await self.get_task(session.family_id, session.task_kind)
        job = asyncio.create_task(self._judge(session.id, session.judgment_token or "", image, content_type, task))
        self._judgments[session.id] = job
        # abandon() cancels the job; waiting must not raise in that case
        await asyncio.wait({job})

    async def _judge(self, session_id: str, token: str, image: bytes, content_type: str, task: TaskDefinition) -> None:
        with span("completion_service.judge"):
            event: Event
            try:
                result = await asyncio.wait_for(
                    self._verifier.verify(image, content_type=content_type, task=task),
                    timeout=constants.JUDGMENT_DEADLINE_SECONDS,
                )
            except VerificationServiceUnavailableError as e:
                event = JudgmentFailed(token, str(e))
            except TimeoutError:
                event = JudgmentFailed(token, "Verification timed out")
            except Exception as e:
                logger.exception("Verifier raised unexpectedly for session %s", session_id)
                event = JudgmentFailed(token, f"Verification failed: {e}")
            else:
                event = JudgmentReceived(token, result)

            session = self._sessions.get(session_id)
            if session is None:
                logger.info("Dropping judgment for closed session %s", session_id)
                return
            self._store_snapshot(transition(session, event).session)

    # Interactive API

    async def start_session(
        self,
        *,
        user_id: str,
        family_id: str,
        task_kind: str,
        target_date: date | None = None,
    ) -> VerificationSession:
        """Open a submit session for one task on one day.

        Raises:
            UnknownTaskError: If the task kind does not exist for the family
            InvalidTransitionError: If the day is in the future
            CompletionConflictError: If the slot is already verified
        """
        task = await self.get_task(family_id, task_kind)
        today = self._clock()
        day = target_date or today
        if day > today:
            raise InvalidTransitionError(f"Cannot complete {task.kind} for a future day ({day})")
        if await self._store.find_verified_completion(user_id, task.kind, day):
            raise CompletionConflictError(f"{task.kind} is already completed for {user_id} on {day}")

        session = VerificationSession(
            user_id=user_id, family_id=family_id, task_kind=task.kind, target_date=day, today=today
        )
        self._store_snapshot(session)
        log_with_user_context(
            logger, "info", "Verification session started", user_id=user_id, session_id=session.id, task=task.kind
        )
        return session

    async def submit_evidence(
        self,
        session_id: str,
        proof_image: bytes | None = None,
        *,
        content_type: str = "image/jpeg",
    ) -> VerificationSession:
        """Submit the proof photo (or none) and wait for the judgment.

        The image is uploaded before anything is persisted, so an upload failure
        leaves the session awaiting evidence and the store untouched.

        Raises:
            EvidenceUploadError: If the upload fails
            InvalidTransitionError: If evidence was already submitted
        """
        with span("completion_service.submit_evidence"):
            session = self.get_session(session_id)
            if proof_image is None:
                return await self._run_effect(self._apply(session_id, Submit(has_evidence=False)))

            if session.state != VerificationState.AWAITING_EVIDENCE:
                raise InvalidTransitionError(f"Session {session_id} is not awaiting evidence")

            path = build_proof_path(session.user_id, content_type)
            proof_ref = await self._object_store.upload(path, proof_image, content_type)
            self._images[session_id] = (proof_image, content_type)
            return await self._run_effect(self._apply(session_id, Submit(has_evidence=True, proof_ref=proof_ref)))

    async def retry_judgment(self, session_id: str) -> VerificationSession:
        """Ask the judge again after a failure."""
        return await self._run_effect(self._apply(session_id, RetryJudgment()))

    async def continue_degraded(self, session_id: str) -> VerificationSession:
        """Proceed without an AI judgment after a failure."""
        return await self._run_effect(self._apply(session_id, ContinueDegraded()))

    async def accept(self, session_id: str) -> VerificationSession:
        """Accept the judgment. Creates the pending record unless a past day needs confirming."""
        return await self._run_effect(self._apply(session_id, Accept()))

    async def reject(self, session_id: str) -> VerificationSession:
        """Reject the judgment (submit) or mark the reviewed completion incomplete (review)."""
        return await self._run_effect(self._apply(session_id, Reject()))

    async def confirm_backdate(self, session_id: str) -> VerificationSession:
        return await self._run_effect(self._apply(session_id, ConfirmBackdate()))

    async def decline_backdate(self, session_id: str) -> VerificationSession:
        return await self._run_effect(self._apply(session_id, DeclineBackdate()))

    async def abandon(self, session_id: str) -> VerificationSession:
        """Cancel the session, its in-flight judgment and its pending record."""
        job = self._judgments.get(session_id)
        step = self._apply(session_id, Abandon())
        if job is not None and not job.done():
            job.cancel()
        return await self._run_effect(step)

    async def capture_details(
        self, session_id: str, details: Mapping[str, Any] | None = None
    ) -> CompletionOutcome | None:
        """Finalize the session's pending record with the entered details."""
        session = self.get_session(session_id)
        if session.state != VerificationState.FINALIZING or not session.pending_id:
            raise InvalidTransitionError(f"Session {session_id} has no pending completion to finalize")
        return await self.finalize_with_details(session.pending_id, details)

    async def cancel_details(self, session_id: str) -> VerificationSession:
        """Back out of detail entry, discarding the pending record."""
        return await self._run_effect(self._apply(session_id, CancelDetails()))

    async def open_review(self, user_id: str, task_kind: str, day: date) -> VerificationSession:
        """Open a verified completion so the user can keep it or mark it incomplete.

        Raises:
            CompletionNotFoundError: If the slot has no verified completion
        """
        completion = await self._store.find_verified_completion(user_id, task_kind, day)
        if completion is None:
            raise CompletionNotFoundError(f"No verified {task_kind} for {user_id} on {day}")
        session = start_review(
            user_id=user_id,
            family_id=completion.family_id,
            task_kind=task_kind,
            target_date=day,
            today=self._clock(),
            completion_id=completion.id,
            result=completion.verification,
        )
        self._store_snapshot(session)
        return session

    # Scripted API

    async def submit_completion(
        self,
        user_id: str,
        family_id: str,
        task_kind: str,
        target_date: date | None = None,
        proof_image: bytes | None = None,
        *,
        content_type: str = "image/jpeg",
        confirm_backdate: bool = False,
        continue_on_failure: bool = False,
    ) -> str:
        """Run a whole submission up to the pending record in one call.

        The user's acceptance is implied, including when the judge says the photo
        does not match. Use the interactive API to reject.

        Returns:
            ID of the pending completion, to pass to finalize_with_details

        Raises:
            BackdateConfirmationRequiredError: Past day without ``confirm_backdate``
            VerificationServiceUnavailableError: Judge failed and ``continue_on_failure`` is False
            EvidenceUploadError: If the upload fails
            CompletionConflictError: If the slot is already verified
        """
        with span("completion_service.submit_completion"):
            day = target_date or self._clock()
            if day < self._clock() and not confirm_backdate:
                raise BackdateConfirmationRequiredError(f"{task_kind} on {day} is a past day and needs confirmation")

            session = await self.start_session(
                user_id=user_id, family_id=family_id, task_kind=task_kind, target_date=day
            )
            try:
                session = await self.submit_evidence(session.id, proof_image, content_type=content_type)
                if session.state == VerificationState.AWAITING_JUDGMENT and session.failure is not None:
                    if not continue_on_failure:
                        raise VerificationServiceUnavailableError(session.failure)
                    session = await self.continue_degraded(session.id)
                if session.state == VerificationState.AWAITING_USER_DECISION:
                    session = await self.accept(session.id)
                if session.state == VerificationState.AWAITING_BACKDATE_CONFIRMATION:
                    session = await self.confirm_backdate(session.id)
            except Exception:
                if session.id in self._sessions:
                    await self.abandon(session.id)
                raise

            if session.state != VerificationState.FINALIZING or session.pending_id is None:
                raise InvalidTransitionError(f"Session {session.id} ended in {session.state} without a pending record")
            return session.pending_id

    # Records

    async def finalize_with_details(
        self, pending_id: str, details: Mapping[str, Any] | None = None
    ) -> CompletionOutcome | None:
        """Verify a pending completion, grant its points and recompute derived state.

        Args:
            pending_id: ID returned by submit_completion or held by a finalizing session
            details: Metric values for the task

        Returns:
            The outcome, or None if the record is gone or no longer pending

        Raises:
            DetailValidationError: Details do not fit the task; the pending record is kept
            CompletionConflictError: The slot was verified by someone else; the pending record is removed
        """
        with span("completion_service.finalize_with_details"):
            try:
                pending = await self._store.get_completion(pending_id)
            except CompletionNotFoundError:
                logger.info("Pending completion %s no longer exists", pending_id)
                return None
            if pending.status != CompletionStatus.PENDING:
                logger.info("Completion %s is already %s", pending_id, pending.status)
                return None

            task = await self.get_task(pending.family_id, pending.task_kind)
            clean = validate_details(task, details or {})

            try:
                completion = await self._store.update_completion_status(
                    pending_id,
                    status=CompletionStatus.VERIFIED,
                    expected_status=CompletionStatus.PENDING,
                    verified_at=datetime.now(UTC),
                    details=clean,
                )
            except CompletionNotFoundError:
                logger.info("Pending completion %s was cancelled or finalized concurrently", pending_id)
                return None
            except CompletionConflictError:
                logger.warning("Slot already verified, discarding pending completion %s", pending_id)
                await self.cancel_pending_completion(pending_id)
                raise

            self._settle(pending_id, DetailsCaptured())
            points = self._settings.task_completion_points if task.builtin else task.points
            await self._ledger.grant(
                user_id=completion.user_id,
                family_id=completion.family_id,
                points=points,
                source=completion_source(completion.task_kind),
                completion_id=completion.id,
            )
            outcome = await self._recompute(completion, points_awarded=points)
            log_with_user_context(
                logger,
                "info",
                "Completion finalized",
                user_id=completion.user_id,
                completion_id=completion.id,
                task=completion.task_kind,
                points=points,
            )
            return outcome

    async def _weekly_goal(self, user_id: str) -> int:
        stats = await self._store.get_member_stats(user_id)
        if stats is not None and stats.weekly_goal is not None:
            return stats.weekly_goal
        return self._settings.default_weekly_goal

    async def _recompute(self, completion: TaskCompletion, *, points_awarded: int) -> CompletionOutcome:
        streak = await refresh_streak(
            self._store, user_id=completion.user_id, family_id=completion.family_id, today=self._clock()
        )
        bounds = week_bounds(completion.completed_date, self._settings.week_start_day)
        week = await load_week(self._store, user_id=completion.user_id, bounds=bounds)

        goal_achieved = False
        if completion.task_kind == WEEKLY_GOAL_TASK_KIND:
            goal_achieved = await check_weekly_goal(
                self._store,
                self._ledger,
                user_id=completion.user_id,
                family_id=completion.family_id,
                goal=await self._weekly_goal(completion.user_id),
                bounds=bounds,
                bonus_points=self._settings.weekly_goal_bonus_points,
            )

        return CompletionOutcome(
            completion=completion,
            points_awarded=points_awarded,
            total_points=await self._ledger.total(completion.user_id),
            current_streak=streak,
            week=week,
            weekly_goal_achieved=goal_achieved,
        )

    async def cancel_pending_completion(self, pending_id: str) -> bool:
        """Delete a completion only while it is still pending.

        Returns:
            True if a row was deleted
        """
        with span("completion_service.cancel_pending_completion"):
            try:
                await self._store.delete_completion(pending_id, expected_status=CompletionStatus.PENDING)
            except CompletionNotFoundError:
                logger.info("Nothing to cancel for completion %s", pending_id)
                return False
            self._settle(pending_id, CancelDetails())
            logger.info("Cancelled pending completion %s", pending_id)
            return True

    async def mark_incomplete(self, user_id: str, task_kind: str, day: date) -> int:
        """Undo a verified completion together with the points it earned.

        Returns:
            The user's recomputed point total, never below zero
        """
        with span("completion_service.mark_incomplete"):
            completion = await self._store.find_verified_completion(user_id, task_kind, day)
            if completion is None:
                logger.info("No verified %s for %s on %s", task_kind, user_id, day)
                return await self._ledger.total(user_id)

            # Reverse before deleting: the delete clears the entry's completion link
            await self._ledger.reverse_completion(user_id=user_id, task_kind=task_kind, completion_id=completion.id)
            try:
                await self._store.delete_completion(completion.id, expected_status=CompletionStatus.VERIFIED)
            except CompletionNotFoundError:
                logger.info("Completion %s was removed concurrently", completion.id)

            await refresh_streak(self._store, user_id=user_id, family_id=completion.family_id, today=self._clock())
            total = await self._ledger.total(user_id)
            log_with_user_context(
                logger,
                "info",
                "Completion marked incomplete",
                user_id=user_id,
                completion_id=completion.id,
                total=total,
            )
            return total

    async def edit_details(self, completion_id: str, new_details: Mapping[str, Any]) -> TaskCompletion:
        """Change the details of a verified completion without touching points or verified_at.

        Raises:
            CompletionNotFoundError: If the completion does not exist
            InvalidTransitionError: If the completion is not verified
            DetailValidationError: If the details do not fit the task
        """
        with span("completion_service.edit_details"):
            completion = await self._store.get_completion(completion_id)
            if completion.status != CompletionStatus.VERIFIED:
                raise InvalidTransitionError(f"Completion {completion_id} is {completion.status}, not verified")
            task = await self.get_task(completion.family_id, completion.task_kind)
            clean = validate_details(task, new_details)
            return await self._store.update_completion_details(
                completion_id, clean, expected_status=CompletionStatus.VERIFIED
            )

    # Read helpers

    async def get_user_summary(self, user_id: str, family_id: str, week_of: date | None = None) -> UserSummary:
        """Points, streak, week map and today's task states for one member."""
        with span("completion_service.get_user_summary"):
            today = self._clock()
            bounds = week_bounds(week_of or today, self._settings.week_start_day)
            streak = await refresh_streak(self._store, user_id=user_id, family_id=family_id, today=today)
            week = await load_week(self._store, user_id=user_id, bounds=bounds)

            done_today = {
                completion.task_kind: completion.id
                for completion in await self._store.query_completions(
                    user_id, start=today, end=today, status=CompletionStatus.VERIFIED
                )
            }
            tasks = [
                TaskDayState(
                    task_kind=task.kind,
                    name=task.name,
                    completed=task.kind in done_today,
                    completion_id=done_today.get(task.kind),
                )
                for task in await self.list_tasks(family_id)
            ]

            return UserSummary(
                user_id=user_id,
                family_id=family_id,
                total_points=await self._ledger.total(user_id),
                current_streak=streak,
                week_start=bounds.start,
                week=week,
                today=tasks,
            )

    async def get_family_leaderboard(self, family_id: str) -> list[LeaderboardEntry]:
        """Members ranked by points earned in the family, then by streak."""
        with span("completion_service.get_family_leaderboard"):
            today = self._clock()
            totals = await self._store.sum_points_by_member(family_id)
            members = {stats.user_id for stats in await self._store.list_member_stats(family_id)} | set(totals)

            standings = []
            for user_id in members:
                streak = await refresh_streak(self._store, user_id=user_id, family_id=family_id, today=today)
                standings.append((max(0, totals.get(user_id, 0)), streak, user_id))
            standings.sort(key=lambda standing: (-standing[0], -standing[1], standing[2]))

            return [
                LeaderboardEntry(rank=rank, user_id=user_id, total_points=points, current_streak=streak)
                for rank, (points, streak, user_id) in enumerate(standings, start=1)
            ]

    async def recent_activity(
        self, family_id: str, limit: int = constants.RECENT_ACTIVITY_LIMIT
    ) -> list[ActivityItem]:
        """The family's latest verified completions, newest first."""
        if limit < 1:
            raise ValueError("Activity limit must be positive")
        with span("completion_service.recent_activity"):
            names = {task.kind: task.name for task in await self.list_tasks(family_id)}
            return [
                ActivityItem(
                    completion_id=completion.id,
                    user_id=completion.user_id,
                    task_kind=completion.task_kind,
                    task_name=names.get(completion.task_kind, completion.task_kind),
                    completed_date=completion.completed_date,
                    proof_ref=completion.proof_ref,
                    verified_at=completion.verified_at,
                )
                for completion in await self._store.recent_completions(family_id, limit=limit)
            ]
