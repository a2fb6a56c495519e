"""Pure state transitions for one task-completion attempt.

``transition(session, event)`` never performs I/O. It returns the next session
snapshot together with an ``Effect`` that tells the completion service which
side effect (AI call, row insert, rollback...) to run next.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import date
from enum import StrEnum

from pydantic import BaseModel, Field

from kin.core.errors import InvalidTransitionError
from kin.domain.completion import VerificationResult


logger = logging.getLogger(__name__)


class VerificationState(StrEnum):
    """Lifecycle state of a verification session."""

    AWAITING_EVIDENCE = "awaiting_evidence"
    AWAITING_JUDGMENT = "awaiting_judgment"
    AWAITING_USER_DECISION = "awaiting_user_decision"
    AWAITING_BACKDATE_CONFIRMATION = "awaiting_backdate_confirmation"
    FINALIZING = "finalizing"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({VerificationState.ACCEPTED, VerificationState.REJECTED, VerificationState.CANCELLED})


class SessionMode(StrEnum):
    """Whether the session submits a new completion or reviews a verified one."""

    SUBMIT = "submit"
    REVIEW = "review"


class Effect(StrEnum):
    """Side effect the caller must run after a transition."""

    NONE = "none"
    REQUEST_JUDGMENT = "request_judgment"
    OFFER_RECOVERY = "offer_recovery"
    CREATE_PENDING = "create_pending"
    CREATE_REJECTED = "create_rejected"
    DELETE_PENDING = "delete_pending"
    COMMIT = "commit"
    MARK_INCOMPLETE = "mark_incomplete"


class VerificationSession(BaseModel):
    """Snapshot of one in-flight completion attempt."""

    id: str = Field(default_factory=lambda: secrets.token_hex(8))
    mode: SessionMode = SessionMode.SUBMIT
    state: VerificationState = VerificationState.AWAITING_EVIDENCE
    user_id: str
    family_id: str
    task_kind: str
    target_date: date
    today: date
    proof_ref: str | None = None
    judgment_token: str | None = None
    result: VerificationResult | None = None
    failure: str | None = None
    backdate_confirmed: bool = False
    pending_id: str | None = None
    completion_id: str | None = None

    @property
    def is_backdated(self) -> bool:
        """True if the completion targets a day strictly before today."""
        return self.target_date < self.today

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


# Events


@dataclass(frozen=True)
class Submit:
    has_evidence: bool
    proof_ref: str | None = None


@dataclass(frozen=True)
class JudgmentReceived:
    token: str
    result: VerificationResult


@dataclass(frozen=True)
class JudgmentFailed:
    token: str
    error: str


@dataclass(frozen=True)
class RetryJudgment:
    pass


@dataclass(frozen=True)
class ContinueDegraded:
    pass


@dataclass(frozen=True)
class Accept:
    pass


@dataclass(frozen=True)
class Reject:
    pass


@dataclass(frozen=True)
class ConfirmBackdate:
    pass


@dataclass(frozen=True)
class DeclineBackdate:
    pass


@dataclass(frozen=True)
class PendingCreated:
    pending_id: str


@dataclass(frozen=True)
class DetailsCaptured:
    pass


@dataclass(frozen=True)
class CancelDetails:
    pass


@dataclass(frozen=True)
class Abandon:
    pass


Event = (
    Submit
    | JudgmentReceived
    | JudgmentFailed
    | RetryJudgment
    | ContinueDegraded
    | Accept
    | Reject
    | ConfirmBackdate
    | DeclineBackdate
    | PendingCreated
    | DetailsCaptured
    | CancelDetails
    | Abandon
)


@dataclass(frozen=True)
class Transition:
    """Result of applying an event: the new snapshot and the effect to run."""

    session: VerificationSession
    effect: Effect = Effect.NONE


def new_judgment_token() -> str:
    return secrets.token_hex(8)


def start_review(
    *,
    user_id: str,
    family_id: str,
    task_kind: str,
    target_date: date,
    today: date,
    completion_id: str,
    result: VerificationResult | None,
) -> VerificationSession:
    """Open an already verified completion for inspection."""
    return VerificationSession(
        mode=SessionMode.REVIEW,
        state=VerificationState.AWAITING_USER_DECISION,
        user_id=user_id,
        family_id=family_id,
        task_kind=task_kind,
        target_date=target_date,
        today=today,
        result=result,
        completion_id=completion_id,
    )


def _invalid(session: VerificationSession, event: Event) -> InvalidTransitionError:
    name = type(event).__name__
    return InvalidTransitionError(f"Cannot apply {name} in state {session.state} (session {session.id})")


def _accepting(session: VerificationSession, **updates: object) -> Transition:
    """Acceptance is gated on explicit confirmation when the target day is in the past."""
    candidate = session.model_copy(update=updates)
    if candidate.is_backdated and not candidate.backdate_confirmed:
        return Transition(candidate.model_copy(update={"state": VerificationState.AWAITING_BACKDATE_CONFIRMATION}))
    return Transition(candidate.model_copy(update={"state": VerificationState.FINALIZING}), Effect.CREATE_PENDING)


def transition(session: VerificationSession, event: Event) -> Transition:  # noqa: C901, PLR0911, PLR0912
    """Apply one event to a session.

    Raises:
        InvalidTransitionError: If the event is not allowed in the current state
    """
    state = session.state

    # Late answers from abandoned or superseded AI calls are dropped, never applied
    if isinstance(event, JudgmentReceived | JudgmentFailed) and (
        state != VerificationState.AWAITING_JUDGMENT or event.token != session.judgment_token
    ):
        logger.info("Discarding stale judgment for session %s", session.id)
        return Transition(session)

    if session.is_terminal:
        raise _invalid(session, event)

    if isinstance(event, Abandon):
        effect = Effect.DELETE_PENDING if session.pending_id else Effect.NONE
        return Transition(
            session.model_copy(update={"state": VerificationState.CANCELLED, "judgment_token": None}), effect
        )

    if state == VerificationState.AWAITING_EVIDENCE:
        if not isinstance(event, Submit):
            raise _invalid(session, event)
        if not event.has_evidence:
            return _accepting(session, result=VerificationResult.no_evidence())
        return Transition(
            session.model_copy(
                update={
                    "state": VerificationState.AWAITING_JUDGMENT,
                    "proof_ref": event.proof_ref,
                    "judgment_token": new_judgment_token(),
                    "failure": None,
                }
            ),
            Effect.REQUEST_JUDGMENT,
        )

    if state == VerificationState.AWAITING_JUDGMENT:
        if isinstance(event, JudgmentReceived | JudgmentFailed):
            if isinstance(event, JudgmentReceived):
                return Transition(
                    session.model_copy(
                        update={
                            "state": VerificationState.AWAITING_USER_DECISION,
                            "result": event.result,
                            "judgment_token": None,
                            "failure": None,
                        }
                    )
                )
            return Transition(
                session.model_copy(update={"failure": event.error, "judgment_token": None}), Effect.OFFER_RECOVERY
            )
        if session.failure is not None:
            if isinstance(event, RetryJudgment):
                return Transition(
                    session.model_copy(update={"failure": None, "judgment_token": new_judgment_token()}),
                    Effect.REQUEST_JUDGMENT,
                )
            if isinstance(event, ContinueDegraded):
                return Transition(
                    session.model_copy(
                        update={
                            "state": VerificationState.AWAITING_USER_DECISION,
                            "result": VerificationResult.degraded(),
                        }
                    )
                )
        raise _invalid(session, event)

    if state == VerificationState.AWAITING_USER_DECISION:
        if isinstance(event, Accept):
            if session.mode == SessionMode.REVIEW:
                return Transition(session.model_copy(update={"state": VerificationState.CANCELLED}))
            return _accepting(session)
        if isinstance(event, Reject):
            effect = Effect.MARK_INCOMPLETE if session.mode == SessionMode.REVIEW else Effect.CREATE_REJECTED
            return Transition(session.model_copy(update={"state": VerificationState.REJECTED}), effect)
        raise _invalid(session, event)

    if state == VerificationState.AWAITING_BACKDATE_CONFIRMATION:
        if isinstance(event, ConfirmBackdate):
            return _accepting(session, backdate_confirmed=True)
        if isinstance(event, DeclineBackdate):
            return Transition(session.model_copy(update={"state": VerificationState.CANCELLED}))
        raise _invalid(session, event)

    if state == VerificationState.FINALIZING:
        if isinstance(event, PendingCreated):
            return Transition(session.model_copy(update={"pending_id": event.pending_id}))
        if isinstance(event, DetailsCaptured) and session.pending_id:
            return Transition(
                session.model_copy(
                    update={"state": VerificationState.ACCEPTED, "completion_id": session.pending_id}
                ),
                Effect.COMMIT,
            )
        if isinstance(event, CancelDetails):
            effect = Effect.DELETE_PENDING if session.pending_id else Effect.NONE
            return Transition(session.model_copy(update={"state": VerificationState.CANCELLED}), effect)
        raise _invalid(session, event)

    raise _invalid(session, event)
