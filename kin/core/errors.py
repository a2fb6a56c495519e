"""Error taxonomy and classification for the completion workflow."""

from enum import Enum

from pydantic import BaseModel


class KinError(Exception):
    """Base class for workflow errors surfaced to callers."""


class EvidenceUploadError(KinError):
    """The proof image could not be stored. Recoverable: retry or abandon."""


class VerificationServiceUnavailableError(KinError):
    """The AI judge failed or returned garbage. Recoverable: retry, continue degraded, or abandon."""


class DetailValidationError(KinError):
    """Completion details do not satisfy the task's metric schema.

    The pending record is preserved so the caller can correct the details in place.
    """

    def __init__(self, message: str, *, field_errors: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.field_errors = field_errors or {}


class CompletionConflictError(KinError):
    """Another completion is already verified for the same user, task and day."""


class CompletionNotFoundError(KinError, KeyError):
    """The completion no longer exists (e.g. cancelled by a concurrent action)."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class InvalidTransitionError(KinError, ValueError):
    """An event is not valid for the verification session's current state."""


class BackdateConfirmationRequiredError(KinError):
    """Completing a task for a past day needs explicit confirmation."""


class SessionNotFoundError(KinError, KeyError):
    """The verification session finished or never existed."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class UnknownTaskError(KinError, KeyError):
    """The task kind is neither built in nor defined for the family."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class ErrorSeverity(Enum):
    """Severity levels for errors."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCode:
    """Error codes for specific error conditions."""

    # External collaborator errors
    ERR_EVIDENCE_UPLOAD_FAILED = "ERR_EVIDENCE_UPLOAD_FAILED"
    ERR_VERIFICATION_UNAVAILABLE = "ERR_VERIFICATION_UNAVAILABLE"

    # Completion errors
    ERR_INVALID_DETAILS = "ERR_INVALID_DETAILS"
    ERR_ALREADY_COMPLETED = "ERR_ALREADY_COMPLETED"
    ERR_COMPLETION_NOT_FOUND = "ERR_COMPLETION_NOT_FOUND"
    ERR_INVALID_STATE_TRANSITION = "ERR_INVALID_STATE_TRANSITION"
    ERR_BACKDATE_CONFIRMATION_REQUIRED = "ERR_BACKDATE_CONFIRMATION_REQUIRED"
    ERR_UNKNOWN_TASK = "ERR_UNKNOWN_TASK"
    ERR_SESSION_NOT_FOUND = "ERR_SESSION_NOT_FOUND"

    # Generic errors
    ERR_UNKNOWN = "ERR_UNKNOWN"


class ErrorResponse(BaseModel):
    """Structured error response with user-friendly messaging."""

    code: str
    message: str
    suggestion: str
    severity: ErrorSeverity
    recoverable: bool = False


def classify_error_with_response(exception: Exception) -> ErrorResponse:  # noqa: PLR0911
    """Classify an error and return a structured response with recovery suggestions.

    Args:
        exception: The exception raised during the workflow

    Returns:
        ErrorResponse with code, message, suggestion, severity and recoverability
    """
    if isinstance(exception, EvidenceUploadError):
        return ErrorResponse(
            code=ErrorCode.ERR_EVIDENCE_UPLOAD_FAILED,
            message="Your photo could not be uploaded.",
            suggestion="Check your connection and try again, or cancel this completion.",
            severity=ErrorSeverity.MEDIUM,
            recoverable=True,
        )

    if isinstance(exception, VerificationServiceUnavailableError):
        return ErrorResponse(
            code=ErrorCode.ERR_VERIFICATION_UNAVAILABLE,
            message="Photo verification is unavailable right now.",
            suggestion="Try again, continue without AI verification, or cancel.",
            severity=ErrorSeverity.MEDIUM,
            recoverable=True,
        )

    if isinstance(exception, DetailValidationError):
        fields = ", ".join(sorted(exception.field_errors)) or "details"
        return ErrorResponse(
            code=ErrorCode.ERR_INVALID_DETAILS,
            message=f"Some details need fixing: {fields}.",
            suggestion="Correct the highlighted fields and submit again.",
            severity=ErrorSeverity.LOW,
            recoverable=True,
        )

    if isinstance(exception, CompletionConflictError):
        return ErrorResponse(
            code=ErrorCode.ERR_ALREADY_COMPLETED,
            message="This task is already completed for that day.",
            suggestion="No action needed. Mark it incomplete first if you want to redo it.",
            severity=ErrorSeverity.LOW,
        )

    if isinstance(exception, CompletionNotFoundError):
        return ErrorResponse(
            code=ErrorCode.ERR_COMPLETION_NOT_FOUND,
            message="That completion no longer exists.",
            suggestion="Refresh to see the current state of your tasks.",
            severity=ErrorSeverity.LOW,
        )

    if isinstance(exception, BackdateConfirmationRequiredError):
        return ErrorResponse(
            code=ErrorCode.ERR_BACKDATE_CONFIRMATION_REQUIRED,
            message="You are completing a task for a past day.",
            suggestion="Confirm that you want to record it for that day.",
            severity=ErrorSeverity.LOW,
            recoverable=True,
        )

    if isinstance(exception, UnknownTaskError):
        return ErrorResponse(
            code=ErrorCode.ERR_UNKNOWN_TASK,
            message="That task does not exist for your family.",
            suggestion="Pick one of your family's active tasks.",
            severity=ErrorSeverity.LOW,
        )

    if isinstance(exception, SessionNotFoundError):
        return ErrorResponse(
            code=ErrorCode.ERR_SESSION_NOT_FOUND,
            message="This completion attempt has already finished.",
            suggestion="Start again from the task list.",
            severity=ErrorSeverity.LOW,
        )

    if isinstance(exception, InvalidTransitionError):
        return ErrorResponse(
            code=ErrorCode.ERR_INVALID_STATE_TRANSITION,
            message="This action cannot be performed in the current state.",
            suggestion="Refresh and try again.",
            severity=ErrorSeverity.LOW,
        )

    return ErrorResponse(
        code=ErrorCode.ERR_UNKNOWN,
        message="An unexpected error occurred.",
        suggestion="Please try again later. If the problem persists, contact support.",
        severity=ErrorSeverity.MEDIUM,
    )
