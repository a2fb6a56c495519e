"""Unit tests for error classification utilities."""

import pytest

from kin.core.errors import (
    BackdateConfirmationRequiredError,
    CompletionConflictError,
    CompletionNotFoundError,
    DetailValidationError,
    ErrorCode,
    ErrorSeverity,
    EvidenceUploadError,
    InvalidTransitionError,
    SessionNotFoundError,
    UnknownTaskError,
    VerificationServiceUnavailableError,
    classify_error_with_response,
)


@pytest.mark.unit
class TestClassifyErrorWithResponse:
    """Tests for classify_error_with_response function."""

    def test_upload_failure_is_recoverable(self):
        """Upload failures can be retried by the user."""
        response = classify_error_with_response(EvidenceUploadError("Storage returned status 503 for u1/1.jpg"))

        assert response.code == ErrorCode.ERR_EVIDENCE_UPLOAD_FAILED
        assert response.severity == ErrorSeverity.MEDIUM
        assert response.recoverable is True
        assert "uploaded" in response.message

    def test_verification_unavailable_offers_continue(self):
        response = classify_error_with_response(VerificationServiceUnavailableError("status 500"))

        assert response.code == ErrorCode.ERR_VERIFICATION_UNAVAILABLE
        assert response.recoverable is True
        assert "continue without AI verification" in response.suggestion

    def test_detail_errors_name_the_fields(self):
        error = DetailValidationError(
            "Invalid details for workout",
            field_errors={"duration_minutes": "Must be a number", "calories_burned": "Must be a number"},
        )

        response = classify_error_with_response(error)

        assert response.code == ErrorCode.ERR_INVALID_DETAILS
        assert "calories_burned, duration_minutes" in response.message
        assert response.recoverable is True

    def test_detail_errors_without_fields(self):
        response = classify_error_with_response(DetailValidationError("Invalid details"))

        assert "details" in response.message

    @pytest.mark.parametrize(
        ("exception", "code"),
        [
            (CompletionConflictError("already verified"), ErrorCode.ERR_ALREADY_COMPLETED),
            (CompletionNotFoundError("Completion not found: 7"), ErrorCode.ERR_COMPLETION_NOT_FOUND),
            (BackdateConfirmationRequiredError("past day"), ErrorCode.ERR_BACKDATE_CONFIRMATION_REQUIRED),
            (UnknownTaskError("Unknown task 'juggling'"), ErrorCode.ERR_UNKNOWN_TASK),
            (SessionNotFoundError("No active verification session abc"), ErrorCode.ERR_SESSION_NOT_FOUND),
            (InvalidTransitionError("cannot accept"), ErrorCode.ERR_INVALID_STATE_TRANSITION),
        ],
    )
    def test_workflow_errors_are_low_severity(self, exception, code):
        response = classify_error_with_response(exception)

        assert response.code == code
        assert response.severity == ErrorSeverity.LOW

    def test_unknown_error(self):
        """Anything unrecognized falls back to a generic response."""
        response = classify_error_with_response(RuntimeError("boom"))

        assert response.code == ErrorCode.ERR_UNKNOWN
        assert response.severity == ErrorSeverity.MEDIUM
        assert response.recoverable is False


@pytest.mark.unit
class TestErrorTypes:
    def test_key_error_subclasses_keep_plain_messages(self):
        """KeyError normally quotes its message; these do not."""
        assert str(CompletionNotFoundError("Completion not found: 7")) == "Completion not found: 7"
        assert str(UnknownTaskError("Unknown task")) == "Unknown task"
        assert str(SessionNotFoundError("gone")) == "gone"

    def test_invalid_transition_is_a_value_error(self):
        with pytest.raises(ValueError):
            raise InvalidTransitionError("nope")

    def test_detail_errors_default_to_empty(self):
        assert DetailValidationError("bad").field_errors == {}
