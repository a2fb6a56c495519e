"""HTTP API for the task completion workflow."""

import base64
import binascii
import logging
from datetime import date

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from kin.core.config import constants
from kin.core.errors import DetailValidationError, ErrorCode, KinError, classify_error_with_response
from kin.domain.completion import ActivityItem, CompletionOutcome, LeaderboardEntry, TaskCompletion, UserSummary
from kin.domain.requests import (
    CompletionDetails,
    EvidenceUpload,
    SlotRef,
    StartSession,
    SubmitCompletion,
    WeeklyGoalUpdate,
)
from kin.domain.task import TaskDefinition
from kin.services.completion_service import CompletionService
from kin.services.verification_machine import VerificationSession


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["completions"])

# Starlette renamed the 422 constant; the number is stable
HTTP_UNPROCESSABLE = 422

ERROR_STATUS = {
    ErrorCode.ERR_EVIDENCE_UPLOAD_FAILED: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.ERR_VERIFICATION_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.ERR_INVALID_DETAILS: HTTP_UNPROCESSABLE,
    ErrorCode.ERR_ALREADY_COMPLETED: status.HTTP_409_CONFLICT,
    ErrorCode.ERR_COMPLETION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.ERR_INVALID_STATE_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorCode.ERR_BACKDATE_CONFIRMATION_REQUIRED: status.HTTP_428_PRECONDITION_REQUIRED,
    ErrorCode.ERR_UNKNOWN_TASK: status.HTTP_404_NOT_FOUND,
    ErrorCode.ERR_SESSION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
}


async def kin_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    """Render workflow errors as structured JSON with a matching status code."""
    error = classify_error_with_response(exc)
    status_code = ERROR_STATUS.get(error.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    logger.warning("completion_api_error", extra={"code": error.code, "status_code": status_code, "error": str(exc)})

    content = error.model_dump(mode="json")
    if isinstance(exc, DetailValidationError):
        content["field_errors"] = exc.field_errors
    return JSONResponse(status_code=status_code, content=content)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(KinError, kin_error_handler)


def get_completion_service(request: Request) -> CompletionService:
    """Service instance wired by the application lifespan."""
    return request.app.state.completion_service


def _decode_image(payload: EvidenceUpload) -> bytes | None:
    if payload.image_base64 is None:
        return None
    try:
        return base64.b64decode(payload.image_base64, validate=True)
    except binascii.Error as err:
        raise HTTPException(
            status_code=HTTP_UNPROCESSABLE,
            detail="image_base64 is not valid base64",
        ) from err


# Tasks


@router.get("/families/{family_id}/tasks")
async def list_tasks(
    family_id: str,
    service: CompletionService = Depends(get_completion_service),
) -> list[TaskDefinition]:
    """Built-in and family-defined tasks."""
    return await service.list_tasks(family_id)


@router.post("/families/{family_id}/tasks", status_code=status.HTTP_201_CREATED)
async def define_task(
    family_id: str,
    task: TaskDefinition,
    service: CompletionService = Depends(get_completion_service),
) -> TaskDefinition:
    try:
        return await service.define_task(family_id, task)
    except ValueError as err:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(err)) from err


@router.put("/members/{user_id}/weekly-goal", status_code=status.HTTP_204_NO_CONTENT)
async def set_weekly_goal(
    user_id: str,
    payload: WeeklyGoalUpdate,
    service: CompletionService = Depends(get_completion_service),
) -> None:
    await service.set_weekly_goal(user_id, payload.family_id, payload.goal)


# Interactive sessions


@router.post("/sessions", status_code=status.HTTP_201_CREATED)
async def start_session(
    payload: StartSession,
    service: CompletionService = Depends(get_completion_service),
) -> VerificationSession:
    return await service.start_session(
        user_id=payload.user_id,
        family_id=payload.family_id,
        task_kind=payload.task_kind,
        target_date=payload.target_date,
    )


@router.get("/sessions/{session_id}")
async def get_session(
    session_id: str,
    service: CompletionService = Depends(get_completion_service),
) -> VerificationSession:
    return service.get_session(session_id)


@router.post("/sessions/{session_id}/evidence")
async def submit_evidence(
    session_id: str,
    payload: EvidenceUpload,
    service: CompletionService = Depends(get_completion_service),
) -> VerificationSession:
    """Upload the proof photo (or none) and return the session after judgment."""
    return await service.submit_evidence(session_id, _decode_image(payload), content_type=payload.content_type)


SESSION_ACTIONS = {
    "retry": "retry_judgment",
    "continue": "continue_degraded",
    "accept": "accept",
    "reject": "reject",
    "confirm-backdate": "confirm_backdate",
    "decline-backdate": "decline_backdate",
    "abandon": "abandon",
    "cancel-details": "cancel_details",
}


@router.post("/sessions/{session_id}/actions/{action}")
async def apply_session_action(
    session_id: str,
    action: str,
    service: CompletionService = Depends(get_completion_service),
) -> VerificationSession:
    """Apply one user decision to a session."""
    method = SESSION_ACTIONS.get(action)
    if method is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown action '{action}'")
    return await getattr(service, method)(session_id)


@router.post("/sessions/{session_id}/details")
async def capture_details(
    session_id: str,
    payload: CompletionDetails,
    service: CompletionService = Depends(get_completion_service),
) -> CompletionOutcome | None:
    return await service.capture_details(session_id, payload.details)


@router.post("/reviews", status_code=status.HTTP_201_CREATED)
async def open_review(
    payload: SlotRef,
    service: CompletionService = Depends(get_completion_service),
) -> VerificationSession:
    """Open a verified completion to keep it or mark it incomplete."""
    return await service.open_review(payload.user_id, payload.task_kind, payload.day)


# Completions


@router.post("/completions", status_code=status.HTTP_201_CREATED)
async def submit_completion(
    payload: SubmitCompletion,
    service: CompletionService = Depends(get_completion_service),
) -> dict[str, str]:
    """Scripted submission. Returns the pending completion ID."""
    pending_id = await service.submit_completion(
        payload.user_id,
        payload.family_id,
        payload.task_kind,
        payload.target_date,
        _decode_image(payload),
        content_type=payload.content_type,
        confirm_backdate=payload.confirm_backdate,
        continue_on_failure=payload.continue_on_failure,
    )
    return {"pending_id": pending_id}


@router.post("/completions/{pending_id}/finalize")
async def finalize_completion(
    pending_id: str,
    payload: CompletionDetails,
    service: CompletionService = Depends(get_completion_service),
) -> CompletionOutcome | None:
    """Finalize a pending completion. Returns null if it is gone or already finalized."""
    return await service.finalize_with_details(pending_id, payload.details)


@router.delete("/completions/{pending_id}")
async def cancel_pending_completion(
    pending_id: str,
    service: CompletionService = Depends(get_completion_service),
) -> dict[str, bool]:
    return {"cancelled": await service.cancel_pending_completion(pending_id)}


@router.patch("/completions/{completion_id}/details")
async def edit_details(
    completion_id: str,
    payload: CompletionDetails,
    service: CompletionService = Depends(get_completion_service),
) -> TaskCompletion:
    return await service.edit_details(completion_id, payload.details)


@router.post("/completions/mark-incomplete")
async def mark_incomplete(
    payload: SlotRef,
    service: CompletionService = Depends(get_completion_service),
) -> dict[str, int]:
    total = await service.mark_incomplete(payload.user_id, payload.task_kind, payload.day)
    return {"total_points": total}


@router.get("/families/{family_id}/members/{user_id}/summary")
async def get_user_summary(
    family_id: str,
    user_id: str,
    week_of: date | None = None,
    service: CompletionService = Depends(get_completion_service),
) -> UserSummary:
    """Points, streak, week map and today's tasks for one member."""
    return await service.get_user_summary(user_id, family_id, week_of)


# Family views


@router.get("/families/{family_id}/leaderboard")
async def get_family_leaderboard(
    family_id: str,
    service: CompletionService = Depends(get_completion_service),
) -> list[LeaderboardEntry]:
    return await service.get_family_leaderboard(family_id)


@router.get("/families/{family_id}/activity")
async def recent_activity(
    family_id: str,
    limit: int = Query(default=constants.RECENT_ACTIVITY_LIMIT, ge=1, le=100),
    service: CompletionService = Depends(get_completion_service),
) -> list[ActivityItem]:
    """Latest verified completions across the family."""
    return await service.recent_activity(family_id, limit)
