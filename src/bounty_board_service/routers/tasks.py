"""Task lifecycle endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from bounty_board_service.core.state import get_app_state
from bounty_board_service.routers.validation import authenticate, parse_json_body, parse_model
from bounty_board_service.schemas import (
    AttachBountyCommentRequest,
    CreateTaskRequest,
    SubmitWorkRequest,
    UpdateBountyRequest,
    UpdateTimelineRequest,
)
from bounty_board_service.services.outcome import PartialOk, to_envelope

if TYPE_CHECKING:
    from bounty_board_service.services.outcome import Outcome
    from bounty_board_service.services.task_orchestrator import TaskOrchestrator

router = APIRouter()

MULTI_STATUS = 207


def _orchestrator() -> TaskOrchestrator:
    state = get_app_state()
    if state.orchestrator is None:
        msg = "Task orchestrator not initialized"
        raise RuntimeError(msg)
    return state.orchestrator


def outcome_response(outcome: Outcome, success_status: int) -> JSONResponse:
    """Full success uses ``success_status``; partial success is always 207."""
    status_code = MULTI_STATUS if isinstance(outcome, PartialOk) else success_status
    return JSONResponse(status_code=status_code, content=to_envelope(outcome))


@router.post("/tasks", status_code=201)
async def create_task(
    request: Request,
    authorization: str | None = Header(default=None),
) -> JSONResponse:
    """Create a task, fund its escrow and advertise the bounty on the issue."""
    user_id = authenticate(authorization)
    payload = parse_model(CreateTaskRequest, parse_json_body(await request.body()))
    outcome = await _orchestrator().create_task(
        installation_id=payload.installation_id,
        creator_id=user_id,
        issue=payload.issue.model_dump(),
        bounty=payload.bounty,
        timeline=payload.timeline,
        timeline_type=payload.timeline_type,
        bounty_label_id=payload.bounty_label_id,
    )
    return outcome_response(outcome, 201)


@router.get("/tasks/{task_id}")
async def get_task(task_id: str) -> JSONResponse:
    """Get a single task. Tasks still awaiting payment are reported as missing."""
    task = _orchestrator().get_task(task_id)
    return JSONResponse(status_code=200, content={"data": task, "message": "Task retrieved"})


@router.delete("/tasks/{task_id}")
async def delete_task(
    task_id: str,
    authorization: str | None = Header(default=None),
) -> JSONResponse:
    """Refund and delete an open task."""
    user_id = authenticate(authorization)
    outcome = await _orchestrator().delete_task(task_id, user_id)
    return outcome_response(outcome, 200)


@router.patch("/tasks/{task_id}/bounty")
async def update_bounty(
    task_id: str,
    request: Request,
    authorization: str | None = Header(default=None),
) -> JSONResponse:
    user_id = authenticate(authorization)
    payload = parse_model(UpdateBountyRequest, parse_json_body(await request.body()))
    outcome = await _orchestrator().update_bounty(task_id, user_id, payload.new_bounty)
    return outcome_response(outcome, 200)


@router.patch("/tasks/{task_id}/timeline")
async def update_timeline(
    task_id: str,
    request: Request,
    authorization: str | None = Header(default=None),
) -> JSONResponse:
    user_id = authenticate(authorization)
    payload = parse_model(UpdateTimelineRequest, parse_json_body(await request.body()))
    outcome = await _orchestrator().update_timeline(
        task_id, user_id, payload.timeline, payload.timeline_type
    )
    return outcome_response(outcome, 200)


@router.post("/tasks/{task_id}/bounty-comment")
async def attach_bounty_comment(
    task_id: str,
    request: Request,
    authorization: str | None = Header(default=None),
) -> JSONResponse:
    """Post the bounty comment for a task created without one."""
    user_id = authenticate(authorization)
    payload = parse_model(AttachBountyCommentRequest, parse_json_body(await request.body()))
    outcome = await _orchestrator().attach_bounty_comment(
        task_id, user_id, payload.bounty_label_id
    )
    return outcome_response(outcome, 200)


@router.post("/tasks/{task_id}/applications", status_code=201)
async def apply_for_task(
    task_id: str,
    authorization: str | None = Header(default=None),
) -> JSONResponse:
    user_id = authenticate(authorization)
    outcome = await _orchestrator().apply_for_task(task_id, user_id)
    return outcome_response(outcome, 201)


@router.post("/tasks/{task_id}/applications/{contributor_id}/accept")
async def accept_contributor(
    task_id: str,
    contributor_id: str,
    authorization: str | None = Header(default=None),
) -> JSONResponse:
    """Assign an applicant to the task in escrow and mark it in progress."""
    user_id = authenticate(authorization)
    outcome = await _orchestrator().accept_contributor(task_id, user_id, contributor_id)
    return outcome_response(outcome, 200)


@router.post("/tasks/{task_id}/submissions", status_code=201)
async def submit_work(
    task_id: str,
    request: Request,
    authorization: str | None = Header(default=None),
) -> JSONResponse:
    user_id = authenticate(authorization)
    payload = parse_model(SubmitWorkRequest, parse_json_body(await request.body()))
    outcome = await _orchestrator().mark_as_complete(
        task_id, user_id, payload.pull_request, payload.attachment_url
    )
    return outcome_response(outcome, 201)


@router.post("/tasks/{task_id}/completion")
async def approve_completion(
    task_id: str,
    authorization: str | None = Header(default=None),
) -> JSONResponse:
    """Release the bounty to the contributor and settle the task."""
    user_id = authenticate(authorization)
    outcome = await _orchestrator().approve_completion(task_id, user_id)
    return outcome_response(outcome, 200)
