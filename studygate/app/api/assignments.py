"""Assignment endpoints: checklist generation, saving, listing and progress."""

from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from studygate.app.api.responses import collect_text, streaming_response
from studygate.app.core.config import settings
from studygate.app.core.logging import get_logger
from studygate.app.core.metrics import get_metrics_collector
from studygate.app.db.crud import (
    create_assignment_with_steps,
    get_assignment_for_user,
    get_step_for_user,
    list_assignments_for_user,
    set_step_completed,
)
from studygate.app.db.dependencies import SessionDep
from studygate.app.db.models import Assignment, User
from studygate.app.exceptions import InvalidAssignmentError, NotFoundError
from studygate.app.middleware.auth import require_user
from studygate.app.middleware.request_id import get_request_id
from studygate.app.prompts import build_checklist_prompt
from studygate.app.providers.base import CompletionRequest
from studygate.app.services.checklist_parser import parse_checklist
from studygate.app.services.persistence import ChecklistSink
from studygate.app.services.rate_limit import PARSE_ACTION, get_policy
from studygate.app.services.request_gate import RequestGate, get_request_gate

logger = get_logger(__name__)

router = APIRouter()


class ParseAssignmentRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=200_000)
    stream: bool = False


class StepIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = ""


class SaveAssignmentRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    steps: list[StepIn] = Field(default_factory=list)
    original_text: str = ""


class StepUpdate(BaseModel):
    completed: bool


def assignment_with_progress(assignment: Assignment) -> dict[str, Any]:
    steps = [step.to_dict() for step in assignment.steps]
    return {
        "id": assignment.id,
        "user_id": assignment.user_id,
        "title": assignment.title,
        "original_text": assignment.original_text,
        "created_at": assignment.created_at.isoformat() if assignment.created_at else None,
        "steps": steps,
        "completed_count": sum(1 for step in steps if step["completed"]),
        "total_steps": len(steps),
    }


@router.post("/api/parse-assignment", response_model=None)
async def parse_assignment(
    body: ParseAssignmentRequest,
    request: Request,
    session: SessionDep,
    user: User = Depends(require_user),
    gate: RequestGate = Depends(get_request_gate),
) -> StreamingResponse | dict[str, Any]:
    """Generate a checklist for an assignment text and save it.

    With ``stream`` the generated JSON is relayed as it arrives and saved
    once complete; otherwise the parsed checklist is returned.

    Raises:
        QuotaExceededError: Upload rate limit reached (429)
        ProviderError: Upstream failure (502)
        MalformedUpstreamOutputError: Output is not a checklist (422)
        InvalidAssignmentError: Text is not an assignment (400)
    """
    request_id = get_request_id(request)
    completion = CompletionRequest(
        messages=[{"role": "user", "content": build_checklist_prompt(body.text)}],
        max_tokens=settings.llm_parse_max_tokens,
    )
    policy = get_policy(PARSE_ACTION)

    if body.stream:
        sink = ChecklistSink(user.id, body.text, metrics=get_metrics_collector())
        result = await gate.handle(
            PARSE_ACTION, user.id, policy, completion, on_complete=sink, request_id=request_id
        )
        return streaming_response(result)

    result = await gate.handle(PARSE_ACTION, user.id, policy, completion, request_id=request_id)
    raw = await collect_text(result)
    checklist = parse_checklist(raw)

    steps = [step.model_dump() for step in checklist.steps]
    assignment = await create_assignment_with_steps(
        session,
        user_id=user.id,
        title=checklist.title,
        original_text=body.text,
        steps=steps,
    )
    logger.info(
        f"Created assignment {assignment.id} with {len(steps)} steps",
        extra={"request_id": request_id, "user_id": user.id},
    )
    return {"id": assignment.id, "title": checklist.title, "steps": steps}


@router.post("/api/save-assignment")
async def save_assignment(
    body: SaveAssignmentRequest,
    session: SessionDep,
    user: User = Depends(require_user),
) -> dict[str, Any]:
    """Save an already generated checklist."""
    if not body.steps:
        raise InvalidAssignmentError("Invalid assignment data: at least one step is required")

    steps = [step.model_dump() for step in body.steps]
    assignment = await create_assignment_with_steps(
        session,
        user_id=user.id,
        title=body.title,
        original_text=body.original_text,
        steps=steps,
    )
    return {"id": assignment.id, "title": body.title, "steps": steps}


@router.get("/api/assignments")
async def list_assignments(
    session: SessionDep,
    user: User = Depends(require_user),
) -> list[dict[str, Any]]:
    """All of the caller's assignments, newest first, with progress."""
    assignments = await list_assignments_for_user(session, user.id)
    return [assignment_with_progress(assignment) for assignment in assignments]


@router.get("/api/assignments/{assignment_id}")
async def get_assignment(
    assignment_id: str,
    session: SessionDep,
    user: User = Depends(require_user),
) -> dict[str, Any]:
    assignment = await get_assignment_for_user(session, assignment_id, user.id)
    if assignment is None:
        raise NotFoundError("Assignment")
    return assignment_with_progress(assignment)


@router.patch("/api/steps/{step_id}")
async def update_step(
    step_id: str,
    body: StepUpdate,
    session: SessionDep,
    user: User = Depends(require_user),
) -> dict[str, Any]:
    """Tick or untick a checklist step."""
    step = await get_step_for_user(session, step_id, user.id)
    if step is None:
        raise NotFoundError("Step")
    step = await set_step_completed(session, step, body.completed)
    return step.to_dict()
