"""Step chat endpoint: streamed help for one checklist step."""

from typing import Literal

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from studygate.app.api.responses import streaming_response
from studygate.app.core.config import settings
from studygate.app.core.logging import get_logger
from studygate.app.core.metrics import get_metrics_collector
from studygate.app.db.crud import get_assignment_for_user
from studygate.app.db.dependencies import SessionDep
from studygate.app.db.models import User
from studygate.app.exceptions import NotFoundError
from studygate.app.middleware.auth import require_user
from studygate.app.middleware.request_id import get_request_id
from studygate.app.prompts import build_step_chat_system_prompt
from studygate.app.providers.base import CompletionRequest
from studygate.app.services.persistence import StepChatSink
from studygate.app.services.rate_limit import CHAT_ACTION, get_policy
from studygate.app.services.request_gate import RequestGate, get_request_gate

logger = get_logger(__name__)

router = APIRouter()


class ChatMessage(BaseModel):
    """One turn of a step conversation."""
    role: Literal["user", "assistant"]
    content: str


class StepChatRequest(BaseModel):
    assignment_id: str = Field(..., min_length=1)
    step_id: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1, max_length=20_000)
    history: list[ChatMessage] = Field(default_factory=list)


@router.post("/api/step-chat", response_model=None)
async def step_chat(
    body: StepChatRequest,
    request: Request,
    session: SessionDep,
    user: User = Depends(require_user),
    gate: RequestGate = Depends(get_request_gate),
) -> StreamingResponse:
    """Stream an answer about one step of an assignment.

    The reply is streamed as plain text. When the stream ends the exchange
    is appended to the step's chat history.

    Raises:
        NotFoundError: Unknown assignment or step, or owned by someone else
        QuotaExceededError: Chat rate limit reached (429)
        ProviderError: Upstream failed before the first fragment (502)
    """
    request_id = get_request_id(request)

    assignment = await get_assignment_for_user(session, body.assignment_id, user.id)
    step = None
    if assignment is not None:
        step = next((s for s in assignment.steps if s.id == body.step_id), None)
    if assignment is None or step is None:
        raise NotFoundError("Assignment or step")

    history = [message.model_dump() for message in body.history]
    completion = CompletionRequest(
        messages=history + [{"role": "user", "content": body.message}],
        system=build_step_chat_system_prompt(assignment, assignment.steps, step),
        max_tokens=settings.llm_chat_max_tokens,
    )
    sink = StepChatSink(step.id, history, body.message, metrics=get_metrics_collector())

    result = await gate.handle(
        CHAT_ACTION,
        user.id,
        get_policy(CHAT_ACTION),
        completion,
        on_complete=sink,
        request_id=request_id,
    )
    return streaming_response(result)
