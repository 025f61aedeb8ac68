"""Completion hooks that persist relayed output.

Sinks run after the response stream has ended, possibly after the client
has gone away, so they open their own database sessions.
"""

from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from studygate.app.core.logging import get_logger
from studygate.app.core.metrics import MetricsCollector
from studygate.app.db.async_session import get_async_session
from studygate.app.db.crud import create_assignment_with_steps, update_step_chat_history
from studygate.app.exceptions import InvalidAssignmentError, MalformedUpstreamOutputError
from studygate.app.services.checklist_parser import parse_checklist
from studygate.app.services.stream_relay import RelayOutcome

logger = get_logger(__name__)


class StepChatSink:
    """Appends one user/assistant exchange to a step's chat history.

    Saved when the stream completed, or when it stopped early with some
    text already delivered to the student.
    """

    def __init__(
        self,
        step_id: str,
        history: List[Dict[str, str]],
        message: str,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.step_id = step_id
        self.history = list(history)
        self.message = message
        self.metrics = metrics
        self.saved = False

    def transcript(self, reply: str) -> List[Dict[str, str]]:
        return self.history + [
            {"role": "user", "content": self.message},
            {"role": "assistant", "content": reply},
        ]

    async def __call__(self, outcome: RelayOutcome) -> None:
        if not outcome.completed and not outcome.text:
            logger.info(
                f"Step chat {outcome.status.value} without output; history unchanged",
                extra={"request_id": outcome.request_id},
            )
            return

        try:
            async with get_async_session() as session:
                found = await update_step_chat_history(
                    session, self.step_id, self.transcript(outcome.text)
                )
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to save chat history for step {self.step_id}: {e}",
                extra={"request_id": outcome.request_id},
            )
            if self.metrics is not None:
                await self.metrics.record_error("persistence_failed")
            return

        if not found:
            logger.warning(
                f"Step {self.step_id} disappeared before its chat history was saved",
                extra={"request_id": outcome.request_id},
            )
            return
        self.saved = True


class ChecklistSink:
    """Parses a streamed checklist and saves it as a new assignment."""

    def __init__(
        self,
        user_id: str,
        original_text: str,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.user_id = user_id
        self.original_text = original_text
        self.metrics = metrics
        self.assignment_id: Optional[str] = None

    async def __call__(self, outcome: RelayOutcome) -> None:
        if not outcome.completed:
            logger.info(
                f"Checklist stream {outcome.status.value}; nothing saved",
                extra={"request_id": outcome.request_id, "user_id": self.user_id},
            )
            return

        try:
            checklist = parse_checklist(outcome.text)
        except (MalformedUpstreamOutputError, InvalidAssignmentError) as e:
            logger.warning(
                f"Streamed checklist not saved: {e.message}",
                extra={"request_id": outcome.request_id, "user_id": self.user_id},
            )
            if self.metrics is not None:
                await self.metrics.record_error(e.error_code)
            return

        try:
            async with get_async_session() as session:
                assignment = await create_assignment_with_steps(
                    session,
                    user_id=self.user_id,
                    title=checklist.title,
                    original_text=self.original_text,
                    steps=[step.model_dump() for step in checklist.steps],
                )
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to save streamed checklist: {e}",
                extra={"request_id": outcome.request_id, "user_id": self.user_id},
            )
            if self.metrics is not None:
                await self.metrics.record_error("persistence_failed")
            return

        self.assignment_id = assignment.id
        logger.info(
            f"Saved assignment {assignment.id} with {len(checklist.steps)} steps",
            extra={"request_id": outcome.request_id, "user_id": self.user_id},
        )
