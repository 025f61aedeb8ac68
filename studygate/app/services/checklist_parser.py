"""Parsing of the checklist JSON produced by the model.

The model is asked for ``{"valid": bool, "reason"?, "title"?, "steps"?}``,
sometimes wrapped in a markdown code fence.
"""

import json
import re
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from studygate.app.exceptions import InvalidAssignmentError, MalformedUpstreamOutputError

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*\n?", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\n?```\s*$")


class StepDraft(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = ""


class ChecklistResult(BaseModel):
    valid: bool
    reason: Optional[str] = None
    title: Optional[str] = Field(default=None, max_length=255)
    steps: List[StepDraft] = Field(default_factory=list)


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ```json fence, if any."""
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = _FENCE_OPEN.sub("", stripped, count=1)
        stripped = _FENCE_CLOSE.sub("", stripped, count=1)
    return stripped.strip()


def parse_checklist(raw: str) -> ChecklistResult:
    """Parse and validate generated checklist JSON.

    Returns a valid result with a title and at least one step.

    Raises:
        MalformedUpstreamOutputError: Not JSON, or not the expected shape
        InvalidAssignmentError: The model reported that the text is not an assignment
    """
    try:
        data = json.loads(strip_code_fence(raw))
    except json.JSONDecodeError as e:
        raise MalformedUpstreamOutputError(f"Model output is not valid JSON: {e}", raw=raw) from e

    try:
        result = ChecklistResult.model_validate(data)
    except ValidationError as e:
        raise MalformedUpstreamOutputError(
            f"Model output has an unexpected structure: {e.error_count()} errors", raw=raw
        ) from e

    if not result.valid:
        raise InvalidAssignmentError(result.reason)
    if not result.title or not result.steps:
        raise MalformedUpstreamOutputError("Checklist is missing a title or steps", raw=raw)
    return result
