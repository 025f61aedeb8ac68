"""Assignment and checklist step CRUD operations."""

from typing import Iterable, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studygate.app.db.models import Assignment, ChecklistStep


async def create_assignment_with_steps(
    session: AsyncSession,
    user_id: str,
    title: str,
    original_text: str,
    steps: Iterable[Mapping[str, str]],
    auto_commit: bool = True,
) -> Assignment:
    """Save an assignment and its ordered checklist steps.

    Steps are numbered from 1 in the order given and start with an empty
    chat history.

    Args:
        session: Database session
        user_id: Owner of the assignment
        title: Short assignment title
        original_text: Text the checklist was generated from
        steps: Mappings with "title" and "description"
        auto_commit: Whether to commit the transaction

    Returns:
        The saved Assignment with its steps loaded
    """
    assignment = Assignment(user_id=user_id, title=title, original_text=original_text)
    assignment.steps = [
        ChecklistStep(
            step_number=index,
            title=step["title"],
            description=step.get("description", ""),
            completed=False,
            chat_history=[],
        )
        for index, step in enumerate(steps, start=1)
    ]
    session.add(assignment)
    if auto_commit:
        await session.commit()
    else:
        await session.flush()
    return assignment


async def get_assignment_for_user(
    session: AsyncSession, assignment_id: str, user_id: str
) -> Optional[Assignment]:
    """Load one assignment (with steps) if it belongs to the user."""
    result = await session.execute(
        select(Assignment).where(
            Assignment.id == assignment_id,
            Assignment.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def list_assignments_for_user(session: AsyncSession, user_id: str) -> List[Assignment]:
    """All assignments of a user, newest first, with steps loaded."""
    result = await session.execute(
        select(Assignment)
        .where(Assignment.user_id == user_id)
        .order_by(Assignment.created_at.desc())
    )
    return list(result.scalars().all())


async def get_step_for_user(
    session: AsyncSession, step_id: str, user_id: str
) -> Optional[ChecklistStep]:
    """Load one checklist step if its assignment belongs to the user."""
    result = await session.execute(
        select(ChecklistStep)
        .join(Assignment, ChecklistStep.assignment_id == Assignment.id)
        .where(ChecklistStep.id == step_id, Assignment.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def update_step_chat_history(
    session: AsyncSession,
    step_id: str,
    chat_history: List[dict],
    auto_commit: bool = True,
) -> bool:
    """Replace the chat history of a step.

    Returns:
        False if the step no longer exists
    """
    step = await session.get(ChecklistStep, step_id)
    if step is None:
        return False
    # Assign a new list so the JSON column is flagged dirty
    step.chat_history = list(chat_history)
    if auto_commit:
        await session.commit()
    return True


async def set_step_completed(
    session: AsyncSession,
    step: ChecklistStep,
    completed: bool,
    auto_commit: bool = True,
) -> ChecklistStep:
    """Mark a step as completed or not completed."""
    step.completed = completed
    if auto_commit:
        await session.commit()
    return step
