"""CRUD operations package.

- user.py: API key users
- assignment.py: assignments and checklist steps
"""

from studygate.app.db.crud.user import (
    create_user,
    generate_api_key,
    hash_api_key,
    lookup_user_by_hash,
)
from studygate.app.db.crud.assignment import (
    create_assignment_with_steps,
    get_assignment_for_user,
    get_step_for_user,
    list_assignments_for_user,
    set_step_completed,
    update_step_chat_history,
)

__all__ = [
    "create_user",
    "generate_api_key",
    "hash_api_key",
    "lookup_user_by_hash",
    "create_assignment_with_steps",
    "get_assignment_for_user",
    "get_step_for_user",
    "list_assignments_for_user",
    "set_step_completed",
    "update_step_chat_history",
]
