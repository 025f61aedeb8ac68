"""Database package.

This package provides:
- ORM models (User, Assignment, ChecklistStep, AdmissionEvent)
- Async session management
- CRUD operations used by the API layer and persistence sinks
"""

from studygate.app.db.base import Base
from studygate.app.db.models import AdmissionEvent, Assignment, ChecklistStep, User
from studygate.app.db.async_session import (
    close_async_engine,
    get_async_engine,
    get_async_session,
    get_async_session_maker,
    get_db,
)

__all__ = [
    "Base",
    "User",
    "Assignment",
    "ChecklistStep",
    "AdmissionEvent",
    "close_async_engine",
    "get_async_engine",
    "get_async_session",
    "get_async_session_maker",
    "get_db",
]
