"""API endpoints package."""

from studygate.app.api.assignments import router as assignments_router
from studygate.app.api.chat import router as chat_router
from studygate.app.api.metrics import router as metrics_router

__all__ = [
    "assignments_router",
    "chat_router",
    "metrics_router",
]
