"""Middleware package."""

from studygate.app.middleware.auth import require_admin, require_user
from studygate.app.middleware.metrics import MetricsMiddleware
from studygate.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "require_admin",
    "require_user",
    "MetricsMiddleware",
    "RequestIdMiddleware",
    "get_request_id",
]
