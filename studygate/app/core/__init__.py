"""Core utilities for the studygate application."""

from studygate.app.core.config import settings
from studygate.app.core.logging import get_logger, setup_logging

__all__ = [
    "settings",
    "get_logger",
    "setup_logging",
]
