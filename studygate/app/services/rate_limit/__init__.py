"""Sliding window rate limiting.

- models.py: WindowPolicy, RateLimitResult, key and wait-time helpers
- backends.py: WindowStore interface with memory, database and Redis backends
- limiter.py: RateLimiter
- pruner.py: WindowPruner background task
"""

from typing import Optional

from studygate.app.core.config import settings
from studygate.app.core.logging import get_logger
from studygate.app.core.metrics import get_metrics_collector
from studygate.app.db.async_session import get_async_session_maker
from studygate.app.services.rate_limit.backends import (
    InMemoryWindowStore,
    KeyedLock,
    RedisWindowStore,
    SqlWindowStore,
    WindowStore,
)
from studygate.app.services.rate_limit.limiter import RateLimiter
from studygate.app.services.rate_limit.models import (
    RateLimitResult,
    WindowPolicy,
    format_retry_after,
    make_rate_limit_key,
)
from studygate.app.services.rate_limit.pruner import WindowPruner

logger = get_logger(__name__)

PARSE_ACTION = "parse"
CHAT_ACTION = "chat"

_window_store: Optional[WindowStore] = None
_rate_limiter: Optional[RateLimiter] = None


def get_policy(action: str) -> WindowPolicy:
    """Configured policy for a rate-limited action."""
    if action == PARSE_ACTION:
        return WindowPolicy(
            settings.rate_limit_parse_limit, settings.rate_limit_parse_window_seconds
        )
    if action == CHAT_ACTION:
        return WindowPolicy(
            settings.rate_limit_chat_limit, settings.rate_limit_chat_window_seconds
        )
    raise ValueError(f"Unknown rate-limited action: {action}")


def create_window_store(backend: Optional[str] = None) -> WindowStore:
    """Build the window store selected by settings.window_store_backend."""
    backend = backend or settings.window_store_backend
    if backend == "redis":
        store: WindowStore = RedisWindowStore(
            redis_url=settings.redis_url,
            key_prefix=settings.redis_key_prefix,
            ttl_seconds=settings.longest_window_seconds,
            lock_timeout=settings.redis_lock_timeout,
        )
    elif backend == "database":
        store = SqlWindowStore(get_async_session_maker())
    else:
        store = InMemoryWindowStore()
    logger.info(f"Using {store.name} window store backend")
    return store


def get_window_store() -> WindowStore:
    """Get the process-wide window store (created on first use)."""
    global _window_store
    if _window_store is None:
        _window_store = create_window_store()
    return _window_store


def get_rate_limiter() -> RateLimiter:
    """Get the process-wide rate limiter."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(get_window_store(), metrics=get_metrics_collector())
    return _rate_limiter


async def reset_rate_limiting() -> None:
    """Close the window store and forget the singletons (shutdown and tests)."""
    global _window_store, _rate_limiter
    if _window_store is not None:
        await _window_store.close()
    _window_store = None
    _rate_limiter = None


__all__ = [
    "CHAT_ACTION",
    "PARSE_ACTION",
    "InMemoryWindowStore",
    "KeyedLock",
    "RateLimitResult",
    "RateLimiter",
    "RedisWindowStore",
    "SqlWindowStore",
    "WindowPolicy",
    "WindowPruner",
    "WindowStore",
    "create_window_store",
    "format_retry_after",
    "get_policy",
    "get_rate_limiter",
    "get_window_store",
    "make_rate_limit_key",
    "reset_rate_limiting",
]
