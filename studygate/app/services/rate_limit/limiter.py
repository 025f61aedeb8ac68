"""Sliding window rate limiter over a WindowStore.

Admission and recording happen inside store.serialize(key), so two
concurrent checks for the same key can never both take the last slot.
Storage failures fail open: the request is admitted and the failure is
logged and counted. A key kept busy by other checks is rejected with a
short retry instead.
"""

import asyncio
from typing import Optional

from studygate.app.core.logging import get_logger
from studygate.app.core.metrics import MetricsCollector
from studygate.app.exceptions import StorageUnavailableError, WindowContentionError
from studygate.app.services.rate_limit.backends import WindowStore
from studygate.app.services.rate_limit.models import RateLimitResult, WindowPolicy

logger = get_logger(__name__)

CONTENTION_RETRY_SECONDS = 1.0


class RateLimiter:
    """Per-key sliding window admission.

    Example:
        limiter = RateLimiter(InMemoryWindowStore())
        result = await limiter.check("parse:user-1", WindowPolicy(1, 86400))
        if not result.allowed:
            ...  # reject with result.retry_after
    """

    def __init__(self, store: WindowStore, metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.metrics = metrics

    async def check(self, key: str, policy: WindowPolicy) -> RateLimitResult:
        """Decide whether one more call for `key` fits in the trailing window.

        Records an admission event when the call is admitted. Never raises
        for storage problems.
        """
        action = key.split(":", 1)[0]

        if policy.limit == 0:
            result = RateLimitResult(
                allowed=False,
                limit=0,
                remaining=0,
                retry_after=float(policy.window_seconds),
            )
            await self._record_decision(action, result)
            return result

        result: Optional[RateLimitResult] = None
        try:
            async with self.store.serialize(key):
                result = await self._decide(key, policy)
        except WindowContentionError as e:
            result = await self._contended(key, policy, e)
            await self._record_decision(action, result)
            return result
        except (StorageUnavailableError, asyncio.TimeoutError) as e:
            if result is not None and not result.allowed:
                # Read-only rejection; a failed release does not change it
                logger.warning(
                    f"Window store error after rejection: {e}",
                    extra={"rate_limit_key": key},
                )
            else:
                result = await self._fail_open(key, policy, e)
                await self._record_decision(action, result)
                return result

        await self._record_decision(action, result)
        return result

    async def _decide(self, key: str, policy: WindowPolicy) -> RateLimitResult:
        now = await self.store.now()
        since = now - policy.window_seconds
        used = await self.store.count(key, since)

        if used >= policy.limit:
            oldest = await self.store.oldest(key, since)
            if oldest is None:
                retry_after = float(policy.window_seconds)
            else:
                retry_after = max(0.0, policy.window_seconds - (now - oldest))
            logger.debug(
                f"Rate limit reached ({used}/{policy.limit}), retry in {retry_after:.1f}s",
                extra={"rate_limit_key": key},
            )
            return RateLimitResult(
                allowed=False,
                limit=policy.limit,
                remaining=0,
                retry_after=retry_after,
            )

        await self.store.record(key, now)
        return RateLimitResult(
            allowed=True,
            limit=policy.limit,
            remaining=policy.limit - used - 1,
        )

    async def _contended(
        self, key: str, policy: WindowPolicy, error: Exception
    ) -> RateLimitResult:
        """Reject when the key could not be locked in time; the store is healthy."""
        logger.warning(
            f"Rate limit key busy, rejecting with short retry: {error}",
            extra={"rate_limit_key": key},
        )
        if self.metrics is not None:
            await self.metrics.record_error("window_contention")
        return RateLimitResult(
            allowed=False,
            limit=policy.limit,
            remaining=0,
            retry_after=CONTENTION_RETRY_SECONDS,
        )

    async def _fail_open(
        self, key: str, policy: WindowPolicy, error: Exception
    ) -> RateLimitResult:
        """Admit without a check when the window store cannot be used."""
        logger.warning(
            f"Rate limiting fail-open triggered due to storage error: {error}. "
            "Request allowed without rate limit check.",
            extra={"rate_limit_key": key},
        )
        if self.metrics is not None:
            await self.metrics.record_error("storage_unavailable")
        return RateLimitResult(
            allowed=True,
            limit=policy.limit,
            remaining=max(0, policy.limit - 1),
            fail_open=True,
        )

    async def _record_decision(self, action: str, result: RateLimitResult) -> None:
        if self.metrics is not None:
            await self.metrics.record_decision(action, result.allowed, fail_open=result.fail_open)
