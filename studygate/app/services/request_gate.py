"""Request gate: rate limit check in front of the stream relay.

Per request:

    Received -> LimitChecked -> Rejected
                             -> Admitted -> Streaming -> Completed | Aborted

A rejected request never reaches the inference provider.
"""

import math
from dataclasses import dataclass
from typing import Optional, Union

from studygate.app.core.config import settings
from studygate.app.core.logging import get_logger
from studygate.app.core.metrics import MetricsCollector, get_metrics_collector
from studygate.app.exceptions import QuotaExceededError, UpstreamStreamError
from studygate.app.providers.base import CompletionRequest
from studygate.app.providers.factory import get_provider
from studygate.app.services.rate_limit import (
    RateLimiter,
    RateLimitResult,
    WindowPolicy,
    format_retry_after,
    get_rate_limiter,
    make_rate_limit_key,
)
from studygate.app.services.stream_relay import CompletionHook, RelayStream, StreamRelay

logger = get_logger(__name__)


@dataclass
class StreamingOk:
    """Admitted; the stream has produced its first event."""
    stream: RelayStream
    rate_limit: RateLimitResult


@dataclass
class RateLimited:
    """Rejected by the rate limiter."""
    retry_after: float
    policy: WindowPolicy
    message: str

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.retry_after))

    def to_exception(self) -> QuotaExceededError:
        return QuotaExceededError(self.retry_after, self.message)


@dataclass
class UpstreamFailed:
    """Admitted, but the upstream failed before the first fragment."""
    reason: str
    error: Optional[BaseException] = None


GateResult = Union[StreamingOk, RateLimited, UpstreamFailed]


def rate_limited_message(action: str, retry_after: float, policy: WindowPolicy) -> str:
    wait = format_retry_after(retry_after, policy.window_seconds)
    if action == "parse":
        return f"You've reached your assignment upload limit. Please try again in {wait}."
    return f"You're sending messages too quickly. Please try again in {wait}."


class RequestGate:
    """Admits a request against its rate limit and opens the relay."""

    def __init__(
        self,
        limiter: RateLimiter,
        relay: StreamRelay,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.limiter = limiter
        self.relay = relay
        self.metrics = metrics

    async def handle(
        self,
        action: str,
        caller_id: str,
        policy: WindowPolicy,
        request: CompletionRequest,
        on_complete: Optional[CompletionHook] = None,
        request_id: Optional[str] = None,
    ) -> GateResult:
        key = make_rate_limit_key(action, caller_id)
        log_extra = {"request_id": request_id, "user_id": caller_id, "rate_limit_key": key}
        logger.debug("Request received", extra=log_extra)

        decision = await self.limiter.check(key, policy)
        logger.debug(
            f"Limit checked: allowed={decision.allowed} remaining={decision.remaining}",
            extra=log_extra,
        )

        if not decision.allowed:
            retry_after = (
                decision.retry_after
                if decision.retry_after is not None
                else float(policy.window_seconds)
            )
            logger.info(f"Rejected by rate limit, retry after {retry_after:.0f}s", extra=log_extra)
            return RateLimited(
                retry_after=retry_after,
                policy=policy,
                message=rate_limited_message(action, retry_after, policy),
            )

        logger.debug("Admitted", extra=log_extra)
        stream = self.relay.open(request, request_id=request_id)
        if on_complete is not None:
            stream.add_done_callback(on_complete)

        try:
            await stream.start()
        except UpstreamStreamError as e:
            logger.warning(f"Upstream failed before streaming: {e}", extra=log_extra)
            if self.metrics is not None:
                await self.metrics.record_error("upstream_failed")
            return UpstreamFailed(reason=str(e), error=e.__cause__ or e)

        logger.debug("Streaming", extra=log_extra)
        return StreamingOk(stream=stream, rate_limit=decision)


_request_gate: Optional[RequestGate] = None


def get_request_gate() -> RequestGate:
    """Process-wide gate wired from settings; overridable as a FastAPI dependency."""
    global _request_gate
    if _request_gate is None:
        metrics = get_metrics_collector()
        relay = StreamRelay(
            get_provider(),
            buffer_size=settings.relay_buffer_size,
            max_duration=settings.stream_max_duration_seconds,
            metrics=metrics,
        )
        _request_gate = RequestGate(get_rate_limiter(), relay, metrics=metrics)
    return _request_gate


def reset_request_gate() -> None:
    global _request_gate
    _request_gate = None
