"""Turning request gate results into HTTP responses."""

from typing import AsyncGenerator, Dict

from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from studygate.app.core.logging import get_logger
from studygate.app.exceptions import ProviderError, UpstreamStreamError
from studygate.app.services.request_gate import (
    GateResult,
    RateLimited,
    StreamingOk,
    UpstreamFailed,
)
from studygate.app.services.stream_relay import RelayStream

logger = get_logger(__name__)

PLAIN_TEXT = "text/plain; charset=utf-8"


def ensure_streaming(result: GateResult) -> StreamingOk:
    """Return the admitted stream or raise the matching HTTP-mapped error.

    Raises:
        QuotaExceededError: Rejected by the rate limiter (429)
        ProviderError: Upstream failed before the first fragment (502)
    """
    if isinstance(result, RateLimited):
        raise result.to_exception()
    if isinstance(result, UpstreamFailed):
        raise ProviderError(result.reason)
    return result


def rate_limit_headers(result: StreamingOk) -> Dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.rate_limit.limit),
        "X-RateLimit-Remaining": str(result.rate_limit.remaining),
    }


async def relay_body(stream: RelayStream) -> AsyncGenerator[str, None]:
    """Response body for a relayed stream.

    An upstream failure after the first fragment ends the body early; the
    status line has already been sent, so it is only logged.
    """
    try:
        async for fragment in stream:
            yield fragment
    except UpstreamStreamError as e:
        logger.warning(
            f"Response truncated after {len(e.partial)} characters: {e.message}",
            extra={"request_id": stream.request_id},
        )
    finally:
        await stream.aclose()


class RelayStreamingResponse(StreamingResponse):
    """Streaming response that owns its relay stream.

    The stream is closed when the response finishes, including when the
    client disconnects before the first body chunk and the body iterator
    never starts.
    """

    def __init__(self, stream: RelayStream, **kwargs):
        super().__init__(relay_body(stream), **kwargs)
        self.stream = stream

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.stream.aclose()


def streaming_response(
    result: GateResult, media_type: str = PLAIN_TEXT
) -> RelayStreamingResponse:
    ok = ensure_streaming(result)
    return RelayStreamingResponse(
        ok.stream,
        media_type=media_type,
        headers=rate_limit_headers(ok),
    )


async def collect_text(result: GateResult) -> str:
    """Drain an admitted stream into one string.

    Raises:
        ProviderError: If the upstream fails part-way
    """
    ok = ensure_streaming(result)
    try:
        return "".join([fragment async for fragment in ok.stream])
    except UpstreamStreamError as e:
        raise ProviderError(e.message) from e
