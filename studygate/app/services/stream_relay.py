"""Streaming relay between an inference provider and one client.

A pump task pulls fragments from the provider and puts them on a bounded
queue; the forwarding loop (``async for fragment in stream``) takes them off
and hands them to the transport. A slow client fills the queue and the pump
blocks, so the relay never buffers more than ``buffer_size`` fragments ahead
of the client.

Every stream ends in exactly one terminal status:

- COMPLETED: upstream reported the end of the message
- ABORTED: upstream failed, ended early or ran past the max duration;
  the forwarding loop raises UpstreamStreamError carrying the partial text
- CANCELLED: the consumer went away; the pump is cancelled and the
  upstream generator is closed, which closes the upstream connection

Completion hooks run once per stream with a RelayOutcome. Hook failures are
logged and never reach the client.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncGenerator, Awaitable, Callable, List, Optional, Set, Tuple, Union

from studygate.app.core.logging import get_logger
from studygate.app.core.metrics import MetricsCollector
from studygate.app.exceptions import UpstreamStreamError
from studygate.app.providers.base import BaseProvider, CompletionRequest

logger = get_logger(__name__)

# Hook tasks detached from a cancelled request; referenced until they finish
_background_tasks: Set[asyncio.Task] = set()

_FRAGMENT = "fragment"
_END = "end"
_ERROR = "error"


class RelayStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


@dataclass
class RelayOutcome:
    """Final state of one relayed stream, passed to completion hooks."""
    text: str
    status: RelayStatus
    error: Optional[BaseException] = None
    fragment_count: int = 0
    duration: float = 0.0
    request_id: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.status is RelayStatus.COMPLETED


CompletionHook = Callable[[RelayOutcome], Union[None, Awaitable[None]]]
FragmentCallback = Callable[[str], Union[None, Awaitable[None]]]


class RelayStream:
    """A single-use live sequence of fragments for one request."""

    def __init__(
        self,
        provider: BaseProvider,
        request: CompletionRequest,
        buffer_size: int = 16,
        max_duration: Optional[float] = None,
        request_id: Optional[str] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.provider = provider
        self.request = request
        self.request_id = request_id
        self.max_duration = max_duration if max_duration and max_duration > 0 else None
        self.metrics = metrics
        self.status = RelayStatus.PENDING
        self.error: Optional[BaseException] = None
        self.fragment_count = 0

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, buffer_size))
        self._chunks: List[str] = []
        self._hooks: List[CompletionHook] = []
        self._pump_task: Optional[asyncio.Task] = None
        self._peeked: Optional[Tuple[str, Any]] = None
        self._started_at: Optional[float] = None
        self._deadline: Optional[float] = None
        self._consumed = False
        self._finished = False
        self._iterator: Optional[AsyncGenerator[str, None]] = None

    @property
    def text(self) -> str:
        """Everything forwarded so far, in arrival order."""
        return "".join(self._chunks)

    @property
    def finished(self) -> bool:
        return self._finished

    def add_done_callback(self, hook: CompletionHook) -> None:
        """Register a completion hook. Must be called before the stream ends."""
        if self._finished:
            raise RuntimeError("Stream already finished")
        self._hooks.append(hook)

    async def start(self) -> None:
        """Start the upstream call and wait for its first event.

        Raises:
            UpstreamStreamError: The upstream failed before producing a fragment
        """
        if self._pump_task is not None:
            return
        self._started_at = time.monotonic()
        if self.max_duration is not None:
            self._deadline = self._started_at + self.max_duration
        self.status = RelayStatus.STREAMING
        self._pump_task = asyncio.create_task(self._pump())

        try:
            item = await self._next_item()
        except asyncio.CancelledError:
            self._cancel()
            raise
        except asyncio.TimeoutError as e:
            await self._abort(e)
            raise UpstreamStreamError("Upstream produced nothing before the deadline") from e

        kind, payload = item
        if kind == _ERROR:
            await self._abort(payload)
            raise UpstreamStreamError(f"Upstream failed before streaming: {payload}") from payload
        self._peeked = item

    def __aiter__(self) -> AsyncGenerator[str, None]:
        if self._consumed:
            raise RuntimeError("RelayStream can only be iterated once")
        self._consumed = True
        self._iterator = self._forward()
        return self._iterator

    async def _forward(self) -> AsyncGenerator[str, None]:
        await self.start()
        try:
            while True:
                if self._peeked is not None:
                    item, self._peeked = self._peeked, None
                else:
                    item = await self._next_item()

                kind, payload = item
                if kind == _FRAGMENT:
                    self._chunks.append(payload)
                    self.fragment_count += 1
                    yield payload
                elif kind == _END:
                    await self._finish(RelayStatus.COMPLETED)
                    return
                else:
                    await self._abort(payload)
                    raise UpstreamStreamError(
                        f"Upstream stream failed: {payload}", partial=self.text
                    ) from payload
        except asyncio.TimeoutError as e:
            await self._abort(e)
            raise UpstreamStreamError(
                f"Stream exceeded max duration of {self.max_duration}s", partial=self.text
            ) from e
        except (asyncio.CancelledError, GeneratorExit):
            self._cancel()
            raise

    async def aclose(self) -> None:
        """Abandon the stream (client gone before or during forwarding)."""
        if self._iterator is not None:
            await self._iterator.aclose()
        if not self._finished:
            self._cancel()

    async def _pump(self) -> None:
        upstream = self.provider.stream_text(self.request)
        try:
            async for fragment in upstream:
                if fragment:
                    await self._queue.put((_FRAGMENT, fragment))
            await self._queue.put((_END, None))
        except Exception as e:
            await self._queue.put((_ERROR, e))
        finally:
            try:
                await upstream.aclose()
            except Exception as e:
                logger.debug(
                    f"Error closing upstream stream: {e}",
                    extra={"request_id": self.request_id},
                )

    async def _next_item(self) -> Tuple[str, Any]:
        if self._deadline is None:
            return await self._queue.get()
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            raise asyncio.TimeoutError()
        return await asyncio.wait_for(self._queue.get(), timeout=remaining)

    async def _abort(self, error: BaseException) -> None:
        logger.warning(
            f"Upstream stream aborted after {self.fragment_count} fragments: {error}",
            extra={"request_id": self.request_id, "provider": self.provider.name},
        )
        await self._finish(RelayStatus.ABORTED, error)

    def _cancel(self) -> None:
        """Terminal path for a vanished consumer; must not await."""
        if self._finished:
            return
        logger.info(
            f"Stream cancelled by client after {self.fragment_count} fragments",
            extra={"request_id": self.request_id},
        )
        outcome = self._close(RelayStatus.CANCELLED, None)
        task = asyncio.create_task(self._complete(outcome))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)

    async def _finish(self, status: RelayStatus, error: Optional[BaseException] = None) -> None:
        if self._finished:
            return
        outcome = self._close(status, error)
        if self._pump_task is not None and not self._pump_task.done():
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
        await self._complete(outcome)

    def _close(self, status: RelayStatus, error: Optional[BaseException]) -> RelayOutcome:
        self._finished = True
        self.status = status
        self.error = error
        if self._pump_task is not None and not self._pump_task.done():
            self._pump_task.cancel()
        duration = time.monotonic() - self._started_at if self._started_at else 0.0
        return RelayOutcome(
            text=self.text,
            status=status,
            error=error,
            fragment_count=self.fragment_count,
            duration=duration,
            request_id=self.request_id,
        )

    async def _complete(self, outcome: RelayOutcome) -> None:
        logger.debug(
            f"Stream {outcome.status.value}: {outcome.fragment_count} fragments "
            f"in {outcome.duration:.2f}s",
            extra={"request_id": self.request_id, "provider": self.provider.name},
        )
        if self.metrics is not None:
            await self.metrics.record_stream(outcome.status.value)
        for hook in self._hooks:
            try:
                result = hook(outcome)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Stream completion hook failed",
                    extra={"request_id": self.request_id},
                )


class StreamRelay:
    """Opens relayed streams on one provider.

    Example:
        relay = StreamRelay(provider, buffer_size=16)
        stream = relay.open(request)
        stream.add_done_callback(save_transcript)
        async for fragment in stream:
            await send(fragment)
    """

    def __init__(
        self,
        provider: BaseProvider,
        buffer_size: int = 16,
        max_duration: Optional[float] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.provider = provider
        self.buffer_size = buffer_size
        self.max_duration = max_duration
        self.metrics = metrics

    def open(self, request: CompletionRequest, request_id: Optional[str] = None) -> RelayStream:
        return RelayStream(
            self.provider,
            request,
            buffer_size=self.buffer_size,
            max_duration=self.max_duration,
            request_id=request_id,
            metrics=self.metrics,
        )

    async def run(
        self,
        request: CompletionRequest,
        on_fragment: Optional[FragmentCallback] = None,
        request_id: Optional[str] = None,
    ) -> str:
        """Relay a whole stream to `on_fragment` and return the full text.

        Raises:
            UpstreamStreamError: With the partial text when upstream fails
        """
        stream = self.open(request, request_id)
        async for fragment in stream:
            if on_fragment is not None:
                result = on_fragment(fragment)
                if inspect.isawaitable(result):
                    await result
        return stream.text
