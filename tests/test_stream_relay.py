"""Tests for the stream relay."""

import asyncio
from unittest.mock import patch

import pytest

from studygate.app.core.metrics import get_metrics_collector
from studygate.app.exceptions import UpstreamStreamError
from studygate.app.providers.base import CompletionRequest
from studygate.app.providers.mock import MockProvider
from studygate.app.services.stream_relay import RelayStatus, StreamRelay


class CountingProvider(MockProvider):
    """Produces fragments as fast as the relay accepts them."""

    def __init__(self, total: int = 100):
        super().__init__()
        self.total = total
        self.produced = 0

    async def stream_text(self, request):
        self.calls += 1
        try:
            for i in range(self.total):
                self.produced += 1
                yield f"{i} "
        finally:
            self.closed_streams += 1


@pytest.fixture
def request_():
    return CompletionRequest(messages=[{"role": "user", "content": "hello"}])


async def settle():
    """Let detached hook tasks run."""
    await asyncio.sleep(0.02)


class TestRelayOrdering:
    @pytest.mark.asyncio
    async def test_fragments_arrive_in_order(self, provider, request_):
        stream = StreamRelay(provider, buffer_size=2).open(request_)

        received = [fragment async for fragment in stream]

        assert received == ["Hello", ", ", "world"]
        assert stream.text == "Hello, world"
        assert stream.status is RelayStatus.COMPLETED
        assert stream.fragment_count == 3
        assert provider.closed_streams == 1

    @pytest.mark.asyncio
    async def test_empty_reply_completes(self, request_):
        stream = StreamRelay(MockProvider(fragments=[])).open(request_)

        received = [fragment async for fragment in stream]

        assert received == []
        assert stream.status is RelayStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_run_with_sync_callback(self, provider, request_):
        seen = []

        text = await StreamRelay(provider).run(request_, on_fragment=seen.append)

        assert text == "Hello, world"
        assert seen == ["Hello", ", ", "world"]

    @pytest.mark.asyncio
    async def test_run_with_async_callback(self, provider, request_):
        seen = []

        async def on_fragment(fragment):
            await asyncio.sleep(0)
            seen.append(fragment)

        assert await StreamRelay(provider).run(request_, on_fragment=on_fragment) == "Hello, world"
        assert seen == ["Hello", ", ", "world"]

    @pytest.mark.asyncio
    async def test_stream_is_single_use(self, provider, request_):
        stream = StreamRelay(provider).open(request_)
        [f async for f in stream]

        with pytest.raises(RuntimeError):
            [f async for f in stream]


class TestUpstreamFailure:
    @pytest.mark.asyncio
    async def test_mid_stream_failure_keeps_partial_text(self, request_):
        provider = MockProvider(fragments=["a", "b", "c"], fail_after=2)
        stream = StreamRelay(provider).open(request_)
        outcomes = []
        stream.add_done_callback(outcomes.append)
        received = []

        with pytest.raises(UpstreamStreamError) as exc_info:
            async for fragment in stream:
                received.append(fragment)

        assert received == ["a", "b"]
        assert exc_info.value.partial == "ab"
        assert stream.status is RelayStatus.ABORTED
        assert len(outcomes) == 1
        assert outcomes[0].status is RelayStatus.ABORTED
        assert outcomes[0].text == "ab"
        assert outcomes[0].error is not None

    @pytest.mark.asyncio
    async def test_failure_before_first_fragment(self, request_):
        provider = MockProvider(fragments=["a"], fail_after=0)
        stream = StreamRelay(provider).open(request_)
        outcomes = []
        stream.add_done_callback(outcomes.append)

        with pytest.raises(UpstreamStreamError):
            await stream.start()

        assert stream.status is RelayStatus.ABORTED
        assert outcomes[0].text == ""
        assert stream.finished

    @pytest.mark.asyncio
    async def test_missing_terminal_event_is_an_abort(self, request_):
        provider = MockProvider(fragments=["a", "b"], fail_after=5)
        stream = StreamRelay(provider).open(request_)

        with pytest.raises(UpstreamStreamError) as exc_info:
            [f async for f in stream]

        assert exc_info.value.partial == "ab"
        assert stream.status is RelayStatus.ABORTED

    @pytest.mark.asyncio
    async def test_max_duration_before_first_fragment(self, request_):
        provider = MockProvider(fragments=["a"], delay=0.5)
        stream = StreamRelay(provider, max_duration=0.05).open(request_)

        with pytest.raises(UpstreamStreamError):
            await stream.start()

        assert stream.status is RelayStatus.ABORTED

    @pytest.mark.asyncio
    async def test_max_duration_mid_stream(self, request_):
        provider = MockProvider(fragments=["x"] * 10, delay=0.03)
        stream = StreamRelay(provider, max_duration=0.1).open(request_)

        with pytest.raises(UpstreamStreamError) as exc_info:
            [f async for f in stream]

        assert exc_info.value.partial.startswith("x")
        assert stream.status is RelayStatus.ABORTED
        await settle()
        assert provider.closed_streams == 1


class TestBackPressure:
    @pytest.mark.asyncio
    async def test_pump_blocks_on_full_buffer(self, request_):
        provider = CountingProvider(total=100)
        stream = StreamRelay(provider, buffer_size=2).open(request_)

        await stream.start()
        await asyncio.sleep(0.05)

        # One peeked, two queued, one blocked in put()
        assert provider.produced <= 5

        await stream.aclose()
        await settle()
        assert provider.closed_streams == 1

    @pytest.mark.asyncio
    async def test_slow_consumer_receives_everything(self, request_):
        provider = CountingProvider(total=20)
        stream = StreamRelay(provider, buffer_size=1).open(request_)
        received = []

        async for fragment in stream:
            received.append(fragment)
            await asyncio.sleep(0)

        assert len(received) == 20
        assert stream.status is RelayStatus.COMPLETED


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_consumer_stops_upstream(self, request_):
        provider = MockProvider(fragments=["a", "b", "c", "d"], delay=0.05)
        stream = StreamRelay(provider).open(request_)
        outcomes = []
        stream.add_done_callback(outcomes.append)
        first = asyncio.Event()

        async def consume():
            async for _ in stream:
                first.set()

        task = asyncio.create_task(consume())
        await asyncio.wait_for(first.wait(), timeout=1.0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await settle()

        assert stream.status is RelayStatus.CANCELLED
        assert provider.closed_streams == 1
        assert len(outcomes) == 1
        assert outcomes[0].status is RelayStatus.CANCELLED
        assert outcomes[0].text == "a"

    @pytest.mark.asyncio
    async def test_aclose_after_partial_read(self, request_):
        provider = MockProvider(fragments=["a", "b", "c"], delay=0.01)
        stream = StreamRelay(provider).open(request_)
        outcomes = []
        stream.add_done_callback(outcomes.append)

        async for _ in stream:
            break
        await stream.aclose()
        await settle()

        assert stream.status is RelayStatus.CANCELLED
        assert [o.status for o in outcomes] == [RelayStatus.CANCELLED]

    @pytest.mark.asyncio
    async def test_aclose_before_iteration(self, provider, request_):
        stream = StreamRelay(provider).open(request_)
        await stream.start()

        await stream.aclose()
        await settle()

        assert stream.status is RelayStatus.CANCELLED
        assert provider.closed_streams == 1

    @pytest.mark.asyncio
    async def test_aclose_after_completion_is_a_no_op(self, provider, request_):
        stream = StreamRelay(provider).open(request_)
        outcomes = []
        stream.add_done_callback(outcomes.append)
        [f async for f in stream]

        await stream.aclose()
        await settle()

        assert stream.status is RelayStatus.COMPLETED
        assert len(outcomes) == 1


class TestCompletionHooks:
    @pytest.mark.asyncio
    async def test_async_hook_receives_outcome(self, provider, request_):
        outcomes = []

        async def hook(outcome):
            outcomes.append(outcome)

        stream = StreamRelay(provider).open(request_, request_id="req-1")
        stream.add_done_callback(hook)
        [f async for f in stream]

        assert outcomes[0].completed
        assert outcomes[0].text == "Hello, world"
        assert outcomes[0].fragment_count == 3
        assert outcomes[0].request_id == "req-1"

    @pytest.mark.asyncio
    async def test_hook_failure_is_logged_and_isolated(self, provider, request_):
        later = []

        def broken(outcome):
            raise ValueError("boom")

        stream = StreamRelay(provider).open(request_)
        stream.add_done_callback(broken)
        stream.add_done_callback(later.append)

        with patch("studygate.app.services.stream_relay.logger") as mock_logger:
            received = [f async for f in stream]

        assert received == ["Hello", ", ", "world"]
        assert len(later) == 1
        mock_logger.exception.assert_called_once()

    @pytest.mark.asyncio
    async def test_cannot_add_hook_after_finish(self, provider, request_):
        stream = StreamRelay(provider).open(request_)
        [f async for f in stream]

        with pytest.raises(RuntimeError):
            stream.add_done_callback(lambda outcome: None)

    @pytest.mark.asyncio
    async def test_stream_outcomes_are_counted(self, request_):
        metrics = get_metrics_collector()
        relay = StreamRelay(MockProvider(fragments=["a"]), metrics=metrics)
        failing = StreamRelay(MockProvider(fragments=["a"], fail_after=1), metrics=metrics)

        await relay.run(request_)
        with pytest.raises(UpstreamStreamError):
            await failing.run(request_)

        summary = await metrics.get_summary()
        assert summary["streams"] == {"completed": 1, "aborted": 1}
