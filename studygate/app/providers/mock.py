"""Mock provider for development and tests.

This provider simulates streamed responses without making external API
calls. Select it with LLM_PROVIDER=mock.
"""

import asyncio
import json
from typing import Any, AsyncGenerator, List, Optional

from studygate.app.exceptions import ProviderError
from studygate.app.providers.base import BaseProvider, CompletionRequest

MOCK_CHECKLIST = {
    "valid": True,
    "title": "Sample Assignment",
    "steps": [
        {"title": "Read the brief", "description": "Read the assignment text and note the deliverables."},
        {"title": "Outline", "description": "Sketch the structure of your answer."},
        {"title": "Draft", "description": "Write a first complete draft."},
        {"title": "Review", "description": "Check the draft against the brief and revise."},
    ],
}


class MockProvider(BaseProvider):
    """Mock inference provider with scripted output.

    Features:
    - Scripted fragments, or a canned reply derived from the last user message
    - Optional delay before every fragment
    - Injected failure after a number of fragments (0 fails before the first)
    - Call and close counters for assertions in tests
    """

    name = "mock"

    def __init__(
        self,
        fragments: Optional[List[str]] = None,
        delay: float = 0.0,
        fail_after: Optional[int] = None,
        base_url: str = "http://mock.provider",
        api_key: str = "mock-key",
        http_client: Optional[Any] = None,
        timeout: float = 60.0,
        model: Optional[str] = "mock-model",
    ):
        """Initialize the mock provider.

        Args:
            fragments: Fragments to stream; generated from the request when None
            delay: Seconds to sleep before each fragment
            fail_after: Raise ProviderError after this many fragments
            base_url: Not used, provided for API compatibility
            api_key: Not used, provided for API compatibility
            http_client: Not used, provided for API compatibility
            timeout: Not used, provided for API compatibility
        """
        super().__init__(base_url, api_key, http_client, timeout, model)
        self.fragments = fragments
        self.delay = delay
        self.fail_after = fail_after
        self.calls = 0
        self.closed_streams = 0
        self.requests: List[CompletionRequest] = []

    def _generate_content(self, request: CompletionRequest) -> str:
        last_message = ""
        for msg in reversed(request.messages):
            if msg.get("role") == "user":
                last_message = msg.get("content", "")
                break

        prompt = f"{request.system or ''}\n{last_message}".lower()
        if "checklist" in prompt and "json" in prompt:
            return json.dumps(MOCK_CHECKLIST)
        if any(kw in prompt for kw in ["hello", "hi"]):
            return "Hello! I'm a mock study assistant. Which step are you working on?"
        return "This is a mock response. Try breaking the step into smaller pieces first."

    def _script(self, request: CompletionRequest) -> List[str]:
        if self.fragments is not None:
            return list(self.fragments)
        words = self._generate_content(request).split(" ")
        return [word if i == len(words) - 1 else word + " " for i, word in enumerate(words)]

    async def complete(self, request: CompletionRequest) -> str:
        self.calls += 1
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_after is not None:
            raise ProviderError("Simulated provider failure")
        return "".join(self._script(request))

    async def stream_text(self, request: CompletionRequest) -> AsyncGenerator[str, None]:
        self.calls += 1
        self.requests.append(request)
        try:
            for index, fragment in enumerate(self._script(request)):
                if self.fail_after is not None and index >= self.fail_after:
                    raise ProviderError("Simulated provider failure mid-stream")
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield fragment
            if self.fail_after is not None:
                raise ProviderError("Simulated stream ended without a terminal event")
        finally:
            self.closed_streams += 1

    async def health_check(self, timeout: float = 2.0) -> bool:
        return True
