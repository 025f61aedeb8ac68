"""Anthropic Messages API provider.

Streams server-sent events and yields the text of every text_delta.
The stream is complete only once a message_stop event has been seen.
"""

import json
from typing import Any, AsyncGenerator, Dict, Optional

import httpx

from studygate.app.core.logging import get_logger
from studygate.app.exceptions import ProviderError
from studygate.app.providers.base import BaseProvider, CompletionRequest

logger = get_logger(__name__)


class AnthropicProvider(BaseProvider):
    """Anthropic provider with support for shared HTTP client connection pooling."""

    name = "anthropic"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
        model: Optional[str] = None,
        api_version: str = "2023-06-01",
    ):
        self.api_version = api_version
        super().__init__(base_url, api_key, http_client, timeout, model)

    def _build_headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
            "Content-Type": "application/json",
        }

    def _build_payload(self, request: CompletionRequest, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model or self.model,
            "max_tokens": request.max_tokens,
            "messages": request.messages,
        }
        if request.system:
            payload["system"] = request.system
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if stream:
            payload["stream"] = True
        return payload

    async def complete(self, request: CompletionRequest) -> str:
        url = self._get_endpoint_url("/v1/messages")
        try:
            async with self._client_context() as client:
                resp = await client.post(
                    url, headers=self.headers, json=self._build_payload(request, stream=False)
                )
                await self._raise_for_status(resp)
                data = resp.json()
        except httpx.HTTPError as e:
            raise ProviderError(f"Anthropic request failed: {e}") from e
        except ValueError as e:
            raise ProviderError(f"Anthropic returned invalid JSON: {e}") from e

        return "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        )

    async def stream_text(self, request: CompletionRequest) -> AsyncGenerator[str, None]:
        url = self._get_endpoint_url("/v1/messages")
        payload = self._build_payload(request, stream=True)
        finished = False

        try:
            async with self._client_context() as client:
                async with client.stream("POST", url, headers=self.headers, json=payload) as resp:
                    await self._raise_for_status(resp)
                    async for line in resp.aiter_lines():
                        if not line.startswith("data:"):
                            # event: lines and keep-alive blanks
                            continue
                        event = self._parse_event(line[5:].strip())
                        event_type = event.get("type")

                        if event_type == "content_block_delta":
                            delta = event.get("delta", {})
                            if delta.get("type") == "text_delta" and delta.get("text"):
                                yield delta["text"]
                        elif event_type == "error":
                            error = event.get("error", {})
                            raise ProviderError(
                                f"Anthropic stream error: {error.get('type', 'unknown')}: "
                                f"{error.get('message', '')}"
                            )
                        elif event_type == "message_stop":
                            finished = True
                            break
        except httpx.HTTPError as e:
            raise ProviderError(f"Anthropic stream failed: {e}") from e

        if not finished:
            raise ProviderError("Anthropic stream ended before message_stop")

    @staticmethod
    def _parse_event(data: str) -> Dict[str, Any]:
        try:
            event = json.loads(data)
        except json.JSONDecodeError as e:
            raise ProviderError(f"Malformed Anthropic stream event: {data[:200]}") from e
        if not isinstance(event, dict):
            raise ProviderError(f"Malformed Anthropic stream event: {data[:200]}")
        return event

    async def health_check(self, timeout: float = 2.0) -> bool:
        """Calls the /v1/models endpoint with a short timeout."""
        try:
            url = self._get_endpoint_url("/v1/models")
            async with self._client_context() as client:
                resp = await client.get(url, headers=self.headers, timeout=timeout)
                return resp.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"Anthropic health check failed: {e}")
            return False
