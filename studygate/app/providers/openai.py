"""OpenAI API provider implementation.

Compatible with OpenAI API and other OpenAI-compatible endpoints
(e.g., Azure OpenAI, local LLMs with OpenAI-compatible API).
"""

import json
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx

from studygate.app.core.logging import get_logger
from studygate.app.exceptions import ProviderError
from studygate.app.providers.base import BaseProvider, CompletionRequest

logger = get_logger(__name__)


class OpenAIProvider(BaseProvider):
    """OpenAI-compatible chat completions provider.

    If http_client is provided, it will be used for all requests (connection reuse).
    If not, a new client is created per-request.
    """

    name = "openai"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        organization: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
        model: Optional[str] = None,
    ):
        super().__init__(base_url, api_key, http_client, timeout, model)
        self.organization = organization

        if organization:
            self.headers["OpenAI-Organization"] = organization

    def _build_payload(self, request: CompletionRequest, stream: bool) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.extend(request.messages)

        payload: Dict[str, Any] = {
            "model": request.model or self.model,
            "messages": messages,
            "max_tokens": request.max_tokens,
            "stream": stream,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        return payload

    async def complete(self, request: CompletionRequest) -> str:
        url = self._get_endpoint_url("/chat/completions")
        try:
            async with self._client_context() as client:
                resp = await client.post(
                    url, headers=self.headers, json=self._build_payload(request, stream=False)
                )
                await self._raise_for_status(resp)
                data = resp.json()
        except httpx.HTTPError as e:
            raise ProviderError(f"OpenAI request failed: {e}") from e
        except ValueError as e:
            raise ProviderError(f"OpenAI returned invalid JSON: {e}") from e

        try:
            return data["choices"][0]["message"].get("content") or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Unexpected OpenAI response shape: {e}") from e

    async def stream_text(self, request: CompletionRequest) -> AsyncGenerator[str, None]:
        url = self._get_endpoint_url("/chat/completions")
        payload = self._build_payload(request, stream=True)
        finished = False

        try:
            async with self._client_context() as client:
                async with client.stream("POST", url, headers=self.headers, json=payload) as resp:
                    await self._raise_for_status(resp)
                    async for line in resp.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[5:].strip()
                        if data == "[DONE]":
                            finished = True
                            break

                        try:
                            chunk = json.loads(data)
                        except json.JSONDecodeError as e:
                            raise ProviderError(f"Malformed OpenAI stream chunk: {data[:200]}") from e

                        if "error" in chunk:
                            raise ProviderError(f"OpenAI stream error: {chunk['error']}")

                        for choice in chunk.get("choices", []):
                            content = (choice.get("delta") or {}).get("content")
                            if content:
                                yield content
        except httpx.HTTPError as e:
            raise ProviderError(f"OpenAI stream failed: {e}") from e

        if not finished:
            raise ProviderError("OpenAI stream ended before [DONE]")

    async def health_check(self, timeout: float = 2.0) -> bool:
        """Calls the /models endpoint with a short timeout."""
        try:
            url = self._get_endpoint_url("/models")
            async with self._client_context() as client:
                resp = await client.get(url, headers=self.headers, timeout=timeout)
                return resp.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"OpenAI health check failed: {e}")
            return False
