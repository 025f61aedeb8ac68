from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx

from studygate.app.exceptions import ProviderError


@dataclass
class CompletionRequest:
    """A provider-neutral completion request.

    Attributes:
        messages: Ordered [{"role": "user"|"assistant", "content": str}, ...]
        system: Optional system prompt
        max_tokens: Upper bound on generated tokens
        model: Model name, provider default when None
        temperature: Sampling temperature, provider default when None
    """
    messages: List[Dict[str, str]] = field(default_factory=list)
    system: Optional[str] = None
    max_tokens: int = 2048
    model: Optional[str] = None
    temperature: Optional[float] = None


class BaseProvider(ABC):
    """Base class for inference providers.

    Subclasses can accept an external httpx.AsyncClient for connection pooling,
    or create their own if not provided.
    """

    name = "base"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
        model: Optional[str] = None,
    ):
        """Initialize the provider.

        Args:
            base_url: The API base URL
            api_key: The API key for authentication
            http_client: Optional shared HTTP client for connection pooling
            timeout: Request timeout in seconds
            model: Default model for requests that do not name one
        """
        self._http_client = http_client
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self.model = model
        self.headers = self._build_headers()

    @property
    def http_client(self) -> Optional[httpx.AsyncClient]:
        """Get the HTTP client, if one was provided."""
        return self._http_client

    def _build_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client
        # Fallback: create a new client (not recommended for production)
        return httpx.AsyncClient(timeout=self.timeout)

    @asynccontextmanager
    async def _client_context(self):
        """Context manager for HTTP client lifecycle.

        If using shared client, just yield it.
        If using per-request client, manage its lifecycle.
        """
        client = self._get_client()
        is_shared = self._http_client is not None
        try:
            yield client
        finally:
            if not is_shared:
                await client.aclose()

    def _get_endpoint_url(self, endpoint: str) -> str:
        return f"{self.base_url}{endpoint}"

    async def _raise_for_status(self, resp: httpx.Response) -> None:
        """Turn an HTTP error response into ProviderError.

        Works for streamed responses too: the body is read before use.
        """
        if resp.status_code < 400:
            return
        body = (await resp.aread()).decode("utf-8", errors="replace")
        raise ProviderError(
            f"{self.name} returned HTTP {resp.status_code}: {body[:500]}",
            upstream_status=resp.status_code,
        )

    @abstractmethod
    async def complete(self, request: CompletionRequest) -> str:
        """Send a non-streaming request and return the generated text.

        Completes the provider contract for direct callers. The HTTP routes
        never call it: every request, including non-streaming parses, goes
        through the relay so rate limits and completion hooks apply.

        Raises:
            ProviderError: On HTTP, transport or protocol failures
        """
        pass

    @abstractmethod
    def stream_text(self, request: CompletionRequest) -> AsyncGenerator[str, None]:
        """Send a streaming request, yielding non-empty text fragments.

        The generator ends normally only when the upstream reported the end
        of the message. Closing the generator closes the upstream call.

        Raises:
            ProviderError: On HTTP errors, error events, malformed events or
                an end of stream without the terminal event
        """
        pass

    @abstractmethod
    async def health_check(self, timeout: float = 2.0) -> bool:
        """Check if the provider is healthy.

        Args:
            timeout: Request timeout in seconds (default: 2.0)

        Returns:
            True if the provider is healthy, False otherwise
        """
        pass

    def describe(self) -> Dict[str, Any]:
        return {"name": self.name, "base_url": self.base_url, "model": self.model}
