"""Provider factory.

Builds the configured inference provider on the shared HTTP client.
"""

from enum import Enum
from typing import Optional

import httpx

from studygate.app.core.config import settings
from studygate.app.core.http_client import get_http_client
from studygate.app.core.logging import get_logger
from studygate.app.providers.anthropic import AnthropicProvider
from studygate.app.providers.base import BaseProvider
from studygate.app.providers.mock import MockProvider
from studygate.app.providers.openai import OpenAIProvider

logger = get_logger(__name__)


class ProviderType(str, Enum):
    """Supported provider types."""
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    MOCK = "mock"


_provider: Optional[BaseProvider] = None


def create_provider(
    provider_type: Optional[str] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> BaseProvider:
    """Create a provider instance from settings.

    Args:
        provider_type: Overrides settings.llm_provider
        http_client: Shared client; falls back to the lifespan client if initialized
    """
    kind = ProviderType(provider_type or settings.llm_provider)

    if http_client is None and kind is not ProviderType.MOCK:
        try:
            http_client = get_http_client()
        except RuntimeError:
            logger.warning("Shared HTTP client not initialized; provider will open its own")

    timeout = settings.httpx_read_timeout
    if kind is ProviderType.ANTHROPIC:
        provider: BaseProvider = AnthropicProvider(
            base_url=settings.anthropic_base_url,
            api_key=settings.anthropic_api_key,
            http_client=http_client,
            timeout=timeout,
            model=settings.llm_model,
            api_version=settings.anthropic_version,
        )
    elif kind is ProviderType.OPENAI:
        provider = OpenAIProvider(
            base_url=settings.openai_base_url,
            api_key=settings.openai_api_key,
            http_client=http_client,
            timeout=timeout,
            model=settings.llm_model,
        )
    else:
        provider = MockProvider(delay=0.05)

    logger.info(f"Created {provider.name} provider", extra={"provider": provider.name})
    return provider


def get_provider() -> BaseProvider:
    """Get the process-wide provider (created on first use)."""
    global _provider
    if _provider is None:
        _provider = create_provider()
    return _provider


def reset_provider() -> None:
    """Forget the cached provider (shutdown and tests)."""
    global _provider
    _provider = None
