"""Inference providers."""

from studygate.app.providers.anthropic import AnthropicProvider
from studygate.app.providers.base import BaseProvider, CompletionRequest
from studygate.app.providers.factory import (
    ProviderType,
    create_provider,
    get_provider,
    reset_provider,
)
from studygate.app.providers.mock import MockProvider
from studygate.app.providers.openai import OpenAIProvider

__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "CompletionRequest",
    "MockProvider",
    "OpenAIProvider",
    "ProviderType",
    "create_provider",
    "get_provider",
    "reset_provider",
]
