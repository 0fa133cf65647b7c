"""Model provider implementations.

Available providers:
- FakeProvider: Deterministic responses for testing
- AnthropicProvider: Claude models (requires anthropic package)
- OpenAIProvider: GPT models (requires openai package)
- OllamaProvider: Local models over HTTP
"""

from joule.llm.providers.base import (
    ModelProvider,
    ProviderAuthenticationError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
)
from joule.llm.providers.fake import FakeProvider

__all__ = [
    "ModelProvider",
    "ProviderError",
    "ProviderRateLimitError",
    "ProviderAuthenticationError",
    "ProviderTimeoutError",
    "FakeProvider",
]
