"""Base provider protocol for chat-capable model backends.

Providers are responsible ONLY for:
1. Translating ModelRequest → provider SDK request
2. Calling the provider API
3. Normalizing the response → ModelResponse (with cost and latency)

Providers do NOT:
- Parse or validate JSON content
- Touch budgets or traces
- Decide which tier a request should use
"""

from typing import Iterator, List, Protocol, runtime_checkable

from joule.llm.types import ModelInfo, ModelRequest, ModelResponse, ModelTier, StreamChunk


@runtime_checkable
class ModelProvider(Protocol):
    """Protocol for model providers."""

    @property
    def name(self) -> str:
        """Return the provider name (e.g., 'anthropic', 'ollama', 'fake')."""
        ...

    @property
    def supported_tiers(self) -> List[ModelTier]:
        """Return the tiers this provider can serve."""
        ...

    def is_available(self) -> bool:
        """Return True if the provider is configured and reachable."""
        ...

    def list_models(self) -> List[ModelInfo]:
        """Return the models this provider offers."""
        ...

    def default_model(self, tier: ModelTier) -> str:
        """Return the model id used for a tier."""
        ...

    def chat(self, request: ModelRequest) -> ModelResponse:
        """Send a chat request.

        Raises:
            ProviderError: On API errors, timeouts, etc.
        """
        ...

    def chat_stream(self, request: ModelRequest) -> Iterator[StreamChunk]:
        """Stream a chat response; the final chunk has done=True."""
        ...


class ProviderError(Exception):
    """Base exception for provider errors."""

    def __init__(
        self,
        message: str,
        provider: str = "unknown",
        original_error: Exception | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.provider = provider
        self.original_error = original_error
        self.retryable = retryable


class ProviderRateLimitError(ProviderError):
    """Rate limit exceeded."""

    def __init__(self, message: str, provider: str, retry_after: int | None = None):
        super().__init__(message, provider, retryable=True)
        self.retry_after = retry_after


class ProviderAuthenticationError(ProviderError):
    """Authentication failed (invalid API key)."""

    def __init__(self, message: str, provider: str):
        super().__init__(message, provider, retryable=False)


class ProviderTimeoutError(ProviderError):
    """Request timed out."""

    def __init__(self, message: str, provider: str, timeout_s: int):
        super().__init__(message, provider, retryable=True)
        self.timeout_s = timeout_s
