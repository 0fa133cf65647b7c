"""Anthropic Claude provider.

Translates ModelRequest to Anthropic's SDK format and normalizes responses
back to ModelResponse. Haiku serves the SLM tier, Sonnet the LLM tier.
"""

import os
import time
from typing import Any, Dict, Iterator, List

from joule.llm.providers.base import (
    ProviderAuthenticationError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
)
from joule.llm.types import (
    ModelInfo,
    ModelRequest,
    ModelResponse,
    ModelTier,
    StreamChunk,
    TokenUsage,
)
from joule.pricing import MODEL_PRICING, calculate_cost


class AnthropicProvider:
    """Provider for Anthropic Claude models.

    Requires the anthropic package and ANTHROPIC_API_KEY env var.
    """

    DEFAULT_SLM_MODEL = "claude-haiku-4-5-20251001"
    DEFAULT_LLM_MODEL = "claude-sonnet-4-20250514"
    DEFAULT_MAX_TOKENS = 4096

    def __init__(
        self,
        api_key: str | None = None,
        slm_model: str | None = None,
        llm_model: str | None = None,
        timeout_s: int = 60,
    ):
        self._api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        self._models = {
            ModelTier.SLM: slm_model or self.DEFAULT_SLM_MODEL,
            ModelTier.LLM: llm_model or self.DEFAULT_LLM_MODEL,
        }
        self._timeout_s = timeout_s
        self._name = "anthropic"
        self._client = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def supported_tiers(self) -> List[ModelTier]:
        return [ModelTier.SLM, ModelTier.LLM]

    def is_available(self) -> bool:
        return bool(self._api_key)

    def default_model(self, tier: ModelTier) -> str:
        return self._models[tier]

    def list_models(self) -> List[ModelInfo]:
        models = []
        for tier, model_id in self._models.items():
            price = MODEL_PRICING.get(model_id)
            models.append(
                ModelInfo(
                    id=model_id,
                    name=model_id,
                    tier=tier,
                    provider=self._name,
                    input_cost_per_million=price.input_per_million if price else 0.0,
                    output_cost_per_million=price.output_per_million if price else 0.0,
                )
            )
        return models

    def _get_client(self):
        """Get or create Anthropic client (lazy initialization)."""
        if self._client is None:
            try:
                import anthropic
            except ImportError:
                raise ProviderError(
                    message="anthropic package not installed. Run: pip install anthropic",
                    provider=self._name,
                )

            if not self._api_key:
                raise ProviderAuthenticationError(
                    message="ANTHROPIC_API_KEY not set",
                    provider=self._name,
                )

            self._client = anthropic.Anthropic(
                api_key=self._api_key,
                timeout=self._timeout_s,
            )
        return self._client

    def _build_request_kwargs(self, request: ModelRequest) -> Dict[str, Any]:
        """Build Anthropic-specific request kwargs."""
        system_content = request.system
        messages: List[Dict[str, str]] = []
        for msg in request.messages:
            if msg.role == "system":
                system_content = msg.content
            else:
                messages.append({"role": msg.role, "content": msg.content})

        kwargs: Dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens or self.DEFAULT_MAX_TOKENS,
            "messages": messages,
        }
        if system_content:
            kwargs["system"] = system_content
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        return kwargs

    def _tier_for(self, model: str) -> ModelTier:
        return ModelTier.SLM if model == self._models[ModelTier.SLM] else ModelTier.LLM

    def _handle_api_error(self, e: Exception) -> None:
        """Translate Anthropic SDK errors into provider errors."""
        import anthropic

        if isinstance(e, anthropic.AuthenticationError):
            raise ProviderAuthenticationError(
                message=f"Anthropic authentication failed: {e}",
                provider=self._name,
            )
        elif isinstance(e, anthropic.RateLimitError):
            raise ProviderRateLimitError(
                message=f"Anthropic rate limit exceeded: {e}",
                provider=self._name,
            )
        elif isinstance(e, anthropic.APITimeoutError):
            raise ProviderTimeoutError(
                message=f"Anthropic request timed out: {e}",
                provider=self._name,
                timeout_s=self._timeout_s,
            )
        elif isinstance(e, anthropic.APIError):
            raise ProviderError(
                message=f"Anthropic API error: {e}",
                provider=self._name,
                original_error=e,
                retryable=getattr(e, "status_code", 500) >= 500,
            )
        else:
            raise ProviderError(
                message=f"Unexpected error calling Anthropic: {e}",
                provider=self._name,
                original_error=e,
            )

    def chat(self, request: ModelRequest) -> ModelResponse:
        """Send a chat request to Anthropic.

        Raises:
            ProviderError: On API errors
        """
        client = self._get_client()
        kwargs = self._build_request_kwargs(request)

        start = time.monotonic()
        try:
            response = client.messages.create(**kwargs)
        except Exception as e:
            self._handle_api_error(e)

        text = "".join(block.text for block in response.content if hasattr(block, "text"))
        usage = TokenUsage(
            prompt_tokens=response.usage.input_tokens,
            completion_tokens=response.usage.output_tokens,
        )
        return ModelResponse(
            content=text,
            model=response.model,
            provider=self._name,
            tier=self._tier_for(request.model),
            token_usage=usage,
            cost_usd=calculate_cost(request.model, usage.prompt_tokens, usage.completion_tokens),
            latency_ms=(time.monotonic() - start) * 1000,
            finish_reason=response.stop_reason or "stop",
        )

    def chat_stream(self, request: ModelRequest) -> Iterator[StreamChunk]:
        client = self._get_client()
        kwargs = self._build_request_kwargs(request)

        try:
            with client.messages.stream(**kwargs) as stream:
                for text in stream.text_stream:
                    yield StreamChunk(content=text)
                final = stream.get_final_message()
        except Exception as e:
            self._handle_api_error(e)

        yield StreamChunk(
            done=True,
            token_usage=TokenUsage(
                prompt_tokens=final.usage.input_tokens,
                completion_tokens=final.usage.output_tokens,
            ),
        )
