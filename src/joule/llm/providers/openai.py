"""OpenAI provider.

gpt-4o-mini serves the SLM tier and gpt-4o the LLM tier unless overridden.
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


class OpenAIProvider:
    """Provider for OpenAI chat models.

    Requires the openai package and OPENAI_API_KEY env var.
    """

    DEFAULT_SLM_MODEL = "gpt-4o-mini"
    DEFAULT_LLM_MODEL = "gpt-4o"
    DEFAULT_MAX_TOKENS = 4096

    def __init__(
        self,
        api_key: str | None = None,
        slm_model: str | None = None,
        llm_model: str | None = None,
        timeout_s: int = 60,
    ):
        self._api_key = api_key or os.environ.get("OPENAI_API_KEY")
        self._models = {
            ModelTier.SLM: slm_model or self.DEFAULT_SLM_MODEL,
            ModelTier.LLM: llm_model or self.DEFAULT_LLM_MODEL,
        }
        self._timeout_s = timeout_s
        self._name = "openai"
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
        """Get or create OpenAI client (lazy initialization)."""
        if self._client is None:
            try:
                import openai
            except ImportError:
                raise ProviderError(
                    message="openai package not installed. Run: pip install openai",
                    provider=self._name,
                )

            if not self._api_key:
                raise ProviderAuthenticationError(
                    message="OPENAI_API_KEY not set",
                    provider=self._name,
                )

            self._client = openai.OpenAI(
                api_key=self._api_key,
                timeout=self._timeout_s,
            )
        return self._client

    def _build_request_kwargs(self, request: ModelRequest) -> Dict[str, Any]:
        messages = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.extend({"role": msg.role, "content": msg.content} for msg in request.messages)

        kwargs: Dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens or self.DEFAULT_MAX_TOKENS,
            "messages": messages,
        }
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.response_format == "json":
            kwargs["response_format"] = {"type": "json_object"}
        return kwargs

    def _tier_for(self, model: str) -> ModelTier:
        return ModelTier.SLM if model == self._models[ModelTier.SLM] else ModelTier.LLM

    def _handle_api_error(self, e: Exception) -> None:
        """Translate OpenAI SDK errors into provider errors."""
        import openai

        if isinstance(e, openai.AuthenticationError):
            raise ProviderAuthenticationError(
                message=f"OpenAI authentication failed: {e}",
                provider=self._name,
            )
        elif isinstance(e, openai.RateLimitError):
            raise ProviderRateLimitError(
                message=f"OpenAI rate limit exceeded: {e}",
                provider=self._name,
            )
        elif isinstance(e, openai.APITimeoutError):
            raise ProviderTimeoutError(
                message=f"OpenAI request timed out: {e}",
                provider=self._name,
                timeout_s=self._timeout_s,
            )
        elif isinstance(e, openai.APIError):
            raise ProviderError(
                message=f"OpenAI API error: {e}",
                provider=self._name,
                original_error=e,
                retryable=getattr(e, "status_code", 500) >= 500,
            )
        else:
            raise ProviderError(
                message=f"Unexpected error calling OpenAI: {e}",
                provider=self._name,
                original_error=e,
            )

    def chat(self, request: ModelRequest) -> ModelResponse:
        """Send a chat request to OpenAI.

        Raises:
            ProviderError: On API errors
        """
        client = self._get_client()
        kwargs = self._build_request_kwargs(request)

        start = time.monotonic()
        try:
            response = client.chat.completions.create(**kwargs)
        except Exception as e:
            self._handle_api_error(e)

        usage = TokenUsage()
        if response.usage:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
            )
        return ModelResponse(
            content=response.choices[0].message.content or "",
            model=response.model,
            provider=self._name,
            tier=self._tier_for(request.model),
            token_usage=usage,
            cost_usd=calculate_cost(request.model, usage.prompt_tokens, usage.completion_tokens),
            latency_ms=(time.monotonic() - start) * 1000,
            finish_reason=response.choices[0].finish_reason or "stop",
        )

    def chat_stream(self, request: ModelRequest) -> Iterator[StreamChunk]:
        client = self._get_client()
        kwargs = self._build_request_kwargs(request)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        usage = None
        try:
            for event in client.chat.completions.create(**kwargs):
                if event.usage:
                    usage = TokenUsage(
                        prompt_tokens=event.usage.prompt_tokens,
                        completion_tokens=event.usage.completion_tokens,
                    )
                if event.choices and event.choices[0].delta.content:
                    yield StreamChunk(content=event.choices[0].delta.content)
        except Exception as e:
            self._handle_api_error(e)

        yield StreamChunk(done=True, token_usage=usage)
