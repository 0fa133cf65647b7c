"""Ollama provider for local small models.

Talks to an Ollama server over its HTTP chat API using httpx. Local models
serve only the SLM tier and cost nothing.
"""

import json
import logging
import time
from typing import Any, Dict, Iterator, List, Optional

import httpx

from joule.llm.providers.base import (
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

logger = logging.getLogger(__name__)


class OllamaProvider:
    """Provider for models served by a local Ollama daemon."""

    DEFAULT_BASE_URL = "http://localhost:11434"
    DEFAULT_MODEL = "llama3.2:3b"

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        timeout_s: int = 60,
        client: Optional[httpx.Client] = None,
    ):
        """Initialize Ollama provider.

        Args:
            base_url: Ollama server URL
            model: Model tag used for SLM requests
            timeout_s: Request timeout in seconds
            client: Preconfigured httpx client (tests pass a mock transport)
        """
        self._base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self._model = model or self.DEFAULT_MODEL
        self._timeout_s = timeout_s
        self._client = client or httpx.Client(base_url=self._base_url, timeout=timeout_s)
        self._name = "ollama"

    @property
    def name(self) -> str:
        return self._name

    @property
    def supported_tiers(self) -> List[ModelTier]:
        return [ModelTier.SLM]

    def default_model(self, tier: ModelTier) -> str:
        return self._model

    def is_available(self) -> bool:
        """Ping the tags endpoint; any transport failure means unavailable."""
        try:
            response = self._client.get("/api/tags", timeout=2.0)
        except httpx.HTTPError as e:
            logger.debug("Ollama not reachable at %s: %s", self._base_url, e)
            return False
        return response.status_code == 200

    def list_models(self) -> List[ModelInfo]:
        try:
            response = self._client.get("/api/tags")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderError(
                message=f"Failed to list Ollama models: {e}",
                provider=self._name,
                original_error=e,
            )
        return [
            ModelInfo(id=m["name"], name=m["name"], tier=ModelTier.SLM, provider=self._name)
            for m in response.json().get("models", [])
        ]

    def _build_payload(self, request: ModelRequest, stream: bool) -> Dict[str, Any]:
        messages = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.extend({"role": msg.role, "content": msg.content} for msg in request.messages)

        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "stream": stream,
        }
        options: Dict[str, Any] = {}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.max_tokens is not None:
            options["num_predict"] = request.max_tokens
        if options:
            payload["options"] = options
        if request.response_format == "json":
            payload["format"] = "json"
        return payload

    def _map_status(self, response: httpx.Response) -> None:
        if response.status_code == 200:
            return
        body = response.text[:200]
        if response.status_code == 429:
            raise ProviderRateLimitError(
                message=f"Ollama rate limit exceeded: {body}",
                provider=self._name,
            )
        raise ProviderError(
            message=f"Ollama error ({response.status_code}): {body}",
            provider=self._name,
            retryable=response.status_code >= 500,
        )

    def chat(self, request: ModelRequest) -> ModelResponse:
        """Send a non-streaming chat request.

        Raises:
            ProviderError: On HTTP errors or timeouts
        """
        start = time.monotonic()
        try:
            response = self._client.post("/api/chat", json=self._build_payload(request, False))
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(
                message=f"Ollama request timed out: {e}",
                provider=self._name,
                timeout_s=self._timeout_s,
            )
        except httpx.HTTPError as e:
            raise ProviderError(
                message=f"Ollama request failed: {e}",
                provider=self._name,
                original_error=e,
                retryable=True,
            )
        self._map_status(response)

        data = response.json()
        return ModelResponse(
            content=data.get("message", {}).get("content", ""),
            model=data.get("model", request.model),
            provider=self._name,
            tier=ModelTier.SLM,
            token_usage=TokenUsage(
                prompt_tokens=data.get("prompt_eval_count", 0),
                completion_tokens=data.get("eval_count", 0),
            ),
            cost_usd=0.0,
            latency_ms=(time.monotonic() - start) * 1000,
            finish_reason=data.get("done_reason", "stop"),
        )

    def chat_stream(self, request: ModelRequest) -> Iterator[StreamChunk]:
        """Stream newline-delimited JSON chunks from /api/chat."""
        try:
            with self._client.stream(
                "POST", "/api/chat", json=self._build_payload(request, True)
            ) as response:
                if response.status_code != 200:
                    response.read()
                    self._map_status(response)
                for line in response.iter_lines():
                    if not line:
                        continue
                    data = json.loads(line)
                    if data.get("done"):
                        yield StreamChunk(
                            done=True,
                            token_usage=TokenUsage(
                                prompt_tokens=data.get("prompt_eval_count", 0),
                                completion_tokens=data.get("eval_count", 0),
                            ),
                        )
                        return
                    yield StreamChunk(content=data.get("message", {}).get("content", ""))
        except httpx.HTTPError as e:
            raise ProviderError(
                message=f"Ollama stream failed: {e}",
                provider=self._name,
                original_error=e,
                retryable=True,
            )
