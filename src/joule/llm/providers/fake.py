"""Fake model provider for deterministic testing.

This provider returns predefined responses for testing purposes.
It supports:
- Per-operation response queues (keyed by request metadata "operation")
- A FIFO queue for sequential calls
- Predefined responses by prompt substring match
- Configurable failures for error path testing
- Streaming by splitting the response into word chunks
"""

from typing import Callable, Dict, Iterator, List, Optional

from joule.llm.providers.base import ProviderError
from joule.llm.types import (
    ModelInfo,
    ModelRequest,
    ModelResponse,
    ModelTier,
    StreamChunk,
    TokenUsage,
)
from joule.pricing import calculate_cost


class FakeProvider:
    """Deterministic provider for testing.

    Usage:
        provider = FakeProvider()

        # Answer planner operations in order
        provider.queue_for("plan", '{"steps": [...]}')
        provider.queue_for("synthesize", "All done.")

        # Or use a generic queue / substring match
        provider.queue_response('{"complexity": 0.3}')
        provider.add_response("weather", "It is sunny")
    """

    def __init__(
        self,
        name: str = "fake",
        tiers: Optional[List[ModelTier]] = None,
        default_response: str | None = None,
        slm_model: str = "fake-slm",
        llm_model: str = "fake-llm",
        available: bool = True,
    ):
        """Initialize fake provider.

        Args:
            name: Provider name used for routing priority lists
            tiers: Tiers served (defaults to both)
            default_response: Response to return if nothing else matches
            slm_model: Model id reported for SLM requests
            llm_model: Model id reported for LLM requests
            available: Value returned by is_available()
        """
        self._name = name
        self._tiers = tiers or [ModelTier.SLM, ModelTier.LLM]
        self._models = {ModelTier.SLM: slm_model, ModelTier.LLM: llm_model}
        self._available = available
        self._responses: Dict[str, str] = {}
        self._response_queue: List[str] = []
        self._operation_queues: Dict[str, List[str]] = {}
        self._call_count = 0
        self._call_history: List[ModelRequest] = []
        self._default_response = default_response or '{"status": "ok"}'
        self._should_fail: bool = False
        self._fail_message: str = ""
        self._response_fn: Optional[Callable[[ModelRequest], str]] = None

    @property
    def name(self) -> str:
        """Return provider name."""
        return self._name

    @property
    def supported_tiers(self) -> List[ModelTier]:
        return list(self._tiers)

    @property
    def call_count(self) -> int:
        """Return number of calls made."""
        return self._call_count

    @property
    def call_history(self) -> List[ModelRequest]:
        """Return history of requests."""
        return self._call_history

    def is_available(self) -> bool:
        return self._available

    def set_available(self, available: bool) -> "FakeProvider":
        self._available = available
        return self

    def default_model(self, tier: ModelTier) -> str:
        return self._models[tier]

    def list_models(self) -> List[ModelInfo]:
        return [
            ModelInfo(id=self._models[tier], name=self._models[tier], tier=tier, provider=self._name)
            for tier in self._tiers
        ]

    def add_response(self, prompt_contains: str, response: str) -> "FakeProvider":
        """Add a response for prompts containing a substring.

        Args:
            prompt_contains: Substring to match in user message
            response: Response to return

        Returns:
            Self for chaining
        """
        self._responses[prompt_contains.lower()] = response
        return self

    def queue_response(self, response: str) -> "FakeProvider":
        """Add a response to the generic queue (FIFO)."""
        self._response_queue.append(response)
        return self

    def queue_for(self, operation: str, response: str) -> "FakeProvider":
        """Queue a response for one planner operation (FIFO per operation).

        Args:
            operation: Value of request.metadata["operation"]
                (specify, classify, plan, critique, replan, synthesize, decompose)
            response: Response to return

        Returns:
            Self for chaining
        """
        self._operation_queues.setdefault(operation, []).append(response)
        return self

    def set_response_fn(self, fn: Callable[[ModelRequest], str]) -> "FakeProvider":
        """Set a function to generate responses."""
        self._response_fn = fn
        return self

    def set_should_fail(self, should_fail: bool, message: str = "Fake error") -> "FakeProvider":
        """Configure provider to fail on subsequent calls."""
        self._should_fail = should_fail
        self._fail_message = message
        return self

    def reset(self) -> "FakeProvider":
        """Reset all state."""
        self._responses.clear()
        self._response_queue.clear()
        self._operation_queues.clear()
        self._call_count = 0
        self._call_history.clear()
        self._should_fail = False
        self._response_fn = None
        return self

    def chat(self, request: ModelRequest) -> ModelResponse:
        """Return a predefined response.

        Raises:
            ProviderError: If configured to fail
        """
        self._call_count += 1
        self._call_history.append(request)

        if self._should_fail:
            raise ProviderError(
                message=self._fail_message,
                provider=self._name,
                retryable=False,
            )

        return self._make_response(self._select_text(request), request)

    def chat_stream(self, request: ModelRequest) -> Iterator[StreamChunk]:
        response = self.chat(request)
        words = response.content.split(" ")
        for i, word in enumerate(words):
            yield StreamChunk(content=word if i == 0 else " " + word)
        yield StreamChunk(done=True, token_usage=response.token_usage)

    def _select_text(self, request: ModelRequest) -> str:
        if self._response_fn:
            return self._response_fn(request)

        operation = request.metadata.get("operation")
        queue = self._operation_queues.get(operation) if operation else None
        if queue:
            return queue.pop(0)

        if self._response_queue:
            return self._response_queue.pop(0)

        user_content = self._get_user_content(request)
        for pattern, response in self._responses.items():
            if pattern in user_content.lower():
                return response

        return self._default_response

    def _get_user_content(self, request: ModelRequest) -> str:
        """Extract user message content from request."""
        for msg in reversed(request.messages):
            if msg.role == "user":
                return msg.content
        return ""

    def _tier_for(self, model: str) -> ModelTier:
        for tier, name in self._models.items():
            if name == model:
                return tier
        return self._tiers[0]

    def _make_response(self, text: str, request: ModelRequest) -> ModelResponse:
        """Create a response object."""
        prompt_tokens = len(self._get_user_content(request).split())
        completion_tokens = len(text.split())
        return ModelResponse(
            content=text,
            model=request.model,
            provider=self._name,
            tier=self._tier_for(request.model),
            token_usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
            ),
            cost_usd=calculate_cost(request.model, prompt_tokens, completion_tokens),
            latency_ms=0.0,
        )
