"""Provider-agnostic model request/response types.

These types are independent of any specific provider SDK so the router,
planner and executor work against one uniform interface.
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class ModelTier(str, Enum):
    """Coarse model-capability class."""

    SLM = "slm"  # small / local
    LLM = "llm"  # large / cloud


class ChatMessage(BaseModel):
    """A single message in a conversation."""

    role: Literal["system", "user", "assistant"]
    content: str


class ModelRequest(BaseModel):
    """Provider-agnostic chat request."""

    model: str
    messages: List[ChatMessage]
    system: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    response_format: Literal["text", "json"] = "text"
    metadata: Dict[str, Any] = Field(default_factory=dict)  # intent, trace_id

    def with_metadata(self, **kwargs: Any) -> "ModelRequest":
        """Return a copy with additional metadata."""
        new_metadata = {**self.metadata, **kwargs}
        return self.model_copy(update={"metadata": new_metadata})


class TokenUsage(BaseModel):
    """Token counts for one model call."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class ModelResponse(BaseModel):
    """Normalized response from any provider."""

    content: str
    model: str
    provider: str
    tier: ModelTier
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    cost_usd: float = 0.0
    latency_ms: float = 0.0
    finish_reason: str = "stop"
    confidence: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "content": self.content[:200] + "..." if len(self.content) > 200 else self.content,
            "model": self.model,
            "provider": self.provider,
            "tier": self.tier.value,
            "usage": self.token_usage.model_dump(),
        }


class StreamChunk(BaseModel):
    """One piece of a streamed response. The last chunk carries usage."""

    content: str = ""
    done: bool = False
    token_usage: Optional[TokenUsage] = None


class ModelInfo(BaseModel):
    """A model a provider can serve."""

    id: str
    name: str
    tier: ModelTier
    provider: str
    input_cost_per_million: float = 0.0
    output_cost_per_million: float = 0.0
