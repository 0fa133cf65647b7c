"""Model access for the Joule kernel.

This package provides provider-agnostic model integration with:
- A provider protocol and concrete providers (fake, Anthropic, OpenAI, Ollama)
- A provider registry queried by tier and availability
- JSON extraction with tagged parse outcomes

Usage:
    from joule.llm import ModelProviderRegistry, ModelRequest, ChatMessage

    registry = ModelProviderRegistry.from_config()
    provider = registry.get_available()[0]
    response = provider.chat(request)
"""

from joule.llm.registry import ModelProviderRegistry
from joule.llm.structured import ParseOutcome, extract_json, parse_json_object
from joule.llm.types import (
    ChatMessage,
    ModelInfo,
    ModelRequest,
    ModelResponse,
    ModelTier,
    StreamChunk,
    TokenUsage,
)

__all__ = [
    # Types
    "ModelTier",
    "ChatMessage",
    "ModelRequest",
    "ModelResponse",
    "ModelInfo",
    "StreamChunk",
    "TokenUsage",
    # Registry
    "ModelProviderRegistry",
    # Structured
    "ParseOutcome",
    "extract_json",
    "parse_json_object",
]
