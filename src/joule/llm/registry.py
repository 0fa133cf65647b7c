"""Model provider registry.

Holds the providers a kernel instance may route to. Registries are passed
explicitly to the router so independently configured executions never
share provider state by accident.
"""

import logging
from typing import Dict, List, Optional

from joule.llm.providers.base import ModelProvider
from joule.llm.types import ModelTier

logger = logging.getLogger(__name__)


class ModelProviderRegistry:
    """Name → provider mapping with tier and availability queries.

    Usage:
        registry = ModelProviderRegistry()
        registry.register(FakeProvider())
        provider = registry.get("fake")
    """

    def __init__(self):
        self._providers: Dict[str, ModelProvider] = {}

    def register(self, provider: ModelProvider) -> "ModelProviderRegistry":
        """Register (or replace) a provider under its name."""
        self._providers[provider.name] = provider
        return self

    def get(self, name: str) -> Optional[ModelProvider]:
        return self._providers.get(name)

    def has(self, name: str) -> bool:
        return name in self._providers

    def list_all(self) -> List[ModelProvider]:
        return list(self._providers.values())

    def get_available(self, tier: Optional[ModelTier] = None) -> List[ModelProvider]:
        """Return providers that report themselves available.

        Args:
            tier: Only include providers serving this tier

        Returns:
            Available providers in registration order
        """
        available = []
        for provider in self._providers.values():
            if tier is not None and tier not in provider.supported_tiers:
                continue
            if provider.is_available():
                available.append(provider)
        return available

    @classmethod
    def from_config(cls, cfg=None) -> "ModelProviderRegistry":
        """Create a registry with every provider the configuration enables.

        Args:
            cfg: Config instance (defaults to the global config)

        Returns:
            Registry with Anthropic/OpenAI when keys are set and Ollama
            when a base URL is set
        """
        if cfg is None:
            from joule.config import config as cfg

        providers = cfg.providers
        registry = cls()

        if providers.anthropic_api_key:
            from joule.llm.providers.anthropic import AnthropicProvider

            registry.register(
                AnthropicProvider(
                    api_key=providers.anthropic_api_key,
                    slm_model=providers.anthropic_slm_model,
                    llm_model=providers.anthropic_llm_model,
                    timeout_s=providers.timeout_s,
                )
            )

        if providers.openai_api_key:
            from joule.llm.providers.openai import OpenAIProvider

            registry.register(
                OpenAIProvider(
                    api_key=providers.openai_api_key,
                    slm_model=providers.openai_slm_model,
                    llm_model=providers.openai_llm_model,
                    timeout_s=providers.timeout_s,
                )
            )

        if providers.ollama_base_url:
            from joule.llm.providers.ollama import OllamaProvider

            registry.register(
                OllamaProvider(
                    base_url=providers.ollama_base_url,
                    model=providers.ollama_model,
                    timeout_s=providers.timeout_s,
                )
            )

        logger.debug("Registered providers: %s", [p.name for p in registry.list_all()])
        return registry
