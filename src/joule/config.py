"""Configuration and environment handling for Joule."""

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from joule.errors import ConfigError


def _default_priority() -> Dict[str, List[str]]:
    return {
        "slm": ["ollama", "google", "openai", "anthropic"],
        "llm": ["anthropic", "openai", "google"],
    }


class RoutingConfig(BaseModel):
    """Model routing policy.

    Thresholds are in [0, 1]. Provider priority lists are tried in order
    within each tier, skipping providers that are unavailable.
    """

    prefer_local: bool = True
    slm_confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    complexity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    provider_priority: Dict[str, List[str]] = Field(default_factory=_default_priority)
    max_replan_depth: int = Field(default=2, ge=0)
    prefer_efficient_models: bool = False


class EnergyConfig(BaseModel):
    """Energy and carbon accounting settings."""

    enabled: bool = True
    grid_carbon_intensity: float = 400.0  # gCO2/kWh
    local_model_carbon_intensity: float = 0.0
    include_in_routing: bool = False
    energy_weight: float = Field(default=0.3, ge=0.0, le=1.0)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class ProviderConfig:
    """Model provider credentials and endpoints."""

    def __init__(self):
        self.anthropic_api_key: Optional[str] = os.getenv("ANTHROPIC_API_KEY")
        self.anthropic_slm_model: str = os.getenv(
            "JOULE_ANTHROPIC_SLM_MODEL", "claude-haiku-4-5-20251001"
        )
        self.anthropic_llm_model: str = os.getenv(
            "JOULE_ANTHROPIC_LLM_MODEL", "claude-sonnet-4-20250514"
        )
        self.openai_api_key: Optional[str] = os.getenv("OPENAI_API_KEY")
        self.openai_slm_model: str = os.getenv("JOULE_OPENAI_SLM_MODEL", "gpt-4o-mini")
        self.openai_llm_model: str = os.getenv("JOULE_OPENAI_LLM_MODEL", "gpt-4o")
        self.ollama_base_url: Optional[str] = os.getenv("OLLAMA_BASE_URL")
        self.ollama_model: str = os.getenv("JOULE_OLLAMA_MODEL", "llama3.2:3b")
        self.timeout_s: int = _env_int("JOULE_PROVIDER_TIMEOUT_S", 60)


class Config:
    """Central configuration object."""

    def __init__(self):
        # Load .env file if it exists
        env_path = Path(__file__).parent.parent.parent / ".env"
        if env_path.exists():
            load_dotenv(env_path)

        self.project_root = Path(__file__).parent.parent.parent

        # Trace database
        self.db_path: Path = Path(os.getenv("JOULE_DB_PATH", "data/joule.sqlite"))
        if not self.db_path.is_absolute():
            self.db_path = self.project_root / self.db_path
        self.persist_traces: bool = _env_bool("JOULE_PERSIST_TRACES", False)

        # Logging
        self.log_level: str = os.getenv("JOULE_LOG_LEVEL", "INFO")

        # Budget preset used when a task names none
        self.default_budget: str = os.getenv("JOULE_DEFAULT_BUDGET", "medium")

        self.routing = RoutingConfig(
            prefer_local=_env_bool("JOULE_PREFER_LOCAL", True),
            slm_confidence_threshold=_env_float("JOULE_SLM_CONFIDENCE_THRESHOLD", 0.6),
            complexity_threshold=_env_float("JOULE_COMPLEXITY_THRESHOLD", 0.7),
            max_replan_depth=_env_int("JOULE_MAX_REPLAN_DEPTH", 2),
            prefer_efficient_models=_env_bool("JOULE_PREFER_EFFICIENT_MODELS", False),
        )
        self.energy = EnergyConfig(
            enabled=_env_bool("JOULE_ENERGY_ENABLED", True),
            grid_carbon_intensity=_env_float("JOULE_GRID_CARBON_INTENSITY", 400.0),
            local_model_carbon_intensity=_env_float(
                "JOULE_LOCAL_CARBON_INTENSITY", 0.0
            ),
            include_in_routing=_env_bool("JOULE_ENERGY_IN_ROUTING", False),
        )

        self.providers = ProviderConfig()

    def ensure_directories(self) -> None:
        """Create necessary directories if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)


def setup_logging(level: Optional[str] = None) -> None:
    """Configure the ``joule`` logger hierarchy for command-line use."""
    logger = logging.getLogger("joule")
    if logger.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    logger.addHandler(handler)
    logger.setLevel((level or "INFO").upper())


# Global config instance
config = Config()
