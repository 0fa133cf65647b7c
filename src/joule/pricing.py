"""Model pricing, energy and carbon accounting.

Prices are USD per million tokens. Energy figures are Wh per million
tokens; models served locally are tagged with the "zero" source so their
carbon is computed against the local carbon intensity instead of the grid.
"""

from typing import Dict, Literal, Optional

from pydantic import BaseModel

from joule.config import EnergyConfig

BASELINE_MODEL = "gpt-4o"


class ModelPrice(BaseModel):
    input_per_million: float
    output_per_million: float


class ModelEnergy(BaseModel):
    input_wh_per_million: float
    output_wh_per_million: float
    source: Literal["cloud", "zero"] = "cloud"


MODEL_PRICING: Dict[str, ModelPrice] = {
    "claude-haiku-4-5-20251001": ModelPrice(input_per_million=0.80, output_per_million=4.00),
    "claude-sonnet-4-20250514": ModelPrice(input_per_million=3.00, output_per_million=15.00),
    "claude-opus-4-20250514": ModelPrice(input_per_million=15.00, output_per_million=75.00),
    "gpt-4o-mini": ModelPrice(input_per_million=0.15, output_per_million=0.60),
    "gpt-4o": ModelPrice(input_per_million=2.50, output_per_million=10.00),
    "gemini-2.0-flash": ModelPrice(input_per_million=0.10, output_per_million=0.40),
    "gemini-2.5-pro": ModelPrice(input_per_million=1.25, output_per_million=5.00),
    "llama3.2:3b": ModelPrice(input_per_million=0.0, output_per_million=0.0),
    "llama3.2:1b": ModelPrice(input_per_million=0.0, output_per_million=0.0),
    "phi-3:mini": ModelPrice(input_per_million=0.0, output_per_million=0.0),
    "mistral:7b": ModelPrice(input_per_million=0.0, output_per_million=0.0),
    "qwen2.5:7b": ModelPrice(input_per_million=0.0, output_per_million=0.0),
}

MODEL_ENERGY: Dict[str, ModelEnergy] = {
    "claude-haiku-4-5-20251001": ModelEnergy(input_wh_per_million=0.4, output_wh_per_million=1.5),
    "claude-sonnet-4-20250514": ModelEnergy(input_wh_per_million=1.2, output_wh_per_million=4.5),
    "claude-opus-4-20250514": ModelEnergy(input_wh_per_million=3.5, output_wh_per_million=12.0),
    "gpt-4o-mini": ModelEnergy(input_wh_per_million=0.3, output_wh_per_million=1.2),
    "gpt-4o": ModelEnergy(input_wh_per_million=1.5, output_wh_per_million=5.0),
    "gemini-2.0-flash": ModelEnergy(input_wh_per_million=0.2, output_wh_per_million=0.8),
    "gemini-2.5-pro": ModelEnergy(input_wh_per_million=1.0, output_wh_per_million=3.5),
    "llama3.2:3b": ModelEnergy(input_wh_per_million=0.15, output_wh_per_million=0.6, source="zero"),
    "llama3.2:1b": ModelEnergy(input_wh_per_million=0.08, output_wh_per_million=0.3, source="zero"),
    "phi-3:mini": ModelEnergy(input_wh_per_million=0.10, output_wh_per_million=0.4, source="zero"),
    "mistral:7b": ModelEnergy(input_wh_per_million=0.25, output_wh_per_million=1.0, source="zero"),
    "qwen2.5:7b": ModelEnergy(input_wh_per_million=0.25, output_wh_per_million=1.0, source="zero"),
}


class EfficiencyReport(BaseModel):
    """Energy and carbon of a run compared with the baseline model."""

    total_energy_wh: float
    total_carbon_grams: float
    baseline_energy_wh: float
    baseline_carbon_grams: float
    savings_wh: float
    savings_percent: float
    baseline_model: str = BASELINE_MODEL


def calculate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Return the USD cost of a call, 0.0 for unknown models."""
    price = MODEL_PRICING.get(model)
    if price is None:
        return 0.0
    return (
        prompt_tokens * price.input_per_million
        + completion_tokens * price.output_per_million
    ) / 1_000_000


def calculate_energy(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Return the Wh consumed by a call, 0.0 for unknown models."""
    energy = MODEL_ENERGY.get(model)
    if energy is None:
        return 0.0
    return (
        prompt_tokens * energy.input_wh_per_million
        + completion_tokens * energy.output_wh_per_million
    ) / 1_000_000


def calculate_carbon(
    energy_wh: float, model: str, energy_config: Optional[EnergyConfig] = None
) -> float:
    """Convert Wh into grams of CO2 for the given model's source."""
    cfg = energy_config or EnergyConfig()
    energy = MODEL_ENERGY.get(model)
    if energy is not None and energy.source == "zero":
        intensity = cfg.local_model_carbon_intensity
    else:
        intensity = cfg.grid_carbon_intensity
    return energy_wh / 1000 * intensity


def build_efficiency_report(
    total_energy_wh: float,
    total_carbon_grams: float,
    input_tokens: int,
    output_tokens: int,
    energy_config: Optional[EnergyConfig] = None,
) -> EfficiencyReport:
    """Compare actual usage with running the same tokens on the baseline model."""
    baseline_energy = calculate_energy(BASELINE_MODEL, input_tokens, output_tokens)
    baseline_carbon = calculate_carbon(baseline_energy, BASELINE_MODEL, energy_config)
    savings = baseline_energy - total_energy_wh
    percent = (savings / baseline_energy * 100) if baseline_energy > 0 else 0.0
    return EfficiencyReport(
        total_energy_wh=total_energy_wh,
        total_carbon_grams=total_carbon_grams,
        baseline_energy_wh=baseline_energy,
        baseline_carbon_grams=baseline_carbon,
        savings_wh=savings,
        savings_percent=percent,
    )
