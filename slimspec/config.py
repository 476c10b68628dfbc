"""
Run-scoped configuration. One AdvisorConfig value is passed into the orchestrator,
the consensus engine and the graph; nothing reads a process-wide singleton.

Environment (loaded from .env by the entry points):
- SLIMSPEC_ENABLED_SLOTS: comma list, default all slots
- SLIMSPEC_HEURISTIC_ONLY_SLOTS: comma list of slots that never call the provider
- SLIMSPEC_GENERATIVE_TIMEOUT: seconds per generative call, default 30
- LLM_PROVIDER: openai | openrouter | ollama | anthropic | none
"""

from __future__ import annotations

import os
from typing import Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from slimspec.errors import ConfigurationError
from slimspec.state import Confidence, ExecutionMode, Slot

DEFAULT_GENERATIVE_TIMEOUT = 30.0

DEFAULT_SOURCE_WEIGHTS: Dict[str, float] = {
    ExecutionMode.GENERATIVE.value: 1.5,
    ExecutionMode.HEURISTIC.value: 1.0,
}

DEFAULT_CONFIDENCE_WEIGHTS: Dict[str, float] = {
    Confidence.HIGH.value: 1.0,
    Confidence.MEDIUM.value: 0.8,
    Confidence.LOW.value: 0.6,
}

DEFAULT_RISK_CONFLICT_VERDICTS: Tuple[str, ...] = ("callback_risk",)

# Weight for any confidence label missing from confidence_weights.
OTHER_CONFIDENCE_WEIGHT = 0.3


class AdvisorConfig(BaseModel):
    """Immutable settings for one analysis run."""

    model_config = ConfigDict(frozen=True)

    enabled_slots: Tuple[Slot, ...] = tuple(Slot)
    heuristic_only_slots: Tuple[Slot, ...] = ()
    generative_timeout_seconds: float = Field(default=DEFAULT_GENERATIVE_TIMEOUT, gt=0)
    llm_provider: str = "openai"

    # Consensus thresholds
    agreement_minimum: int = Field(default=2, ge=1)
    strong_signal_minimum: int = Field(default=1, ge=1)
    high_confidence_strong_minimum: int = Field(default=2, ge=1)
    moderate_risk_limit: int = Field(default=2, ge=1)
    risk_score_threshold: float = 4
    risk_factor_count_threshold: int = 2
    medium_weight_threshold: float = 2.0
    # Risk-leaning verdicts that conflict with a strong optimization signal.
    # Add "potential_side_effects" to make moderate risk raise the conflict too.
    risk_conflict_verdicts: Tuple[str, ...] = DEFAULT_RISK_CONFLICT_VERDICTS

    source_weights: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_SOURCE_WEIGHTS))
    confidence_weights: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_CONFIDENCE_WEIGHTS))

    @field_validator("enabled_slots", "heuristic_only_slots", mode="before")
    @classmethod
    def _split_slots(cls, value):
        if isinstance(value, str):
            value = [part for part in value.split(",") if part.strip()]
        # Keep first occurrence order, drop duplicates.
        seen: List[Slot] = []
        for item in value or ():
            slot = Slot(item.strip().lower()) if isinstance(item, str) else Slot(item)
            if slot not in seen:
                seen.append(slot)
        return tuple(seen)

    @field_validator("llm_provider", mode="before")
    @classmethod
    def _normalize_provider(cls, value):
        return (value or "none").strip().lower()

    def slot_enabled(self, slot: Slot) -> bool:
        return slot in self.enabled_slots

    def generative_allowed(self, slot: Slot) -> bool:
        return self.llm_provider != "none" and slot not in self.heuristic_only_slots

    def source_weight(self, execution_mode: Optional[str]) -> float:
        return self.source_weights.get(
            execution_mode or ExecutionMode.HEURISTIC.value,
            self.source_weights.get(ExecutionMode.HEURISTIC.value, 1.0),
        )

    def confidence_weight(self, confidence: Confidence) -> float:
        return self.confidence_weights.get(confidence.value, OTHER_CONFIDENCE_WEIGHT)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "AdvisorConfig":
        """Build config from SLIMSPEC_* variables; explicit overrides win."""
        env = os.environ if environ is None else environ
        values: Dict[str, object] = {}
        if (env.get("SLIMSPEC_ENABLED_SLOTS") or "").strip():
            values["enabled_slots"] = env["SLIMSPEC_ENABLED_SLOTS"]
        if (env.get("SLIMSPEC_HEURISTIC_ONLY_SLOTS") or "").strip():
            values["heuristic_only_slots"] = env["SLIMSPEC_HEURISTIC_ONLY_SLOTS"]
        if (env.get("SLIMSPEC_GENERATIVE_TIMEOUT") or "").strip():
            values["generative_timeout_seconds"] = env["SLIMSPEC_GENERATIVE_TIMEOUT"]
        values["llm_provider"] = env.get("LLM_PROVIDER") or "openai"
        values.update(overrides)
        try:
            return cls(**values)
        except (ValidationError, ValueError) as e:
            raise ConfigurationError(f"Invalid slimspec configuration: {e}") from e
