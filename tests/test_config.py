"""Tests for AdvisorConfig: defaults, env loading and weight lookup."""

from __future__ import annotations

import pytest

from slimspec.config import OTHER_CONFIDENCE_WEIGHT, AdvisorConfig
from slimspec.errors import ConfigurationError
from slimspec.state import Confidence, Slot


def test_defaults_enable_every_slot():
    config = AdvisorConfig()
    assert config.enabled_slots == tuple(Slot)
    assert config.generative_timeout_seconds == 30
    assert config.agreement_minimum == 2
    assert config.risk_conflict_verdicts == ("callback_risk",)


def test_from_env_reads_slimspec_variables():
    config = AdvisorConfig.from_env(
        {
            "SLIMSPEC_ENABLED_SLOTS": "risk, persistence,risk",
            "SLIMSPEC_HEURISTIC_ONLY_SLOTS": "intent",
            "SLIMSPEC_GENERATIVE_TIMEOUT": "2.5",
            "LLM_PROVIDER": "Ollama",
        }
    )
    assert config.enabled_slots == (Slot.RISK, Slot.PERSISTENCE)
    assert config.heuristic_only_slots == (Slot.INTENT,)
    assert config.generative_timeout_seconds == 2.5
    assert config.llm_provider == "ollama"


def test_from_env_overrides_win():
    config = AdvisorConfig.from_env({"LLM_PROVIDER": "openai"}, llm_provider="none", agreement_minimum=3)
    assert config.llm_provider == "none"
    assert config.agreement_minimum == 3


@pytest.mark.parametrize(
    "environ",
    [
        {"SLIMSPEC_ENABLED_SLOTS": "persistence,telepathy"},
        {"SLIMSPEC_GENERATIVE_TIMEOUT": "0"},
        {"SLIMSPEC_GENERATIVE_TIMEOUT": "soon"},
    ],
)
def test_from_env_invalid_values_raise_configuration_error(environ):
    with pytest.raises(ConfigurationError):
        AdvisorConfig.from_env(environ)


def test_generative_allowed_respects_provider_and_overrides():
    config = AdvisorConfig(llm_provider="openai", heuristic_only_slots=["risk"])
    assert config.generative_allowed(Slot.PERSISTENCE)
    assert not config.generative_allowed(Slot.RISK)
    assert not AdvisorConfig(llm_provider="none").generative_allowed(Slot.PERSISTENCE)


def test_weights():
    config = AdvisorConfig()
    assert config.source_weight("generative") == 1.5
    assert config.source_weight("heuristic") == 1.0
    assert config.source_weight(None) == 1.0
    assert config.confidence_weight(Confidence.MEDIUM) == 0.8
    custom = AdvisorConfig(confidence_weights={"high": 1.0})
    assert custom.confidence_weight(Confidence.LOW) == OTHER_CONFIDENCE_WEIGHT
