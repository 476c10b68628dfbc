"""
Pytest fixtures for slimspec tests: profile snapshots and scripted generative providers.
Providers never touch the network; each slot's response is chosen by its system prompt.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, List, Mapping, Optional

import pytest

from slimspec.config import AdvisorConfig
from slimspec.nodes.generative import SYSTEM_PROMPTS
from slimspec.state import Confidence, ProfileSnapshot, Signal, Slot


class Sleep:
    """Scripted response: block for `seconds` (longer than the test timeout)."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds


def _slot_for(system_prompt: Optional[str]) -> Optional[Slot]:
    for slot, prompt in SYSTEM_PROMPTS.items():
        if prompt == system_prompt:
            return slot
    return None


class ScriptedProvider:
    """
    Async provider. script maps Slot -> dict (sent as JSON), str (sent raw),
    Exception (raised) or Sleep. Slots missing from the script raise RuntimeError.
    """

    def __init__(self, script: Mapping[Slot, Any]) -> None:
        self.script = dict(script)
        self.calls: List[Slot] = []
        self.cancelled: List[Slot] = []

    def generate(self, prompt: str, context: Mapping[str, Any], system_prompt: Optional[str] = None) -> str:
        raise AssertionError("async path expected")

    async def agenerate(self, prompt: str, context: Mapping[str, Any], system_prompt: Optional[str] = None) -> str:
        slot = _slot_for(system_prompt)
        self.calls.append(slot)
        response = self.script.get(slot, RuntimeError(f"no scripted response for {slot}"))
        if isinstance(response, Sleep):
            try:
                await asyncio.sleep(response.seconds)
            except asyncio.CancelledError:
                self.cancelled.append(slot)
                raise
            return "{}"
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, dict):
            return json.dumps(response)
        return response


class SyncProvider:
    """Provider with only a blocking generate(); driven through a worker thread."""

    def __init__(self, responses: Mapping[Slot, Dict[str, Any]]) -> None:
        self.responses = dict(responses)
        self.calls: List[Slot] = []

    def generate(self, prompt: str, context: Mapping[str, Any], system_prompt: Optional[str] = None) -> str:
        slot = _slot_for(system_prompt)
        self.calls.append(slot)
        return json.dumps(self.responses[slot])


class SlowSyncProvider:
    """Blocking provider whose generate() outlives any test timeout."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        self.calls: List[Slot] = []

    def generate(self, prompt: str, context: Mapping[str, Any], system_prompt: Optional[str] = None) -> str:
        self.calls.append(_slot_for(system_prompt))
        time.sleep(self.seconds)
        return "{}"


def make_signal(slot: Slot, verdict: str, confidence: Confidence = Confidence.HIGH, **metadata: Any) -> Signal:
    return Signal(
        slot=slot,
        verdict=verdict,
        confidence=confidence,
        reasoning=f"{verdict} ({confidence.value})",
        metadata=metadata,
    )


@pytest.fixture
def optimizable_snapshot() -> ProfileSnapshot:
    """Unit test that persists one record it never writes to again."""
    return ProfileSnapshot(
        location="tests/models/test_user.py:12",
        category="model",
        duration_ms=8,
        construction={"user": {"strategy": "create", "count": 1}},
        persistence={"total_queries": 1, "selects": 1, "inserts": 0},
    )


@pytest.fixture
def risky_snapshot(optimizable_snapshot) -> ProfileSnapshot:
    """Same profile, but commit callbacks, a mailer and a job fire."""
    events = {"after_commit": "sync_search_index", "mailer": "deliver_welcome", "job": "enqueue_audit"}
    return ProfileSnapshot.model_validate({**optimizable_snapshot.model_dump(), "events": events})


@pytest.fixture
def write_heavy_snapshot() -> ProfileSnapshot:
    return ProfileSnapshot(
        location="tests/integration/test_checkout.py:40",
        category="integration",
        duration_ms=250,
        construction={"order": {"strategy": "create", "count": 2}},
        persistence={"total_queries": 14, "selects": 6, "inserts": 3, "updates": 1},
    )


@pytest.fixture
def heuristic_config() -> AdvisorConfig:
    return AdvisorConfig(llm_provider="none")


@pytest.fixture
def fast_config() -> AdvisorConfig:
    """Generative enabled with a short per-call timeout."""
    return AdvisorConfig(llm_provider="openai", generative_timeout_seconds=0.05)


@pytest.fixture
def generative_script() -> Dict[Slot, Dict[str, Any]]:
    return {
        Slot.PERSISTENCE: {"verdict": "persistence_unused", "confidence": "high", "reasoning": "no writes"},
        Slot.CONSTRUCTION: {"verdict": "construction_inefficient", "confidence": "high", "reasoning": "create unused"},
        Slot.INTENT: {"verdict": "unit_behavior", "confidence": "medium", "reasoning": "model test"},
        Slot.RISK: {"verdict": "safe_to_optimize", "confidence": "high", "reasoning": "no callbacks"},
    }
