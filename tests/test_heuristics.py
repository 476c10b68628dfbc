"""Tests for the deterministic slot analyzers."""

from __future__ import annotations

from slimspec.nodes.heuristics import (
    HEURISTIC_ANALYZERS,
    analyze_construction,
    analyze_intent,
    analyze_persistence,
    analyze_risk,
)
from slimspec.state import Confidence, ProfileSnapshot, Slot


def _snapshot(**fields) -> ProfileSnapshot:
    fields.setdefault("location", "tests/test_misc.py:1")
    return ProfileSnapshot(**fields)


def test_every_slot_has_a_heuristic():
    assert set(HEURISTIC_ANALYZERS) == set(Slot)


def test_persistence_unused_when_no_writes(optimizable_snapshot):
    signal = analyze_persistence(optimizable_snapshot)
    assert signal.verdict == "persistence_unused"
    assert signal.confidence is Confidence.HIGH


def test_persistence_unused_medium_with_many_reads():
    signal = analyze_persistence(_snapshot(persistence={"total_queries": 4, "selects": 4}))
    assert signal.verdict == "persistence_unused"
    assert signal.confidence is Confidence.MEDIUM


def test_persistence_required_with_writes(write_heavy_snapshot):
    assert analyze_persistence(write_heavy_snapshot).verdict == "persistence_required"


def test_persistence_unclear_without_data():
    signal = analyze_persistence(_snapshot())
    assert signal.verdict == "persistence_unclear"
    assert signal.metadata["no_data"] is True


def test_construction_inefficient_for_unused_create(optimizable_snapshot):
    signal = analyze_construction(optimizable_snapshot)
    assert signal.verdict == "construction_inefficient"
    assert signal.metadata["create_count"] == 1


def test_construction_required_with_association_hints():
    snapshot = _snapshot(construction={"post": {"strategy": "create", "count": 1, "attributes": {"author_id": 3}}})
    assert analyze_construction(snapshot).verdict == "construction_required"


def test_construction_required_with_writes(write_heavy_snapshot):
    assert analyze_construction(write_heavy_snapshot).verdict == "construction_required"


def test_construction_optimal_when_already_stubbed():
    signal = analyze_construction(_snapshot(construction={"user": {"strategy": "build_stubbed", "count": 2}}))
    assert signal.verdict == "construction_optimal"
    assert signal.confidence is Confidence.HIGH


def test_intent_unit_for_fast_model_test(optimizable_snapshot):
    signal = analyze_intent(optimizable_snapshot)
    assert signal.verdict == "unit_behavior"
    assert signal.confidence is Confidence.HIGH


def test_intent_integration_for_slow_query_heavy_test(write_heavy_snapshot):
    signal = analyze_intent(write_heavy_snapshot)
    assert signal.verdict == "integration_behavior"
    assert signal.metadata["integration_signals"] >= 3


def test_intent_unclear_when_hints_cancel_out():
    signal = analyze_intent(_snapshot(location="tests/unit/test_x.py:1", duration_ms=300))
    assert signal.verdict == "intent_unclear"


def test_risk_safe_without_indicators(optimizable_snapshot):
    signal = analyze_risk(optimizable_snapshot)
    assert signal.verdict == "safe_to_optimize"
    assert signal.metadata["risk_score"] == 0


def test_risk_callback_with_commit_hooks(risky_snapshot):
    signal = analyze_risk(risky_snapshot)
    assert signal.verdict == "callback_risk"
    assert signal.confidence is Confidence.HIGH
    assert len(signal.metadata["callback_indicators"]) == 3


def test_risk_potential_side_effects_from_single_metadata_flag():
    signal = analyze_risk(_snapshot(metadata={"webhooks": ["billing"]}))
    assert signal.verdict == "potential_side_effects"
    assert signal.metadata["risk_score"] == 2
