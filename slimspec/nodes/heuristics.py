"""Heuristic layer: deterministic, rule-based analyzers, one per slot. Each is
`(snapshot, source_text) -> Signal` and serves as the fallback for the generative
analyzer of the same slot."""

from __future__ import annotations

import re
from typing import Any, Callable, Dict, List, Mapping, Optional

from slimspec.state import Confidence, ProfileSnapshot, Signal, Slot

HeuristicAnalyzer = Callable[[ProfileSnapshot, Optional[str]], Signal]

PERSISTED_STRATEGY = "create"
STUB_STRATEGY = "build_stubbed"


# --- persistence ---


def analyze_persistence(snapshot: ProfileSnapshot, source_text: Optional[str] = None) -> Signal:
    """Writes mean persistence is needed; no writes and few reads mean it is not."""
    inserts = snapshot.persistence_count("inserts")
    selects = snapshot.persistence_count("selects")
    total = snapshot.persistence_count("total_queries")
    counts = {"inserts": inserts, "selects": selects, "total_queries": total}

    if not snapshot.has_persistence_activity:
        return Signal(
            slot=Slot.PERSISTENCE,
            verdict="persistence_unclear",
            confidence=Confidence.LOW,
            reasoning="No persistence activity recorded for this test.",
            metadata={"no_data": True},
        )
    if inserts == 0 and selects <= 1:
        verdict, confidence = "persistence_unused", Confidence.HIGH
        reasoning = f"No writes and minimal reads ({selects}); persisted records look unnecessary."
    elif inserts == 0:
        verdict, confidence = "persistence_unused", Confidence.MEDIUM
        reasoning = f"No writes but {selects} reads; persistence may be unnecessary."
    else:
        verdict, confidence = "persistence_required", Confidence.HIGH
        reasoning = f"Writes detected ({inserts} inserts); persistence appears necessary."
    return Signal(slot=Slot.PERSISTENCE, verdict=verdict, confidence=confidence, reasoning=reasoning, metadata=counts)


# --- construction ---


def _has_association_hints(usage: Mapping[str, Any]) -> bool:
    if usage.get("associations"):
        return True
    if any("with_" in str(trait) for trait in usage.get("traits") or ()):
        return True
    if any(str(attr).endswith("_id") for attr in (usage.get("attributes") or {})):
        return True
    return int(usage.get("associations_count") or 0) > 0


def analyze_construction(snapshot: ProfileSnapshot, source_text: Optional[str] = None) -> Signal:
    """Persisted factories with no writes and no association access can be stubbed."""
    if not snapshot.construction:
        return Signal(
            slot=Slot.CONSTRUCTION,
            verdict="construction_optimal",
            confidence=Confidence.LOW,
            reasoning="No object-construction data recorded for this test.",
            metadata={"no_data": True},
        )

    create_count = stub_count = 0
    association_access = False
    for usage in snapshot.construction.values():
        count = int(usage.get("count") or 0)
        strategy = usage.get("strategy")
        if strategy == PERSISTED_STRATEGY:
            create_count += count
        elif strategy == STUB_STRATEGY:
            stub_count += count
        association_access = association_access or _has_association_hints(usage)

    writes = snapshot.persistence_count("inserts")
    metadata = {
        "create_count": create_count,
        "stub_count": stub_count,
        "database_writes": writes,
        "association_access": association_access,
    }

    if create_count and not writes and not association_access:
        verdict, confidence = "construction_inefficient", Confidence.MEDIUM
        reasoning = (
            f"{create_count} persisted construction(s) without writes or association access; "
            f"{STUB_STRATEGY} would avoid the round trip."
        )
    elif create_count and association_access:
        verdict, confidence = "construction_required", Confidence.MEDIUM
        reasoning = "Persisted construction with association access; persistence may be needed."
    elif create_count and writes:
        verdict, confidence = "construction_required", Confidence.MEDIUM
        reasoning = f"Persisted construction with {writes} write(s); persistence appears needed."
    elif stub_count and not create_count:
        verdict, confidence = "construction_optimal", Confidence.HIGH
        reasoning = f"Already using {STUB_STRATEGY} ({stub_count} object(s))."
    else:
        verdict, confidence = "construction_optimal", Confidence.LOW
        reasoning = "Mixed construction pattern; current strategy looks reasonable."
    return Signal(slot=Slot.CONSTRUCTION, verdict=verdict, confidence=confidence, reasoning=reasoning, metadata=metadata)


# --- intent ---

UNIT_PATH_PATTERNS = (
    r"tests?/unit/",
    r"spec/models/",
    r"spec/lib/",
    r"spec/services/",
    r"spec/helpers/",
    r"spec/serializers/",
    r"spec/validators/",
    r"spec/jobs/",
    r"tests?/models/",
)

INTEGRATION_PATH_PATTERNS = (
    r"tests?/integration/",
    r"tests?/e2e/",
    r"tests?/functional/",
    r"spec/features/",
    r"spec/integration/",
    r"spec/system/",
    r"spec/requests/",
    r"spec/controllers/",
    r"spec/mailers/",
)


def _location_hint(location: str) -> Optional[str]:
    lowered = location.lower()
    if any(re.search(p, lowered) for p in UNIT_PATH_PATTERNS):
        return "unit"
    if any(re.search(p, lowered) for p in INTEGRATION_PATH_PATTERNS):
        return "integration"
    return None


def _duration_hint(duration_ms: float) -> Optional[str]:
    if duration_ms <= 10:
        return "unit"
    if duration_ms > 100:
        return "integration"
    return None


def _persistence_hint(snapshot: ProfileSnapshot) -> Optional[str]:
    if not snapshot.has_persistence_activity:
        return None
    total = snapshot.persistence_count("total_queries")
    if total <= 2:
        return "unit"
    if total > 10:
        return "integration"
    return None


def _construction_hint(snapshot: ProfileSnapshot) -> Optional[str]:
    if not snapshot.construction:
        return None
    objects = sum(int(u.get("count") or 0) for u in snapshot.construction.values())
    persisted = sum(1 for u in snapshot.construction.values() if u.get("strategy") == PERSISTED_STRATEGY)
    if objects <= 1 and persisted == 0:
        return "unit"
    if objects > 5 or persisted > 3:
        return "integration"
    return None


def analyze_intent(snapshot: ProfileSnapshot, source_text: Optional[str] = None) -> Signal:
    """Vote across location, duration, persistence and construction hints."""
    hints = {
        "location": _location_hint(snapshot.location),
        "duration": _duration_hint(snapshot.duration_ms),
        "persistence": _persistence_hint(snapshot),
        "construction": _construction_hint(snapshot),
    }
    unit = sum(1 for h in hints.values() if h == "unit")
    integration = sum(1 for h in hints.values() if h == "integration")
    metadata: Dict[str, Any] = {"hints": hints, "unit_signals": unit, "integration_signals": integration}
    tally = f"({unit} unit, {integration} integration indicators)"

    if unit >= 3:
        verdict, confidence = "unit_behavior", Confidence.HIGH
    elif integration >= 3:
        verdict, confidence = "integration_behavior", Confidence.HIGH
    elif unit > integration:
        verdict, confidence = "unit_behavior", Confidence.MEDIUM
    elif integration > unit:
        verdict, confidence = "integration_behavior", Confidence.MEDIUM
    else:
        verdict, confidence = "intent_unclear", Confidence.LOW

    reasoning = {
        "unit_behavior": f"Test behaves like an isolated unit test {tally}.",
        "integration_behavior": f"Test crosses integration boundaries {tally}.",
        "intent_unclear": f"Mixed behavioral indicators {tally}.",
    }[verdict]
    return Signal(slot=Slot.INTENT, verdict=verdict, confidence=confidence, reasoning=reasoning, metadata=metadata)


# --- risk ---

SIDE_EFFECT_EVENT_PATTERN = re.compile(
    r"after_commit|after_create|after_update|after_save|after_destroy|post_save|post_delete"
    r"|callback|signal|mailer|job|queue|background|celery|sidekiq|webhook",
    re.IGNORECASE,
)

SIDE_EFFECT_METADATA_KEYS = (
    "callbacks",
    "after_commit",
    "after_create",
    "after_update",
    "after_save",
    "mailers",
    "jobs",
    "background_jobs",
    "side_effects",
    "external_calls",
    "api_calls",
    "webhooks",
)

RISKY_TRAIT_PATTERN = re.compile(
    r"with_.*(callback|job|mailer|notification|webhook)|published|activated|confirmed",
    re.IGNORECASE,
)


def _callback_indicators(snapshot: ProfileSnapshot) -> List[str]:
    found = [
        f"event:{name}"
        for name, data in snapshot.events.items()
        if SIDE_EFFECT_EVENT_PATTERN.search(f"{name} {data}")
    ]
    found.extend(f"metadata:{key}" for key in SIDE_EFFECT_METADATA_KEYS if snapshot.metadata.get(key))
    return found


def _side_effect_indicators(snapshot: ProfileSnapshot) -> List[str]:
    found = []
    writes = sum(snapshot.persistence_count(k) for k in ("inserts", "updates", "deletes"))
    if writes > 5:
        found.append(f"high_writes:{writes}")
    persisted = sum(
        int(u.get("count") or 0) for u in snapshot.construction.values() if u.get("strategy") == PERSISTED_STRATEGY
    )
    if persisted > 3:
        found.append(f"many_persisted_objects:{persisted}")
    if snapshot.duration_ms > 500:
        found.append(f"long_duration:{snapshot.duration_ms:g}ms")
    return found


def _chain_indicators(snapshot: ProfileSnapshot) -> List[str]:
    found = []
    if len(snapshot.events) > 3:
        found.append(f"many_events:{len(snapshot.events)}")
    if snapshot.metadata.get("nested_operations") or snapshot.metadata.get("chained_callbacks"):
        found.append("nested_operations")
    return found


def _construction_risk_indicators(snapshot: ProfileSnapshot) -> List[str]:
    found = []
    for name, usage in snapshot.construction.items():
        found.extend(f"trait:{name}.{t}" for t in usage.get("traits") or () if RISKY_TRAIT_PATTERN.search(str(t)))
        if len(usage.get("associations") or ()) > 2:
            found.append(f"complex_associations:{name}")
    return found


def analyze_risk(snapshot: ProfileSnapshot, source_text: Optional[str] = None) -> Signal:
    """Score callback, side-effect, chain and construction indicators."""
    callbacks = _callback_indicators(snapshot)
    side_effects = _side_effect_indicators(snapshot)
    chains = _chain_indicators(snapshot)
    construction = _construction_risk_indicators(snapshot)

    score = 2 * (len(callbacks) + len(side_effects) + len(chains)) + len(construction)
    total = len(callbacks) + len(side_effects) + len(chains) + len(construction)
    metadata = {
        "risk_score": score,
        "total_risk_factors": total,
        "callback_indicators": callbacks,
        "side_effect_indicators": side_effects,
        "chain_indicators": chains,
        "construction_indicators": construction,
    }
    summary = f"risk score {score}, {total} indicator(s)"

    if score >= 8 or len(callbacks) >= 3:
        verdict, confidence = "callback_risk", Confidence.HIGH
        reasoning = f"Strong callback or side-effect indicators ({summary}); optimization not recommended."
    elif score >= 2 or total >= 2:
        verdict, confidence = "potential_side_effects", Confidence.MEDIUM
        reasoning = f"Potential side effects ({summary}); proceed with caution."
    elif total >= 1:
        verdict, confidence = "potential_side_effects", Confidence.LOW
        reasoning = f"Minor risk indicators ({summary}); optimization likely safe."
    else:
        verdict, confidence = "safe_to_optimize", Confidence.HIGH
        reasoning = "No callback, side-effect or chain indicators found."
    return Signal(slot=Slot.RISK, verdict=verdict, confidence=confidence, reasoning=reasoning, metadata=metadata)


HEURISTIC_ANALYZERS: Dict[Slot, HeuristicAnalyzer] = {
    Slot.PERSISTENCE: analyze_persistence,
    Slot.CONSTRUCTION: analyze_construction,
    Slot.INTENT: analyze_intent,
    Slot.RISK: analyze_risk,
}
