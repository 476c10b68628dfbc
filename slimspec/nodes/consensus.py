"""Consensus node: deterministic fusion of slot signals into one explained Recommendation.

Steps: filter invalid signals, classify by verdict, collect risk factors, tally
weighted votes per canonical action, detect conflicts, pick the action (first
matching rule wins), grade confidence, then explain.

Vote ties break by summed weight, then raw signal count, then the position of the
action's first signal in the input list.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from slimspec.config import AdvisorConfig
from slimspec.log import get_logger
from slimspec.nodes.heuristics import PERSISTED_STRATEGY, STUB_STRATEGY
from slimspec.state import (
    Action,
    Confidence,
    ProfileSnapshot,
    Recommendation,
    Signal,
    Slot,
    coerce_signal,
    ensure_snapshot,
)

logger = get_logger(__name__)

NO_SIGNALS_EXPLANATION = "No valid signals available for analysis"


class Category(str, Enum):
    OPTIMIZATION = "optimization"
    RISK = "risk"
    UNCLEAR = "unclear"


class Severity(str, Enum):
    SEVERE = "severe"
    MODERATE = "moderate"
    ADVISORY = "advisory"


class Reason(str, Enum):
    HIGH_RISK = "high_risk"
    OPTIMIZATION_AGREEMENT = "optimization_agreement"
    PERSISTENCE_REQUIRED = "persistence_required"
    REVIEW_NEEDED = "review_needed"
    CONFLICTING_RISK_ASSESSMENT = "conflicting_risk_assessment"
    CONFLICTING_PERSISTENCE_NEEDS = "conflicting_persistence_needs"
    CONFLICTING_SIGNALS = "conflicting_signals"
    UNCLEAR_SIGNALS = "unclear_signals"


VERDICT_CATEGORIES: Dict[str, Category] = {
    "persistence_unused": Category.OPTIMIZATION,
    "construction_inefficient": Category.OPTIMIZATION,
    "construction_optimal": Category.OPTIMIZATION,
    "safe_to_optimize": Category.RISK,
    "potential_side_effects": Category.RISK,
    "callback_risk": Category.RISK,
    "persistence_unclear": Category.UNCLEAR,
    "intent_unclear": Category.UNCLEAR,
    "failed": Category.UNCLEAR,
}

DANGER_VERDICTS = frozenset({"callback_risk"})
MODERATE_RISK_VERDICTS = frozenset({"potential_side_effects"})

OPTIMIZE_PERSISTENCE = "optimize_persistence"
REQUIRE_PERSISTENCE = "require_persistence"
UNIT_TEST = "unit_test"
INTEGRATION_TEST = "integration_test"
KEEP_STRATEGY = "keep_strategy"

CANONICAL_ACTIONS: Dict[str, str] = {
    "persistence_unused": OPTIMIZE_PERSISTENCE,
    "construction_inefficient": OPTIMIZE_PERSISTENCE,
    "persistence_required": REQUIRE_PERSISTENCE,
    "construction_required": REQUIRE_PERSISTENCE,
    "unit_behavior": UNIT_TEST,
    "integration_behavior": INTEGRATION_TEST,
    "construction_optimal": KEEP_STRATEGY,
}

# (action_a, action_b, conflict kind)
MUTUALLY_EXCLUSIVE_ACTIONS: Tuple[Tuple[str, str, str], ...] = (
    (OPTIMIZE_PERSISTENCE, REQUIRE_PERSISTENCE, "persistence_disagreement"),
    (UNIT_TEST, INTEGRATION_TEST, "intent_disagreement"),
)

OPTIMIZATION_VS_RISK = "optimization_vs_risk"
SOURCE_DISAGREEMENT = "source_disagreement"

GENERIC_STRATEGY_CHANGE = (f"{PERSISTED_STRATEGY} strategy", f"{STUB_STRATEGY} strategy")

# Rounding applied before weights are compared, so float summation order cannot break ties.
WEIGHT_PRECISION = 6


@dataclass(frozen=True)
class RiskFactor:
    kind: str
    severity: Severity
    slot: Slot
    confidence: Confidence
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "severity": self.severity.value,
            "slot": self.slot.value,
            "confidence": self.confidence.value,
            "value": self.value,
        }


@dataclass(frozen=True)
class Vote:
    action: str
    weight: float
    count: int
    first_index: int
    slots: Tuple[Slot, ...]

    @property
    def sort_key(self) -> Tuple[float, int, int]:
        return (round(self.weight, WEIGHT_PRECISION), self.count, -self.first_index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "weight": round(self.weight, WEIGHT_PRECISION),
            "count": self.count,
            "slots": [s.value for s in self.slots],
        }


@dataclass(frozen=True)
class Conflict:
    kind: str
    left: Tuple[Slot, ...]
    right: Tuple[Slot, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "left": [s.value for s in self.left], "right": [s.value for s in self.right]}


@dataclass(frozen=True)
class Consensus:
    signals: Tuple[Signal, ...]
    buckets: Dict[Category, Tuple[Signal, ...]]
    risk_factors: Tuple[RiskFactor, ...]
    votes: Tuple[Vote, ...]
    strong_count: int
    conflicts: Tuple[Conflict, ...]

    @property
    def winner(self) -> Optional[Vote]:
        return self.votes[0] if self.votes else None

    @property
    def agreement_count(self) -> int:
        return self.winner.count if self.winner else 0

    def factors(self, severity: Severity) -> List[RiskFactor]:
        return [f for f in self.risk_factors if f.severity is severity]

    @property
    def conflict_kinds(self) -> List[str]:
        return [c.kind for c in self.conflicts]


@dataclass(frozen=True)
class Decision:
    action: Action
    reason: Reason
    from_value: str = ""
    to_value: str = ""
    detail: Dict[str, Any] = field(default_factory=dict)


def canonical_action(verdict: str) -> str:
    return CANONICAL_ACTIONS.get(verdict, verdict)


def classify(signal: Signal) -> Category:
    category = VERDICT_CATEGORIES.get(signal.verdict)
    if category is not None:
        return category
    if signal.confidence in (Confidence.HIGH, Confidence.MEDIUM):
        return Category.OPTIMIZATION
    return Category.UNCLEAR


def _slots(signals: Iterable[Signal]) -> Tuple[Slot, ...]:
    return tuple(s.slot for s in signals)


def _numeric(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _collect_risk_factors(signals: Sequence[Signal], config: AdvisorConfig) -> Tuple[RiskFactor, ...]:
    factors: List[RiskFactor] = []
    for s in signals:
        if s.verdict in DANGER_VERDICTS:
            factors.append(RiskFactor(s.verdict, Severity.SEVERE, s.slot, s.confidence))
        elif s.verdict in MODERATE_RISK_VERDICTS:
            factors.append(RiskFactor(s.verdict, Severity.MODERATE, s.slot, s.confidence))
        score = _numeric(s.metadata.get("risk_score"))
        if score is not None and score > config.risk_score_threshold:
            factors.append(RiskFactor("high_risk_score", Severity.ADVISORY, s.slot, s.confidence, score))
        count = _numeric(s.metadata.get("total_risk_factors"))
        if count is not None and count > config.risk_factor_count_threshold:
            factors.append(RiskFactor("multiple_risk_factors", Severity.ADVISORY, s.slot, s.confidence, count))
    return tuple(factors)


def _tally(optimization: Sequence[Signal], config: AdvisorConfig) -> Tuple[Vote, ...]:
    weights: Dict[str, float] = {}
    counts: Dict[str, int] = {}
    first: Dict[str, int] = {}
    slots: Dict[str, List[Slot]] = {}
    # optimization keeps input order, so its index orders first appearance.
    for index, s in enumerate(optimization):
        action = canonical_action(s.verdict)
        weight = config.source_weight(s.execution_mode) * config.confidence_weight(s.confidence)
        weights[action] = weights.get(action, 0.0) + weight
        counts[action] = counts.get(action, 0) + 1
        first.setdefault(action, index)
        slots.setdefault(action, []).append(s.slot)
    votes = [Vote(a, weights[a], counts[a], first[a], tuple(slots[a])) for a in weights]
    return tuple(sorted(votes, key=lambda v: v.sort_key, reverse=True))


def _detect_conflicts(
    optimization: Sequence[Signal], risk: Sequence[Signal], config: AdvisorConfig
) -> Tuple[Conflict, ...]:
    conflicts: List[Conflict] = []

    strong = [s for s in optimization if s.confidence is Confidence.HIGH]
    risky = [s for s in risk if s.verdict in config.risk_conflict_verdicts]
    if strong and risky:
        conflicts.append(Conflict(OPTIMIZATION_VS_RISK, _slots(strong), _slots(risky)))

    for left, right, kind in MUTUALLY_EXCLUSIVE_ACTIONS:
        a = [s for s in optimization if canonical_action(s.verdict) == left]
        b = [s for s in optimization if canonical_action(s.verdict) == right]
        if a and b:
            conflicts.append(Conflict(kind, _slots(a), _slots(b)))

    # Both sources must have a strong opinion before they can disagree.
    generative = [s for s in strong if s.generative]
    heuristic = [s for s in strong if not s.generative]
    if generative and heuristic:
        gen_actions = {canonical_action(s.verdict) for s in generative}
        heur_actions = {canonical_action(s.verdict) for s in heuristic}
        if gen_actions != heur_actions:
            conflicts.append(Conflict(SOURCE_DISAGREEMENT, _slots(generative), _slots(heuristic)))

    return tuple(conflicts)


def _construction_pair(snapshot: ProfileSnapshot) -> Optional[Tuple[str, str]]:
    for name, usage in snapshot.construction.items():
        if isinstance(usage, Mapping) and usage.get("strategy") == PERSISTED_STRATEGY:
            return f"{PERSISTED_STRATEGY}({name})", f"{STUB_STRATEGY}({name})"
    return None


def _strong_recommendation(consensus: Consensus, snapshot: ProfileSnapshot) -> Decision:
    winner = consensus.winner
    if winner.action == OPTIMIZE_PERSISTENCE:
        from_value, to_value = _construction_pair(snapshot) or GENERIC_STRATEGY_CHANGE
        action = (
            Action.REPLACE_CONSTRUCTION_STRATEGY
            if Slot.CONSTRUCTION in winner.slots
            else Action.AVOID_PERSISTENCE
        )
        return Decision(action, Reason.OPTIMIZATION_AGREEMENT, from_value, to_value)
    if winner.action == REQUIRE_PERSISTENCE:
        return Decision(Action.NO_ACTION, Reason.PERSISTENCE_REQUIRED)
    return Decision(Action.REVIEW_INTENT, Reason.REVIEW_NEEDED, detail={"canonical_action": winner.action})


def _soft_suggestion(consensus: Consensus) -> Decision:
    kinds = consensus.conflict_kinds
    if OPTIMIZATION_VS_RISK in kinds:
        return Decision(Action.ASSESS_RISK_FACTORS, Reason.CONFLICTING_RISK_ASSESSMENT)
    if "persistence_disagreement" in kinds:
        return Decision(Action.REVIEW_INTENT, Reason.CONFLICTING_PERSISTENCE_NEEDS)
    return Decision(Action.NO_ACTION, Reason.CONFLICTING_SIGNALS)


def _determine_action(consensus: Consensus, snapshot: ProfileSnapshot, config: AdvisorConfig) -> Decision:
    severe = consensus.factors(Severity.SEVERE)
    moderate = consensus.factors(Severity.MODERATE)
    if severe or len(moderate) >= config.moderate_risk_limit:
        flagged = severe or moderate
        return Decision(
            Action.NO_ACTION,
            Reason.HIGH_RISK,
            detail={"flagged_by": sorted({f.slot.value for f in flagged})},
        )

    if (
        consensus.winner is not None
        and consensus.agreement_count >= config.agreement_minimum
        and consensus.strong_count >= config.strong_signal_minimum
    ):
        return _strong_recommendation(consensus, snapshot)

    if consensus.conflicts or (consensus.buckets[Category.OPTIMIZATION] and consensus.buckets[Category.RISK]):
        return _soft_suggestion(consensus)

    return Decision(
        Action.NO_ACTION,
        Reason.UNCLEAR_SIGNALS,
        detail={"unclear_count": len(consensus.buckets[Category.UNCLEAR])},
    )


def _base_confidence(consensus: Consensus, config: AdvisorConfig) -> Confidence:
    strong = consensus.strong_count
    agreement = consensus.agreement_count
    if strong >= config.high_confidence_strong_minimum and agreement >= config.agreement_minimum:
        return Confidence.HIGH
    if strong >= config.strong_signal_minimum and agreement >= config.agreement_minimum:
        return Confidence.MEDIUM
    winner = consensus.winner
    if winner is not None and round(winner.weight, WEIGHT_PRECISION) >= config.medium_weight_threshold:
        return Confidence.MEDIUM
    return Confidence.LOW


def _downgrade(base: Confidence, consensus: Consensus, config: AdvisorConfig) -> Confidence:
    if consensus.factors(Severity.SEVERE):
        return Confidence.LOW
    moderate = len(consensus.factors(Severity.MODERATE))
    if moderate >= config.moderate_risk_limit:
        return Confidence.MEDIUM if base is Confidence.HIGH else Confidence.LOW
    if moderate == 1 and base is Confidence.HIGH:
        return Confidence.MEDIUM
    return base


def _final_confidence(decision: Decision, consensus: Consensus, config: AdvisorConfig) -> Confidence:
    if decision.action is Action.NO_ACTION:
        return Confidence.LOW
    return _downgrade(_base_confidence(consensus, config), consensus, config)


# --- explanation ---


def _humanize(kind: str) -> str:
    return " ".join(part.capitalize() for part in kind.split("_"))


def _join_slots(slots: Iterable[Slot]) -> str:
    return ", ".join(s.value for s in slots)


def _signal_summary(consensus: Consensus) -> str:
    by_level = {level: sum(1 for s in consensus.signals if s.confidence is level) for level in Confidence}
    return (
        f"Evaluated {len(consensus.signals)} signal(s): {by_level[Confidence.HIGH]} high, "
        f"{by_level[Confidence.MEDIUM]} medium, {by_level[Confidence.LOW]} low confidence"
    )


def _consensus_statement(consensus: Consensus, config: AdvisorConfig) -> str:
    winner = consensus.winner
    if winner is None:
        unclear = len(consensus.buckets[Category.UNCLEAR])
        return f"No optimization-leaning signals to agree on ({unclear} unclear)"
    if winner.count >= config.agreement_minimum:
        return (
            f"{winner.count} signal(s) agree on {winner.action} "
            f"(weighted score {winner.weight:.2f}; slots: {_join_slots(winner.slots)})"
        )
    return (
        f"No agreement: strongest optimization signal is {winner.action} "
        f"from {_join_slots(winner.slots)} (weighted score {winner.weight:.2f})"
    )


def _action_rationale(decision: Decision) -> str:
    reason = decision.reason
    if reason is Reason.HIGH_RISK:
        return f"High risk factors prevent optimization (flagged by: {', '.join(decision.detail['flagged_by'])})"
    if reason is Reason.OPTIMIZATION_AGREEMENT:
        return f"Strong agreement supports changing {decision.from_value} to {decision.to_value}"
    if reason is Reason.PERSISTENCE_REQUIRED:
        return "Analysis indicates persistence is necessary for this test"
    if reason is Reason.REVIEW_NEEDED:
        return f"Test intent review recommended based on {decision.detail['canonical_action']} signals"
    if reason is Reason.CONFLICTING_RISK_ASSESSMENT:
        return "Risk assessment conflicts with optimization signals; manual review recommended"
    if reason is Reason.CONFLICTING_PERSISTENCE_NEEDS:
        return "Analyzers disagree on persistence requirements; review test intent"
    if reason is Reason.CONFLICTING_SIGNALS:
        return "Mixed signals from analyzers; no clear action"
    return f"Insufficient clear signals for a recommendation ({decision.detail.get('unclear_count', 0)} unclear)"


def _generative_notes(consensus: Consensus) -> Optional[str]:
    generative = [s.slot for s in consensus.signals if s.generative]
    fallback = [s.slot for s in consensus.signals if s.metadata.get("fallback")]
    failed = [s.slot for s in consensus.signals if s.failed]
    parts = []
    if generative:
        parts.append(f"generative analysis used for {_join_slots(generative)}")
    if fallback:
        parts.append(f"fell back to heuristics for {_join_slots(fallback)}")
    if failed:
        parts.append(f"analysis failed for {_join_slots(failed)}")
    if not parts:
        return None
    text = "; ".join(parts)
    return text[0].upper() + text[1:]


def _risk_summary(consensus: Consensus) -> Optional[str]:
    if not consensus.risk_factors:
        return None
    grouped: Dict[Tuple[str, Severity], int] = {}
    for factor in consensus.risk_factors:
        key = (factor.kind, factor.severity)
        grouped[key] = grouped.get(key, 0) + 1
    parts = [f"{count} {_humanize(kind)} ({severity.value})" for (kind, severity), count in grouped.items()]
    return "Risk factors detected: " + ", ".join(parts)


def _conflict_summary(consensus: Consensus) -> Optional[str]:
    if not consensus.conflicts:
        return None
    parts = [f"{c.kind} ({_join_slots(c.left)} vs {_join_slots(c.right)})" for c in consensus.conflicts]
    return "Conflicts detected: " + "; ".join(parts)


def _build_explanation(consensus: Consensus, decision: Decision, config: AdvisorConfig) -> List[str]:
    lines = [
        _signal_summary(consensus),
        _consensus_statement(consensus, config),
        _action_rationale(decision),
        _generative_notes(consensus),
        _risk_summary(consensus),
        _conflict_summary(consensus),
    ]
    explanation: List[str] = []
    for line in lines:
        if line and line not in explanation:
            explanation.append(line)
    return explanation


def degraded_recommendation(location: str, error: BaseException) -> Recommendation:
    """no_action/low result for when consensus itself failed; explains the failure."""
    return Recommendation(
        location=location,
        action=Action.NO_ACTION,
        confidence=Confidence.LOW,
        explanation=[
            "Consensus could not be computed because of an internal error",
            f"{type(error).__name__}: {error}",
        ],
        metadata={"degraded": True, "error": str(error), "error_type": type(error).__name__},
    )


class ConsensusEngine:
    """Fuses slot signals into one Recommendation. Pure: same inputs, same output."""

    def __init__(self, config: Optional[AdvisorConfig] = None) -> None:
        self.config = config or AdvisorConfig()

    def analyze(self, signals: Sequence[Signal]) -> Consensus:
        buckets: Dict[Category, List[Signal]] = {c: [] for c in Category}
        for s in signals:
            buckets[classify(s)].append(s)
        optimization = buckets[Category.OPTIMIZATION]
        return Consensus(
            signals=tuple(signals),
            buckets={c: tuple(v) for c, v in buckets.items()},
            risk_factors=_collect_risk_factors(signals, self.config),
            votes=_tally(optimization, self.config),
            strong_count=sum(1 for s in optimization if s.confidence is Confidence.HIGH),
            conflicts=_detect_conflicts(optimization, buckets[Category.RISK], self.config),
        )

    def decide(self, signals: Iterable[Any], snapshot: Any) -> Recommendation:
        snapshot = ensure_snapshot(snapshot)
        raw = list(signals or ())
        valid = [s for s in (coerce_signal(item) for item in raw) if s is not None]
        if len(valid) != len(raw):
            logger.debug("invalid_signals_dropped", dropped=len(raw) - len(valid), location=snapshot.location)

        if not valid:
            return Recommendation(
                location=snapshot.location,
                action=Action.NO_ACTION,
                confidence=Confidence.LOW,
                explanation=[NO_SIGNALS_EXPLANATION],
                metadata={"reason": "no_signals"},
            )

        consensus = self.analyze(valid)
        decision = _determine_action(consensus, snapshot, self.config)
        confidence = _final_confidence(decision, consensus, self.config)
        winner = consensus.winner

        recommendation = Recommendation(
            location=snapshot.location,
            action=decision.action,
            from_value=decision.from_value,
            to_value=decision.to_value,
            confidence=confidence,
            explanation=_build_explanation(consensus, decision, self.config),
            contributing_signals=list(valid),
            metadata={
                "reason": decision.reason.value,
                "winning_action": winner.action if winner else None,
                "agreement_count": consensus.agreement_count,
                "strong_signals": consensus.strong_count,
                "votes": [v.to_dict() for v in consensus.votes],
                "conflicts": [c.to_dict() for c in consensus.conflicts],
                "risk_factors": [f.to_dict() for f in consensus.risk_factors],
                "categories": {c.value: len(consensus.buckets[c]) for c in Category},
                **decision.detail,
            },
        )
        logger.info(
            "consensus_decided",
            location=snapshot.location,
            action=recommendation.action.value,
            confidence=recommendation.confidence.value,
            reason=decision.reason.value,
        )
        return recommendation
