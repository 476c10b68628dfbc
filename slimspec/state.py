"""Typed state and Pydantic models for the slimspec analysis graph."""

import operator
from enum import Enum
from types import MappingProxyType
from typing import Annotated, Any, Dict, FrozenSet, List, Mapping, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    ValidationError,
    model_validator,
)
from typing_extensions import TypedDict

from slimspec.errors import InvalidSnapshotError


class Slot(str, Enum):
    PERSISTENCE = "persistence"
    CONSTRUCTION = "construction"
    INTENT = "intent"
    RISK = "risk"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Action(str, Enum):
    REPLACE_CONSTRUCTION_STRATEGY = "replace_construction_strategy"
    AVOID_PERSISTENCE = "avoid_persistence"
    REVIEW_INTENT = "review_intent"
    ASSESS_RISK_FACTORS = "assess_risk_factors"
    NO_ACTION = "no_action"


def _freeze(value: Dict[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(value)


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    return value


# Validated as a dict, stored as a read-only view, dumped back to a plain dict.
FrozenMap = Annotated[Dict[str, Any], AfterValidator(_freeze), PlainSerializer(_thaw)]

FAILED_VERDICT = "failed"

# Closed verdict vocabulary per slot; "failed" is legal everywhere.
VERDICTS: Dict[Slot, FrozenSet[str]] = {
    Slot.PERSISTENCE: frozenset(
        {"persistence_unused", "persistence_required", "persistence_unclear", FAILED_VERDICT}
    ),
    Slot.CONSTRUCTION: frozenset(
        {"construction_inefficient", "construction_required", "construction_optimal", FAILED_VERDICT}
    ),
    Slot.INTENT: frozenset(
        {"unit_behavior", "integration_behavior", "intent_unclear", FAILED_VERDICT}
    ),
    Slot.RISK: frozenset(
        {"safe_to_optimize", "potential_side_effects", "callback_risk", FAILED_VERDICT}
    ),
}


class ExecutionMode(str, Enum):
    GENERATIVE = "generative"
    HEURISTIC = "heuristic"


# --- Analyzer output ---


class Signal(BaseModel):
    """One analyzer slot's structured verdict. Immutable once built."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    slot: Slot
    verdict: str = Field(description="Verdict from the slot's closed vocabulary")
    confidence: Confidence
    reasoning: str = Field(description="Human-readable explanation of the verdict")
    metadata: FrozenMap = Field(default_factory=dict, validate_default=True)

    @model_validator(mode="after")
    def _verdict_in_vocabulary(self) -> "Signal":
        allowed = VERDICTS[self.slot]
        if self.verdict not in allowed:
            raise ValueError(
                f"verdict {self.verdict!r} is not valid for slot {self.slot.value!r}; "
                f"expected one of {sorted(allowed)}"
            )
        return self

    def is_valid(self) -> bool:
        """Re-check invariants; catches instances built with model_construct."""
        slot = getattr(self, "slot", None)
        verdict = getattr(self, "verdict", None)
        return (
            isinstance(slot, Slot)
            and isinstance(getattr(self, "confidence", None), Confidence)
            and isinstance(verdict, str)
            and verdict in VERDICTS[slot]
            and isinstance(getattr(self, "reasoning", None), str)
            and isinstance(getattr(self, "metadata", None), Mapping)
        )

    @property
    def failed(self) -> bool:
        return self.verdict == FAILED_VERDICT

    @property
    def execution_mode(self) -> Optional[str]:
        return self.metadata.get("execution_mode")

    @property
    def generative(self) -> bool:
        return self.execution_mode == ExecutionMode.GENERATIVE.value

    def with_metadata(self, **extra: Any) -> "Signal":
        return Signal(
            slot=self.slot,
            verdict=self.verdict,
            confidence=self.confidence,
            reasoning=self.reasoning,
            metadata={**self.metadata, **extra},
        )


def coerce_signal(item: Any) -> Optional[Signal]:
    """Return a valid Signal for item (Signal or dict), or None when it does not validate."""
    if isinstance(item, Signal):
        return item if item.is_valid() else None
    if isinstance(item, dict):
        try:
            return Signal.model_validate(item)
        except ValidationError:
            return None
    return None


# --- Profiling input ---


class ProfileSnapshot(BaseModel):
    """Per-test telemetry from the profiling collector. Read-only for the engine."""

    model_config = ConfigDict(frozen=True)

    location: str = Field(min_length=1, description="Test location, e.g. tests/models/test_user.py:42")
    category: str = "unknown"
    duration_ms: float = Field(default=0, ge=0)
    construction: Annotated[Dict[str, FrozenMap], AfterValidator(_freeze), PlainSerializer(_thaw)] = Field(
        default_factory=dict,
        validate_default=True,
        description="Factory name -> {strategy, count, associations, traits, attributes}",
    )
    persistence: Annotated[Dict[str, int], AfterValidator(_freeze), PlainSerializer(_thaw)] = Field(
        default_factory=dict,
        validate_default=True,
        description="total_queries, inserts, selects, updates, deletes",
    )
    events: FrozenMap = Field(default_factory=dict, validate_default=True)
    metadata: FrozenMap = Field(default_factory=dict, validate_default=True)

    def persistence_count(self, key: str) -> int:
        return int(self.persistence.get(key) or 0)

    @property
    def has_persistence_activity(self) -> bool:
        return self.persistence_count("total_queries") > 0 or self.persistence_count("inserts") > 0


def ensure_snapshot(value: Any) -> ProfileSnapshot:
    """Return value as a ProfileSnapshot or raise InvalidSnapshotError; never defaults."""
    if isinstance(value, ProfileSnapshot):
        return value
    if isinstance(value, dict):
        try:
            return ProfileSnapshot.model_validate(value)
        except ValidationError as e:
            raise InvalidSnapshotError(f"Invalid profile snapshot: {e}") from e
    raise InvalidSnapshotError(f"Expected ProfileSnapshot, got {type(value).__name__}")


# --- Consensus output ---


class Recommendation(BaseModel):
    """Final, explained recommendation for one analysis run."""

    model_config = ConfigDict(frozen=True)

    location: str = ""
    action: Action
    from_value: str = ""
    to_value: str = ""
    confidence: Confidence
    explanation: List[str] = Field(min_length=1)
    contributing_signals: List[Signal] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _no_action_has_no_change(self) -> "Recommendation":
        if self.action is Action.NO_ACTION and (self.from_value or self.to_value):
            raise ValueError("no_action recommendations must leave from_value/to_value empty")
        return self

    def is_valid(self) -> bool:
        return (
            isinstance(self.action, Action)
            and isinstance(self.confidence, Confidence)
            and bool(self.explanation)
            and all(isinstance(line, str) for line in self.explanation)
            and not (self.action is Action.NO_ACTION and (self.from_value or self.to_value))
            and all(isinstance(s, Signal) for s in self.contributing_signals)
        )

    @property
    def actionable(self) -> bool:
        return self.action is not Action.NO_ACTION


# --- Graph state ---


class AnalysisState(TypedDict, total=False):
    """LangGraph state. Slot nodes append to signals through the reducer."""

    snapshot: ProfileSnapshot
    source_text: Optional[str]
    signals: Annotated[List[Signal], operator.add]
    recommendation: Optional[Recommendation]
