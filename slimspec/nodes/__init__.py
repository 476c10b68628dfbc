from .consensus import ConsensusEngine, degraded_recommendation
from .generative import GenerativeAnalyzer, generative_analyzer_for
from .heuristics import (
    HEURISTIC_ANALYZERS,
    analyze_construction,
    analyze_intent,
    analyze_persistence,
    analyze_risk,
)
from .orchestrator import SignalOrchestrator, SlotPhase, SlotRun

__all__ = [
    "analyze_persistence",
    "analyze_construction",
    "analyze_intent",
    "analyze_risk",
    "HEURISTIC_ANALYZERS",
    "GenerativeAnalyzer",
    "generative_analyzer_for",
    "SignalOrchestrator",
    "SlotPhase",
    "SlotRun",
    "ConsensusEngine",
    "degraded_recommendation",
]
