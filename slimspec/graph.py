"""StateGraph: context builder, then one analyzer node per enabled slot in parallel
(fan-out), then the consensus node (fan-in), END.
"""

from __future__ import annotations

import asyncio
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

# Load .env before any LangChain/LangGraph import so provider keys and tracing vars are set
from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent.parent / ".env")

from langgraph.graph import END, StateGraph

from slimspec.config import AdvisorConfig
from slimspec.llm import GenerativeProvider, create_provider, provider_scope
from slimspec.log import get_logger
from slimspec.nodes.consensus import ConsensusEngine, degraded_recommendation
from slimspec.nodes.orchestrator import SignalOrchestrator
from slimspec.nodes.registry import SlotRegistry
from slimspec.state import AnalysisState, Recommendation, Slot, ensure_snapshot
from slimspec.tools.context_builder import load_source_text

logger = get_logger(__name__)


def _node_name(slot: Slot) -> str:
    return f"{slot.value}_analyzer"


def _context_builder_node(state: Dict[str, Any]) -> Dict[str, Any]:
    """Context Builder: load the test source from the snapshot location when none was given."""
    if state.get("source_text") is not None:
        return {}
    return {"source_text": load_source_text(state["snapshot"].location)}


def _slot_node(orchestrator: SignalOrchestrator, slot: Slot):
    async def run_slot(state: Dict[str, Any]) -> Dict[str, Any]:
        run = await orchestrator.arun_slot(slot, state["snapshot"], state.get("source_text"))
        return {"signals": [run.signal]}

    run_slot.__name__ = _node_name(slot)
    return run_slot


def _consensus_node(engine: ConsensusEngine, slots: tuple):
    order = {slot: i for i, slot in enumerate(slots)}

    def consensus(state: Dict[str, Any]) -> Dict[str, Any]:
        """Chief node: order signals by enabled slot and fuse them. Never lets the engine crash the run."""
        snapshot = state["snapshot"]
        signals = sorted(state.get("signals") or [], key=lambda s: order.get(s.slot, len(order)))
        try:
            recommendation = engine.decide(signals, snapshot)
        except Exception as e:
            logger.error("consensus_failed", location=snapshot.location, error=str(e), error_type=type(e).__name__)
            recommendation = degraded_recommendation(snapshot.location, e)
        return {"recommendation": recommendation}

    return consensus


def build_analysis_graph(orchestrator: SignalOrchestrator, engine: ConsensusEngine):
    """
    Build the graph: context_builder -> [one node per enabled slot] (fan-out) -> consensus (fan-in) -> END.

    Slot nodes run in the same superstep; each appends one signal through the reducer.
    With no enabled slots, context_builder goes straight to consensus.
    """
    builder = StateGraph(AnalysisState)
    slots = orchestrator.enabled_slots

    builder.add_node("context_builder", _context_builder_node)
    builder.add_node("consensus", _consensus_node(engine, slots))
    builder.set_entry_point("context_builder")

    for slot in slots:
        builder.add_node(_node_name(slot), _slot_node(orchestrator, slot))
        builder.add_edge("context_builder", _node_name(slot))
        builder.add_edge(_node_name(slot), "consensus")
    if not slots:
        builder.add_edge("context_builder", "consensus")

    builder.add_edge("consensus", END)
    return builder.compile()


async def arun_analysis(
    snapshot: Any,
    source_text: Optional[str] = None,
    config: Optional[AdvisorConfig] = None,
    provider: Optional[GenerativeProvider] = None,
    registry: Optional[SlotRegistry] = None,
    run_id: Optional[str] = None,
) -> Recommendation:
    """
    Run one analysis and return its Recommendation.
    Raises InvalidSnapshotError before any analyzer runs when the snapshot is malformed.
    When no provider is passed, one is built from config.llm_provider (None disables generative slots).
    """
    snapshot = ensure_snapshot(snapshot)
    config = config or AdvisorConfig.from_env()
    if provider is None:
        provider = create_provider(config)

    rid = run_id or str(uuid.uuid4())
    logger.info("analysis_started", location=snapshot.location, run_id=rid, generative=provider is not None)
    with provider_scope(provider, len(config.enabled_slots)) as scoped:
        orchestrator = SignalOrchestrator(config=config, provider=scoped, registry=registry)
        graph = build_analysis_graph(orchestrator, ConsensusEngine(config))
        initial: Dict[str, Any] = {
            "snapshot": snapshot,
            "source_text": source_text,
            "signals": [],
            "recommendation": None,
        }
        result = await graph.ainvoke(initial, config={"run_id": rid})
    recommendation = result["recommendation"]
    logger.info(
        "analysis_finished",
        location=snapshot.location,
        run_id=rid,
        action=recommendation.action.value,
        confidence=recommendation.confidence.value,
    )
    return recommendation


def run_analysis(
    snapshot: Any,
    source_text: Optional[str] = None,
    config: Optional[AdvisorConfig] = None,
    provider: Optional[GenerativeProvider] = None,
    registry: Optional[SlotRegistry] = None,
    run_id: Optional[str] = None,
) -> Recommendation:
    """Sync wrapper around arun_analysis."""
    return asyncio.run(arun_analysis(snapshot, source_text, config, provider, registry, run_id))
