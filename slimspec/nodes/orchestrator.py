"""
Analyzer execution: run every enabled slot, generative first under a per-call
timeout, heuristic on any failure, and a synthesized failed signal if even the
heuristic raises. One slot's failure never aborts the run.

Each slot is driven through a small state machine (SlotRun):

    pending -> generative_attempt -> {succeeded | timed_out | errored}
            -> [fallback_attempt -> {fallback_succeeded | fallback_failed}] -> final
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from slimspec.config import AdvisorConfig
from slimspec.errors import InvalidTransitionError, ResponseValidationError
from slimspec.llm import GenerativeProvider, provider_scope
from slimspec.log import get_logger
from slimspec.nodes.registry import SlotRegistry, default_registry
from slimspec.state import (
    FAILED_VERDICT,
    Confidence,
    ExecutionMode,
    ProfileSnapshot,
    Signal,
    Slot,
    ensure_snapshot,
)

logger = get_logger(__name__)


class SlotPhase(str, Enum):
    PENDING = "pending"
    GENERATIVE_ATTEMPT = "generative_attempt"
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"
    ERRORED = "errored"
    FALLBACK_ATTEMPT = "fallback_attempt"
    FALLBACK_SUCCEEDED = "fallback_succeeded"
    FALLBACK_FAILED = "fallback_failed"
    FINAL = "final"


TRANSITIONS: Dict[SlotPhase, FrozenSet[SlotPhase]] = {
    SlotPhase.PENDING: frozenset({SlotPhase.GENERATIVE_ATTEMPT, SlotPhase.FALLBACK_ATTEMPT}),
    SlotPhase.GENERATIVE_ATTEMPT: frozenset({SlotPhase.SUCCEEDED, SlotPhase.TIMED_OUT, SlotPhase.ERRORED}),
    SlotPhase.SUCCEEDED: frozenset({SlotPhase.FINAL}),
    SlotPhase.TIMED_OUT: frozenset({SlotPhase.FALLBACK_ATTEMPT}),
    SlotPhase.ERRORED: frozenset({SlotPhase.FALLBACK_ATTEMPT}),
    SlotPhase.FALLBACK_ATTEMPT: frozenset({SlotPhase.FALLBACK_SUCCEEDED, SlotPhase.FALLBACK_FAILED}),
    SlotPhase.FALLBACK_SUCCEEDED: frozenset({SlotPhase.FINAL}),
    SlotPhase.FALLBACK_FAILED: frozenset({SlotPhase.FINAL}),
    SlotPhase.FINAL: frozenset(),
}


@dataclass(frozen=True)
class SlotRun:
    """Immutable record of one slot's progress; advance() returns the next state."""

    slot: Slot
    phase: SlotPhase = SlotPhase.PENDING
    signal: Optional[Signal] = None
    error: Optional[str] = None
    trail: Tuple[SlotPhase, ...] = (SlotPhase.PENDING,)

    def advance(self, phase: SlotPhase, *, signal: Optional[Signal] = None, error: Optional[str] = None) -> "SlotRun":
        if phase not in TRANSITIONS[self.phase]:
            raise InvalidTransitionError(
                f"{self.slot.value}: cannot move from {self.phase.value} to {phase.value}"
            )
        return replace(
            self,
            phase=phase,
            signal=signal if signal is not None else self.signal,
            error=error if error is not None else self.error,
            trail=self.trail + (phase,),
        )

    @property
    def generative_attempted(self) -> bool:
        return SlotPhase.GENERATIVE_ATTEMPT in self.trail

    @property
    def fallback(self) -> bool:
        """True when a generative attempt failed and the heuristic path ran."""
        return self.generative_attempted and SlotPhase.FALLBACK_ATTEMPT in self.trail

    @property
    def execution_mode(self) -> ExecutionMode:
        if SlotPhase.SUCCEEDED in self.trail:
            return ExecutionMode.GENERATIVE
        return ExecutionMode.HEURISTIC

    @property
    def done(self) -> bool:
        return self.phase is SlotPhase.FINAL


def failed_signal(slot: Slot, error: str) -> Signal:
    """Terminal signal for a slot whose analyzers all failed."""
    return Signal(
        slot=slot,
        verdict=FAILED_VERDICT,
        confidence=Confidence.LOW,
        reasoning=f"Analysis failed: {error}",
        metadata={"error": error},
    )


def _tag(run: SlotRun) -> Signal:
    extra: Dict[str, Any] = {
        "execution_mode": run.execution_mode.value,
        "fallback": run.fallback,
    }
    if run.phase is SlotPhase.FALLBACK_FAILED:
        extra["error"] = run.error
    elif run.error:
        extra["generative_error"] = run.error
    return run.signal.with_metadata(**extra)


class SignalOrchestrator:
    """Runs the enabled analyzer slots for one snapshot and returns one signal per slot."""

    def __init__(
        self,
        config: Optional[AdvisorConfig] = None,
        provider: Optional[GenerativeProvider] = None,
        registry: Optional[SlotRegistry] = None,
    ) -> None:
        self.config = config or AdvisorConfig()
        self.provider = provider
        self.registry = registry or default_registry()

    @property
    def enabled_slots(self) -> Tuple[Slot, ...]:
        return self.config.enabled_slots

    async def _generative_attempt(
        self,
        run: SlotRun,
        provider: GenerativeProvider,
        snapshot: ProfileSnapshot,
        source_text: Optional[str],
    ) -> SlotRun:
        run = run.advance(SlotPhase.GENERATIVE_ATTEMPT)
        timeout = self.config.generative_timeout_seconds
        try:
            analyzer = self.registry.generative_for(run.slot, provider)
            signal = await asyncio.wait_for(analyzer.aanalyze(snapshot, source_text), timeout=timeout)
            if not isinstance(signal, Signal) or signal.slot is not run.slot or not signal.is_valid():
                raise ResponseValidationError(f"analyzer returned an invalid signal: {signal!r}")
        except asyncio.TimeoutError:
            logger.warning("generative_timeout", slot=run.slot.value, timeout_seconds=timeout)
            return run.advance(SlotPhase.TIMED_OUT, error=f"generative call timed out after {timeout:g}s")
        except ResponseValidationError as e:
            logger.warning("generative_invalid_response", slot=run.slot.value, error=str(e))
            return run.advance(SlotPhase.ERRORED, error=str(e))
        except Exception as e:
            logger.warning("generative_provider_error", slot=run.slot.value, error=str(e), error_type=type(e).__name__)
            return run.advance(SlotPhase.ERRORED, error=f"{type(e).__name__}: {e}")
        return run.advance(SlotPhase.SUCCEEDED, signal=signal)

    def _fallback_attempt(self, run: SlotRun, snapshot: ProfileSnapshot, source_text: Optional[str]) -> SlotRun:
        run = run.advance(SlotPhase.FALLBACK_ATTEMPT)
        spec = self.registry.get(run.slot)
        if spec is None:
            error = f"no analyzer registered for slot {run.slot.value}"
            logger.error("slot_unregistered", slot=run.slot.value)
            return run.advance(SlotPhase.FALLBACK_FAILED, signal=failed_signal(run.slot, error), error=error)
        try:
            signal = spec.heuristic(snapshot, source_text)
            if not isinstance(signal, Signal) or signal.slot is not run.slot or not signal.is_valid():
                raise TypeError(f"heuristic returned an invalid signal: {signal!r}")
        except Exception as e:
            error = f"heuristic analyzer failed: {type(e).__name__}: {e}"
            if run.error:
                error = f"{run.error}; {error}"
            logger.error("heuristic_failed", slot=run.slot.value, error=str(e), error_type=type(e).__name__)
            return run.advance(SlotPhase.FALLBACK_FAILED, signal=failed_signal(run.slot, error), error=error)
        return run.advance(SlotPhase.FALLBACK_SUCCEEDED, signal=signal)

    async def _arun_slot(
        self,
        slot: Slot,
        snapshot: ProfileSnapshot,
        source_text: Optional[str],
        provider: Optional[GenerativeProvider],
    ) -> SlotRun:
        run = SlotRun(slot=slot)
        if self.config.generative_allowed(slot) and self.registry.has_generative(slot, provider):
            run = await self._generative_attempt(run, provider, snapshot, source_text)
        if run.phase is not SlotPhase.SUCCEEDED:
            run = self._fallback_attempt(run, snapshot, source_text)
        run = run.advance(SlotPhase.FINAL, signal=_tag(run))
        logger.debug(
            "slot_finished",
            slot=slot.value,
            verdict=run.signal.verdict,
            confidence=run.signal.confidence.value,
            trail=[p.value for p in run.trail],
        )
        return run

    async def arun_slot(self, slot: Slot, snapshot: ProfileSnapshot, source_text: Optional[str] = None) -> SlotRun:
        """Drive one slot to its final phase. Never raises for analyzer failures."""
        return await self._arun_slot(slot, snapshot, source_text, self.provider)

    async def arun_signals(self, snapshot: Any, source_text: Optional[str] = None) -> List[Signal]:
        snapshot = ensure_snapshot(snapshot)
        slots = self.enabled_slots
        logger.info("signals_started", location=snapshot.location, slots=[s.value for s in slots])
        with provider_scope(self.provider, len(slots)) as provider:
            runs = await asyncio.gather(*(self._arun_slot(slot, snapshot, source_text, provider) for slot in slots))
        signals = [run.signal for run in runs]
        logger.info(
            "signals_finished",
            location=snapshot.location,
            fallbacks=sum(1 for r in runs if r.fallback),
            failed=sum(1 for s in signals if s.failed),
        )
        return signals

    def run_signals(self, snapshot: Any, source_text: Optional[str] = None) -> List[Signal]:
        """Sync entry point; returns signals in enabled-slot order."""
        return asyncio.run(self.arun_signals(snapshot, source_text))
