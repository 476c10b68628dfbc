"""Slot registry: explicit slot identifier -> heuristic analyzer and generative analyzer factory."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, Optional, Protocol

from slimspec.llm import GenerativeProvider
from slimspec.nodes.generative import generative_analyzer_for
from slimspec.nodes.heuristics import HEURISTIC_ANALYZERS, HeuristicAnalyzer
from slimspec.state import ProfileSnapshot, Signal, Slot


class AsyncAnalyzer(Protocol):
    def aanalyze(self, snapshot: ProfileSnapshot, source_text: Optional[str] = None) -> Awaitable[Signal]: ...


GenerativeFactory = Callable[[Slot, GenerativeProvider], AsyncAnalyzer]


@dataclass(frozen=True)
class SlotSpec:
    slot: Slot
    heuristic: HeuristicAnalyzer
    generative_factory: Optional[GenerativeFactory] = None


class SlotRegistry:
    def __init__(self, specs: Iterable[SlotSpec] = ()) -> None:
        self._specs: Dict[Slot, SlotSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: SlotSpec) -> None:
        if not isinstance(spec.slot, Slot):
            raise TypeError(f"slot must be a Slot, got {spec.slot!r}")
        if not callable(spec.heuristic):
            raise TypeError(f"heuristic analyzer for {spec.slot.value} must be callable")
        self._specs[spec.slot] = spec

    def get(self, slot: Slot) -> Optional[SlotSpec]:
        return self._specs.get(slot)

    def __contains__(self, slot: object) -> bool:
        return slot in self._specs

    @property
    def slots(self) -> tuple:
        return tuple(self._specs)

    def has_generative(self, slot: Slot, provider: Optional[GenerativeProvider]) -> bool:
        spec = self._specs.get(slot)
        return spec is not None and spec.generative_factory is not None and provider is not None

    def generative_for(self, slot: Slot, provider: Optional[GenerativeProvider]) -> Optional[AsyncAnalyzer]:
        """Generative analyzer for slot, or None when the slot has none or no provider is set."""
        if not self.has_generative(slot, provider):
            return None
        return self._specs[slot].generative_factory(slot, provider)


def default_registry() -> SlotRegistry:
    return SlotRegistry(
        SlotSpec(slot=slot, heuristic=heuristic, generative_factory=generative_analyzer_for)
        for slot, heuristic in HEURISTIC_ANALYZERS.items()
    )
