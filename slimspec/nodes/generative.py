"""Generative layer: one model-backed analyzer per slot. Output is a validated Signal only."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from slimspec.llm import GenerativeProvider, agenerate
from slimspec.state import FAILED_VERDICT, VERDICTS, ProfileSnapshot, Signal, Slot
from slimspec.tools.context_builder import build_context
from slimspec.tools.response_parser import parse_response

BASE_SYSTEM = """You are a test performance specialist. You read profiling telemetry for a single
test example and judge one narrow question. You never edit code. You answer with a single JSON
object and nothing else."""

PERSISTENCE_SYSTEM = BASE_SYSTEM + """
Your question: does this test need records persisted to the database?
- Writes (inserts/updates/deletes) that the assertions depend on mean persistence is required.
- No writes and one or two reads usually mean in-memory objects would do."""

CONSTRUCTION_SYSTEM = BASE_SYSTEM + """
Your question: is the object-construction strategy heavier than the test needs?
- Persisted construction (create) with no writes and no association access is inefficient.
- Association access or write-dependent assertions justify persisted construction."""

INTENT_SYSTEM = BASE_SYSTEM + """
Your question: does this test behave as an isolated unit test or as an integration test?
Weigh the file location, duration, query volume and number of constructed objects."""

RISK_SYSTEM = BASE_SYSTEM + """
Your question: would replacing persisted construction risk skipping callbacks or side effects?
- Commit/save callbacks, mailers, background jobs and webhooks are strong indicators (callback_risk).
- Many writes, long duration or chained events suggest potential_side_effects."""

PROMPT_TEMPLATE = """PROFILE:
- Location: {{location}}
- Category: {{category}}
- Duration: {{duration_ms}}ms
- Persistence activity: {{persistence}}
- Object construction: {{construction}}
- Events: {{events}}
- Metadata: {{metadata}}

SLOT DETAILS:
{{slot_details}}

TEST SOURCE:
{{source_text}}

RESPONSE FORMAT (JSON only):
{
  "verdict": "{{verdict_choices}}",
  "confidence": "high|medium|low",
  "reasoning": "why the telemetry supports the verdict",
  "metadata": {}
}"""

SYSTEM_PROMPTS: Dict[Slot, str] = {
    Slot.PERSISTENCE: PERSISTENCE_SYSTEM,
    Slot.CONSTRUCTION: CONSTRUCTION_SYSTEM,
    Slot.INTENT: INTENT_SYSTEM,
    Slot.RISK: RISK_SYSTEM,
}

# Context keys shown in the SLOT DETAILS block for each slot.
SLOT_DETAIL_KEYS: Dict[Slot, tuple] = {
    Slot.PERSISTENCE: ("write_count", "read_count"),
    Slot.CONSTRUCTION: ("associations",),
    Slot.INTENT: ("category_from_path", "source_indicators"),
    Slot.RISK: ("events_count", "side_effect_metadata"),
}


def _verdict_choices(slot: Slot) -> str:
    return "|".join(sorted(v for v in VERDICTS[slot] if v != FAILED_VERDICT))


@dataclass(frozen=True)
class GenerativeAnalyzer:
    """Model-backed analyzer for one slot. Raises on provider or parse failure."""

    slot: Slot
    provider: GenerativeProvider
    system_prompt: Optional[str] = None
    prompt_template: str = PROMPT_TEMPLATE

    def build_context(self, snapshot: ProfileSnapshot, source_text: Optional[str]) -> dict:
        context = build_context(snapshot, source_text, self.slot)
        details = [f"- {key}: {context.get(key)}" for key in SLOT_DETAIL_KEYS.get(self.slot, ())]
        context["slot_details"] = "\n".join(details)
        context["verdict_choices"] = _verdict_choices(self.slot)
        return context

    async def aanalyze(self, snapshot: ProfileSnapshot, source_text: Optional[str] = None) -> Signal:
        context = self.build_context(snapshot, source_text)
        text = await agenerate(
            self.provider,
            self.prompt_template,
            context,
            self.system_prompt or SYSTEM_PROMPTS[self.slot],
        )
        return parse_response(text, self.slot)


def generative_analyzer_for(slot: Slot, provider: GenerativeProvider) -> GenerativeAnalyzer:
    return GenerativeAnalyzer(slot=slot, provider=provider, system_prompt=SYSTEM_PROMPTS[slot])
