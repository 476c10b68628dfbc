"""Parse generative analyzer text into a validated Signal, or raise ResponseValidationError."""

from __future__ import annotations

import json
import re
from typing import Any, Dict

from pydantic import ValidationError

from slimspec.errors import ResponseValidationError
from slimspec.state import FAILED_VERDICT, VERDICTS, Confidence, Signal, Slot

REQUIRED_FIELDS = ("verdict", "confidence", "reasoning")

# Extra top-level keys that are folded into metadata when present.
EXTRA_FIELDS = (
    "recommendations",
    "performance_impact",
    "risk_assessment",
    "test_classification",
    "risk_factors",
    "safety_recommendations",
)

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def _extract_json(text: str) -> Any:
    stripped = (text or "").strip()
    if not stripped:
        raise ResponseValidationError("Empty response")
    fenced = _FENCE.search(stripped)
    if fenced:
        stripped = fenced.group(1).strip()
    try:
        return json.loads(stripped)
    except json.JSONDecodeError as e:
        raise ResponseValidationError(f"Invalid JSON response: {e}") from e


def parse_response(text: str, slot: Slot) -> Signal:
    """
    Validate structure and vocabulary. Unlike the heuristic path, nothing is
    defaulted: a missing field or an unknown verdict/confidence is a failure.
    """
    parsed = _extract_json(text)
    if not isinstance(parsed, dict):
        raise ResponseValidationError(f"Response must be a JSON object, got {type(parsed).__name__}")

    missing = [f for f in REQUIRED_FIELDS if parsed.get(f) in (None, "")]
    if missing:
        raise ResponseValidationError(f"Missing required fields: {', '.join(missing)}")

    verdict = str(parsed["verdict"]).strip().lower()
    if verdict == FAILED_VERDICT:
        raise ResponseValidationError("Provider reported a failed analysis")
    if verdict not in VERDICTS[slot]:
        raise ResponseValidationError(
            f"Invalid verdict {verdict!r} for slot {slot.value!r}. Valid verdicts: {sorted(VERDICTS[slot])}"
        )

    confidence = str(parsed["confidence"]).strip().lower()
    if confidence not in {c.value for c in Confidence}:
        raise ResponseValidationError(f"Invalid confidence level {confidence!r}")

    metadata: Dict[str, Any] = parsed.get("metadata") if isinstance(parsed.get("metadata"), dict) else {}
    metadata = dict(metadata)
    for key in EXTRA_FIELDS:
        if parsed.get(key) is not None:
            metadata[key] = parsed[key]

    try:
        return Signal(
            slot=slot,
            verdict=verdict,
            confidence=Confidence(confidence),
            reasoning=str(parsed["reasoning"]),
            metadata=metadata,
        )
    except ValidationError as e:
        raise ResponseValidationError(f"Response validation failed: {e}") from e
