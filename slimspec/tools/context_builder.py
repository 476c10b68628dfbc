"""Prompt context for generative analyzers: snapshot summary plus slot-specific extras."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from slimspec.state import ProfileSnapshot, Slot

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")

# Source text beyond this is truncated before it reaches the prompt.
MAX_SOURCE_CHARS = 6000


def render_prompt(template: str, context: Mapping[str, Any]) -> str:
    """Replace {{name}} placeholders; unknown names render as '(none)'."""

    def _sub(match: re.Match) -> str:
        value = context.get(match.group(1))
        if value is None or value == "" or value == {} or value == []:
            return "(none)"
        if isinstance(value, Mapping):
            value = dict(value)
        if isinstance(value, (dict, list)):
            return json.dumps(value, sort_keys=True, default=str)
        return str(value)

    return _PLACEHOLDER.sub(_sub, template)


def load_source_text(location: str) -> Optional[str]:
    """Read the test file named by location ('path:line'); None when it is not readable."""
    path = Path(location.split(":", 1)[0])
    if not path.is_file():
        return None
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def _truncate(text: Optional[str], limit: int = MAX_SOURCE_CHARS) -> Optional[str]:
    if text is None or len(text) <= limit:
        return text
    return text[:limit] + "\n..."


def _format_construction(construction: Mapping[str, Mapping[str, Any]]) -> List[str]:
    lines = []
    for name, usage in construction.items():
        strategy = usage.get("strategy", "unknown")
        count = usage.get("count", 0)
        lines.append(f"{name}: strategy={strategy} count={count}")
    return lines


def _infer_category_from_path(location: str) -> str:
    lowered = location.lower()
    for marker, category in (
        ("/models/", "model"),
        ("/controllers/", "controller"),
        ("/requests/", "request"),
        ("/features/", "feature"),
        ("/integration/", "integration"),
        ("/system/", "system"),
        ("/e2e/", "integration"),
        ("/unit/", "unit"),
    ):
        if marker in "/" + lowered:
            return category
    return "unknown"


def _source_indicators(source_text: Optional[str]) -> Dict[str, bool]:
    if not source_text:
        return {}
    return {
        "requires_database": bool(re.search(r"create\(|\.save\(|refresh_from_db|\.objects\.|reload", source_text)),
        "uses_external_services": bool(re.search(r"responses\.|requests_mock|httpx_mock|vcr|WebMock", source_text)),
        "uses_time_travel": bool(re.search(r"freeze_time|freezegun|travel_to|Timecop", source_text)),
    }


def build_context(
    snapshot: ProfileSnapshot,
    source_text: Optional[str] = None,
    slot: Optional[Slot] = None,
) -> Dict[str, Any]:
    """Flatten a snapshot into template variables, with extras for the given slot."""
    context: Dict[str, Any] = {
        "location": snapshot.location,
        "category": snapshot.category,
        "duration_ms": snapshot.duration_ms,
        "construction": _format_construction(snapshot.construction),
        "persistence": dict(snapshot.persistence),
        "events": dict(snapshot.events),
        "metadata": dict(snapshot.metadata),
        "source_text": _truncate(source_text),
    }

    if slot is Slot.RISK:
        context["events_count"] = len(snapshot.events)
        context["side_effect_metadata"] = sorted(
            key for key in snapshot.metadata if key in ("callbacks", "mailers", "jobs", "webhooks", "side_effects")
        )
    elif slot is Slot.INTENT:
        context["category_from_path"] = _infer_category_from_path(snapshot.location)
        context["source_indicators"] = _source_indicators(source_text)
    elif slot is Slot.CONSTRUCTION:
        context["associations"] = {
            name: list(usage.get("associations") or []) for name, usage in snapshot.construction.items()
        }
    elif slot is Slot.PERSISTENCE:
        writes = sum(snapshot.persistence_count(k) for k in ("inserts", "updates", "deletes"))
        context["write_count"] = writes
        context["read_count"] = snapshot.persistence_count("selects")

    return context
