#!/usr/bin/env python3
"""
Analyze one profiled test: slot analyzers -> consensus -> recommendation.
Usage: uv run python main.py <snapshot.json>
   or:  uv run python main.py <snapshot.json> <test_file>
   or:  uv run python main.py <snapshot.json> [test_file] --json
"""

import json
import sys
from pathlib import Path

# Load .env from project root so LLM_PROVIDER and API keys are set before any imports that read them
from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent / ".env")

from slimspec.config import AdvisorConfig
from slimspec.errors import ConfigurationError, InvalidSnapshotError
from slimspec.graph import run_analysis

EXIT_INVALID_SNAPSHOT = 2
EXIT_CONFIG_ERROR = 1


def _read_snapshot(path: Path):
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise InvalidSnapshotError(f"Could not read snapshot {path}: {e}") from e


def _print_recommendation(recommendation) -> None:
    print(f"\n--- {recommendation.location} ---")
    print(f"Action: {recommendation.action.value} (confidence: {recommendation.confidence.value})")
    if recommendation.from_value or recommendation.to_value:
        print(f"Change: {recommendation.from_value} -> {recommendation.to_value}")
    for line in recommendation.explanation:
        print(f"  - {line}")
    print("\n--- Signals ---")
    for signal in recommendation.contributing_signals:
        mode = signal.execution_mode or "heuristic"
        print(f"  {signal.slot.value}: {signal.verdict} ({signal.confidence.value}, {mode})")


def main() -> None:
    args = [a for a in sys.argv[1:] if not a.startswith("--")]
    as_json = "--json" in sys.argv
    if not args:
        print(__doc__.strip(), file=sys.stderr)
        sys.exit(EXIT_INVALID_SNAPSHOT)

    source_text = None
    if len(args) >= 2:
        test_file = Path(args[1])
        if test_file.is_file():
            source_text = test_file.read_text(encoding="utf-8")
        else:
            print(f"Warning: test file does not exist: {test_file}", file=sys.stderr)

    try:
        config = AdvisorConfig.from_env()
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)

    try:
        recommendation = run_analysis(_read_snapshot(Path(args[0])), source_text=source_text, config=config)
    except InvalidSnapshotError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_INVALID_SNAPSHOT)

    if as_json:
        print(recommendation.model_dump_json(indent=2))
    else:
        _print_recommendation(recommendation)


if __name__ == "__main__":
    main()
