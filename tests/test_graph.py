"""
End-to-end tests for the LangGraph pipeline and the CLI.
No network: providers are scripted or disabled with LLM_PROVIDER=none.
"""

from __future__ import annotations

import json
import time
from unittest.mock import patch

import pytest

from conftest import ScriptedProvider, SlowSyncProvider
from slimspec.config import AdvisorConfig
from slimspec.errors import InvalidSnapshotError
from slimspec.graph import _context_builder_node, run_analysis
from slimspec.nodes.consensus import ConsensusEngine
from slimspec.state import Action, Confidence, ProfileSnapshot, Slot


def test_heuristic_pipeline_recommends_stubbing(optimizable_snapshot, heuristic_config):
    rec = run_analysis(optimizable_snapshot, config=heuristic_config)
    assert rec.action is Action.REPLACE_CONSTRUCTION_STRATEGY
    assert rec.confidence is Confidence.HIGH
    assert rec.from_value == "create(user)"
    assert [s.slot for s in rec.contributing_signals] == list(Slot)


def test_pipeline_blocks_risky_test(risky_snapshot, heuristic_config):
    rec = run_analysis(risky_snapshot, config=heuristic_config)
    assert rec.action is Action.NO_ACTION
    assert rec.confidence is Confidence.LOW
    assert rec.metadata["reason"] == "high_risk"


def test_pipeline_with_generative_provider(optimizable_snapshot, fast_config, generative_script):
    provider = ScriptedProvider(generative_script)
    rec = run_analysis(optimizable_snapshot, source_text="def test_user(): ...", config=fast_config, provider=provider)
    assert all(s.generative for s in rec.contributing_signals)
    assert rec.action is Action.REPLACE_CONSTRUCTION_STRATEGY
    assert any("Generative analysis used" in line for line in rec.explanation)


def test_pipeline_survives_provider_failure(optimizable_snapshot, fast_config):
    provider = ScriptedProvider({slot: RuntimeError("503") for slot in Slot})
    rec = run_analysis(optimizable_snapshot, source_text="", config=fast_config, provider=provider)
    assert all(s.metadata["fallback"] for s in rec.contributing_signals)
    assert rec.action is Action.REPLACE_CONSTRUCTION_STRATEGY


def test_hung_sync_provider_is_bounded_by_timeout(optimizable_snapshot):
    config = AdvisorConfig(llm_provider="openai", generative_timeout_seconds=0.1)
    started = time.monotonic()
    rec = run_analysis(optimizable_snapshot, config=config, provider=SlowSyncProvider(seconds=2))
    assert time.monotonic() - started < 1.5
    assert all(s.metadata["fallback"] for s in rec.contributing_signals)
    assert rec.action is Action.REPLACE_CONSTRUCTION_STRATEGY


def test_consensus_crash_degrades(optimizable_snapshot, heuristic_config):
    with patch.object(ConsensusEngine, "decide", side_effect=RuntimeError("boom")):
        rec = run_analysis(optimizable_snapshot, config=heuristic_config)
    assert rec.action is Action.NO_ACTION
    assert rec.confidence is Confidence.LOW
    assert rec.metadata["degraded"] is True
    assert "boom" in rec.explanation[-1]


def test_no_enabled_slots_goes_straight_to_consensus(optimizable_snapshot):
    rec = run_analysis(optimizable_snapshot, config=AdvisorConfig(llm_provider="none", enabled_slots=[]))
    assert rec.action is Action.NO_ACTION
    assert rec.contributing_signals == []


def test_invalid_snapshot_raises_before_analysis(heuristic_config):
    with pytest.raises(InvalidSnapshotError):
        run_analysis({"duration_ms": 10}, config=heuristic_config)


def test_context_builder_loads_source_from_location(tmp_path, optimizable_snapshot):
    test_file = tmp_path / "test_user.py"
    test_file.write_text("def test_user():\n    assert True\n", encoding="utf-8")
    snapshot = ProfileSnapshot.model_validate({**optimizable_snapshot.model_dump(), "location": f"{test_file}:1"})
    assert _context_builder_node({"snapshot": snapshot})["source_text"].startswith("def test_user")
    assert _context_builder_node({"snapshot": snapshot, "source_text": "given"}) == {}


# --- CLI ---


def _write_snapshot(tmp_path, data) -> str:
    path = tmp_path / "snapshot.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return str(path)


def test_cli_prints_json(tmp_path, monkeypatch, capsys, optimizable_snapshot):
    import main

    monkeypatch.setenv("LLM_PROVIDER", "none")
    path = _write_snapshot(tmp_path, optimizable_snapshot.model_dump())
    monkeypatch.setattr("sys.argv", ["main.py", path, "--json"])
    main.main()
    out = json.loads(capsys.readouterr().out)
    assert out["action"] == "replace_construction_strategy"
    assert out["explanation"]


def test_cli_exits_2_on_invalid_snapshot(tmp_path, monkeypatch):
    import main

    monkeypatch.setenv("LLM_PROVIDER", "none")
    path = _write_snapshot(tmp_path, {"category": "model"})
    monkeypatch.setattr("sys.argv", ["main.py", path])
    with pytest.raises(SystemExit) as exc:
        main.main()
    assert exc.value.code == 2
