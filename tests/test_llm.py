"""Tests for the provider layer. Uses LangChain's fake chat model; no network."""

from __future__ import annotations

import asyncio

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from conftest import SyncProvider
from slimspec.config import AdvisorConfig
from slimspec.errors import ConfigurationError
from slimspec.llm import (
    ChatModelProvider,
    ExecutorProvider,
    GenerativeProvider,
    agenerate,
    create_provider,
    get_llm,
    provider_scope,
)
from slimspec.nodes.generative import generative_analyzer_for
from slimspec.state import Slot


def test_chat_model_provider_renders_prompt_and_returns_text():
    provider = ChatModelProvider(FakeListChatModel(responses=["pong"]))
    assert isinstance(provider, GenerativeProvider)
    assert provider.generate("ping {{name}}", {"name": "x"}, "system") == "pong"


def test_agenerate_prefers_native_async():
    provider = ChatModelProvider(FakeListChatModel(responses=["async pong"]))
    assert asyncio.run(agenerate(provider, "ping", {})) == "async pong"


def test_generative_analyzer_parses_model_output(optimizable_snapshot):
    response = '{"verdict": "construction_inefficient", "confidence": "medium", "reasoning": "unused create"}'
    analyzer = generative_analyzer_for(Slot.CONSTRUCTION, ChatModelProvider(FakeListChatModel(responses=[response])))
    signal = asyncio.run(analyzer.aanalyze(optimizable_snapshot))
    assert signal.verdict == "construction_inefficient"
    context = analyzer.build_context(optimizable_snapshot, None)
    assert context["verdict_choices"] == "construction_inefficient|construction_optimal|construction_required"
    assert "associations" in context["slot_details"]


def test_create_provider_none_disables_generative():
    assert create_provider(AdvisorConfig(llm_provider="none")) is None


def test_create_provider_without_key_falls_back_to_none(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    assert create_provider(AdvisorConfig(llm_provider="openai")) is None


def test_get_llm_unknown_provider():
    with pytest.raises(ConfigurationError):
        get_llm("telepathy")


def test_provider_scope_wraps_only_sync_providers(generative_script):
    native = ChatModelProvider(FakeListChatModel(responses=["x"]))
    with provider_scope(native, 4) as scoped:
        assert scoped is native
    with provider_scope(None, 4) as scoped:
        assert scoped is None

    sync = SyncProvider(generative_script)
    with provider_scope(sync, 2) as scoped:
        assert isinstance(scoped, ExecutorProvider)
        assert isinstance(scoped, GenerativeProvider)
        executor = scoped.executor
    with pytest.raises(RuntimeError):
        executor.submit(print)
