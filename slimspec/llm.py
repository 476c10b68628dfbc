"""
Generative provider layer: the analyzers depend only on the GenerativeProvider
capability (generate / agenerate), never on a specific backend.

Default backend is a LangChain chat model chosen by LLM_PROVIDER:
- openai: ChatOpenAI (OPENAI_API_KEY, OPENAI_MODEL)
- openrouter: ChatOpenAI with OpenRouter base_url (OPENROUTER_API_KEY, OPENROUTER_MODEL)
- ollama: ChatOllama local (OLLAMA_BASE_URL, OLLAMA_MODEL)
- anthropic: ChatAnthropic (ANTHROPIC_API_KEY, ANTHROPIC_MODEL)
- none: no provider; every slot runs its heuristic analyzer
"""

from __future__ import annotations

import asyncio
import functools
import os
from concurrent.futures import Executor, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Iterator, Mapping, Optional, Protocol, runtime_checkable

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from slimspec.config import AdvisorConfig
from slimspec.errors import ConfigurationError
from slimspec.log import get_logger
from slimspec.tools.context_builder import render_prompt

logger = get_logger(__name__)


@runtime_checkable
class GenerativeProvider(Protocol):
    """Text generation capability. context fills {{placeholders}} in prompt."""

    def generate(
        self,
        prompt: str,
        context: Mapping[str, Any],
        system_prompt: Optional[str] = None,
    ) -> str: ...


async def agenerate(
    provider: GenerativeProvider,
    prompt: str,
    context: Mapping[str, Any],
    system_prompt: Optional[str] = None,
) -> str:
    """Call the provider's native async path when it has one, else run generate in a thread."""
    native = getattr(provider, "agenerate", None)
    if native is not None:
        return await native(prompt, context, system_prompt)
    return await asyncio.to_thread(provider.generate, prompt, context, system_prompt)


class ExecutorProvider:
    """Async face for a sync-only provider, backed by a run-scoped thread pool."""

    def __init__(self, provider: GenerativeProvider, executor: Executor) -> None:
        self.provider = provider
        self.executor = executor

    def generate(
        self,
        prompt: str,
        context: Mapping[str, Any],
        system_prompt: Optional[str] = None,
    ) -> str:
        return self.provider.generate(prompt, context, system_prompt)

    async def agenerate(
        self,
        prompt: str,
        context: Mapping[str, Any],
        system_prompt: Optional[str] = None,
    ) -> str:
        loop = asyncio.get_running_loop()
        call = functools.partial(self.provider.generate, prompt, context, system_prompt)
        return await loop.run_in_executor(self.executor, call)


@contextmanager
def provider_scope(
    provider: Optional[GenerativeProvider], max_workers: int
) -> Iterator[Optional[GenerativeProvider]]:
    """
    Yield a provider safe to time out for the length of one run.

    Sync-only providers get a private pool. On exit the pool is shut down without
    waiting, so a hung call that already timed out cannot hold the run open; its
    thread finishes in the background.
    """
    if provider is None or getattr(provider, "agenerate", None) is not None:
        yield provider
        return
    executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="slimspec-provider")
    try:
        yield ExecutorProvider(provider, executor)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def _content_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, list):
        # Anthropic-style content blocks
        return "".join(
            block.get("text", "") if isinstance(block, dict) else str(block) for block in content
        )
    return str(content or "")


class ChatModelProvider:
    """Adapter from a LangChain chat model to GenerativeProvider."""

    def __init__(self, llm: BaseChatModel, name: str = "chat_model") -> None:
        self.llm = llm
        self.name = name

    def _messages(self, prompt: str, context: Mapping[str, Any], system_prompt: Optional[str]):
        messages = []
        if system_prompt:
            messages.append(SystemMessage(content=system_prompt))
        messages.append(HumanMessage(content=render_prompt(prompt, context)))
        return messages

    def generate(
        self,
        prompt: str,
        context: Mapping[str, Any],
        system_prompt: Optional[str] = None,
    ) -> str:
        return _content_text(self.llm.invoke(self._messages(prompt, context, system_prompt)))

    async def agenerate(
        self,
        prompt: str,
        context: Mapping[str, Any],
        system_prompt: Optional[str] = None,
    ) -> str:
        return _content_text(await self.llm.ainvoke(self._messages(prompt, context, system_prompt)))


def get_llm(provider: str) -> BaseChatModel:
    """
    Return the chat model for the generative analyzers.
    Raises ConfigurationError when the provider needs a key that is not set.
    """
    provider = (provider or "").strip().lower()

    if provider == "ollama":
        from langchain_ollama import ChatOllama

        return ChatOllama(
            model=os.environ.get("OLLAMA_MODEL", "llama3.2"),
            base_url=os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434"),
            temperature=0.1,
        )

    if provider == "openrouter":
        from langchain_openai import ChatOpenAI

        api_key = (os.environ.get("OPENROUTER_API_KEY") or "").strip()
        if not api_key:
            raise ConfigurationError("OPENROUTER_API_KEY is not set.")
        return ChatOpenAI(
            model=os.environ.get("OPENROUTER_MODEL", "openai/gpt-4o-mini"),
            temperature=0.1,
            api_key=api_key,
            base_url=os.environ.get("OPENROUTER_API_BASE", "https://openrouter.ai/api/v1"),
        )

    if provider == "anthropic":
        from langchain_anthropic import ChatAnthropic

        api_key = (os.environ.get("ANTHROPIC_API_KEY") or "").strip()
        if not api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY is not set.")
        return ChatAnthropic(
            model=os.environ.get("ANTHROPIC_MODEL", "claude-3-5-haiku-latest"),
            temperature=0.1,
            api_key=api_key,
        )

    if provider == "openai":
        from langchain_openai import ChatOpenAI

        api_key = (os.environ.get("OPENAI_API_KEY") or "").strip()
        if not api_key:
            raise ConfigurationError(
                "OPENAI_API_KEY is not set. Either set it in .env or use another provider: "
                "LLM_PROVIDER=openrouter, LLM_PROVIDER=ollama (local), or LLM_PROVIDER=none."
            )
        return ChatOpenAI(
            model=os.environ.get("OPENAI_MODEL", "gpt-4o-mini"),
            temperature=0.1,
            api_key=api_key,
        )

    raise ConfigurationError(f"Unknown LLM_PROVIDER: {provider!r}")


def create_provider(config: AdvisorConfig) -> Optional[GenerativeProvider]:
    """
    Build the provider for this run, or None when generative analysis is off or
    cannot be configured. A missing provider is not an error: slots fall back.
    """
    if config.llm_provider == "none":
        return None
    try:
        llm = get_llm(config.llm_provider)
    except (ConfigurationError, ImportError) as e:
        logger.warning("provider_unavailable", provider=config.llm_provider, error=str(e))
        return None
    return ChatModelProvider(llm, name=config.llm_provider)
