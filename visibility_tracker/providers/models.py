"""
Provider abstraction and factory for the visibility tracker.

Every conversational-AI backend is reached through the same async contract:

    await adapter.chat(prompt, domain_url, transport=None) -> ProviderReply

Key components:
- Provider: closed enum of the four supported backends
- ProviderReply: answer text plus the absolute URLs the backend cited
- ProviderAdapter: Protocol every backend adapter implements
- build_adapter / build_adapters: exhaustive factory keyed by Provider

Example:
    >>> adapter = build_adapter(Provider.PERPLEXITY, "sonar", api_key)
    >>> reply = await adapter.chat("Best mortgage brokers in Germany?", "interhyp.de")
    >>> reply.citations[:1]
    ['https://www.interhyp.de/']
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol, assert_never

import httpx


class Provider(StrEnum):
    """The supported conversational-AI backends."""

    CHATGPT = "chatgpt"
    CLAUDE = "claude"
    GEMINI = "gemini"
    PERPLEXITY = "perplexity"


ALL_PROVIDERS: tuple[Provider, ...] = tuple(Provider)


@dataclass
class ProviderReply:
    """
    Raw answer from one backend.

    Attributes:
        text: Answer text exactly as the backend produced it (may contain markup)
        citations: Absolute source URLs in backend order; empty if none were given
    """

    text: str
    citations: list[str] = field(default_factory=list)


class ProviderAdapter(Protocol):
    """
    Interface implemented by every backend adapter.

    Implementations MUST:
    - Enable the backend's web search / grounding capability
    - Let transport and backend errors propagate (callers isolate them)
    - Never log API keys
    """

    provider: Provider

    async def chat(
        self,
        prompt: str,
        domain_url: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ProviderReply:
        """
        Ask the backend one prompt.

        Args:
            prompt: Natural-language question
            domain_url: Tracked domain (context only, not sent to the backend)
            transport: Optional httpx transport, e.g. a country proxy egress

        Returns:
            ProviderReply with answer text and cited URLs
        """
        ...


def build_adapter(
    provider: Provider,
    model_name: str,
    api_key: str,
    max_tokens: int = 1024,
    country: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderAdapter:
    """
    Create the adapter for one provider.

    Args:
        provider: Backend to build
        model_name: Backend model identifier
        api_key: API key (NEVER logged)
        max_tokens: Completion budget
        country: Optional country code; injects a geography instruction
        transport: Optional default transport for every call of this adapter

    Returns:
        ProviderAdapter for the requested backend
    """
    # Imported lazily so importing the enum never pulls in every client
    match provider:
        case Provider.CHATGPT:
            from .openai_client import ChatGPTAdapter

            return ChatGPTAdapter(model_name, api_key, max_tokens, country, transport)
        case Provider.CLAUDE:
            from .anthropic_client import ClaudeAdapter

            return ClaudeAdapter(model_name, api_key, max_tokens, country, transport)
        case Provider.GEMINI:
            from .gemini_client import GeminiAdapter

            return GeminiAdapter(model_name, api_key, max_tokens, country, transport)
        case Provider.PERPLEXITY:
            from .perplexity_client import PerplexityAdapter

            return PerplexityAdapter(model_name, api_key, max_tokens, country, transport)
        case _:
            assert_never(provider)


def build_adapters(
    runtime_providers: Iterable,
    country: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[Provider, ProviderAdapter]:
    """
    Build adapters for every resolved provider of a RuntimeConfig.

    Args:
        runtime_providers: RuntimeProvider entries (provider, model_name, api_key, max_tokens)
        country: Optional country code shared by all adapters
        transport: Optional transport shared by all adapters

    Returns:
        dict mapping Provider to adapter, in configuration order
    """
    adapters: dict[Provider, ProviderAdapter] = {}
    for entry in runtime_providers:
        provider = Provider(entry.provider)
        adapters[provider] = build_adapter(
            provider,
            model_name=entry.model_name,
            api_key=entry.api_key,
            max_tokens=entry.max_tokens,
            country=country,
            transport=transport,
        )
    return adapters
