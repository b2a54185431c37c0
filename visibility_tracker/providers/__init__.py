"""Conversational-AI backend adapters."""

from .models import (
    ALL_PROVIDERS,
    Provider,
    ProviderAdapter,
    ProviderReply,
    build_adapter,
    build_adapters,
)

__all__ = [
    "ALL_PROVIDERS",
    "Provider",
    "ProviderAdapter",
    "ProviderReply",
    "build_adapter",
    "build_adapters",
]
