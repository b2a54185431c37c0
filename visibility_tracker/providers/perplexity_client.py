"""
Perplexity adapter over the OpenAI-compatible chat completions endpoint.

Sonar models search the web on every call. The answer text carries [n]
markers that index (1-based) into the top-level `citations` list; older
responses only expose `search_results[].url`, which is used as a fallback.
"""

import logging
from typing import Any

from visibility_tracker.exceptions import CitationParseError, ProviderResponseError

from .base import HTTPProviderAdapter, ProviderRequest, require_url
from .models import Provider

PERPLEXITY_API_URL = "https://api.perplexity.ai/chat/completions"

logger = logging.getLogger(__name__)


class PerplexityAdapter(HTTPProviderAdapter):
    """Perplexity Sonar chat completions."""

    provider = Provider.PERPLEXITY

    def _build_request(self, prompt: str) -> ProviderRequest:
        messages = []
        if self.system_instruction:
            messages.append({"role": "system", "content": self.system_instruction})
        messages.append({"role": "user", "content": prompt})

        return ProviderRequest(
            url=PERPLEXITY_API_URL,
            payload={
                "model": self.model_name,
                "messages": messages,
                "max_tokens": self.max_tokens,
            },
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )

    def _extract_text(self, data: dict[str, Any]) -> str:
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderResponseError(f"Invalid Perplexity response structure: {e}") from e

        if not isinstance(content, str) or not content.strip():
            raise ProviderResponseError("Perplexity response contains no text content")
        return content.strip()

    def _extract_citations(self, data: dict[str, Any]) -> list[str]:
        citations = data.get("citations")
        if citations:
            if not isinstance(citations, list):
                raise CitationParseError("Perplexity 'citations' is not a list")
            # Order matters: [n] markers index into this list
            return [require_url(url, "citations") for url in citations]

        search_results = data.get("search_results") or []
        if not isinstance(search_results, list):
            raise CitationParseError("Perplexity 'search_results' is not a list")
        return [
            require_url(result.get("url"), "search_results")
            for result in search_results
            if isinstance(result, dict) and result.get("url")
        ]
