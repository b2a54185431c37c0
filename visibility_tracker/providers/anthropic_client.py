"""
Claude adapter over the Anthropic Messages API.

Web search runs through the server-side `web_search_20250305` tool. Text
blocks carry `web_search_result_location` citations; one source is usually
cited by several blocks, so URLs are de-duplicated in first-seen order.
"""

import logging
from typing import Any

import httpx

from visibility_tracker.exceptions import CitationParseError, ProviderResponseError

from .base import HTTPProviderAdapter, ProviderRequest, dedupe_preserving_order, require_url
from .models import Provider

ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"

# Searches Claude may run per answer
WEB_SEARCH_MAX_USES = 5

logger = logging.getLogger(__name__)


class ClaudeAdapter(HTTPProviderAdapter):
    """Anthropic Messages API with the web search tool."""

    provider = Provider.CLAUDE

    def _build_request(self, prompt: str) -> ProviderRequest:
        payload: dict[str, Any] = {
            "model": self.model_name,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
            "tools": [
                {
                    "type": "web_search_20250305",
                    "name": "web_search",
                    "max_uses": WEB_SEARCH_MAX_USES,
                }
            ],
        }
        if self.system_instruction:
            payload["system"] = self.system_instruction

        return ProviderRequest(
            url=ANTHROPIC_API_URL,
            payload=payload,
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
        )

    def _text_blocks(self, data: dict[str, Any]) -> list[dict[str, Any]]:
        content = data.get("content")
        if not isinstance(content, list):
            raise ProviderResponseError("Anthropic response missing 'content' array")
        return [
            block
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]

    def _extract_text(self, data: dict[str, Any]) -> str:
        text = "".join(str(block.get("text") or "") for block in self._text_blocks(data))
        if not text.strip():
            raise ProviderResponseError(
                f"Anthropic response contains no text content "
                f"(stop_reason={data.get('stop_reason')})"
            )
        return text

    def _extract_citations(self, data: dict[str, Any]) -> list[str]:
        urls = []
        for block in self._text_blocks(data):
            citations = block.get("citations") or []
            if not isinstance(citations, list):
                raise CitationParseError("Anthropic 'citations' is not a list")
            for citation in citations:
                if (
                    isinstance(citation, dict)
                    and citation.get("type") == "web_search_result_location"
                ):
                    urls.append(require_url(citation.get("url"), "web_search_result_location"))
        return dedupe_preserving_order(urls)

    def _extract_error_detail(self, response: httpx.Response) -> str:
        # Anthropic: {"type": "error", "error": {"type": "...", "message": "..."}}
        try:
            error = response.json().get("error", {})
            if isinstance(error, dict) and error.get("message"):
                return f"{error.get('type', 'error')}: {error['message']}"
        except Exception:
            pass
        return super()._extract_error_detail(response)
