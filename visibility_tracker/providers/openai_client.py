"""
ChatGPT adapter over the OpenAI Responses API.

Web search is enabled with the built-in `web_search` tool. Cited sources are
read from `url_citation` annotations on the output_text parts; the same URL
may be annotated on several spans, so duplicates are dropped.

Example:
    >>> adapter = ChatGPTAdapter("gpt-4o-mini", "sk-...")
    >>> reply = await adapter.chat("Which CRM tools do agencies use?", "hubspot.com")
"""

import logging
from typing import Any

from visibility_tracker.exceptions import CitationParseError, ProviderResponseError

from .base import HTTPProviderAdapter, ProviderRequest, dedupe_preserving_order, require_url
from .models import Provider

OPENAI_API_URL = "https://api.openai.com/v1/responses"

logger = logging.getLogger(__name__)


class ChatGPTAdapter(HTTPProviderAdapter):
    """OpenAI Responses API with web search."""

    provider = Provider.CHATGPT

    def _build_request(self, prompt: str) -> ProviderRequest:
        messages = []
        if self.system_instruction:
            messages.append(
                {
                    "role": "developer",
                    "content": [{"type": "input_text", "text": self.system_instruction}],
                }
            )
        messages.append({"role": "user", "content": [{"type": "input_text", "text": prompt}]})

        return ProviderRequest(
            url=OPENAI_API_URL,
            payload={
                "model": self.model_name,
                "input": messages,
                "tools": [{"type": "web_search"}],
                "tool_choice": "auto",
                "max_output_tokens": self.max_tokens,
            },
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )

    def _output_text_parts(self, data: dict[str, Any]) -> list[dict[str, Any]]:
        output = data.get("output")
        if not isinstance(output, list) or not output:
            raise ProviderResponseError("OpenAI response missing 'output' array")

        parts = []
        for item in output:
            # Skip web_search_call and other tool items
            if not isinstance(item, dict) or item.get("type") != "message":
                continue
            content = item.get("content")
            if not isinstance(content, list):
                continue
            parts.extend(
                part
                for part in content
                if isinstance(part, dict) and part.get("type") == "output_text"
            )
        return parts

    def _extract_text(self, data: dict[str, Any]) -> str:
        parts = self._output_text_parts(data)
        text = "".join(str(part.get("text") or "") for part in parts)
        if not text:
            item_types = [
                item.get("type") for item in data.get("output", []) if isinstance(item, dict)
            ]
            raise ProviderResponseError(
                f"OpenAI response contains no text content. Output items: {item_types}"
            )
        return text

    def _extract_citations(self, data: dict[str, Any]) -> list[str]:
        urls = []
        for part in self._output_text_parts(data):
            annotations = part.get("annotations") or []
            if not isinstance(annotations, list):
                raise CitationParseError("OpenAI 'annotations' is not a list")
            for annotation in annotations:
                if isinstance(annotation, dict) and annotation.get("type") == "url_citation":
                    urls.append(require_url(annotation.get("url"), "url_citation"))
        return dedupe_preserving_order(urls)
