"""
Gemini adapter over the Google generateContent REST API.

Grounding is enabled with the `google_search` tool. Sources come from
groundingMetadata.groundingChunks[].web.uri, skipping the Vertex AI Search
redirect hosts which say nothing about the real source.
"""

import logging
from typing import Any
from urllib.parse import urlparse

from visibility_tracker.exceptions import CitationParseError, ProviderResponseError

from .base import HTTPProviderAdapter, ProviderRequest, require_url
from .models import Provider

GEMINI_API_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

IGNORED_GROUNDING_HOSTS = frozenset(
    [
        "vertexaisearch.cloud.google.com",
        "vertexaisearch.googleapis.com",
    ]
)

BLOCKED_FINISH_REASONS = frozenset(
    ["SAFETY", "RECITATION", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII"]
)

logger = logging.getLogger(__name__)


class GeminiAdapter(HTTPProviderAdapter):
    """Gemini generateContent with Google Search grounding."""

    provider = Provider.GEMINI

    def _build_request(self, prompt: str) -> ProviderRequest:
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "tools": [{"google_search": {}}],
            "generationConfig": {"maxOutputTokens": self.max_tokens},
        }
        if self.system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": self.system_instruction}]}

        return ProviderRequest(
            url=f"{GEMINI_API_BASE_URL}/{self.model_name}:generateContent",
            payload=payload,
            headers={
                "x-goog-api-key": self.api_key,
                "Content-Type": "application/json",
            },
        )

    def _first_candidate(self, data: dict[str, Any]) -> dict[str, Any]:
        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            raise ProviderResponseError(
                "Gemini response missing 'candidates' array"
                + (f" (blockReason={block_reason})" if block_reason else "")
            )
        candidate = candidates[0]
        if not isinstance(candidate, dict):
            raise ProviderResponseError("Gemini candidate is not an object")
        return candidate

    def _extract_text(self, data: dict[str, Any]) -> str:
        candidate = self._first_candidate(data)

        finish_reason = candidate.get("finishReason")
        if finish_reason in BLOCKED_FINISH_REASONS:
            raise ProviderResponseError(
                f"Gemini blocked the answer: finishReason={finish_reason}"
            )

        parts = (candidate.get("content") or {}).get("parts")
        if not isinstance(parts, list):
            raise ProviderResponseError(
                f"Gemini candidate missing content parts (finishReason={finish_reason})"
            )

        text = "".join(
            str(part.get("text") or "") for part in parts if isinstance(part, dict)
        ).strip()
        if not text:
            raise ProviderResponseError(
                f"Gemini response contains no text (finishReason={finish_reason})"
            )

        if finish_reason == "MAX_TOKENS":
            logger.warning(f"Gemini answer truncated at max tokens: model={self.model_name}")

        return text

    def _extract_citations(self, data: dict[str, Any]) -> list[str]:
        metadata = self._first_candidate(data).get("groundingMetadata")
        if not metadata:
            return []
        if not isinstance(metadata, dict):
            raise CitationParseError("Gemini 'groundingMetadata' is not an object")

        chunks = metadata.get("groundingChunks") or []
        if not isinstance(chunks, list):
            raise CitationParseError("Gemini 'groundingChunks' is not a list")

        urls = []
        for chunk in chunks:
            web = chunk.get("web") if isinstance(chunk, dict) else None
            if not isinstance(web, dict) or "uri" not in web:
                continue
            uri = require_url(web["uri"], "groundingChunks")
            if (urlparse(uri).hostname or "") in IGNORED_GROUNDING_HOSTS:
                continue
            urls.append(uri)
        return urls
