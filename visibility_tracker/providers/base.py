"""
Shared HTTP machinery for provider adapters.

Each adapter describes its request and how to read the answer; this module
owns sending it:

- Per-call httpx.AsyncClient with an optional injected transport (proxy
  egress); the caller that created the transport closes it
- Retry on transient failures (429, 5xx, connect errors, timeouts)
- Fail fast on permanent errors (400, 401, 403, 404)
- Citation extraction failures degrade to an empty citation list

Security: API keys live only in request headers and are NEVER logged.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from visibility_tracker.config.constants import MAX_PROMPT_LENGTH
from visibility_tracker.exceptions import (
    CitationParseError,
    ProviderResponseError,
    ProviderTransportError,
)

from .models import Provider, ProviderReply
from .retry_config import NO_RETRY_STATUS_CODES, REQUEST_TIMEOUT, create_retry_decorator
from .routing import SharedTransport, geography_instruction, normalize_country

logger = logging.getLogger(__name__)


@dataclass
class ProviderRequest:
    """One outbound HTTP request to a backend."""

    url: str
    payload: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


class HTTPProviderAdapter:
    """
    Base class for JSON-over-HTTP backends.

    Subclasses set `provider` and implement _build_request, _extract_text,
    _extract_citations and _extract_error_detail.
    """

    provider: Provider

    def __init__(
        self,
        model_name: str,
        api_key: str,
        max_tokens: int = 1024,
        country: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not model_name or model_name.isspace():
            raise ValueError("model_name cannot be empty")

        if not api_key or api_key.isspace():
            raise ValueError("api_key cannot be empty")

        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")

        self.model_name = model_name
        self.api_key = api_key
        self.max_tokens = max_tokens
        self.country = normalize_country(country)
        self.transport = transport

        logger.info(
            f"Initialized {self.provider} adapter for model: {model_name}"
            + (f" (country={self.country})" if self.country else "")
        )

    @property
    def system_instruction(self) -> str | None:
        return geography_instruction(self.country)

    async def chat(
        self,
        prompt: str,
        domain_url: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ProviderReply:
        """
        Send one prompt with web search enabled and return text plus citations.

        Raises:
            ValueError: If the prompt is empty or too long
            ProviderTransportError: On permanent HTTP errors (no retry)
            ProviderResponseError: If the answer cannot be read from the body
            httpx.HTTPError: On transient failures once retries are exhausted
        """
        if not prompt or prompt.isspace():
            raise ValueError("Prompt cannot be empty")

        if len(prompt) > MAX_PROMPT_LENGTH:
            raise ValueError(
                f"Prompt exceeds maximum length of {MAX_PROMPT_LENGTH:,} characters "
                f"(received {len(prompt):,} characters)"
            )

        logger.debug(
            f"Sending prompt to {self.provider}: model={self.model_name}, domain={domain_url}"
        )

        request = self._build_request(prompt)
        data = await self._send(request, transport or self.transport)

        text = self._extract_text(data)

        try:
            citations = self._extract_citations(data)
        except CitationParseError as e:
            logger.warning(f"{self.provider} citations unreadable, continuing without: {e}")
            citations = []

        logger.debug(
            f"{self.provider} answered: {len(text)} chars, {len(citations)} citations"
        )
        return ProviderReply(text=text, citations=citations)

    @create_retry_decorator()
    async def _send(
        self,
        request: ProviderRequest,
        transport: httpx.AsyncBaseTransport | None,
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                timeout=REQUEST_TIMEOUT,
                transport=SharedTransport(transport) if transport is not None else None,
            ) as client:
                response = await client.post(
                    request.url,
                    json=request.payload,
                    headers=request.headers,
                )

                if response.status_code in NO_RETRY_STATUS_CODES:
                    error_detail = self._extract_error_detail(response)
                    raise ProviderTransportError(
                        f"{self.provider} API error (non-retryable): "
                        f"status={response.status_code}, "
                        f"model={self.model_name}, "
                        f"detail={error_detail}"
                    )

                response.raise_for_status()

        except httpx.HTTPStatusError as e:
            logger.error(
                f"{self.provider} API HTTP error: "
                f"status={e.response.status_code}, "
                f"model={self.model_name}, "
                f"detail={self._extract_error_detail(e.response)}"
            )
            raise

        except httpx.ConnectError as e:
            logger.error(
                f"{self.provider} API connection error: model={self.model_name}, error={e}"
            )
            raise

        except httpx.TimeoutException as e:
            logger.error(f"{self.provider} API timeout: model={self.model_name}, error={e}")
            raise

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderResponseError(
                f"Failed to parse {self.provider} response JSON: {e}"
            ) from e

        if not isinstance(data, dict):
            raise ProviderResponseError(f"{self.provider} response is not a JSON object")

        return data

    def _build_request(self, prompt: str) -> ProviderRequest:
        raise NotImplementedError

    def _extract_text(self, data: dict[str, Any]) -> str:
        raise NotImplementedError

    def _extract_citations(self, data: dict[str, Any]) -> list[str]:
        raise NotImplementedError

    def _extract_error_detail(self, response: httpx.Response) -> str:
        """Pull a readable error message out of a failed response."""
        try:
            error_data = response.json()
            if isinstance(error_data, dict):
                error = error_data.get("error")
                if isinstance(error, dict) and error.get("message"):
                    return str(error["message"])
                if isinstance(error, str):
                    return error
                if "detail" in error_data:
                    return str(error_data["detail"])
            return response.text[:200]
        except Exception:
            return response.text[:200] if response.text else "No error detail available"


def dedupe_preserving_order(urls: list[str]) -> list[str]:
    seen: set[str] = set()
    unique = []
    for url in urls:
        if url not in seen:
            seen.add(url)
            unique.append(url)
    return unique


def require_url(value: Any, source: str) -> str:
    """Return value if it is a non-empty string URL, else raise CitationParseError."""
    if not isinstance(value, str) or not value.strip():
        raise CitationParseError(f"Invalid citation URL in {source}: {value!r}")
    return value.strip()
