"""
Tests for the four provider adapters.

Tests cover:
- Adapter initialization and validation
- Request payloads (web search tools, geography instruction, auth headers)
- Answer text and citation extraction per backend
- Retry on transient failures, fail fast on permanent ones
- Malformed citation metadata degrading to an empty list
- Injected transports (proxy egress)
"""

import asyncio
import json
import logging

import httpx
import pytest

from visibility_tracker.exceptions import ProviderResponseError, ProviderTransportError
from visibility_tracker.providers.anthropic_client import (
    ANTHROPIC_API_URL,
    ANTHROPIC_VERSION,
    ClaudeAdapter,
)
from visibility_tracker.providers.gemini_client import GEMINI_API_BASE_URL, GeminiAdapter
from visibility_tracker.providers.models import ProviderReply
from visibility_tracker.providers.openai_client import OPENAI_API_URL, ChatGPTAdapter
from visibility_tracker.providers.perplexity_client import PERPLEXITY_API_URL, PerplexityAdapter
from visibility_tracker.providers.routing import SharedTransport

GEMINI_URL = f"{GEMINI_API_BASE_URL}/gemini-2.5-flash:generateContent"


def _payload(request: httpx.Request) -> dict:
    return json.loads(request.content)


class TestAdapterInit:
    """Test suite for shared adapter validation."""

    def test_init_success(self):
        adapter = ChatGPTAdapter("gpt-4o-mini", "sk-test123")

        assert adapter.model_name == "gpt-4o-mini"
        assert adapter.max_tokens == 1024
        assert adapter.country is None
        assert adapter.system_instruction is None

    def test_country_is_normalized(self):
        adapter = ClaudeAdapter("claude-sonnet-4-5", "sk-ant", country="de")

        assert adapter.country == "DE"
        assert "Germany" in adapter.system_instruction

    @pytest.mark.parametrize(
        ("args", "message"),
        [
            (("", "sk-test"), "model_name cannot be empty"),
            (("   ", "sk-test"), "model_name cannot be empty"),
            (("gpt-4o", ""), "api_key cannot be empty"),
            (("gpt-4o", "sk-test", 0), "max_tokens must be positive"),
            (("gpt-4o", "sk-test", 100, "XX"), "Unsupported country"),
        ],
    )
    def test_init_validation(self, args, message):
        with pytest.raises(ValueError, match=message):
            ChatGPTAdapter(*args)

    def test_init_logs_model_not_api_key(self, caplog):
        caplog.set_level(logging.INFO)

        PerplexityAdapter("sonar", "pplx-secret123")

        assert "sonar" in caplog.text
        assert "pplx-secret123" not in caplog.text

    @pytest.mark.asyncio
    async def test_empty_prompt_rejected(self):
        adapter = GeminiAdapter("gemini-2.5-flash", "AIza-test")
        with pytest.raises(ValueError, match="Prompt cannot be empty"):
            await adapter.chat("   ", "interhyp.de")

    @pytest.mark.asyncio
    async def test_oversized_prompt_rejected(self):
        adapter = GeminiAdapter("gemini-2.5-flash", "AIza-test")
        with pytest.raises(ValueError, match="exceeds maximum length"):
            await adapter.chat("x" * 100_001, "interhyp.de")


class TestChatGPTAdapter:
    """Test suite for the OpenAI Responses API adapter."""

    RESPONSE = {
        "output": [
            {"type": "web_search_call", "id": "ws_1", "status": "completed"},
            {
                "type": "message",
                "content": [
                    {
                        "type": "output_text",
                        "text": "Interhyp is a leading broker [1].",
                        "annotations": [
                            {"type": "url_citation", "url": "https://www.interhyp.de/"},
                            {"type": "url_citation", "url": "https://www.interhyp.de/"},
                            {"type": "url_citation", "url": "https://www.check24.de/"},
                        ],
                    }
                ],
            },
        ]
    }

    @pytest.mark.asyncio
    async def test_chat_success(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=OPENAI_API_URL, json=self.RESPONSE)

        adapter = ChatGPTAdapter("gpt-4o-mini", "sk-test123")
        reply = await adapter.chat("Best mortgage brokers?", "interhyp.de")

        assert reply == ProviderReply(
            text="Interhyp is a leading broker [1].",
            citations=["https://www.interhyp.de/", "https://www.check24.de/"],
        )

    @pytest.mark.asyncio
    async def test_request_enables_web_search(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=OPENAI_API_URL, json=self.RESPONSE)

        await ChatGPTAdapter("gpt-4o-mini", "sk-test123").chat("Best brokers?", "interhyp.de")

        request = httpx_mock.get_request()
        payload = _payload(request)
        assert request.headers["Authorization"] == "Bearer sk-test123"
        assert payload["model"] == "gpt-4o-mini"
        assert payload["tools"] == [{"type": "web_search"}]
        assert payload["max_output_tokens"] == 1024
        assert payload["input"] == [
            {"role": "user", "content": [{"type": "input_text", "text": "Best brokers?"}]}
        ]

    @pytest.mark.asyncio
    async def test_geography_instruction_leads(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=OPENAI_API_URL, json=self.RESPONSE)

        adapter = ChatGPTAdapter("gpt-4o-mini", "sk-test123", country="DE")
        await adapter.chat("Best brokers?", "interhyp.de")

        first = _payload(httpx_mock.get_request())["input"][0]
        assert first["role"] == "developer"
        assert "Germany" in first["content"][0]["text"]

    @pytest.mark.asyncio
    async def test_malformed_citations_degrade_to_empty(self, httpx_mock):
        response = {
            "output": [
                {
                    "type": "message",
                    "content": [
                        {
                            "type": "output_text",
                            "text": "Interhyp.",
                            "annotations": [{"type": "url_citation", "url": 42}],
                        }
                    ],
                }
            ]
        }
        httpx_mock.add_response(method="POST", url=OPENAI_API_URL, json=response)

        reply = await ChatGPTAdapter("gpt-4o-mini", "sk-test").chat("Q?", "interhyp.de")

        assert reply.text == "Interhyp."
        assert reply.citations == []

    @pytest.mark.asyncio
    async def test_missing_output(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=OPENAI_API_URL, json={"id": "resp_1"})

        with pytest.raises(ProviderResponseError, match="missing 'output'"):
            await ChatGPTAdapter("gpt-4o-mini", "sk-test").chat("Q?", "interhyp.de")

    @pytest.mark.asyncio
    async def test_no_text_content(self, httpx_mock):
        response = {"output": [{"type": "web_search_call", "id": "ws_1"}]}
        httpx_mock.add_response(method="POST", url=OPENAI_API_URL, json=response)

        with pytest.raises(ProviderResponseError, match="no text content"):
            await ChatGPTAdapter("gpt-4o-mini", "sk-test").chat("Q?", "interhyp.de")

    @pytest.mark.asyncio
    async def test_401_fails_without_retry(self, httpx_mock):
        httpx_mock.add_response(
            method="POST",
            url=OPENAI_API_URL,
            status_code=401,
            json={"error": {"message": "Incorrect API key provided"}},
        )

        with pytest.raises(ProviderTransportError, match="non-retryable.*401"):
            await ChatGPTAdapter("gpt-4o-mini", "sk-bad").chat("Q?", "interhyp.de")

        assert len(httpx_mock.get_requests()) == 1

    @pytest.mark.asyncio
    async def test_invalid_json_body(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=OPENAI_API_URL, text="<html>oops</html>")

        with pytest.raises(ProviderResponseError, match="Failed to parse"):
            await ChatGPTAdapter("gpt-4o-mini", "sk-test").chat("Q?", "interhyp.de")

    @pytest.mark.asyncio
    async def test_non_object_body(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=OPENAI_API_URL, json=[1, 2])

        with pytest.raises(ProviderResponseError, match="not a JSON object"):
            await ChatGPTAdapter("gpt-4o-mini", "sk-test").chat("Q?", "interhyp.de")


class TestClaudeAdapter:
    """Test suite for the Anthropic Messages API adapter."""

    RESPONSE = {
        "content": [
            {"type": "server_tool_use", "id": "srvtoolu_1", "name": "web_search"},
            {"type": "web_search_tool_result", "tool_use_id": "srvtoolu_1", "content": []},
            {
                "type": "text",
                "text": "Interhyp is",
                "citations": [
                    {"type": "web_search_result_location", "url": "https://www.interhyp.de/"}
                ],
            },
            {
                "type": "text",
                "text": " popular.",
                "citations": [
                    {"type": "web_search_result_location", "url": "https://www.interhyp.de/"},
                    {"type": "web_search_result_location", "url": "https://www.finanztip.de/"},
                ],
            },
        ],
        "stop_reason": "end_turn",
    }

    @pytest.mark.asyncio
    async def test_chat_success_dedupes_citations(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=ANTHROPIC_API_URL, json=self.RESPONSE)

        reply = await ClaudeAdapter("claude-sonnet-4-5", "sk-ant").chat("Q?", "interhyp.de")

        assert reply.text == "Interhyp is popular."
        assert reply.citations == ["https://www.interhyp.de/", "https://www.finanztip.de/"]

    @pytest.mark.asyncio
    async def test_request_headers_and_tools(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=ANTHROPIC_API_URL, json=self.RESPONSE)

        await ClaudeAdapter("claude-sonnet-4-5", "sk-ant", country="CH").chat("Q?", "x.ch")

        request = httpx_mock.get_request()
        payload = _payload(request)
        assert request.headers["x-api-key"] == "sk-ant"
        assert request.headers["anthropic-version"] == ANTHROPIC_VERSION
        assert payload["tools"][0]["type"] == "web_search_20250305"
        assert payload["messages"] == [{"role": "user", "content": "Q?"}]
        assert "Switzerland" in payload["system"]

    @pytest.mark.asyncio
    async def test_retries_on_503(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=ANTHROPIC_API_URL, status_code=503)
        httpx_mock.add_response(method="POST", url=ANTHROPIC_API_URL, json=self.RESPONSE)

        reply = await ClaudeAdapter("claude-sonnet-4-5", "sk-ant").chat("Q?", "interhyp.de")

        assert reply.text == "Interhyp is popular."
        assert len(httpx_mock.get_requests()) == 2

    @pytest.mark.asyncio
    async def test_error_detail_includes_type(self, httpx_mock):
        httpx_mock.add_response(
            method="POST",
            url=ANTHROPIC_API_URL,
            status_code=400,
            json={
                "type": "error",
                "error": {"type": "invalid_request_error", "message": "bad tool"},
            },
        )

        with pytest.raises(ProviderTransportError, match="invalid_request_error: bad tool"):
            await ClaudeAdapter("claude-sonnet-4-5", "sk-ant").chat("Q?", "interhyp.de")

    @pytest.mark.asyncio
    async def test_no_text_blocks(self, httpx_mock):
        response = {"content": [{"type": "server_tool_use"}], "stop_reason": "max_tokens"}
        httpx_mock.add_response(method="POST", url=ANTHROPIC_API_URL, json=response)

        with pytest.raises(ProviderResponseError, match="stop_reason=max_tokens"):
            await ClaudeAdapter("claude-sonnet-4-5", "sk-ant").chat("Q?", "interhyp.de")


class TestGeminiAdapter:
    """Test suite for the Gemini generateContent adapter."""

    RESPONSE = {
        "candidates": [
            {
                "content": {"parts": [{"text": "Interhyp "}, {"text": "leads."}]},
                "finishReason": "STOP",
                "groundingMetadata": {
                    "groundingChunks": [
                        {
                            "web": {
                                "uri": "https://vertexaisearch.cloud.google.com/grounding-api-redirect/abc",
                                "title": "redirect",
                            }
                        },
                        {"web": {"uri": "https://www.interhyp.de/", "title": "Interhyp"}},
                        {"retrievedContext": {"uri": "gs://bucket/doc"}},
                    ]
                },
            }
        ]
    }

    @pytest.mark.asyncio
    async def test_chat_success_filters_redirect_hosts(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=GEMINI_URL, json=self.RESPONSE)

        reply = await GeminiAdapter("gemini-2.5-flash", "AIza-test").chat("Q?", "interhyp.de")

        assert reply.text == "Interhyp leads."
        assert reply.citations == ["https://www.interhyp.de/"]

    @pytest.mark.asyncio
    async def test_request_enables_google_search(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=GEMINI_URL, json=self.RESPONSE)

        await GeminiAdapter("gemini-2.5-flash", "AIza-test", 512, "AT").chat("Q?", "x.at")

        request = httpx_mock.get_request()
        payload = _payload(request)
        assert request.headers["x-goog-api-key"] == "AIza-test"
        assert payload["tools"] == [{"google_search": {}}]
        assert payload["generationConfig"] == {"maxOutputTokens": 512}
        assert "Austria" in payload["systemInstruction"]["parts"][0]["text"]

    @pytest.mark.asyncio
    async def test_no_grounding_metadata(self, httpx_mock):
        response = {"candidates": [{"content": {"parts": [{"text": "Hi"}]}}]}
        httpx_mock.add_response(method="POST", url=GEMINI_URL, json=response)

        reply = await GeminiAdapter("gemini-2.5-flash", "AIza-test").chat("Q?", "interhyp.de")

        assert reply.citations == []

    @pytest.mark.asyncio
    async def test_blocked_answer(self, httpx_mock):
        response = {"candidates": [{"finishReason": "SAFETY"}]}
        httpx_mock.add_response(method="POST", url=GEMINI_URL, json=response)

        with pytest.raises(ProviderResponseError, match="blocked"):
            await GeminiAdapter("gemini-2.5-flash", "AIza-test").chat("Q?", "interhyp.de")

    @pytest.mark.asyncio
    async def test_missing_candidates_reports_block_reason(self, httpx_mock):
        response = {"promptFeedback": {"blockReason": "OTHER"}}
        httpx_mock.add_response(method="POST", url=GEMINI_URL, json=response)

        with pytest.raises(ProviderResponseError, match="blockReason=OTHER"):
            await GeminiAdapter("gemini-2.5-flash", "AIza-test").chat("Q?", "interhyp.de")


class TestPerplexityAdapter:
    """Test suite for the Perplexity chat completions adapter."""

    @pytest.mark.asyncio
    async def test_chat_success_keeps_citation_order(self, httpx_mock):
        response = {
            "choices": [{"message": {"content": "  Interhyp [1] and Check24 [2].  "}}],
            "citations": ["https://www.interhyp.de/", "https://www.check24.de/"],
        }
        httpx_mock.add_response(method="POST", url=PERPLEXITY_API_URL, json=response)

        reply = await PerplexityAdapter("sonar", "pplx-test").chat("Q?", "interhyp.de")

        assert reply.text == "Interhyp [1] and Check24 [2]."
        assert reply.citations == ["https://www.interhyp.de/", "https://www.check24.de/"]

    @pytest.mark.asyncio
    async def test_falls_back_to_search_results(self, httpx_mock):
        response = {
            "choices": [{"message": {"content": "Interhyp."}}],
            "search_results": [
                {"title": "Interhyp", "url": "https://www.interhyp.de/"},
                {"title": "No URL"},
            ],
        }
        httpx_mock.add_response(method="POST", url=PERPLEXITY_API_URL, json=response)

        reply = await PerplexityAdapter("sonar", "pplx-test").chat("Q?", "interhyp.de")

        assert reply.citations == ["https://www.interhyp.de/"]

    @pytest.mark.asyncio
    async def test_request_messages(self, httpx_mock):
        response = {"choices": [{"message": {"content": "ok"}}]}
        httpx_mock.add_response(method="POST", url=PERPLEXITY_API_URL, json=response)

        await PerplexityAdapter("sonar", "pplx-test", country="DE").chat("Q?", "interhyp.de")

        request = httpx_mock.get_request()
        messages = _payload(request)["messages"]
        assert request.headers["Authorization"] == "Bearer pplx-test"
        assert messages[0]["role"] == "system"
        assert "Germany" in messages[0]["content"]
        assert messages[1] == {"role": "user", "content": "Q?"}

    @pytest.mark.asyncio
    async def test_invalid_structure(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=PERPLEXITY_API_URL, json={"choices": []})

        with pytest.raises(ProviderResponseError, match="Invalid Perplexity response"):
            await PerplexityAdapter("sonar", "pplx-test").chat("Q?", "interhyp.de")


@pytest.mark.asyncio
async def test_injected_transport_is_used():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, json={"choices": [{"message": {"content": "via proxy"}}]})

    adapter = PerplexityAdapter("sonar", "pplx-test")
    reply = await adapter.chat("Q?", "interhyp.de", transport=httpx.MockTransport(handler))

    assert reply.text == "via proxy"
    assert seen == [PERPLEXITY_API_URL]


class LocalServerTransport(httpx.AsyncHTTPTransport):
    """Real connection-pooling transport that sends every request to a local port."""

    def __init__(self, port: int):
        super().__init__()
        self.port = port

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        request.url = request.url.copy_with(scheme="http", host="127.0.0.1", port=self.port)
        return await super().handle_async_request(request)


async def _answer_slowly(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
    """Serve one chat completion; prompts containing "slow" take a second."""
    head = await reader.readuntil(b"\r\n\r\n")
    length = 0
    for line in head.decode("latin-1").split("\r\n"):
        name, _, value = line.partition(":")
        if name.strip().lower() == "content-length":
            length = int(value.strip())
    body = await reader.readexactly(length)
    prompt = json.loads(body)["messages"][-1]["content"]

    await asyncio.sleep(1.0 if "slow" in prompt else 0.1)

    answer = json.dumps({"choices": [{"message": {"content": f"answer to {prompt}"}}]}).encode()
    writer.write(
        b"HTTP/1.1 200 OK\r\n"
        b"Content-Type: application/json\r\n"
        + f"Content-Length: {len(answer)}\r\n".encode()
        + b"Connection: close\r\n\r\n"
        + answer
    )
    await writer.drain()
    writer.close()


class TestSharedTransport:
    """Test suite for transports shared by concurrent calls."""

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_pooled_transport(self):
        server = await asyncio.start_server(_answer_slowly, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        transport = LocalServerTransport(port)
        adapter = PerplexityAdapter("sonar", "pplx-test")

        try:
            fast, slow = await asyncio.gather(
                adapter.chat("fast?", "interhyp.de", transport=transport),
                adapter.chat("slow?", "interhyp.de", transport=transport),
            )
        finally:
            await transport.aclose()
            server.close()
            await server.wait_closed()

        assert fast.text == "answer to fast?"
        assert slow.text == "answer to slow?"

    @pytest.mark.asyncio
    async def test_client_exit_leaves_transport_open(self):
        class ClosingTransport(httpx.MockTransport):
            closed = 0

            async def aclose(self):
                self.closed += 1

        inner = ClosingTransport(lambda request: httpx.Response(204))

        async with httpx.AsyncClient(transport=SharedTransport(inner)) as client:
            response = await client.get("https://example.com/")

        assert response.status_code == 204
        assert inner.closed == 0
