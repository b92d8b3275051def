"""Tests for StreamingTransport against httpx.MockTransport backends."""

from __future__ import annotations

import json

import httpx
import pytest

from chat_relay.config import ModelConfig, ModelProvider
from chat_relay.llm.adapters import GenericAdapter, OllamaAdapter
from chat_relay.llm.pool import WorkerPool
from chat_relay.llm.transport import StreamingTransport
from chat_relay.types import ChatMessage, Chunk, ErrorCategory, StreamError


def _sse(*contents: str, done: bool = True) -> str:
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": c}}]}) + "\n\n"
        for c in contents
    ]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines)


def _transport(handler) -> StreamingTransport:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return StreamingTransport(WorkerPool("test"), client=client)


@pytest.fixture
def config() -> ModelConfig:
    return ModelConfig(id="gpt", provider=ModelProvider.CHATGPT,
                       model_name="gpt-4o", api_key="sk-test")


MESSAGES = [ChatMessage("user", "hi")]


def _run(transport, adapter, config, cancelled=None):
    events = []
    prepared = adapter.prepare(config, MESSAGES)
    result = transport.execute(prepared, adapter, config, events.append, cancelled)
    return result, events


class TestStreaming:
    def test_chunks_forwarded_in_order(self, config):
        transport = _transport(lambda request: httpx.Response(200, text=_sse("Hel", "lo")))
        result, events = _run(transport, GenericAdapter(), config)
        assert events == [Chunk("Hel"), Chunk("lo")]
        assert result.ok
        assert result.completion.text == "Hello"
        assert result.chunks_emitted == 2

    def test_request_shape(self, config):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, text=_sse("ok"))

        _run(_transport(handler), GenericAdapter(), config)
        assert seen["url"] == "https://api.openai.com/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["stream"] is True
        assert seen["body"]["messages"] == [{"role": "user", "content": "hi"}]

    def test_malformed_line_between_chunks_is_skipped(self, config):
        body = _sse("A", done=False) + "data: {not json\n\n" + _sse("B")
        result, events = _run(_transport(lambda r: httpx.Response(200, text=body)),
                              GenericAdapter(), config)
        assert events == [Chunk("A"), Chunk("B")]
        assert result.ok
        assert result.completion.text == "AB"

    def test_stops_at_done_marker(self, config):
        body = _sse("a") + _sse("ignored", done=False)
        result, events = _run(_transport(lambda r: httpx.Response(200, text=body)),
                              GenericAdapter(), config)
        assert events == [Chunk("a")]

    def test_eof_without_done_is_success(self, config):
        result, events = _run(
            _transport(lambda r: httpx.Response(200, text=_sse("x", done=False))),
            GenericAdapter(), config)
        assert result.ok
        assert events == [Chunk("x")]

    def test_in_band_error_is_forwarded_once(self, config):
        body = 'data: {"error": {"message": "content filtered"}}\n\n'
        result, events = _run(_transport(lambda r: httpx.Response(200, text=body)),
                              GenericAdapter(), config)
        assert len(events) == 1
        assert isinstance(events[0], StreamError)
        assert not result.ok
        assert result.reported

    def test_cancelled_stream_stops_early(self, config):
        result, events = _run(_transport(lambda r: httpx.Response(200, text=_sse("a", "b"))),
                              GenericAdapter(), config, cancelled=lambda: True)
        assert events == []
        assert result.ok
        assert result.completion.text == ""

    def test_ollama_ndjson_keeps_context(self):
        config = ModelConfig(id="o", provider=ModelProvider.OLLAMA, model_name="qwen3:8b")
        body = (
            '{"response":"Hi","done":false}\n'
            '{"response":" there","done":false}\n'
            '{"response":"","done":true,"context":[7,8]}\n'
        )
        result, events = _run(_transport(lambda r: httpx.Response(200, text=body)),
                              OllamaAdapter(), config)
        assert events == [Chunk("Hi"), Chunk(" there")]
        assert result.completion.text == "Hi there"
        assert result.completion.context == [7, 8]


class TestFailures:
    def test_retryable_status(self, config):
        transport = _transport(
            lambda r: httpx.Response(503, json={"error": {"message": "overloaded"}}))
        result, events = _run(transport, GenericAdapter(), config)
        assert events == []
        assert not result.ok
        assert result.error.status_code == 503
        assert result.error.is_retryable
        assert "overloaded" in result.error.user_message
        assert "overloaded" in result.error.raw_body

    def test_auth_failure_not_retryable(self, config):
        result, _ = _run(_transport(lambda r: httpx.Response(401, text="Unauthorized")),
                         GenericAdapter(), config)
        assert result.error.status_code == 401
        assert not result.error.is_retryable

    def test_connect_error_is_classified(self, config):
        def handler(request):
            raise httpx.ConnectError("[Errno 111] Connection refused", request=request)

        result, events = _run(_transport(handler), GenericAdapter(), config)
        assert events == []
        assert result.error.category == ErrorCategory.CONNECTIVITY
        assert result.error.is_retryable
        assert result.chunks_emitted == 0

    def test_read_timeout_is_classified(self, config):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result, _ = _run(_transport(handler), GenericAdapter(), config)
        assert result.error.is_retryable


class TestNonStreaming:
    def test_single_chunk(self, config):
        config = config.model_copy(update={"stream": False})
        body = {"choices": [{"message": {"content": "whole answer"}}]}
        seen = {}

        def handler(request):
            seen["stream"] = json.loads(request.content)["stream"]
            return httpx.Response(200, json=body)

        result, events = _run(_transport(handler), GenericAdapter(), config)
        assert seen["stream"] is False
        assert events == [Chunk("whole answer")]
        assert result.chunks_emitted == 1

    def test_malformed_body(self, config):
        config = config.model_copy(update={"stream": False})
        result, events = _run(_transport(lambda r: httpx.Response(200, text="<html>oops")),
                              GenericAdapter(), config)
        assert events == []
        assert result.error.category == ErrorCategory.MALFORMED_RESPONSE
        assert not result.error.is_retryable

    def test_error_body(self, config):
        config = config.model_copy(update={"stream": False})
        result, events = _run(
            _transport(lambda r: httpx.Response(200, json={"error": "bad model"})),
            GenericAdapter(), config)
        assert events == []
        assert not result.ok
        assert not result.reported
        assert "bad model" in result.error.user_message
