"""Tests for the retry orchestrator and backoff law."""

from __future__ import annotations

import json
from unittest.mock import patch

import httpx
import pytest

from chat_relay.config import ModelConfig, ModelProvider
from chat_relay.llm.adapters import GenericAdapter, OllamaAdapter
from chat_relay.llm.errors import classify
from chat_relay.llm.pool import WorkerPool
from chat_relay.llm.retry import RetryOrchestrator, backoff_delay, retry_notice
from chat_relay.llm.transport import StreamingTransport
from chat_relay.types import (
    AttemptResult,
    ChatMessage,
    Chunk,
    Completion,
    Done,
    ErrorCategory,
    StreamError,
)

MESSAGES = [ChatMessage("system", "S"), ChatMessage("user", "hi")]


@pytest.fixture
def config() -> ModelConfig:
    return ModelConfig(id="ds", provider=ModelProvider.DEEPSEEK,
                       model_name="deepseek-chat", api_key="sk-test")


def _http_transport(statuses: list[int]) -> tuple[StreamingTransport, list[int]]:
    """Transport answering with the given statuses in turn; 200 streams "ok"."""
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses[len(calls)]
        calls.append(status)
        if status == 200:
            line = json.dumps({"choices": [{"delta": {"content": "ok"}}]})
            return httpx.Response(200, text=f"data: {line}\n\ndata: [DONE]\n\n")
        return httpx.Response(status, json={"error": {"message": f"status {status}"}})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    return StreamingTransport(WorkerPool("test"), client=client), calls


class ScriptedTransport:
    """Returns pre-baked AttemptResults; callables may emit events first."""

    name = "scripted"

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    def execute(self, prepared, adapter, config, on_event, cancelled=None):
        self.calls += 1
        result = self.results.pop(0)
        if callable(result):
            return result(on_event)
        return result


def _done_count(events) -> int:
    return sum(1 for e in events if isinstance(e, Done))


class TestBackoff:
    def test_law(self):
        assert [backoff_delay(n) for n in range(1, 6)] == [2, 8, 18, 30, 30]

    def test_custom_cap(self):
        assert backoff_delay(3, max_delay=10) == 10

    def test_notice_mentions_next_attempt(self):
        assert "attempt 2/3" in retry_notice(2, 2, 3)
        assert "2s" in retry_notice(2, 2, 3)


class TestRetryScenarios:
    def test_two_503_then_success(self, config):
        transport, calls = _http_transport([503, 503, 200])
        events = []
        with patch("chat_relay.llm.retry.time.sleep") as sleep:
            state = RetryOrchestrator().attempt(
                GenericAdapter(), transport, config, MESSAGES, events.append)

        assert calls == [503, 503, 200]
        assert [c.args[0] for c in sleep.call_args_list] == [2, 8]
        assert state.attempt == 3
        assert state.last_error is None

        notices = [e for e in events[:2] if isinstance(e, Chunk)]
        assert len(notices) == 2
        assert "attempt 2/3" in notices[0].text
        assert "attempt 3/3" in notices[1].text
        assert events[2:] == [Chunk("ok"), Done()]

    def test_non_retryable_fails_immediately(self, config):
        transport, calls = _http_transport([401])
        events = []
        with patch("chat_relay.llm.retry.time.sleep") as sleep:
            state = RetryOrchestrator().attempt(
                GenericAdapter(), transport, config, MESSAGES, events.append)

        assert calls == [401]
        sleep.assert_not_called()
        assert len(events) == 2
        assert isinstance(events[0], StreamError)
        assert "Status: 401" in events[0].error.user_message
        assert events[1] == Done()
        assert state.last_error.status_code == 401

    def test_exhausted(self, config):
        transport, calls = _http_transport([503, 503, 503])
        events = []
        with patch("chat_relay.llm.retry.time.sleep") as sleep:
            state = RetryOrchestrator().attempt(
                GenericAdapter(), transport, config, MESSAGES, events.append)

        assert len(calls) == 3
        assert sleep.call_count == 2
        final = events[-2]
        assert isinstance(final, StreamError)
        assert final.error.category == ErrorCategory.RETRY_EXHAUSTED
        assert "Gave up after 3 attempts" in final.error.user_message
        assert state.last_error.category == ErrorCategory.RETRY_EXHAUSTED
        assert _done_count(events) == 1

    def test_max_attempts_override(self, config):
        transport, calls = _http_transport([503])
        events = []
        with patch("chat_relay.llm.retry.time.sleep") as sleep:
            RetryOrchestrator().attempt(
                GenericAdapter(), transport, config, MESSAGES, events.append,
                max_attempts=1)
        assert len(calls) == 1
        sleep.assert_not_called()
        assert isinstance(events[0], StreamError)
        assert _done_count(events) == 1


class TestRetryRules:
    def _retryable(self, config):
        return classify(status_code=503, provider=config.provider)

    def test_no_retry_after_partial_output(self, config):
        def partial(on_event):
            on_event(Chunk("half"))
            return AttemptResult.failure(self._retryable(config), chunks_emitted=1)

        transport = ScriptedTransport(partial)
        events = []
        with patch("chat_relay.llm.retry.time.sleep") as sleep:
            RetryOrchestrator().attempt(GenericAdapter(), transport, config,
                                        MESSAGES, events.append)
        assert transport.calls == 1
        sleep.assert_not_called()
        assert events[0] == Chunk("half")
        assert isinstance(events[1], StreamError)
        assert events[2] == Done()

    def test_reported_error_not_repeated(self, config):
        error = classify(raw_body='{"error": "filtered"}', provider=config.provider)

        def reported(on_event):
            on_event(StreamError(error))
            return AttemptResult.failure(error, chunks_emitted=1, reported=True)

        events = []
        RetryOrchestrator().attempt(GenericAdapter(), ScriptedTransport(reported),
                                    config, MESSAGES, events.append)
        assert events == [StreamError(error), Done()]

    def test_unexpected_exception_still_done_once(self, config):
        def boom(on_event):
            raise RuntimeError("adapter bug")

        events = []
        state = RetryOrchestrator().attempt(GenericAdapter(), ScriptedTransport(boom),
                                            config, MESSAGES, events.append)
        assert isinstance(events[0], StreamError)
        assert "adapter bug" in events[0].error.user_message
        assert events[-1] == Done()
        assert _done_count(events) == 1
        assert state.last_error is not None

    def test_cancelled_before_start(self, config):
        transport = ScriptedTransport()
        events = []
        RetryOrchestrator().attempt(GenericAdapter(), transport, config, MESSAGES,
                                    events.append, cancelled=lambda: True)
        assert transport.calls == 0
        assert events == [Done()]

    def test_cancel_stops_retries(self, config):
        flag = {"cancelled": False}

        def fail_then_cancel(on_event):
            flag["cancelled"] = True
            return AttemptResult.failure(self._retryable(config))

        transport = ScriptedTransport(fail_then_cancel)
        events = []
        with patch("chat_relay.llm.retry.time.sleep") as sleep:
            RetryOrchestrator().attempt(GenericAdapter(), transport, config, MESSAGES,
                                        events.append, cancelled=lambda: flag["cancelled"])
        assert transport.calls == 1
        sleep.assert_not_called()
        assert events == [Done()]

    def test_success_records_turn(self):
        config = ModelConfig(id="o", provider=ModelProvider.OLLAMA, model_name="qwen3:8b")
        adapter = OllamaAdapter()
        transport = ScriptedTransport(
            AttemptResult.success(Completion("answer", context=[5, 6]), chunks_emitted=1))
        events = []
        RetryOrchestrator().attempt(adapter, transport, config, MESSAGES, events.append)
        assert adapter.context_for(config) == [5, 6]
        assert events == [Done(context=[5, 6])]
