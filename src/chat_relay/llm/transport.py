"""Streaming HTTP transport.

Executes one prepared request against a backend and forwards parsed events.
Each call is one *attempt*: the outcome comes back as an ``AttemptResult``
instead of an exception so the retry orchestrator can decide what to do.
The transport itself never emits ``Done``.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from typing import Callable

import httpx

from chat_relay.config import ModelConfig
from chat_relay.llm.adapters.base import ProviderAdapter
from chat_relay.llm.errors import classify, exception_text
from chat_relay.llm.pool import Task, WorkerPool
from chat_relay.types import (
    AttemptResult,
    Chunk,
    Completion,
    Done,
    ErrorCategory,
    PreparedRequest,
    StreamError,
    StreamEvent,
)

_logger = logging.getLogger(__name__)

EventCallback = Callable[[StreamEvent], None]
CancelCheck = Callable[[], bool]


class StreamingTransport:
    """Runs attempts on a bounded worker pool with a shared httpx client."""

    def __init__(
        self,
        pool: WorkerPool,
        connect_timeout: float = 30,
        read_timeout: float = 60,
        client: httpx.Client | None = None,
    ):
        self.pool = pool
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(read_timeout, connect=connect_timeout),
        )

    @property
    def name(self) -> str:
        return self.pool.name

    def submit(self, task: Task) -> None:
        """Queue *task* (a whole retry loop) on this transport's pool."""
        self.pool.submit(task)

    def _timeout(self, prepared: PreparedRequest) -> httpx.Timeout:
        read = prepared.read_timeout or self.read_timeout
        return httpx.Timeout(read, connect=self.connect_timeout)

    def execute(
        self,
        prepared: PreparedRequest,
        adapter: ProviderAdapter,
        config: ModelConfig,
        on_event: EventCallback,
        cancelled: CancelCheck | None = None,
    ) -> AttemptResult:
        """Perform one HTTP attempt. Blocking; call from a worker thread."""
        chunks = 0
        parts: list[str] = []
        try:
            with self._client.stream(
                "POST",
                prepared.url,
                json=prepared.body,
                headers=prepared.headers,
                timeout=self._timeout(prepared),
            ) as resp:
                if not resp.is_success:
                    resp.read()
                    body = resp.text
                    error = classify(
                        status_code=resp.status_code,
                        raw_body=body,
                        provider=config.provider,
                        model_name=config.model_name,
                    )
                    _logger.warning("%s returned HTTP %d: %s",
                                    config.display_name, resp.status_code, body[:500])
                    return AttemptResult.failure(error)

                if not prepared.stream:
                    resp.read()
                    return self._complete(resp.text, adapter, config, on_event)

                context: list[int] | None = None
                for line in resp.iter_lines():
                    if cancelled is not None and cancelled():
                        _logger.debug("Request to %s cancelled mid-stream", config.id)
                        break
                    event = adapter.parse_line(line, config)
                    if event is None:
                        continue
                    if isinstance(event, Done):
                        context = event.context
                        break
                    if isinstance(event, StreamError):
                        on_event(event)
                        return AttemptResult.failure(
                            event.error, chunks_emitted=chunks + 1, reported=True)
                    parts.append(event.text)
                    on_event(event)
                    chunks += 1
                return AttemptResult.success(
                    Completion(text="".join(parts), context=context), chunks)

        except (httpx.HTTPError, OSError) as e:
            _logger.warning("Request to %s failed: %s",
                            config.display_name, exception_text(e))
            error = classify(
                exception=e,
                provider=config.provider,
                model_name=config.model_name,
            )
            return AttemptResult.failure(error, chunks_emitted=chunks)

    def _complete(
        self,
        body: str,
        adapter: ProviderAdapter,
        config: ModelConfig,
        on_event: EventCallback,
    ) -> AttemptResult:
        """Handle a non-streaming 2xx body."""
        try:
            result = adapter.parse_body(body, config)
        except (json.JSONDecodeError, ValueError) as e:
            _logger.warning("Malformed response from %s: %s", config.display_name, e)
            error = dataclasses.replace(
                classify(raw_body=body, provider=config.provider,
                         model_name=config.model_name),
                category=ErrorCategory.MALFORMED_RESPONSE,
            )
            return AttemptResult.failure(error)

        if isinstance(result, StreamError):
            return AttemptResult.failure(result.error)
        if not result.text:
            return AttemptResult.success(result)
        on_event(Chunk(result.text))
        return AttemptResult.success(result, chunks_emitted=1)

    def close(self) -> None:
        self.pool.shutdown(wait=False)
        if self._owns_client:
            self._client.close()
