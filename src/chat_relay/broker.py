"""Request isolation broker: the public entry point of chat-relay.

Only one request is *current* at a time. Starting a new one supersedes the
previous one, and every callback is re-checked against that state at the
moment of delivery, so a slow stream from an old request can never write
into the newer conversation. Stopping is cooperative: the HTTP call may run
on, but nothing more from it reaches the caller.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Iterable

from chat_relay.config import ModelConfig, RelayConfig
from chat_relay.exceptions import RelayError
from chat_relay.llm.registry import AdapterRegistry
from chat_relay.llm.retry import RetryOrchestrator
from chat_relay.types import (
    ChatMessage,
    ChunkSink,
    Chunk,
    Done,
    RequestHandle,
    StreamError,
    StreamEvent,
)

_logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], Any]
DoneCallback = Callable[[], Any]


def build_messages(
    system_prompt: str,
    history: Iterable[Any],
    user_message: str,
) -> list[ChatMessage]:
    """``[system] + history + [user]``; history items may be pairs or dicts."""
    messages: list[ChatMessage] = []
    if system_prompt.strip():
        messages.append(ChatMessage("system", system_prompt))
    messages.extend(ChatMessage.coerce(item) for item in history)
    messages.append(ChatMessage("user", user_message))
    return messages


class RequestBroker:
    """Dispatches chat requests and isolates their callbacks.

    Parameters
    ----------
    config:
        Relay configuration (models, system prompt, pool and retry settings).
    registry:
        Provider dispatch table. Built from ``config.transport`` when omitted.
    orchestrator:
        Retry policy. Built from ``config.retry`` when omitted.
    """

    def __init__(
        self,
        config: RelayConfig | None = None,
        registry: AdapterRegistry | None = None,
        orchestrator: RetryOrchestrator | None = None,
    ) -> None:
        self.config = config or RelayConfig()
        self.registry = registry or AdapterRegistry.from_settings(self.config.transport)
        self.orchestrator = orchestrator or RetryOrchestrator(
            max_attempts=self.config.retry.max_attempts,
            max_delay=self.config.retry.max_delay,
        )
        self._lock = threading.Lock()
        self._current: RequestHandle | None = None
        self._stop_requested = False
        self._superseded: OrderedDict[str, None] = OrderedDict()
        self._superseded_capacity = self.config.isolation.superseded_capacity
        self._last_id = 0

    # ------------------------------------------------------------------
    # Isolation state (all of it guarded by self._lock)
    # ------------------------------------------------------------------

    def _next_request_id(self) -> str:
        now = time.time_ns() // 1_000_000
        self._last_id = max(now, self._last_id + 1)
        return str(self._last_id)

    def _mark_superseded(self, request_id: str) -> None:
        self._superseded[request_id] = None
        self._superseded.move_to_end(request_id)
        while len(self._superseded) > self._superseded_capacity:
            self._superseded.popitem(last=False)

    def _is_live(self, handle: RequestHandle) -> bool:
        return (
            not handle.superseded
            and not self._stop_requested
            and handle.request_id not in self._superseded
        )

    def _begin(self, request_id: str | None) -> RequestHandle:
        with self._lock:
            rid = request_id or self._next_request_id()
            previous = self._current
            if previous is not None and previous.request_id != rid:
                previous.superseded = True
                self._mark_superseded(previous.request_id)
                _logger.debug("Request %s superseded by %s", previous.request_id, rid)
            elif previous is not None:
                # same id reused: the old handle's output now belongs to no one
                previous.superseded = True
            self._superseded.pop(rid, None)
            handle = RequestHandle(rid)
            self._current = handle
            self._stop_requested = False
            return handle

    @property
    def current_request_id(self) -> str | None:
        with self._lock:
            return self._current.request_id if self._current else None

    def is_superseded(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._superseded

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    @staticmethod
    def _safe_call(callback: Callable[..., Any], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            _logger.exception("Error in callback %r", callback)

    def _deliver_chunk(
        self, handle: RequestHandle, on_chunk: ChunkCallback, text: str,
    ) -> None:
        with self._lock:
            live = self._is_live(handle)
        if live:
            self._safe_call(on_chunk, text)

    def _deliver_done(self, handle: RequestHandle, on_done: DoneCallback) -> None:
        with self._lock:
            if handle.done_delivered:
                return
            handle.done_delivered = True
            live = self._is_live(handle)
            if live and self._current is handle:
                self._current = None
        if live:
            self._safe_call(on_done)

    def _event_sink(
        self,
        handle: RequestHandle,
        on_chunk: ChunkCallback,
        on_done: DoneCallback,
    ) -> Callable[[StreamEvent], None]:
        def on_event(event: StreamEvent) -> None:
            if isinstance(event, Chunk):
                self._deliver_chunk(handle, on_chunk, event.text)
            elif isinstance(event, StreamError):
                self._deliver_chunk(handle, on_chunk, event.error.user_message)
            elif isinstance(event, Done):
                self._deliver_done(handle, on_done)
        return on_event

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def send_chat_message(
        self,
        config: ModelConfig | str | None,
        user_message: str,
        on_chunk: ChunkCallback,
        on_done: DoneCallback,
        history: Iterable[Any] = (),
        request_id: str | None = None,
    ) -> str:
        """Start a request and return its id. Never blocks on I/O.

        *config* is a ``ModelConfig`` or the id of a configured model (the
        default model when ``None``). Output arrives through *on_chunk*,
        followed by exactly one *on_done*, unless the request is superseded
        or stopped first.
        """
        handle = self._begin(request_id)
        on_event = self._event_sink(handle, on_chunk, on_done)

        try:
            model = config if isinstance(config, ModelConfig) else self.config.get_model(config)
            route = self.registry.route_for(model.provider)
            messages = build_messages(self.config.system_prompt, history, user_message)
        except Exception as e:
            _logger.warning("Request %s rejected: %s", handle.request_id, e)
            on_event(Chunk(str(e)))
            on_event(Done())
            return handle.request_id

        def cancelled() -> bool:
            with self._lock:
                return not self._is_live(handle)

        def run() -> None:
            self.orchestrator.attempt(
                route.adapter, route.transport, model, messages, on_event,
                cancelled=cancelled,
            )

        _logger.debug("Request %s -> %s via %s",
                      handle.request_id, model.id, route.adapter.name)
        try:
            route.transport.submit(run)
        except RelayError as e:
            _logger.warning("Request %s not dispatched: %s", handle.request_id, e)
            on_event(Chunk(str(e)))
            on_event(Done())
        return handle.request_id

    def send_to_sink(
        self,
        config: ModelConfig | str | None,
        user_message: str,
        sink: ChunkSink,
        history: Iterable[Any] = (),
        request_id: str | None = None,
    ) -> str:
        """``send_chat_message`` for a typed sink object."""
        return self.send_chat_message(
            config, user_message, sink.on_chunk, sink.on_done,
            history=history, request_id=request_id,
        )

    def stop_current_request(self, request_id: str | None = None) -> None:
        """Stop delivering output for the current request (or *request_id*)."""
        with self._lock:
            current = self._current
            if request_id is not None and (current is None or current.request_id != request_id):
                self._mark_superseded(request_id)
                _logger.info("Stopped request %s", request_id)
                return
            self._stop_requested = True
            if current is not None:
                current.superseded = True
                self._mark_superseded(current.request_id)
                _logger.info("Stopped request %s", current.request_id)
            self._current = None

    def clear_chat_history(self) -> None:
        """Forget adapter-held conversation state (e.g. Ollama context)."""
        self.registry.reset()

    def close(self) -> None:
        self.stop_current_request()
        self.registry.close()

    def __enter__(self) -> RequestBroker:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
