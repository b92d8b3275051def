"""Adapter for Ollama's native API.

Ollama streams NDJSON and, for ``/api/generate``, returns a ``context`` token
array on its final line. Feeding that array back into the next request lets
the server resume the conversation without resending the transcript, so the
adapter keeps the latest context (and the turns that produced it) per model
config.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Sequence

from chat_relay.config import ModelConfig
from chat_relay.types import (
    ChatMessage,
    Chunk,
    Completion,
    Done,
    PreparedRequest,
    StreamError,
    StreamEvent,
)

from .base import USER_AGENT, BaseAdapter

_logger = logging.getLogger(__name__)

DEFAULT_NUM_CTX = 8192
DEFAULT_TEMPERATURE = 0.7

GENERATE_PATH = "/api/generate"
CHAT_PATH = "/api/chat"


def _split(messages: Sequence[ChatMessage]) -> tuple[str, list[ChatMessage], str]:
    """(system prompt, prior turns, latest user message)."""
    system = "\n\n".join(m.content for m in messages if m.role == "system")
    turns = [m for m in messages if m.role != "system"]
    user = ""
    if turns and turns[-1].role == "user":
        user = turns.pop().content
    return system, turns, user


class OllamaAdapter(BaseAdapter):
    """Ollama ``/api/generate`` and ``/api/chat`` with context threading."""

    name = "ollama"

    def __init__(self, read_timeout: float | None = None) -> None:
        self.read_timeout = read_timeout
        self._lock = threading.Lock()
        self._contexts: dict[str, list[int]] = {}
        self._history: dict[str, list[ChatMessage]] = {}

    # -- state ------------------------------------------------------------

    def context_for(self, config: ModelConfig) -> list[int] | None:
        with self._lock:
            ctx = self._contexts.get(config.id)
            return list(ctx) if ctx else None

    def history_for(self, config: ModelConfig) -> list[ChatMessage]:
        with self._lock:
            return list(self._history.get(config.id, ()))

    def record_turn(
        self,
        config: ModelConfig,
        messages: Sequence[ChatMessage],
        completion: Completion,
    ) -> None:
        _, _, user = _split(messages)
        with self._lock:
            history = self._history.setdefault(config.id, [])
            if user:
                history.append(ChatMessage("user", user))
            history.append(ChatMessage("assistant", completion.text))
            if completion.context:
                self._contexts[config.id] = list(completion.context)

    def reset(self) -> None:
        with self._lock:
            self._contexts.clear()
            self._history.clear()

    # -- request ------------------------------------------------------------

    def _options(self, config: ModelConfig) -> dict[str, Any]:
        temperature = config.temperature
        if temperature is None:
            temperature = DEFAULT_TEMPERATURE
        options: dict[str, Any] = {"temperature": temperature, "num_ctx": DEFAULT_NUM_CTX}
        if config.max_tokens is not None and config.max_tokens > 0:
            options["num_predict"] = config.max_tokens
        return options

    def _plan(
        self,
        config: ModelConfig,
        messages: Sequence[ChatMessage],
        stream: bool,
    ) -> tuple[str, dict[str, Any]]:
        """Pick the request shape: (path, body)."""
        system, turns, user = _split(messages)
        if not turns:
            turns = self.history_for(config)
        context = self.context_for(config)

        body: dict[str, Any] = {
            "model": config.model_name,
            "stream": stream,
            "options": self._options(config),
        }
        if turns and context:
            body["prompt"] = user
            body["context"] = context
            return GENERATE_PATH, body
        if turns:
            chat: list[dict[str, str]] = []
            if system:
                chat.append({"role": "system", "content": system})
            chat.extend(m.to_dict() for m in turns)
            chat.append({"role": "user", "content": user})
            body["messages"] = chat
            body["system"] = system
            return CHAT_PATH, body
        body["prompt"] = f"{system}\n\n{user}" if system else user
        return GENERATE_PATH, body

    def _base_url(self, config: ModelConfig) -> str:
        return config.api_url.strip().rstrip("/")

    def endpoint(self, config: ModelConfig, messages: Sequence[ChatMessage] = ()) -> str:
        path, _ = self._plan(config, messages, config.stream)
        return self._base_url(config) + path

    def authenticate(self, config: ModelConfig) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if config.api_key.strip():
            headers["Authorization"] = f"Bearer {config.api_key.strip()}"
        return headers

    def build_request(
        self,
        config: ModelConfig,
        messages: Sequence[ChatMessage],
        stream: bool,
    ) -> dict[str, Any]:
        _, body = self._plan(config, messages, stream)
        return body

    def prepare(
        self, config: ModelConfig, messages: Sequence[ChatMessage],
    ) -> PreparedRequest:
        path, body = self._plan(config, messages, config.stream)
        _logger.debug("Ollama request for %s via %s (context=%s)",
                      config.id, path, "context" in body)
        return PreparedRequest(
            url=self._base_url(config) + path,
            headers=self.authenticate(config),
            body=body,
            stream=config.stream,
            read_timeout=self.read_timeout,
            metadata={"path": path},
        )

    # -- response ------------------------------------------------------------

    @staticmethod
    def _text_of(data: dict[str, Any]) -> str:
        text = data.get("response")
        if isinstance(text, str):
            return text
        message = data.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return message["content"]
        return ""

    @staticmethod
    def _context_of(data: dict[str, Any]) -> list[int] | None:
        ctx = data.get("context")
        if isinstance(ctx, list) and ctx:
            return [int(x) for x in ctx]
        return None

    def parse_line(self, line: str, config: ModelConfig) -> StreamEvent | None:
        line = line.strip()
        if not line:
            return None
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            _logger.debug("Skipping undecodable Ollama line %r: %s", line[:200], e)
            return None
        if not isinstance(data, dict):
            return None
        if data.get("error"):
            return self.payload_error(line, config)
        if data.get("done"):
            return Done(context=self._context_of(data))
        text = self._text_of(data)
        return Chunk(text) if text else None

    def parse_body(self, body: str, config: ModelConfig) -> Completion | StreamError:
        data = json.loads(body)
        if not isinstance(data, dict):
            return Completion()
        if data.get("error"):
            return self.payload_error(body, config)
        return Completion(text=self._text_of(data), context=self._context_of(data))
