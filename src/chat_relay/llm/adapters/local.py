"""Adapter for local OpenAI-compatible servers (vLLM, LM Studio)."""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence

from chat_relay.config import ModelConfig
from chat_relay.types import ChatMessage, Chunk, Done, StreamEvent

from .base import USER_AGENT
from .openai_compat import DONE_MARKER, GenericAdapter

_logger = logging.getLogger(__name__)


class LocalOpenAIAdapter(GenericAdapter):
    """Plain ``/chat/completions`` SSE against a server on the user's machine.

    No provider auth heuristics: the key is optional and always sent as a
    Bearer token. Only ``choices[0].delta.content`` carries text.
    """

    name = "local"

    def endpoint(self, config: ModelConfig, messages: Sequence[ChatMessage] = ()) -> str:
        url = config.api_url.strip().rstrip("/")
        if url.endswith("/chat/completions"):
            return url
        return url + "/chat/completions"

    def authenticate(self, config: ModelConfig) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if config.stream else "application/json",
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
        payload: dict[str, Any] = {
            "model": config.model_name,
            "messages": [m.to_dict() for m in messages],
            "stream": stream,
        }
        if config.temperature is not None:
            payload["temperature"] = config.temperature
        if config.max_tokens is not None and config.max_tokens > 0:
            payload["max_tokens"] = config.max_tokens
        return payload

    def parse_line(self, line: str, config: ModelConfig) -> StreamEvent | None:
        line = line.strip()
        if not line.startswith("data:"):
            return None
        payload = line[5:].strip()
        if not payload:
            return None
        if payload == DONE_MARKER:
            return Done()
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            _logger.warning("Failed to parse %s stream line %r: %s",
                            config.provider.display_name, payload[:200], e)
            return None
        if not isinstance(data, dict):
            return None
        if data.get("error"):
            return self.payload_error(payload, config)
        choices = data.get("choices")
        if not (isinstance(choices, list) and choices and isinstance(choices[0], dict)):
            return None
        delta = choices[0].get("delta")
        content = delta.get("content") if isinstance(delta, dict) else None
        return Chunk(content) if isinstance(content, str) and content else None
