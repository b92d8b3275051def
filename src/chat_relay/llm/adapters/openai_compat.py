"""Generic adapter for hosted OpenAI-compatible chat APIs.

Covers every hosted provider (OpenAI, Anthropic's and Gemini's compatible
endpoints, DeepSeek, Qwen, Kimi, OpenRouter, ...) and user-defined endpoints.
The only per-provider differences handled here are the auth header, chosen
by matching the base URL, and where streamed text lives in the response JSON,
chosen by ``ModelConfig.response_format``.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Sequence

from chat_relay.config import ModelConfig, ResponseFormat
from chat_relay.types import ChatMessage, Chunk, Completion, Done, StreamError, StreamEvent

from .base import USER_AGENT, BaseAdapter

_logger = logging.getLogger(__name__)

DONE_MARKER = "[DONE]"
ANTHROPIC_VERSION = "2023-06-01"

# Endpoint paths that mean "the user already gave the full URL"
_COMPLETION_PATHS = ("/chat/completions", "/v1/messages")

# (label, URL substrings, scheme). First match wins; order matters because
# e.g. Gemini's OpenAI-compatible URL contains "openai".
_AUTH_RULES: tuple[tuple[str, tuple[str, ...], str], ...] = (
    ("DeepSeek", ("deepseek",), "bearer"),
    ("Qwen", ("dashscope", "aliyun", "qwen"), "bearer"),
    ("Grok", ("x.ai", "grok"), "bearer"),
    ("OpenAI", ("openai", "chatgpt"), "bearer"),
    ("Gemini", ("gemini",), "gemini"),
    ("Anthropic", ("anthropic",), "anthropic"),
    ("Kimi", ("moonshot", "kimi"), "bearer"),
    ("Zhipu", ("bigmodel.cn", "zhipu"), "bearer"),
    ("MiniMax", ("minimaxi", "minimax"), "bearer"),
)

_CONTENT_FALLBACK_RE = re.compile(r'"content"\s*:\s*"([^"]+)"')
_PATH_TOKEN_RE = re.compile(r"[^.\[\]]+|\[\d+\]")


# ---------------------------------------------------------------------------
# Content extraction
# ---------------------------------------------------------------------------

def _first_item(value: Any) -> dict[str, Any]:
    if isinstance(value, list) and value and isinstance(value[0], dict):
        return value[0]
    return {}


def _content_of(node: dict[str, Any], key: str) -> str | None:
    inner = node.get(key)
    if isinstance(inner, dict):
        content = inner.get("content")
        if isinstance(content, str):
            return content
    return None


def _top_level_content(data: dict[str, Any]) -> str | None:
    content = data.get("content")
    return content if isinstance(content, str) else None


def _coalesce(*values: str | None) -> str:
    for value in values:
        if value is not None:
            return value
    return ""


def value_at_path(data: Any, path: str) -> Any:
    """Evaluate a dotted/bracketed path such as ``choices[0].delta.content``.

    Numeric dotted segments (``choices.0.delta``) index lists too. Returns
    ``None`` as soon as a segment does not resolve.
    """
    current = data
    for token in _PATH_TOKEN_RE.findall(path):
        if token.startswith("["):
            index: int | str = int(token[1:-1])
        else:
            index = token
        if isinstance(current, dict):
            current = current.get(str(index)) if isinstance(index, int) else current.get(index)
        elif isinstance(current, list):
            try:
                current = current[int(index)]
            except (ValueError, IndexError):
                return None
        else:
            return None
        if current is None:
            return None
    return current


def extract_content(
    data: dict[str, Any],
    response_format: ResponseFormat,
    custom_path: str = "",
) -> str:
    """Streamed/complete text of one decoded response object."""
    choice = _first_item(data.get("choices"))

    if response_format is ResponseFormat.OPENAI:
        return _coalesce(_content_of(choice, "message"), _content_of(choice, "delta"))

    if response_format is ResponseFormat.ANTHROPIC:
        return _coalesce(
            _content_of(choice, "message"),
            _content_of(choice, "delta"),
            _top_level_content(data),
        )

    if response_format is ResponseFormat.GEMINI:
        candidate = _first_item(data.get("candidates"))
        return _coalesce(_content_of(candidate, "message"), _top_level_content(data))

    if not custom_path.strip():
        return ""
    value = value_at_path(data, custom_path)
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _any_content(data: dict[str, Any]) -> str:
    choice = _first_item(data.get("choices"))
    candidate = _first_item(data.get("candidates"))
    return _coalesce(
        _content_of(choice, "message"),
        _content_of(choice, "delta"),
        _content_of(candidate, "message"),
        _top_level_content(data),
    )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class GenericAdapter(BaseAdapter):
    """OpenAI-shaped requests, SSE or bare-JSON-per-line responses."""

    name = "generic"

    def __init__(self, read_timeout: float | None = None) -> None:
        self.read_timeout = read_timeout

    def endpoint(self, config: ModelConfig, messages: Sequence[ChatMessage] = ()) -> str:
        url = config.api_url.strip()
        if any(path in url for path in _COMPLETION_PATHS):
            return url
        if not url.endswith("/"):
            url += "/"
        return url + "chat/completions"

    def authenticate(self, config: ModelConfig) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json; charset=UTF-8",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        key = config.api_key.strip()
        if not key:
            _logger.warning("No API key configured for %s", config.display_name)
            return headers

        url = config.api_url.lower()
        label, scheme = "default", "bearer"
        for rule_label, markers, rule_scheme in _AUTH_RULES:
            if any(m in url for m in markers):
                label, scheme = rule_label, rule_scheme
                break

        if scheme == "anthropic":
            headers["x-api-key"] = key
            headers["anthropic-version"] = ANTHROPIC_VERSION
        elif scheme == "gemini":
            headers["x-goog-api-key"] = key
        else:
            headers["Authorization"] = f"Bearer {key}"
        _logger.debug("Auth scheme for %s: %s (%s)", config.id, scheme, label)
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
        if config.temperature is not None and config.temperature > 0:
            payload["temperature"] = config.temperature
        if config.max_tokens is not None and config.max_tokens > 0:
            payload["max_tokens"] = config.max_tokens
        payload["top_p"] = 0.9
        payload["frequency_penalty"] = 0.0
        payload["presence_penalty"] = 0.0
        return payload

    def parse_line(self, line: str, config: ModelConfig) -> StreamEvent | None:
        stripped = line.strip()
        if not stripped:
            return None
        if stripped.startswith("data:"):
            payload = stripped[5:].strip()
        elif stripped.startswith("{"):
            payload = stripped
        else:
            # event:, id:, retry: and ":" comment lines
            return None

        if payload == DONE_MARKER:
            return Done()
        if not payload:
            return None

        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            _logger.debug("Skipping undecodable stream line %r: %s", payload[:200], e)
            if '"content"' in payload:
                match = _CONTENT_FALLBACK_RE.search(payload)
                if match:
                    return Chunk(match.group(1))
            return None

        if not isinstance(data, dict):
            return None
        if data.get("error"):
            return self.payload_error(payload, config)

        content = extract_content(
            data, config.response_format or ResponseFormat.OPENAI,
            config.custom_content_path,
        )
        return Chunk(content) if content else None

    def parse_body(self, body: str, config: ModelConfig) -> Completion | StreamError:
        data = json.loads(body)
        if isinstance(data, dict) and data.get("error"):
            return self.payload_error(body, config)
        if not isinstance(data, dict):
            return Completion()
        content = extract_content(
            data, config.response_format or ResponseFormat.OPENAI,
            config.custom_content_path,
        )
        return Completion(text=content or _any_content(data))
