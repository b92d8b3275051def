"""Provider adapter protocol.

The transport never knows which backend it talks to: an adapter builds the
request (URL, headers, JSON body) and turns each response line back into a
``StreamEvent``. Adding a backend means writing one adapter and registering
it, not editing the transport.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, Sequence

from chat_relay.config import ModelConfig
from chat_relay.llm.errors import classify
from chat_relay.types import (
    ChatMessage,
    Completion,
    PreparedRequest,
    StreamError,
    StreamEvent,
)

_logger = logging.getLogger(__name__)

USER_AGENT = "chat-relay/0.1"


class ProviderAdapter(Protocol):
    """What the transport and retry orchestrator need from a backend family."""

    name: str

    def endpoint(self, config: ModelConfig, messages: Sequence[ChatMessage]) -> str:
        ...

    def authenticate(self, config: ModelConfig) -> dict[str, str]:
        ...

    def build_request(
        self, config: ModelConfig, messages: Sequence[ChatMessage], stream: bool,
    ) -> dict[str, Any]:
        ...

    def prepare(
        self, config: ModelConfig, messages: Sequence[ChatMessage],
    ) -> PreparedRequest:
        ...

    def parse_line(self, line: str, config: ModelConfig) -> StreamEvent | None:
        ...

    def parse_body(self, body: str, config: ModelConfig) -> Completion | StreamError:
        ...

    def record_turn(
        self,
        config: ModelConfig,
        messages: Sequence[ChatMessage],
        completion: Completion,
    ) -> None:
        ...

    def reset(self) -> None:
        ...


class BaseAdapter:
    """Shared plumbing: ``prepare`` and the stateless default hooks."""

    name = "base"
    read_timeout: float | None = None

    def endpoint(self, config: ModelConfig, messages: Sequence[ChatMessage]) -> str:
        raise NotImplementedError

    def authenticate(self, config: ModelConfig) -> dict[str, str]:
        raise NotImplementedError

    def build_request(
        self, config: ModelConfig, messages: Sequence[ChatMessage], stream: bool,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def prepare(
        self, config: ModelConfig, messages: Sequence[ChatMessage],
    ) -> PreparedRequest:
        return PreparedRequest(
            url=self.endpoint(config, messages),
            headers=self.authenticate(config),
            body=self.build_request(config, messages, config.stream),
            stream=config.stream,
            read_timeout=self.read_timeout,
        )

    def record_turn(
        self,
        config: ModelConfig,
        messages: Sequence[ChatMessage],
        completion: Completion,
    ) -> None:
        """Called after a successful request. Stateless adapters ignore it."""

    def reset(self) -> None:
        """Forget any conversation state."""

    @staticmethod
    def payload_error(payload: str, config: ModelConfig) -> StreamError:
        """Wrap an in-band ``error`` object as a classified stream error."""
        _logger.warning("%s returned an error payload: %s", config.model_name, payload[:500])
        return StreamError(classify(
            raw_body=payload,
            provider=config.provider,
            model_name=config.model_name,
        ))
