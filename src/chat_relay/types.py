"""Shared data types for chat-relay."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Protocol, Union


# ---------------------------------------------------------------------------
# Conversation types
# ---------------------------------------------------------------------------

_ROLES = ("system", "user", "assistant")


@dataclass(frozen=True)
class ChatMessage:
    """One message of a conversation. Sequences are chronological."""

    role: str
    content: str

    def __post_init__(self) -> None:
        if self.role not in _ROLES:
            raise ValueError(f"Unknown chat role: {self.role!r}")

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def coerce(cls, item: Any) -> ChatMessage:
        """Accept a ChatMessage, a ``(role, content)`` pair or a dict."""
        if isinstance(item, ChatMessage):
            return item
        if isinstance(item, dict):
            return cls(role=item.get("role", ""), content=item.get("content") or "")
        try:
            role, content = item
        except (TypeError, ValueError):
            raise ValueError(f"Not a chat message: {item!r}") from None
        return cls(role=role, content=content or "")


# ---------------------------------------------------------------------------
# Error types
# ---------------------------------------------------------------------------

class ApiKind(enum.Enum):
    """Which family of backend produced an error (drives message wording)."""

    LOCAL = "local"
    THIRD_PARTY = "third_party"
    OFFICIAL = "official"
    UNKNOWN = "unknown"


class ErrorCategory(enum.Enum):
    CONNECTIVITY = "connectivity"
    HTTP_STATUS = "http_status"
    MALFORMED_RESPONSE = "malformed_response"
    RETRY_EXHAUSTED = "retry_exhausted"


@dataclass(frozen=True)
class ClassifiedError:
    """A failure normalized into something the UI can show as-is."""

    api_kind: ApiKind
    category: ErrorCategory
    is_retryable: bool
    user_message: str
    status_code: int | None = None
    raw_body: str | None = None


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Chunk:
    """An incremental piece of model output."""

    text: str


@dataclass(frozen=True)
class Done:
    """End of stream. ``context`` is an opaque continuation token array."""

    context: list[int] | None = None


@dataclass(frozen=True)
class StreamError:
    """A classified error surfaced in-band."""

    error: ClassifiedError


StreamEvent = Union[Chunk, Done, StreamError]


# ---------------------------------------------------------------------------
# Attempt / request bookkeeping
# ---------------------------------------------------------------------------

@dataclass
class Completion:
    """What a successful attempt produced."""

    text: str = ""
    context: list[int] | None = None


@dataclass
class AttemptResult:
    """Outcome of one transport attempt: a completion or a classified error."""

    completion: Completion | None = None
    error: ClassifiedError | None = None
    chunks_emitted: int = 0
    # the error was already forwarded to the caller as a StreamError
    reported: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, completion: Completion, chunks_emitted: int = 0) -> AttemptResult:
        return cls(completion=completion, chunks_emitted=chunks_emitted)

    @classmethod
    def failure(
        cls, error: ClassifiedError, chunks_emitted: int = 0, reported: bool = False,
    ) -> AttemptResult:
        return cls(error=error, chunks_emitted=chunks_emitted, reported=reported)


@dataclass
class RetryState:
    attempt: int = 0
    max_attempts: int = 3
    last_error: ClassifiedError | None = None


@dataclass
class RequestHandle:
    """One logical request, across all of its retries."""

    request_id: str
    superseded: bool = False
    done_delivered: bool = False


@dataclass
class PreparedRequest:
    """Everything the transport needs to open one HTTP call."""

    url: str
    headers: dict[str, str]
    body: dict[str, Any]
    stream: bool = True
    read_timeout: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Sink
# ---------------------------------------------------------------------------

class ChunkSink(Protocol):
    """Typed receiver for streamed output (the UI side)."""

    def on_chunk(self, text: str) -> None:
        ...

    def on_done(self) -> None:
        ...
