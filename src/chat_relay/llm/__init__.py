"""Backend plumbing: adapters, transport, retries and error classification."""

from chat_relay.llm.errors import classify
from chat_relay.llm.pool import WorkerPool
from chat_relay.llm.registry import AdapterRegistry, Route
from chat_relay.llm.retry import RetryOrchestrator, backoff_delay
from chat_relay.llm.transport import StreamingTransport

__all__ = [
    "AdapterRegistry",
    "RetryOrchestrator",
    "Route",
    "StreamingTransport",
    "WorkerPool",
    "backoff_delay",
    "classify",
]
