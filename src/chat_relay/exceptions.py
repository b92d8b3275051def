"""Internal exception types.

None of these escape ``RequestBroker``'s public methods: the broker turns
them into a chunk + done pair for the caller.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for chat-relay errors."""


class ConfigError(RelayError):
    """Configuration is missing, malformed, or references an unknown model."""


class PoolSaturatedError(RelayError):
    """The worker pool's queue stayed full for the whole submit timeout."""

    def __init__(self, pool_name: str, capacity: int) -> None:
        super().__init__(
            f"Worker pool '{pool_name}' is saturated "
            f"(queue capacity {capacity}); request rejected"
        )
        self.pool_name = pool_name
        self.capacity = capacity
