"""Retry orchestration around single transport attempts.

State machine per logical request::

    Attempting(n) --ok--------------------------------> Done
    Attempting(n) --retryable, n < max, nothing sent--> Backoff(n) -> Attempting(n+1)
    Attempting(n) --otherwise-------------------------> StreamError -> Done

The orchestrator owns the terminal ``Done``: it is emitted exactly once per
call, whatever happens inside the attempts.

A retryable failure is not retried once an attempt has already delivered
chunks to the caller. Replaying the request would repeat that text, so the
error is reported after the partial answer instead. This departs from a
plain "retry while n < max" loop on purpose.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Sequence

from chat_relay.config import ModelConfig
from chat_relay.llm.adapters.base import ProviderAdapter
from chat_relay.llm.errors import classify, exhausted
from chat_relay.llm.transport import StreamingTransport
from chat_relay.types import (
    AttemptResult,
    ChatMessage,
    Chunk,
    ClassifiedError,
    Done,
    RetryState,
    StreamError,
    StreamEvent,
)

_logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MAX_DELAY = 30


def backoff_delay(attempt: int, max_delay: int = DEFAULT_MAX_DELAY) -> int:
    """Seconds to wait after failed attempt *attempt* (1-based)."""
    return min(2 * attempt * attempt, max_delay)


def retry_notice(delay: int, next_attempt: int, max_attempts: int) -> str:
    return (f"\n[Request failed, retrying in {delay}s "
            f"(attempt {next_attempt}/{max_attempts})...]\n")


class RetryOrchestrator:
    """Drives up to ``max_attempts`` transport attempts with backoff."""

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        max_delay: int = DEFAULT_MAX_DELAY,
    ):
        self.max_attempts = max_attempts
        self.max_delay = max_delay

    def attempt(
        self,
        adapter: ProviderAdapter,
        transport: StreamingTransport,
        config: ModelConfig,
        messages: Sequence[ChatMessage],
        on_event: Callable[[StreamEvent], None],
        max_attempts: int | None = None,
        cancelled: Callable[[], bool] | None = None,
    ) -> RetryState:
        """Run the request to completion on the calling (worker) thread."""
        state = RetryState(max_attempts=max_attempts or self.max_attempts)
        is_cancelled = cancelled or (lambda: False)
        context: list[int] | None = None

        try:
            while state.attempt < state.max_attempts:
                if is_cancelled():
                    _logger.debug("Request to %s cancelled before attempt %d",
                                  config.id, state.attempt + 1)
                    break
                state.attempt += 1
                prepared = adapter.prepare(config, messages)
                result = transport.execute(prepared, adapter, config, on_event, cancelled)

                if result.ok:
                    state.last_error = None
                    assert result.completion is not None
                    context = result.completion.context
                    if not is_cancelled():
                        adapter.record_turn(config, messages, result.completion)
                    break

                assert result.error is not None
                state.last_error = result.error
                if self._should_retry(state, result) and not is_cancelled():
                    delay = backoff_delay(state.attempt, self.max_delay)
                    _logger.warning(
                        "%s attempt %d/%d failed (%s), retrying in %ds",
                        config.display_name, state.attempt, state.max_attempts,
                        result.error.category.value, delay)
                    on_event(Chunk(retry_notice(delay, state.attempt + 1, state.max_attempts)))
                    time.sleep(delay)
                    continue

                final = self._terminal_error(state, result.error)
                state.last_error = final
                if not result.reported and not is_cancelled():
                    _logger.warning("%s request failed after %d attempt(s)",
                                    config.display_name, state.attempt)
                    on_event(StreamError(final))
                break
        except Exception as e:
            _logger.exception("Unexpected error while requesting %s", config.display_name)
            state.last_error = classify(
                exception=e, provider=config.provider, model_name=config.model_name)
            try:
                on_event(StreamError(state.last_error))
            except Exception:
                _logger.exception("Failed to deliver error for %s", config.id)
        finally:
            on_event(Done(context=context))
        return state

    @staticmethod
    def _should_retry(state: RetryState, result: AttemptResult) -> bool:
        assert result.error is not None
        return (
            result.error.is_retryable
            and not result.reported
            # retrying after partial output would duplicate it
            and result.chunks_emitted == 0
            and state.attempt < state.max_attempts
        )

    @staticmethod
    def _terminal_error(state: RetryState, error: ClassifiedError) -> ClassifiedError:
        if error.is_retryable and state.attempt >= state.max_attempts and state.attempt > 1:
            return exhausted(error, state.attempt)
        return error
