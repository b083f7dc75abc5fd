"""Retry handling for remote sessions.

Only transport failures are retried. A command that ran and exited non-zero
is an answer, not a failure, and is never repeated.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable

from .exceptions import ErrorTypes, TransportError

logger = logging.getLogger(__name__)

RETRYABLE_ERROR_TYPES = frozenset(
    {
        ErrorTypes.CONNECTION_TIMEOUT,
        ErrorTypes.CONNECTION_REFUSED,
        ErrorTypes.HOST_UNREACHABLE,
        ErrorTypes.AUTHENTICATION_FAILED,
        ErrorTypes.SESSION_ERROR,
    }
)


@dataclass
class RetryConfig:
    """How often, and how patiently, a failed session is retried.

    Attributes:
        max_attempts: Extra attempts after the first (0 = no retries)
        delay: Seconds to wait before the first retry
        backoff_factor: Multiplier applied to the delay per retry (1.0 = fixed)
        max_delay: Upper bound on any single delay
        retry_on: Error types to retry (defaults to every transport error)
    """

    max_attempts: int = 1
    delay: float = 3.0
    backoff_factor: float = 1.0
    max_delay: float = 60.0
    retry_on: frozenset[str] = RETRYABLE_ERROR_TYPES

    @property
    def total_attempts(self) -> int:
        return max(0, self.max_attempts) + 1

    def with_attempts(self, max_attempts: int) -> "RetryConfig":
        return replace(self, max_attempts=max_attempts)

    def retries(self, error_type: str) -> bool:
        return error_type in self.retry_on

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows ``attempt`` (1-based)."""
        scaled = self.delay * self.backoff_factor ** max(0, attempt - 1)
        return min(max(scaled, 0.0), self.max_delay)


@dataclass
class RetryState:
    """Attempts made for one call and the transport errors they hit."""

    host: str
    attempts: int = 0
    errors: list[TransportError] = field(default_factory=list)
    succeeded: bool = False

    @property
    def last_error_type(self) -> str:
        return self.errors[-1].error_type if self.errors else ""


async def retry_with_backoff(
    operation: Callable[[], Awaitable[Any]],
    config: RetryConfig,
    host: str = "",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> tuple[Any, RetryState]:
    """Await ``operation()`` until it stops raising TransportError.

    ``operation`` must return a fresh awaitable on every call. ``sleep`` is
    injectable so tests can observe the delays without waiting.

    Raises:
        TransportError: The last error, once attempts are exhausted or the
            error type is not retryable
    """
    state = RetryState(host=host)
    while True:
        state.attempts += 1
        try:
            result = await operation()
        except TransportError as e:
            state.errors.append(e)
            if state.attempts >= config.total_attempts or not config.retries(e.error_type):
                raise
            wait = config.delay_for(state.attempts)
            logger.info(
                f"Attempt {state.attempts}/{config.total_attempts} on {host} failed "
                f"({e.error_type}), retrying in {wait:.1f}s"
            )
            await sleep(wait)
            continue
        state.succeeded = True
        return result, state
