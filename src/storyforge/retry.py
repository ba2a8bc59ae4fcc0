"""Retry with exponential backoff and jitter for remote calls.

The delay before attempt ``k`` (k >= 2) is ``base * 2**(k-2)`` plus a random
jitter in ``[0, max_jitter)`` milliseconds. Server-side (5xx), rate-limit
(429) and status-less transport failures are retried; any other 4xx is fatal
and surfaces immediately as a :class:`ClientError`. Any other exception
propagates on the first attempt. After the last attempt the final error is re-raised.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from storyforge.exceptions import ClientError, RemoteCallError, ResponseFormatError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
Sleep = Callable[[float], Awaitable[None]]

TRANSIENT_ERRORS = (RemoteCallError, ResponseFormatError, OSError, asyncio.TimeoutError)


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_jitter_ms: int = 1000


@dataclass
class RetryState:
    """Per-call bookkeeping; discarded once the call settles."""

    attempt: int = 0
    last_error: Exception | None = None
    delay_ms: float = 0.0


def is_retryable(error: BaseException) -> bool:
    """5xx, 429, network, timeout and malformed-body failures are worth another try."""
    if isinstance(error, ClientError):
        return False
    if isinstance(error, RemoteCallError):
        return not error.is_client_error
    return isinstance(error, TRANSIENT_ERRORS)


def as_client_error(error: RemoteCallError) -> ClientError:
    if isinstance(error, ClientError):
        return error
    return ClientError(str(error), error.status)


class RetryExecutor:
    """Runs an async operation under a :class:`RetryPolicy`."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        jitter: Callable[[], float] | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        if self.policy.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._sleep = sleep
        self._jitter = jitter or (lambda: random.random() * self.policy.max_jitter_ms)

    def compute_delay_ms(self, attempt_index: int) -> float:
        """Delay after the failure of attempt ``attempt_index`` (0-based)."""
        return self.policy.base_delay_ms * (2**attempt_index) + self._jitter()

    async def run(self, operation: Operation[T]) -> T:
        state = RetryState()

        while True:
            state.attempt += 1
            try:
                return await operation()
            except RemoteCallError as e:
                if e.is_client_error or isinstance(e, ClientError):
                    logger.warning("Not retrying client error (status=%s): %s", e.status, e)
                    raise as_client_error(e) from e
                state.last_error = e
            except TRANSIENT_ERRORS as e:
                state.last_error = e

            if state.attempt >= self.policy.max_attempts:
                logger.error(
                    "Giving up after %d attempts: %s", state.attempt, state.last_error
                )
                raise state.last_error

            state.delay_ms = self.compute_delay_ms(state.attempt - 1)
            logger.warning(
                "Attempt %d/%d failed (%s), retrying in %.0fms",
                state.attempt,
                self.policy.max_attempts,
                state.last_error,
                state.delay_ms,
            )
            await self._sleep(state.delay_ms / 1000)


async def retry(
    operation: Operation[T],
    max_attempts: int = 3,
    base_delay_ms: int = 1000,
) -> T:
    """Run ``operation`` with default backoff; see :class:`RetryExecutor`."""
    executor = RetryExecutor(RetryPolicy(max_attempts=max_attempts, base_delay_ms=base_delay_ms))
    return await executor.run(operation)
