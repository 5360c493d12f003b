"""Retry policies with exponential backoff and a retryable-error predicate.

Used by the execution coordinator (venue orders) and the workflow (durable
store writes). Sleeps are plain ``asyncio.sleep`` suspension points, so a
retrying task never blocks unrelated sessions and is cancellable at
shutdown.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

import ccxt.async_support as ccxt_async

from tradetree.exceptions import TransientExecutionError, TransientInfraError
from tradetree.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

TRANSIENT_MARKERS = (
    "network",
    "timeout",
    "timed out",
    "connection",
    "temporary",
    "rate limit",
    "server error",
    "gateway",
    "unavailable",
)


def is_transient_error(exc: BaseException) -> bool:
    """Classify an error as worth retrying.

    Typed transient errors (our own, ccxt network errors, timeouts and
    connection errors) always qualify. Anything else qualifies only when
    its message mentions a transient condition.
    """
    if isinstance(
        exc,
        (
            TransientInfraError,
            TransientExecutionError,
            ccxt_async.NetworkError,
            asyncio.TimeoutError,
            ConnectionError,
        ),
    ):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


@dataclass(frozen=True)
class RetryPolicy:
    """Max attempts, exponential backoff and a retryable-error predicate.

    Attempt ``n`` (1-based) that fails waits ``base_delay * multiplier**(n-1)``
    seconds before attempt ``n + 1``. With the defaults: 5s, 10s.
    """

    max_attempts: int = 3
    base_delay: float = 5.0
    multiplier: float = 2.0
    retryable: Callable[[BaseException], bool] = field(default=is_transient_error)

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt."""
        return self.base_delay * self.multiplier ** (attempt - 1)

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str = "operation",
    ) -> tuple[T, int]:
        """Run ``operation`` until it succeeds or the policy gives up.

        Args:
            operation: Zero-argument coroutine factory.
            name: Label used in log events.

        Returns:
            Tuple of (result, attempts used).

        Raises:
            Exception: The last error when it is not retryable or the
                attempts are exhausted. ``attempts`` is attached to it.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation(), attempt
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                retryable = self.retryable(exc)
                if not retryable or attempt >= self.max_attempts:
                    logger.warning(
                        "retry_gave_up",
                        operation=name,
                        attempt=attempt,
                        retryable=retryable,
                        error=str(exc),
                    )
                    exc.attempts = attempt  # type: ignore[attr-defined]
                    raise
                delay = self.delay_for(attempt)
                logger.info(
                    "retry_scheduled",
                    operation=name,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay=delay,
                    error=str(exc),
                )
                await asyncio.sleep(delay)
