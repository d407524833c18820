from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Iterator, Optional, TypeVar

from graphsession.config import DriverConfig
from graphsession.exception import (
    AuthenticationError,
    ConnectivityError,
    StatementError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERROR_PREFIX = "Neo.TransientError."

# Transient by code, but caused by an explicit termination by a user
NON_RETRYABLE_TRANSIENT_CODES = frozenset(
    (
        "Neo.TransientError.Transaction.Terminated",
        "Neo.TransientError.Transaction.LockClientStopped",
    )
)

LEADER_SWITCH_CODES = frozenset(
    (
        "Neo.ClientError.Cluster.NotALeader",
        "Neo.ClientError.General.ForbiddenOnReadOnlyDatabase",
    )
)


def is_retryable_code(code: Optional[str]) -> bool:
    if not code:
        return False
    if code in LEADER_SWITCH_CODES:
        return True
    return (
        code.startswith(TRANSIENT_ERROR_PREFIX)
        and code not in NON_RETRYABLE_TRANSIENT_CODES
    )


def is_retryable(error: Optional[BaseException]) -> bool:
    """Whether a failed managed transaction may be executed again

    Connectivity loss, leader switches and transient server errors
    (deadlocks, for instance) are retryable. The ``__cause__`` chain is
    followed so that a rejected commit wrapping a connectivity error is
    retried too.
    """
    seen = set()
    while error is not None and id(error) not in seen:
        seen.add(id(error))
        if isinstance(error, AuthenticationError):
            return False
        if isinstance(error, ConnectivityError):
            return True
        if isinstance(error, StatementError):
            return is_retryable_code(error.code)
        error = error.__cause__ or getattr(error, "cause", None)
    return False


class RetryPolicy:
    """Bounded retries with exponential backoff for managed transactions"""

    def __init__(
        self,
        max_attempts: int = 5,
        initial_delay: float = 1.0,
        multiplier: float = 2.0,
        jitter: float = 0.2,
        max_delay: float = 30.0,
    ) -> None:
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.multiplier = multiplier
        self.jitter = jitter
        self.max_delay = max_delay

    @classmethod
    def from_config(cls, config: DriverConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_transaction_retry_attempts,
            initial_delay=config.retry_initial_delay,
            multiplier=config.retry_multiplier,
            jitter=config.retry_jitter,
            max_delay=config.retry_max_delay,
        )

    def __repr__(self) -> str:
        return (
            f"<RetryPolicy max_attempts={self.max_attempts} "
            f"initial_delay={self.initial_delay} "
            f"multiplier={self.multiplier}>"
        )

    @staticmethod
    def is_retryable(error: BaseException) -> bool:
        return is_retryable(error)

    def delays(self) -> Iterator[float]:
        delay = self.initial_delay
        while True:
            spread = delay * self.jitter
            yield max(0.0, delay + random.uniform(-spread, spread))
            delay = min(delay * self.multiplier, self.max_delay)

    async def execute(self, attempt: Callable[[int], Awaitable[T]]) -> T:
        """Run ``attempt`` until it succeeds, fails for good or runs out
        of attempts. ``attempt`` receives the 1-based attempt number.
        """
        delays = self.delays()
        for attempt_number in range(1, self.max_attempts + 1):
            try:
                return await attempt(attempt_number)
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                if attempt_number >= self.max_attempts:
                    logger.error(
                        "Giving up after %d attempts: %s",
                        attempt_number,
                        e,
                    )
                    raise
                delay = next(delays)
                logger.warning(
                    f"Retryable failure ({type(e).__name__}): {e}. "
                    f"Retrying {attempt_number}/{self.max_attempts} "
                    f"after {delay:.2f}s..."
                )
                await asyncio.sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover
