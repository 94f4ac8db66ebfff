"""
Bounded retry with backoff.

One utility used by the action executor and by collaborator calls, instead
of retry loops written per call site.

An operation is attempted once and then retried up to `max_retries` times.
An attempt fails when it raises a retryable exception or when its result
does not satisfy `is_success`. Delays never decrease between retries.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, List, Optional, TypeVar

from .collaborators import CollaboratorError

logger = logging.getLogger("retry")

T = TypeVar("T")


def is_transient(error: BaseException) -> bool:
    """Timeouts and collaborator errors flagged transient are worth retrying."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return True
    if isinstance(error, CollaboratorError):
        return error.transient
    return False


@dataclass
class BackoffPolicy:
    max_retries: int = 3
    initial_delay: float = 2.0
    multiplier: float = 2.0
    max_delay: float = 60.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.multiplier < 1.0:
            raise ValueError(f"multiplier must be >= 1.0, got {self.multiplier}")

    def delay_for(self, retry_index: int) -> float:
        """Delay before retry number `retry_index` (0-based)."""
        delay = self.initial_delay * (self.multiplier ** retry_index)
        return min(delay, max(self.max_delay, self.initial_delay))

    def delays(self) -> List[float]:
        return [self.delay_for(i) for i in range(self.max_retries)]


@dataclass
class RetryOutcome(Generic[T]):
    success: bool
    result: Optional[T] = None
    attempts: int = 0
    delays: List[float] = field(default_factory=list)
    last_error: Optional[BaseException] = None

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    is_success: Callable[[T], bool] = lambda result: True,
    should_retry: Callable[[BaseException], bool] = is_transient,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    description: str = "operation",
) -> RetryOutcome[T]:
    """
    Run `operation` until `is_success(result)` or retries are exhausted.

    Exceptions for which `should_retry` is False propagate immediately.
    """
    outcome: RetryOutcome[T] = RetryOutcome(success=False)
    total_attempts = policy.max_retries + 1

    for attempt in range(total_attempts):
        if attempt > 0:
            delay = policy.delay_for(attempt - 1)
            outcome.delays.append(delay)
            logger.info(f"Retrying {description} in {delay:.1f}s (retry {attempt}/{policy.max_retries})")
            await sleep(delay)

        outcome.attempts = attempt + 1
        try:
            result = await operation()
        except Exception as e:
            if not should_retry(e):
                raise
            outcome.last_error = e
            logger.warning(f"{description} attempt {attempt + 1} failed: {e.__class__.__name__}: {e}")
            continue

        outcome.result = result
        if is_success(result):
            outcome.success = True
            return outcome
        logger.info(f"{description} attempt {attempt + 1} did not succeed")

    logger.warning(f"{description} failed after {outcome.attempts} attempts")
    return outcome


async def call_with_timeout(awaitable: Awaitable[T], timeout: float, description: str) -> T:
    """Await with a bound; a timeout surfaces as a transient CollaboratorError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        raise CollaboratorError(f"{description} timed out after {timeout:.1f}s", transient=True)

