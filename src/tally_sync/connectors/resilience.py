"""
Resilience middleware for remote calls.

Each remote call is wrapped, innermost first, in:
1. A timeout (``with_timeout``)
2. Capped exponential backoff retry on transient errors (``with_retry``)
3. A circuit breaker that turns persistent outages into fast local
   failures (``CircuitBreaker``)

Errors are classified by their ``retryable`` attribute: transport
failures, timeouts, HTTP 429 and 5xx are transient; rejections are not.
"""

from __future__ import annotations

import asyncio
import functools
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from tally_sync.config import RetryConfig
from tally_sync.errors import CircuitOpenError
from tally_sync.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
AsyncCall = Callable[..., Awaitable[T]]


def is_transient(error: BaseException) -> bool:
    """Whether an error is worth retrying."""
    return bool(getattr(error, "retryable", False))


# =============================================================================
# Timeout
# =============================================================================

def with_timeout(
    seconds: float,
    error_factory: Callable[[float], Exception],
) -> Callable[[AsyncCall[T]], AsyncCall[T]]:
    """
    Bound a coroutine function's run time.

    Args:
        seconds: Time limit per call
        error_factory: Builds the exception raised on timeout

    Returns:
        Decorator
    """

    def decorator(func: AsyncCall[T]) -> AsyncCall[T]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return await asyncio.wait_for(func(*args, **kwargs), timeout=seconds)
            except asyncio.TimeoutError as e:
                raise error_factory(seconds) from e

        return wrapper

    return decorator


# =============================================================================
# Retry
# =============================================================================

@dataclass
class RetryPolicy:
    """Capped exponential backoff."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        """Build a policy from settings."""
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_seconds,
            max_delay=config.max_delay_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-indexed) failed attempt."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


def with_retry(
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = is_transient,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Callable[[AsyncCall[T]], AsyncCall[T]]:
    """
    Retry a coroutine function on transient errors.

    Non-transient errors and the last attempt's error propagate unchanged.

    Args:
        policy: Attempt count and backoff
        should_retry: Classifies errors
        sleep: Awaitable sleep (replaceable in tests)

    Returns:
        Decorator
    """

    def decorator(func: AsyncCall[T]) -> AsyncCall[T]:
        name = getattr(func, "__qualname__", type(func).__name__)

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            attempt = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if attempt >= policy.max_attempts or not should_retry(e):
                        raise
                    delay = policy.delay_for(attempt)
                    logger.warning(
                        "%s failed (attempt %d/%d): %s. Retrying in %.1fs",
                        name,
                        attempt,
                        policy.max_attempts,
                        e,
                        delay,
                    )
                    await sleep(delay)
                    attempt += 1

        return wrapper

    return decorator


# =============================================================================
# Circuit breaker
# =============================================================================

class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    CLOSED passes calls through and counts consecutive transient failures.
    At ``failure_threshold`` it opens: calls fail immediately with
    CircuitOpenError. After ``cooldown_seconds`` it is HALF_OPEN and lets a
    single trial call through; success closes it, failure reopens it.

    Example:
        breaker = CircuitBreaker("endpoint", failure_threshold=5)

        @breaker
        async def send(payload): ...
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        is_failure: Callable[[BaseException], bool] = is_transient,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._is_failure = is_failure
        self._clock = clock
        self._failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @classmethod
    def from_config(cls, name: str, config: RetryConfig) -> "CircuitBreaker":
        """Build a breaker from settings."""
        return cls(
            name,
            failure_threshold=config.failure_threshold,
            cooldown_seconds=config.cooldown_seconds,
        )

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN to HALF_OPEN once cooled down."""
        if self._opened_at is None:
            return CircuitState.CLOSED
        if self._clock() - self._opened_at >= self.cooldown_seconds:
            return CircuitState.HALF_OPEN
        return CircuitState.OPEN

    @property
    def consecutive_failures(self) -> int:
        """Transient failures since the last success."""
        return self._failures

    def before_call(self) -> None:
        """
        Gate a call.

        Raises:
            CircuitOpenError: If the circuit is open, or half-open with a
                trial call already running
        """
        state = self.state
        if state is CircuitState.OPEN:
            opened_at = self._opened_at if self._opened_at is not None else self._clock()
            remaining = self.cooldown_seconds - (self._clock() - opened_at)
            raise CircuitOpenError(self.name, remaining)
        if state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, 0.0)
            self._trial_in_flight = True

    def record_success(self) -> None:
        """A call reached the remote; close the circuit."""
        if self._opened_at is not None:
            logger.info("Circuit '%s' closed", self.name)
        self._failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def record_failure(self) -> None:
        """A call hit a transient failure."""
        self._trial_in_flight = False
        if self._opened_at is not None:
            # Failed trial call
            self._opened_at = self._clock()
            logger.warning("Circuit '%s' reopened after failed trial", self.name)
            return

        self._failures += 1
        if self._failures >= self.failure_threshold:
            self._opened_at = self._clock()
            logger.error(
                "Circuit '%s' opened after %d consecutive failures",
                self.name,
                self._failures,
            )

    def __call__(self, func: AsyncCall[T]) -> AsyncCall[T]:
        """Wrap a coroutine function with this breaker."""

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            self.before_call()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                if self._is_failure(e):
                    self.record_failure()
                else:
                    # The remote answered, so it is up
                    self.record_success()
                raise
            except BaseException:
                self._trial_in_flight = False
                raise
            self.record_success()
            return result

        return wrapper


def resilient(
    func: AsyncCall[T],
    *,
    timeout: float,
    timeout_error: Callable[[float], Exception],
    policy: RetryPolicy,
    breaker: CircuitBreaker,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AsyncCall[T]:
    """Compose timeout -> retry -> circuit breaker around ``func``."""
    timed = with_timeout(timeout, timeout_error)(func)
    retried = with_retry(policy, sleep=sleep)(timed)
    return breaker(retried)
