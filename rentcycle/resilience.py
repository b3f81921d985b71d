"""
Rentcycle Resilience

Fault tolerance for side effects that must not fail a committed
transition: a circuit breaker around the notice channel and a retry
policy that schedules redelivery with backoff.

    Circuit Breaker      Retry Policy
    ├─ CLOSED state      ├─ Exponential
    ├─ OPEN state        ├─ Jitter
    ├─ HALF_OPEN         ├─ Max attempts
    └─ Metrics           └─ Retryable exc

Usage:

    breaker = CircuitBreaker("notices", failure_threshold=5)
    with breaker:
        sink.deliver(notice)

    retry = RetryPolicy(max_attempts=5, base_delay_seconds=2.0)
    if retry.should_retry(attempt, exc):
        next_at = now + timedelta(seconds=retry.calculate_delay(attempt))
"""

from __future__ import annotations

import random
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Callable, Optional

from rentcycle.errors import RentcycleError

# ════════════════════════════════════════════════════════════════════════════
# CIRCUIT BREAKER
# ════════════════════════════════════════════════════════════════════════════


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = auto()      # Normal operation, requests pass through
    OPEN = auto()        # Circuit tripped, requests fail fast
    HALF_OPEN = auto()   # Testing if service recovered


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration."""
    failure_threshold: int = 5           # Failures before opening
    success_threshold: int = 1           # Successes to close from half-open
    timeout_seconds: float = 30.0        # Time before attempting recovery
    half_open_max_calls: int = 1         # Max calls in half-open state


@dataclass
class CircuitBreakerMetrics:
    """Circuit breaker metrics."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_transitions: int = 0
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_failure_time: Optional[datetime] = None


class CircuitBreakerError(RentcycleError):
    """Raised when circuit breaker is open."""
    def __init__(self, breaker_name: str, state: CircuitState, message: str = ""):
        self.breaker_name = breaker_name
        self.state = state
        super().__init__(message or f"Circuit breaker '{breaker_name}' is {state.name}")


class CircuitBreaker:
    """
    Circuit breaker pattern implementation.

    Fails fast while the protected channel is known to be down, then lets
    a probe call through after ``timeout_seconds``.

    Example:
        breaker = CircuitBreaker("notices", failure_threshold=5)

        with breaker:
            sink.deliver(notice)
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        success_threshold: int = 1,
        timeout_seconds: float = 30.0,
        half_open_max_calls: int = 1,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.name = name
        self.config = CircuitBreakerConfig(
            failure_threshold=failure_threshold,
            success_threshold=success_threshold,
            timeout_seconds=timeout_seconds,
            half_open_max_calls=half_open_max_calls,
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._state = CircuitState.CLOSED
        self._metrics = CircuitBreakerMetrics()
        self._lock = threading.RLock()
        self._last_state_change = self._clock()
        self._half_open_calls = 0

    @property
    def state(self) -> CircuitState:
        """Current circuit state."""
        with self._lock:
            self._check_state_timeout()
            return self._state

    def _check_state_timeout(self) -> None:
        """Check if we should transition from OPEN to HALF_OPEN."""
        if self._state == CircuitState.OPEN:
            elapsed = (self._clock() - self._last_state_change).total_seconds()
            if elapsed >= self.config.timeout_seconds:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state != new_state:
            self._state = new_state
            self._last_state_change = self._clock()
            self._metrics.state_transitions += 1

            if new_state == CircuitState.HALF_OPEN:
                self._half_open_calls = 0
                self._metrics.consecutive_successes = 0
            elif new_state == CircuitState.CLOSED:
                self._metrics.consecutive_failures = 0

    def _record_success(self) -> None:
        with self._lock:
            self._metrics.total_calls += 1
            self._metrics.successful_calls += 1
            self._metrics.consecutive_successes += 1
            self._metrics.consecutive_failures = 0

            if self._state == CircuitState.HALF_OPEN:
                if self._metrics.consecutive_successes >= self.config.success_threshold:
                    self._transition_to(CircuitState.CLOSED)

    def _record_failure(self) -> None:
        with self._lock:
            self._metrics.total_calls += 1
            self._metrics.failed_calls += 1
            self._metrics.last_failure_time = self._clock()
            self._metrics.consecutive_failures += 1
            self._metrics.consecutive_successes = 0

            if self._state == CircuitState.CLOSED:
                if self._metrics.consecutive_failures >= self.config.failure_threshold:
                    self._transition_to(CircuitState.OPEN)
            elif self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)

    def _acquire(self) -> bool:
        """Acquire permission to make a call."""
        with self._lock:
            self._check_state_timeout()

            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls < self.config.half_open_max_calls:
                    self._half_open_calls += 1
                    return True
            self._metrics.rejected_calls += 1
            return False

    def __enter__(self):
        if not self._acquire():
            raise CircuitBreakerError(self.name, self._state)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self._record_failure()
        else:
            self._record_success()
        return False


# ════════════════════════════════════════════════════════════════════════════
# RETRY POLICY
# ════════════════════════════════════════════════════════════════════════════


class BackoffStrategy(Enum):
    """Retry backoff strategies."""
    FIXED = auto()               # Fixed delay between retries
    EXPONENTIAL = auto()         # Exponential backoff (2^n)
    EXPONENTIAL_JITTER = auto()  # Exponential with random jitter
    LINEAR = auto()              # Linear increase


@dataclass
class RetryConfig:
    """Retry policy configuration."""
    max_attempts: int = 5
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 300.0
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER
    jitter_factor: float = 0.5
    retryable_exceptions: tuple = (Exception,)
    non_retryable_exceptions: tuple = ()


class RetryExhaustedError(RentcycleError):
    """Raised when all retry attempts are exhausted."""
    def __init__(self, attempts: int, last_exception: Optional[BaseException]):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Retry exhausted after {attempts} attempts: {last_exception}")


class RetryPolicy:
    """
    Retry policy with configurable backoff strategies.

    The policy only decides: whether another attempt is allowed and how
    long to wait before it. Callers that run attempts out of band (a queue
    worker) schedule the next attempt themselves.

    Example:
        retry = RetryPolicy(max_attempts=3, backoff_strategy=BackoffStrategy.EXPONENTIAL)
        retry.calculate_delay(1)  # 2.0
        retry.calculate_delay(2)  # 4.0
    """

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay_seconds: float = 2.0,
        max_delay_seconds: float = 300.0,
        backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER,
        jitter_factor: float = 0.5,
        retryable_exceptions: tuple = (Exception,),
        non_retryable_exceptions: tuple = (),
    ):
        self.config = RetryConfig(
            max_attempts=max_attempts,
            base_delay_seconds=base_delay_seconds,
            max_delay_seconds=max_delay_seconds,
            backoff_strategy=backoff_strategy,
            jitter_factor=jitter_factor,
            retryable_exceptions=retryable_exceptions,
            non_retryable_exceptions=non_retryable_exceptions,
        )

    @property
    def max_attempts(self) -> int:
        return self.config.max_attempts

    def calculate_delay(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        base = self.config.base_delay_seconds
        strategy = self.config.backoff_strategy

        if strategy == BackoffStrategy.FIXED:
            delay = base
        elif strategy == BackoffStrategy.LINEAR:
            delay = base * attempt
        elif strategy == BackoffStrategy.EXPONENTIAL:
            delay = base * (2 ** (attempt - 1))
        elif strategy == BackoffStrategy.EXPONENTIAL_JITTER:
            exp_delay = base * (2 ** (attempt - 1))
            delay = exp_delay + random.uniform(0, self.config.jitter_factor * exp_delay)
        else:
            delay = base

        return min(delay, self.config.max_delay_seconds)

    def is_retryable(self, exc: BaseException) -> bool:
        if isinstance(exc, self.config.non_retryable_exceptions):
            return False
        return isinstance(exc, self.config.retryable_exceptions)

    def should_retry(self, attempt: int, exc: BaseException) -> bool:
        """True if ``attempt`` failed attempts still leave room for another."""
        return attempt < self.config.max_attempts and self.is_retryable(exc)
