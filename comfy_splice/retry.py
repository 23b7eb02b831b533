"""
Comfy Splice - Retry and Resilience Utilities
=============================================

Retry patterns built on tenacity, plus a circuit breaker.

Provides:
- Retry with exponential backoff + jitter for transient failures
- Bounded polling (fixed delay, attempt cap, caller-supplied predicate)
- Circuit breaker pattern (fail fast when the executor is down)

Usage:
    from comfy_splice.retry import retry_with_backoff, poll_until, get_circuit_breaker

    @retry_with_backoff(max_attempts=3, exceptions=(PersistenceError,))
    def upload():
        ...

    result = poll_until(locate_output, max_attempts=15, delay=2.0)
    if result.succeeded:
        ...

    with get_circuit_breaker("executor"):
        session.post(...)
"""

import functools
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar, Union

import tenacity
from tenacity import (
    Retrying,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_exponential_jitter,
    wait_fixed,
)

from .config import settings
from .exceptions import CircuitOpenError, RetryExhaustedError
from .logging_config import get_logger

logger = get_logger(__name__)

__all__ = [
    # Retry
    "retry_with_backoff",
    # Bounded polling
    "PollResult",
    "poll_until",
    # Circuit breaker
    "CircuitState",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "circuit_registry",
    "get_circuit_breaker",
]

T = TypeVar("T")
ExceptionTypes = Union[type[Exception], tuple[type[Exception], ...]]


# =============================================================================
# RETRY DECORATOR
# =============================================================================


def retry_with_backoff(
    max_attempts: int | None = None,
    backoff_base: float | None = None,
    backoff_max: float | None = None,
    jitter: bool | None = None,
    exceptions: ExceptionTypes = Exception,
) -> Callable:
    """
    Decorator for retry with exponential backoff and optional jitter.

    Args:
        max_attempts: Maximum number of attempts (default from settings)
        backoff_base: Base for exponential backoff (default from settings)
        backoff_max: Maximum backoff time (default from settings)
        jitter: Add randomness to prevent thundering herd (default from settings)
        exceptions: Exception types to catch and retry

    Raises:
        RetryExhaustedError: When every attempt failed

    Example:
        @retry_with_backoff(max_attempts=3, exceptions=(PersistenceError,))
        def save():
            ...
    """
    _max_attempts = max_attempts or settings.retry.max_retries
    _backoff_base = backoff_base if backoff_base is not None else settings.retry.backoff_base
    _backoff_max = backoff_max if backoff_max is not None else settings.retry.backoff_max
    _jitter = jitter if jitter is not None else settings.retry.backoff_jitter

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        if _jitter:
            wait_strategy = wait_exponential_jitter(
                initial=_backoff_base,
                max=_backoff_max,
                jitter=_backoff_max / 2,
            )
        else:
            wait_strategy = wait_exponential(multiplier=_backoff_base, max=_backoff_max)

        retrying = retry(
            stop=stop_after_attempt(_max_attempts),
            wait=wait_strategy,
            retry=retry_if_exception_type(exceptions),
            before_sleep=before_sleep_log(logger, log_level=20),  # INFO
        )(func)

        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            try:
                return retrying(*args, **kwargs)
            except tenacity.RetryError as e:
                raise RetryExhaustedError(
                    message=f"All {_max_attempts} retry attempts exhausted for {func.__name__}",
                    attempts=_max_attempts,
                    last_error=e.last_attempt.exception() if e.last_attempt else None,
                ) from e

        return wrapper

    return decorator


# =============================================================================
# BOUNDED POLLING
# =============================================================================

_EXHAUSTED = object()


@dataclass
class PollResult(Generic[T]):
    """Outcome of poll_until: the accepted value, or the last value seen."""

    succeeded: bool
    value: T | None
    attempts: int


def _is_present(value: Any) -> bool:
    return value is not None


def poll_until(
    fn: Callable[[], T],
    predicate: Callable[[T], bool] = _is_present,
    max_attempts: int | None = None,
    delay: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PollResult[T]:
    """
    Call ``fn`` until ``predicate`` accepts its result or the attempts run out.

    The caller owns the budget; nothing is kept between calls. Running out of
    attempts is an ordinary outcome (``succeeded=False``), not an exception.
    Exceptions raised by ``fn`` are not swallowed.

    Args:
        fn: Zero-argument callable polled for a value
        predicate: Accepts a result of fn (default: "is not None")
        max_attempts: Attempt cap (default from settings.polling)
        delay: Fixed delay between attempts in seconds (default from settings.polling)
        sleep: Sleep function, replaceable in tests
    """
    _max_attempts = max_attempts if max_attempts is not None else settings.polling.max_attempts
    _delay = delay if delay is not None else settings.polling.delay

    state = {"attempts": 0, "last": None}

    def attempt() -> T:
        state["attempts"] += 1
        state["last"] = fn()
        return state["last"]

    retrying = Retrying(
        stop=stop_after_attempt(max(_max_attempts, 1)),
        wait=wait_fixed(_delay),
        retry=retry_if_result(lambda value: not predicate(value)),
        retry_error_callback=lambda retry_state: _EXHAUSTED,
        sleep=sleep,
    )
    outcome = retrying(attempt)

    if outcome is _EXHAUSTED:
        logger.debug(
            f"Polling gave up after {state['attempts']} attempts",
            extra={"attempts": state["attempts"], "delay": _delay},
        )
        return PollResult(succeeded=False, value=state["last"], attempts=state["attempts"])
    return PollResult(succeeded=True, value=outcome, attempts=state["attempts"])


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, rejecting requests
    HALF_OPEN = "half_open"  # Testing if recovered


@dataclass
class CircuitBreaker:
    """
    Circuit breaker guarding calls to the executor.

    States:
        CLOSED: Normal operation, requests pass through
        OPEN: Service is failing, requests are rejected immediately
        HALF_OPEN: Testing recovery, limited requests pass through

    Usage:
        breaker = CircuitBreaker("executor")
        with breaker:
            result = session.get(...)
    """

    name: str
    failure_threshold: int = field(default_factory=lambda: settings.retry.circuit_breaker_threshold)
    reset_timeout: float = field(default_factory=lambda: settings.retry.circuit_breaker_reset)
    success_threshold: int = 3  # Successes needed in half-open to close

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _last_failure_time: datetime | None = field(default=None, init=False)
    _success_count_half_open: int = field(default=0, init=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False)

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_transition_to_half_open()
            return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def _maybe_transition_to_half_open(self):
        if self._state == CircuitState.OPEN and self._last_failure_time:
            elapsed = (datetime.now() - self._last_failure_time).total_seconds()
            if elapsed >= self.reset_timeout:
                logger.info(
                    f"Circuit {self.name}: OPEN -> HALF_OPEN after {elapsed:.1f}s",
                    extra={"circuit": self.name, "transition": "open_to_half_open"},
                )
                self._state = CircuitState.HALF_OPEN
                self._success_count_half_open = 0

    def allow_request(self) -> bool:
        """Check if a request should be allowed through."""
        with self._lock:
            self._maybe_transition_to_half_open()
            return self._state != CircuitState.OPEN

    def record_success(self):
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count_half_open += 1
                if self._success_count_half_open >= self.success_threshold:
                    logger.info(
                        f"Circuit {self.name}: HALF_OPEN -> CLOSED",
                        extra={"circuit": self.name, "transition": "half_open_to_closed"},
                    )
                    self._state = CircuitState.CLOSED
                    self._failure_count = 0
            elif self._failure_count > 0:
                # Gradual recovery while closed
                self._failure_count -= 1

    def record_failure(self):
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.now()

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(
                    f"Circuit {self.name}: HALF_OPEN -> OPEN after failure",
                    extra={"circuit": self.name, "transition": "half_open_to_open"},
                )
                self._state = CircuitState.OPEN
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                logger.warning(
                    f"Circuit {self.name}: CLOSED -> OPEN after {self._failure_count} failures",
                    extra={
                        "circuit": self.name,
                        "transition": "closed_to_open",
                        "failures": self._failure_count,
                    },
                )
                self._state = CircuitState.OPEN

    def reset(self):
        """Reset the circuit breaker to closed state."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
            self._success_count_half_open = 0

    def __enter__(self):
        if not self.allow_request():
            raise CircuitOpenError(
                service=self.name, message=f"Circuit breaker {self.name} is open"
            )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.record_success()
        else:
            self.record_failure()
        return False

    async def __aenter__(self):
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return self.__exit__(exc_type, exc_val, exc_tb)


# =============================================================================
# CIRCUIT BREAKER REGISTRY
# =============================================================================


class CircuitBreakerRegistry:
    """Process-wide circuit breakers keyed by service name."""

    def __init__(self):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        """Get or create a circuit breaker for a service."""
        with self._lock:
            if name not in self._breakers:
                self._breakers[name] = CircuitBreaker(name=name)
            return self._breakers[name]

    def reset_all(self):
        with self._lock:
            for breaker in self._breakers.values():
                breaker.reset()


circuit_registry = CircuitBreakerRegistry()


def get_circuit_breaker(name: str) -> CircuitBreaker:
    """Get a circuit breaker from the registry."""
    return circuit_registry.get(name)
