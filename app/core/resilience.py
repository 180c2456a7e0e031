"""
Circuit breaker with bounded, jittered retries.

States
------
  CLOSED     calls pass through; consecutive transient failures are counted.
             Reaching `failure_threshold` opens the circuit.
  OPEN       calls are rejected with CircuitOpenError (or routed to the
             fallback) until `next_attempt_at`, then the circuit goes HALF_OPEN.
  HALF_OPEN  at most `half_open_max_calls` trial calls run concurrently.
             `success_threshold` successes close the circuit; any transient
             failure reopens it with a doubled reset timeout (capped).

Only transient errors (timeouts, dropped connections, TransientStoreError)
are retried or counted against the circuit. Anything else, validation errors
included, propagates untouched on the first attempt.

Timed calls run on the breaker's own worker pool, at most `max_concurrent` at
a time. A call beyond that is rejected at once rather than queued, so a hung
downstream holds only its own workers and never delays another breaker's
calls. A timed-out call keeps its slot until it actually returns.

One breaker per downstream destination, handed out by a BreakerRegistry that
the service container owns. Nothing here is process-global.
"""
from __future__ import annotations

import enum
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional

from sqlalchemy import exc as sa_exc

from app.core.clock import utcnow
from app.core.errors import CheckInValidationError, CircuitOpenError, TransientStoreError
from app.core.logging import get_logger

logger = get_logger(__name__)


class CircuitState(str, enum.Enum):
    closed = "CLOSED"
    open = "OPEN"
    half_open = "HALF_OPEN"


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int = 3
    success_threshold: int = 2
    reset_timeout: float = 30.0
    max_reset_timeout: float = 300.0
    half_open_max_calls: int = 1
    max_retries: int = 2
    retry_delay: float = 0.05
    backoff_factor: float = 2.0
    max_retry_delay: float = 1.0
    timeout: Optional[float] = None
    max_concurrent: int = 4


def is_transient(exc: BaseException) -> bool:
    """True for failures worth retrying: the dependency, not the input, is at fault."""
    if isinstance(exc, CheckInValidationError):
        return False
    if isinstance(exc, (TransientStoreError, TimeoutError, FuturesTimeoutError, ConnectionError)):
        return True
    if isinstance(exc, (sa_exc.OperationalError, sa_exc.DisconnectionError, sa_exc.TimeoutError)):
        return True
    if isinstance(exc, sa_exc.DBAPIError) and exc.connection_invalidated:
        return True
    return False


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        config: BreakerConfig | None = None,
        fallback: Optional[Callable[..., Any]] = None,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.name = name
        self.config = config or BreakerConfig()
        self.fallback = fallback
        self._monotonic = monotonic
        self._sleep = sleep
        self._executor: Optional[ThreadPoolExecutor] = None
        self._slots = threading.BoundedSemaphore(self.config.max_concurrent)
        self._lock = threading.Lock()

        self._state = CircuitState.closed
        self._failures = 0
        self._successes = 0
        self._half_open_in_flight = 0
        self._current_reset_timeout = self.config.reset_timeout
        self._next_attempt_at: Optional[float] = None
        self._last_failure: Optional[str] = None
        self._last_failure_at: Optional[str] = None

        self._total_requests = 0
        self._successful_requests = 0
        self._failed_requests = 0
        self._rejected_requests = 0
        self._retries = 0
        self._timeouts = 0
        self._saturated = 0

    # ------------------------------------------------------------------
    # State transitions (caller holds the lock)
    # ------------------------------------------------------------------

    def _refresh_state(self) -> None:
        if (
            self._state is CircuitState.open
            and self._next_attempt_at is not None
            and self._monotonic() >= self._next_attempt_at
        ):
            self._to_half_open()

    def _to_open(self, error: BaseException | None, escalate: bool) -> None:
        prev = self._state
        if escalate:
            self._current_reset_timeout = min(
                self._current_reset_timeout * 2, self.config.max_reset_timeout
            )
        self._state = CircuitState.open
        self._failures = 0
        self._successes = 0
        self._half_open_in_flight = 0
        self._next_attempt_at = self._monotonic() + self._current_reset_timeout
        logger.warning(
            "Circuit OPENED for %s",
            self.name,
            extra={
                "action": "circuit_open",
                "context": {
                    "circuit": self.name,
                    "prev_state": prev.value,
                    "error": str(error) if error else None,
                    "reset_timeout": self._current_reset_timeout,
                },
            },
        )

    def _to_half_open(self) -> None:
        self._state = CircuitState.half_open
        self._failures = 0
        self._successes = 0
        self._half_open_in_flight = 0
        logger.info(
            "Circuit HALF-OPEN for %s",
            self.name,
            extra={"action": "circuit_half_open", "context": {"circuit": self.name}},
        )

    def _to_closed(self) -> None:
        prev = self._state
        self._state = CircuitState.closed
        self._failures = 0
        self._successes = 0
        self._half_open_in_flight = 0
        self._next_attempt_at = None
        self._current_reset_timeout = self.config.reset_timeout
        if prev is not CircuitState.closed:
            logger.info(
                "Circuit CLOSED for %s",
                self.name,
                extra={"action": "circuit_closed", "context": {"circuit": self.name}},
            )

    # ------------------------------------------------------------------
    # Per-call bookkeeping
    # ------------------------------------------------------------------

    def _acquire(self) -> bool:
        with self._lock:
            self._refresh_state()
            self._total_requests += 1
            if self._state is CircuitState.open:
                self._rejected_requests += 1
                return False
            if self._state is CircuitState.half_open:
                if self._half_open_in_flight >= self.config.half_open_max_calls:
                    self._rejected_requests += 1
                    return False
                self._half_open_in_flight += 1
            return True

    def _on_success(self) -> None:
        with self._lock:
            self._successful_requests += 1
            if self._state is CircuitState.half_open:
                self._half_open_in_flight = max(self._half_open_in_flight - 1, 0)
                self._successes += 1
                if self._successes >= self.config.success_threshold:
                    self._to_closed()
            else:
                self._failures = 0

    def _on_failure(self, exc: BaseException) -> None:
        with self._lock:
            self._failed_requests += 1
            self._last_failure = str(exc)
            self._last_failure_at = utcnow().isoformat()
            if self._state is CircuitState.half_open:
                self._to_open(exc, escalate=True)
            elif self._state is CircuitState.closed:
                self._failures += 1
                if self._failures >= self.config.failure_threshold:
                    self._to_open(exc, escalate=False)

    def _on_ignored_error(self) -> None:
        with self._lock:
            if self._state is CircuitState.half_open:
                self._half_open_in_flight = max(self._half_open_in_flight - 1, 0)

    def _rejection(self) -> CircuitOpenError:
        with self._lock:
            remaining = None
            if self._next_attempt_at is not None:
                remaining = max(self._next_attempt_at - self._monotonic(), 0.0)
        next_at = utcnow() + timedelta(seconds=remaining) if remaining is not None else None
        return CircuitOpenError(self.name, next_attempt_at=next_at, retry_in_seconds=remaining)

    def _pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.max_concurrent,
                    thread_name_prefix=f"breaker-{self.name}",
                )
            return self._executor

    def _run(self, fn: Callable[..., Any], args: tuple, kwargs: dict) -> Any:
        timeout = self.config.timeout
        if timeout is None:
            return fn(*args, **kwargs)
        if not self._slots.acquire(blocking=False):
            with self._lock:
                self._saturated += 1
            raise TransientStoreError(
                f"{self.name} has {self.config.max_concurrent} calls in flight", store=self.name
            )

        def guarded():
            try:
                return fn(*args, **kwargs)
            finally:
                self._slots.release()

        try:
            future = self._pool().submit(guarded)
        except RuntimeError:
            self._slots.release()
            raise
        try:
            return future.result(timeout=timeout)
        except FuturesTimeoutError:
            with self._lock:
                self._timeouts += 1
            raise TransientStoreError(
                f"{self.name} call timed out after {timeout:.2f}s", store=self.name
            )

    def _backoff(self, attempt: int) -> float:
        base = min(
            self.config.max_retry_delay,
            self.config.retry_delay * (self.config.backoff_factor ** attempt),
        )
        return base + random.uniform(0, base / 2)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run `fn` under this breaker, retrying transient failures."""
        attempt = 0
        while True:
            if not self._acquire():
                error = self._rejection()
                if self.fallback is not None:
                    return self.fallback(error, *args, **kwargs)
                raise error
            try:
                result = self._run(fn, args, kwargs)
            except Exception as exc:
                if not is_transient(exc):
                    self._on_ignored_error()
                    raise
                self._on_failure(exc)
                if attempt >= self.config.max_retries or self.state is CircuitState.open:
                    if self.fallback is not None:
                        return self.fallback(exc, *args, **kwargs)
                    raise
                with self._lock:
                    self._retries += 1
                self._sleep(self._backoff(attempt))
                attempt += 1
                continue
            self._on_success()
            return result

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh_state()
            return self._state

    def force_open(self) -> None:
        with self._lock:
            self._to_open(None, escalate=False)

    def force_close(self) -> None:
        with self._lock:
            self._to_closed()

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            self._refresh_state()
            retry_in = None
            if self._state is CircuitState.open and self._next_attempt_at is not None:
                retry_in = round(max(self._next_attempt_at - self._monotonic(), 0.0), 3)
            return {
                "name": self.name,
                "state": self._state.value,
                "failures": self._failures,
                "successes": self._successes,
                "last_failure": self._last_failure,
                "last_failure_at": self._last_failure_at,
                "retry_in_seconds": retry_in,
                "total_requests": self._total_requests,
                "successful_requests": self._successful_requests,
                "failed_requests": self._failed_requests,
                "rejected_requests": self._rejected_requests,
                "retries": self._retries,
                "timeouts": self._timeouts,
                "saturated": self._saturated,
            }

    def shutdown(self) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False)


class BreakerRegistry:
    """Owns one CircuitBreaker per destination name."""

    def __init__(
        self,
        configs: dict[str, BreakerConfig] | None = None,
        default: BreakerConfig | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._configs = dict(configs or {})
        self._default = default or BreakerConfig()
        self._monotonic = monotonic
        self._sleep = sleep
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    config=self._configs.get(name, self._default),
                    monotonic=self._monotonic,
                    sleep=self._sleep,
                )
                self._breakers[name] = breaker
            return breaker

    def names(self) -> list[str]:
        with self._lock:
            return sorted(set(self._breakers) | set(self._configs))

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {name: self.get(name).snapshot() for name in self.names()}

    def shutdown(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.shutdown()
