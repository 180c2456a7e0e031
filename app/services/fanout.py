"""
FanOutGroup: structured dispatch of best-effort branches for one event.

Branches run on a shared ThreadPoolExecutor with the caller's logging
context. The group never blocks its caller: outcomes are collected through
future callbacks, and once the group is sealed and every branch has settled
a single `fanout_complete` log record lists what succeeded and what failed.
"""
from __future__ import annotations

import contextvars
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Optional

from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class BranchOutcome:
    name: str
    ok: bool
    duration_ms: float
    error: Optional[str] = None
    error_type: Optional[str] = None


class FanOutGroup:
    def __init__(
        self,
        executor: ThreadPoolExecutor,
        label: str,
        context: Optional[dict[str, Any]] = None,
        on_settled: Optional[Callable[["FanOutGroup"], None]] = None,
    ):
        self._executor = executor
        self.label = label
        self.context = dict(context or {})
        self._on_settled = on_settled
        self._futures: dict[str, Future] = {}
        self._outcomes: dict[str, BranchOutcome] = {}
        self._lock = threading.Lock()
        self._sealed = False
        self._finished = False
        self._settled = threading.Event()
        self._started = time.monotonic()

    def spawn(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        ctx = contextvars.copy_context()
        started = time.monotonic()
        future = self._executor.submit(ctx.run, fn, *args, **kwargs)
        with self._lock:
            self._futures[name] = future
        future.add_done_callback(lambda f: self._record(name, f, started))
        return future

    def seal(self) -> None:
        """No more branches will be spawned."""
        with self._lock:
            self._sealed = True
            complete = len(self._outcomes) == len(self._futures)
        if complete:
            self._finish()

    def _record(self, name: str, future: Future, started: float) -> None:
        duration_ms = round((time.monotonic() - started) * 1000, 2)
        exc = None if future.cancelled() else future.exception()
        if future.cancelled():
            outcome = BranchOutcome(name, False, duration_ms, "cancelled", "CancelledError")
        elif exc is not None:
            outcome = BranchOutcome(name, False, duration_ms, str(exc), type(exc).__name__)
        else:
            outcome = BranchOutcome(name, True, duration_ms)
        with self._lock:
            self._outcomes[name] = outcome
            complete = self._sealed and len(self._outcomes) == len(self._futures)
        if complete:
            self._finish()

    def _finish(self) -> None:
        with self._lock:
            if self._finished:
                return
            self._finished = True
            outcomes = list(self._outcomes.values())

        failed = {o.name: {"error": o.error, "error_type": o.error_type} for o in outcomes if not o.ok}
        succeeded = sorted(o.name for o in outcomes if o.ok)
        log = logger.warning if failed else logger.info
        log(
            "Fan-out complete for %s: %d ok, %d failed",
            self.label,
            len(succeeded),
            len(failed),
            extra={
                "action": "fanout_complete",
                "duration_ms": round((time.monotonic() - self._started) * 1000, 2),
                "context": {
                    **self.context,
                    "succeeded": succeeded,
                    "failed": failed,
                    "branches": {o.name: o.duration_ms for o in outcomes},
                    "degraded": bool(failed),
                },
            },
        )
        self._settled.set()
        if self._on_settled is not None:
            self._on_settled(self)

    @property
    def outcomes(self) -> dict[str, BranchOutcome]:
        with self._lock:
            return dict(self._outcomes)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._settled.wait(timeout)

    def result(self, name: str, timeout: float, default: Any = None) -> Any:
        """Result of one branch if it finishes within `timeout`, else `default`."""
        with self._lock:
            future = self._futures.get(name)
        if future is None:
            return default
        try:
            return future.result(timeout=timeout)
        except Exception:
            # Failures are reported once, in the fanout_complete record.
            return default
