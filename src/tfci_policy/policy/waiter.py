"""
Bounded polling with Fibonacci backoff.

A wait repeatedly calls a probe coroutine until it reports success or a
terminal failure, the deadline passes, or the caller's cancellation event is
set. Each invocation moves through these states::

    polling -> done | failed | timed_out

Fast-fail mode calls the probe once and reports ``pending`` instead of
entering the polling state.

Two independent limits bound a wait: every backoff step is capped, and the
whole wait is capped by a deadline. Sleeps are clamped to the time left before
the deadline, and a probe still in flight when the deadline (or cancellation)
fires is abandoned.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Awaitable, Callable, Generic, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, retry_if_result
from tenacity.stop import stop_base
from tenacity.wait import wait_base

from tfci_policy.core.errors import TransientError

logger = structlog.get_logger()

T = TypeVar("T")


class ProbeKind(StrEnum):
    pending = "pending"
    success = "success"
    failure = "failure"


@dataclass(frozen=True)
class ProbeResult(Generic[T]):
    """What a single probe observed."""

    kind: ProbeKind
    value: T | None = None
    reason: str | None = None

    @classmethod
    def pending(cls, reason: str | None = None) -> ProbeResult[Any]:
        return cls(ProbeKind.pending, reason=reason)

    @classmethod
    def success(cls, value: T) -> ProbeResult[T]:
        return cls(ProbeKind.success, value=value)

    @classmethod
    def failure(cls, reason: str) -> ProbeResult[Any]:
        return cls(ProbeKind.failure, reason=reason)

    @property
    def is_pending(self) -> bool:
        return self.kind == ProbeKind.pending


Probe = Callable[[], Awaitable[ProbeResult[T]]]


class WaitState(StrEnum):
    polling = "polling"
    done = "done"
    failed = "failed"
    timed_out = "timed_out"
    pending = "pending"


@dataclass(frozen=True)
class BackoffConfig:
    """Polling limits: first interval, per-step cap and total deadline (seconds)."""

    floor: float = 1.0
    cap: float = 15.0
    deadline: float = 600.0

    def __post_init__(self) -> None:
        if self.floor <= 0 or self.cap <= 0 or self.deadline <= 0:
            raise ValueError("backoff floor, cap and deadline must be positive")
        if self.floor > self.cap:
            raise ValueError("backoff floor must not exceed the step cap")


@dataclass(frozen=True)
class WaitResult(Generic[T]):
    state: WaitState
    value: T | None = None
    reason: str | None = None
    attempts: int = 0
    elapsed: float = 0.0


def backoff_interval(attempt: int, floor: float, cap: float) -> float:
    """Interval after the ``attempt``-th probe: floor x fib(attempt), capped."""
    previous, current = 0, 1
    for _ in range(max(attempt, 1) - 1):
        previous, current = current, previous + current
        if current * floor >= cap:
            return cap
    return min(current * floor, cap)


class WaitInterrupted(Exception):
    """Deadline or cancellation fired while a bounded call was in flight."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class wait_fibonacci_capped(wait_base):
    """Fibonacci backoff, capped per step and clamped to the remaining deadline."""

    def __init__(
        self,
        floor: float,
        cap: float,
        deadline_at: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.floor = floor
        self.cap = cap
        self.deadline_at = deadline_at
        self.clock = clock

    def __call__(self, retry_state: RetryCallState) -> float:
        interval = backoff_interval(retry_state.attempt_number, self.floor, self.cap)
        remaining = self.deadline_at - self.clock()
        return max(0.0, min(interval, remaining))


class stop_at_deadline(stop_base):
    """Stop once the deadline has passed or the cancellation event is set."""

    def __init__(
        self,
        deadline_at: float,
        cancel: asyncio.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.deadline_at = deadline_at
        self.cancel = cancel
        self.clock = clock

    def __call__(self, retry_state: RetryCallState) -> bool:
        if self.cancel is not None and self.cancel.is_set():
            return True
        return self.clock() >= self.deadline_at


class WaitEngine:
    """Run probes until they settle, honoring backoff, deadline and cancellation."""

    def __init__(
        self,
        config: BackoffConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or BackoffConfig()
        self._clock = clock

    async def wait(
        self,
        probe: Probe[T],
        *,
        no_wait: bool = False,
        cancel: asyncio.Event | None = None,
        timeout: float | None = None,
        deadline_at: float | None = None,
        operation: str = "wait",
    ) -> WaitResult[T]:
        """Drive ``probe`` to a terminal state.

        Args:
            probe: Coroutine function reporting pending, success or failure.
                ``TransientError`` raised by it counts as pending.
            no_wait: Call the probe once and report ``pending`` if unsettled.
            cancel: Event that stops the wait as soon as it is set.
            timeout: Caller deadline in seconds; the configured deadline still
                applies when it is shorter.
            deadline_at: Absolute deadline from ``deadline_at()``, used instead
                of ``timeout`` when a wait is one step of a longer operation.
            operation: Name used in log events.
        """
        started = self._clock()
        if deadline_at is None:
            deadline_at = self.deadline_at(timeout)
        log = logger.bind(operation=operation)

        if no_wait:
            try:
                result = await self._attempt(probe, deadline_at, cancel)
            except WaitInterrupted as exc:
                return self._finish(WaitState.timed_out, None, exc.reason, 1, started, log)
            return self._settle(result, 1, started, log, pending_state=WaitState.pending)

        attempts = 0

        async def attempt() -> ProbeResult[T]:
            nonlocal attempts
            attempts += 1
            return await self._attempt(probe, deadline_at, cancel)

        def before_sleep(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            if outcome is not None and outcome.failed:
                reason = str(outcome.exception())
            else:
                reason = outcome.result().reason if outcome is not None else None
            log.debug(
                "wait_retrying",
                attempt=retry_state.attempt_number,
                sleep=retry_state.next_action.sleep if retry_state.next_action else None,
                reason=reason,
            )

        retrying = AsyncRetrying(
            retry=(
                retry_if_result(lambda result: result.is_pending)
                | retry_if_exception_type(TransientError)
            ),
            stop=stop_at_deadline(deadline_at, cancel, self._clock),
            wait=wait_fibonacci_capped(
                self.config.floor, self.config.cap, deadline_at, self._clock
            ),
            sleep=self._sleeper(cancel),
            before_sleep=before_sleep,
            retry_error_callback=lambda retry_state: None,
        )

        try:
            result = await retrying(attempt)
        except WaitInterrupted as exc:
            return self._finish(WaitState.timed_out, None, exc.reason, attempts, started, log)

        if result is None:
            reason = "canceled" if cancel is not None and cancel.is_set() else "deadline exceeded"
            return self._finish(WaitState.timed_out, None, reason, attempts, started, log)
        return self._settle(result, attempts, started, log, pending_state=WaitState.timed_out)

    def deadline_at(self, timeout: float | None = None) -> float:
        """Absolute deadline for an operation starting now."""
        deadline = self.config.deadline if timeout is None else min(timeout, self.config.deadline)
        return self._clock() + deadline

    async def _attempt(
        self,
        probe: Probe[T],
        deadline_at: float,
        cancel: asyncio.Event | None,
    ) -> ProbeResult[T]:
        return await self.bounded(probe, deadline_at=deadline_at, cancel=cancel)

    async def bounded(
        self,
        call: Callable[[], Awaitable[T]],
        *,
        deadline_at: float,
        cancel: asyncio.Event | None = None,
    ) -> T:
        """Await ``call()`` once, abandoning it when the deadline or cancellation fires.

        Raises:
            WaitInterrupted: cancellation was set or the deadline passed before
                ``call()`` finished. ``call`` is not started at all when either
                already fired.
        """
        if cancel is not None and cancel.is_set():
            raise WaitInterrupted("canceled")
        if self._clock() >= deadline_at:
            raise WaitInterrupted("deadline exceeded")

        probe_task = asyncio.ensure_future(call())
        waiters: set[asyncio.Future[Any]] = {probe_task}
        cancel_task: asyncio.Future[Any] | None = None
        if cancel is not None:
            cancel_task = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_task)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=max(0.0, deadline_at - self._clock()),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in waiters:
                if not task.done():
                    task.cancel()

        if probe_task in done:
            return probe_task.result()
        if cancel_task is not None and cancel_task in done:
            raise WaitInterrupted("canceled")
        raise WaitInterrupted("deadline exceeded")

    @staticmethod
    def _sleeper(cancel: asyncio.Event | None) -> Callable[[float], Awaitable[None]]:
        async def sleep(seconds: float) -> None:
            if cancel is None:
                await asyncio.sleep(seconds)
                return
            if cancel.is_set():
                raise WaitInterrupted("canceled")
            try:
                await asyncio.wait_for(cancel.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                return
            raise WaitInterrupted("canceled")

        return sleep

    def _settle(
        self,
        result: ProbeResult[T],
        attempts: int,
        started: float,
        log: Any,
        *,
        pending_state: WaitState,
    ) -> WaitResult[T]:
        if result.kind == ProbeKind.success:
            return self._finish(WaitState.done, result.value, None, attempts, started, log)
        if result.kind == ProbeKind.failure:
            return self._finish(WaitState.failed, None, result.reason, attempts, started, log)
        return self._finish(pending_state, None, result.reason, attempts, started, log)

    def _finish(
        self,
        state: WaitState,
        value: T | None,
        reason: str | None,
        attempts: int,
        started: float,
        log: Any,
    ) -> WaitResult[T]:
        elapsed = self._clock() - started
        log.debug("wait_finished", state=str(state), attempts=attempts, elapsed=round(elapsed, 3))
        return WaitResult(state=state, value=value, reason=reason, attempts=attempts, elapsed=elapsed)
