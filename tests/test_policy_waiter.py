"""Tests for the bounded polling wait engine."""

import asyncio
import time

import pytest

from tfci_policy.core.errors import GatewayError, TransientError
from tfci_policy.policy.waiter import (
    BackoffConfig,
    ProbeResult,
    WaitEngine,
    WaitInterrupted,
    WaitState,
    backoff_interval,
)


class ScriptedProbe:
    """Probe returning scripted results; the last one repeats."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        item = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(item, Exception):
            raise item
        return item


class TestBackoffInterval:
    def test_fibonacci_sequence(self):
        intervals = [backoff_interval(attempt, 1.0, 100.0) for attempt in range(1, 9)]

        assert intervals == [1.0, 1.0, 2.0, 3.0, 5.0, 8.0, 13.0, 21.0]

    def test_floor_scales_sequence(self):
        assert backoff_interval(1, 0.5, 100.0) == 0.5
        assert backoff_interval(4, 0.5, 100.0) == 1.5

    def test_capped(self):
        assert backoff_interval(7, 1.0, 15.0) == 13.0
        assert backoff_interval(8, 1.0, 15.0) == 15.0
        assert backoff_interval(500, 1.0, 15.0) == 15.0

    def test_never_exceeds_cap(self):
        for attempt in range(1, 50):
            assert backoff_interval(attempt, 2.0, 15.0) <= 15.0

    def test_zero_attempt_treated_as_first(self):
        assert backoff_interval(0, 1.0, 15.0) == 1.0


class TestBackoffConfig:
    def test_defaults(self):
        config = BackoffConfig()

        assert (config.floor, config.cap, config.deadline) == (1.0, 15.0, 600.0)

    @pytest.mark.parametrize(
        "kwargs",
        [{"floor": 0}, {"cap": -1}, {"deadline": 0}, {"floor": 20.0, "cap": 15.0}],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            BackoffConfig(**kwargs)


class TestWaitEngine:
    @pytest.mark.asyncio
    async def test_immediate_success(self, fast_backoff):
        probe = ScriptedProbe(ProbeResult.success("ready"))

        result = await WaitEngine(fast_backoff).wait(probe)

        assert result.state == WaitState.done
        assert result.value == "ready"
        assert result.attempts == 1
        assert probe.calls == 1

    @pytest.mark.asyncio
    async def test_pending_then_success(self, fast_backoff):
        probe = ScriptedProbe(
            ProbeResult.pending("queued"),
            ProbeResult.pending("running"),
            ProbeResult.success(42),
        )

        result = await WaitEngine(fast_backoff).wait(probe)

        assert result.state == WaitState.done
        assert result.value == 42
        assert result.attempts == 3
        assert probe.calls == 3

    @pytest.mark.asyncio
    async def test_failure_is_terminal(self, fast_backoff):
        probe = ScriptedProbe(ProbeResult.pending(), ProbeResult.failure("discarded"))

        result = await WaitEngine(fast_backoff).wait(probe)

        assert result.state == WaitState.failed
        assert result.reason == "discarded"
        assert probe.calls == 2

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, fast_backoff):
        probe = ScriptedProbe(
            TransientError("rate limited"),
            TransientError("bad gateway"),
            ProbeResult.success("ok"),
        )

        result = await WaitEngine(fast_backoff).wait(probe)

        assert result.state == WaitState.done
        assert probe.calls == 3

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, fast_backoff):
        probe = ScriptedProbe(GatewayError("bad request"))

        with pytest.raises(GatewayError):
            await WaitEngine(fast_backoff).wait(probe)
        assert probe.calls == 1

    @pytest.mark.asyncio
    async def test_fast_fail_checks_once(self, fast_backoff):
        probe = ScriptedProbe(ProbeResult.pending("queued"))

        result = await WaitEngine(fast_backoff).wait(probe, no_wait=True)

        assert result.state == WaitState.pending
        assert result.reason == "queued"
        assert result.attempts == 1
        assert probe.calls == 1

    @pytest.mark.asyncio
    async def test_fast_fail_returns_settled_value(self, fast_backoff):
        probe = ScriptedProbe(ProbeResult.success("done"))

        result = await WaitEngine(fast_backoff).wait(probe, no_wait=True)

        assert result.state == WaitState.done
        assert result.value == "done"

    @pytest.mark.asyncio
    async def test_deadline_reached(self, short_deadline):
        probe = ScriptedProbe(ProbeResult.pending("queued"))

        result = await WaitEngine(short_deadline).wait(probe)

        assert result.state == WaitState.timed_out
        assert result.value is None
        assert probe.calls > 1

    @pytest.mark.asyncio
    async def test_caller_timeout_shorter_than_deadline(self, fast_backoff):
        probe = ScriptedProbe(ProbeResult.pending())

        started = time.monotonic()
        result = await WaitEngine(fast_backoff).wait(probe, timeout=0.05)

        assert result.state == WaitState.timed_out
        assert time.monotonic() - started < 1.0

    @pytest.mark.asyncio
    async def test_sleep_clamped_to_deadline(self):
        # A single backoff step would be 10s; the deadline must still win.
        config = BackoffConfig(floor=10.0, cap=10.0, deadline=0.1)
        probe = ScriptedProbe(ProbeResult.pending())

        started = time.monotonic()
        result = await WaitEngine(config).wait(probe)

        assert result.state == WaitState.timed_out
        assert time.monotonic() - started < 2.0

    @pytest.mark.asyncio
    async def test_slow_check_abandoned_at_deadline(self):
        config = BackoffConfig(floor=0.001, cap=0.005, deadline=0.05)

        async def hanging_probe():
            await asyncio.sleep(10)
            return ProbeResult.success("late")

        started = time.monotonic()
        result = await WaitEngine(config).wait(hanging_probe)

        assert result.state == WaitState.timed_out
        assert result.reason == "deadline exceeded"
        assert time.monotonic() - started < 2.0

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, fast_backoff):
        probe = ScriptedProbe(ProbeResult.success("never"))
        cancel = asyncio.Event()
        cancel.set()

        result = await WaitEngine(fast_backoff).wait(probe, cancel=cancel)

        assert result.state == WaitState.timed_out
        assert result.reason == "canceled"
        assert probe.calls == 0

    @pytest.mark.asyncio
    async def test_cancel_during_sleep(self):
        config = BackoffConfig(floor=5.0, cap=5.0, deadline=60.0)
        probe = ScriptedProbe(ProbeResult.pending())
        cancel = asyncio.Event()

        async def cancel_soon():
            await asyncio.sleep(0.05)
            cancel.set()

        started = time.monotonic()
        canceller = asyncio.ensure_future(cancel_soon())
        result = await WaitEngine(config).wait(probe, cancel=cancel)
        await canceller

        assert result.state == WaitState.timed_out
        assert result.reason == "canceled"
        assert probe.calls == 1
        assert time.monotonic() - started < 2.0

    @pytest.mark.asyncio
    async def test_cancel_during_check(self, fast_backoff):
        cancel = asyncio.Event()

        async def hanging_probe():
            cancel.set()
            await asyncio.sleep(10)
            return ProbeResult.success("late")

        result = await WaitEngine(fast_backoff).wait(hanging_probe, cancel=cancel)

        assert result.state == WaitState.timed_out
        assert result.reason == "canceled"


class TestBounded:
    @pytest.mark.asyncio
    async def test_returns_call_result(self, fast_backoff):
        engine = WaitEngine(fast_backoff)

        async def call():
            return "done"

        assert await engine.bounded(call, deadline_at=engine.deadline_at()) == "done"

    @pytest.mark.asyncio
    async def test_passed_deadline_skips_call(self, fast_backoff):
        engine = WaitEngine(fast_backoff)
        calls = []

        async def call():
            calls.append(1)

        with pytest.raises(WaitInterrupted, match="deadline exceeded"):
            await engine.bounded(call, deadline_at=time.monotonic() - 1)
        assert calls == []

    @pytest.mark.asyncio
    async def test_set_cancel_skips_call(self, fast_backoff):
        engine = WaitEngine(fast_backoff)
        cancel = asyncio.Event()
        cancel.set()
        calls = []

        async def call():
            calls.append(1)

        with pytest.raises(WaitInterrupted) as exc_info:
            await engine.bounded(call, deadline_at=engine.deadline_at(), cancel=cancel)
        assert exc_info.value.reason == "canceled"
        assert calls == []

    @pytest.mark.asyncio
    async def test_slow_call_abandoned_at_deadline(self, fast_backoff):
        engine = WaitEngine(fast_backoff)

        async def call():
            await asyncio.sleep(10)

        started = time.monotonic()
        with pytest.raises(WaitInterrupted, match="deadline exceeded"):
            await engine.bounded(call, deadline_at=engine.deadline_at(0.05))
        assert time.monotonic() - started < 2.0

    def test_deadline_at_uses_shorter_limit(self):
        now = [100.0]
        engine = WaitEngine(BackoffConfig(deadline=30.0), clock=lambda: now[0])

        assert engine.deadline_at() == 130.0
        assert engine.deadline_at(5.0) == 105.0
        assert engine.deadline_at(90.0) == 130.0

    @pytest.mark.asyncio
    async def test_wait_honors_shared_deadline(self, fast_backoff):
        probe = ScriptedProbe(ProbeResult.success("never"))

        result = await WaitEngine(fast_backoff).wait(probe, deadline_at=time.monotonic() - 1)

        assert result.state == WaitState.timed_out
        assert result.reason == "deadline exceeded"
        assert probe.calls == 0
