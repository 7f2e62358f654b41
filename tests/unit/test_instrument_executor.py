import asyncio
import random
from collections import defaultdict

import pytest
from prometheus_client import CollectorRegistry

from core.config.settings import ExecutorSettings
from core.monitoring.prometheus_metrics import GatewayMetrics
from core.streaming.task_transport import LocalTaskTransport
from core.trading.models import Task, TaskKind
from core.utils.exceptions import BrokerTimeoutError, InstrumentLockedError, OrderError
from services.executor import InstrumentExecutor, InstrumentLockRegistry, JitteredThrottle, LockState


def make_task(make_intent, instrument="BTCUSDT", task_id="t1", kind=TaskKind.CLOSE):
    return Task(task_id=task_id, kind=kind, payload=make_intent(instrument=instrument))


def make_executor(clock, rng, settings=None, metrics=None, locks=None, transport=None):
    settings = settings or ExecutorSettings(base_delay_ms=300, locked_retry_delay_ms=5,
                                            failure_retry_delay_ms=0, max_in_flight=4)
    return InstrumentExecutor(
        transport=transport or LocalTaskTransport(),
        locks=locks or InstrumentLockRegistry(),
        throttle=JitteredThrottle(settings.base_delay_ms, settings.jitter_ratio, clock=clock, rng=rng),
        settings=settings,
        metrics=metrics,
    )


class ConcurrencyRecorder:
    """Handler recording how many calls overlap per instrument."""

    def __init__(self, duration: float = 0.01):
        self.duration = duration
        self.active = defaultdict(int)
        self.max_active = defaultdict(int)
        self.order = []

    async def __call__(self, task: Task):
        instrument = task.instrument
        self.active[instrument] += 1
        self.max_active[instrument] = max(self.max_active[instrument], self.active[instrument])
        try:
            await asyncio.sleep(self.duration)
            self.order.append(task.task_id)
            return task.task_id
        finally:
            self.active[instrument] -= 1


class TestInstrumentLockRegistry:
    def test_lock_states(self):
        locks = InstrumentLockRegistry()

        assert locks.state("btcusdt") is LockState.FREE
        assert locks.try_acquire("btcusdt")
        assert locks.state("BTCUSDT") is LockState.LOCKED
        assert not locks.try_acquire(" BTCUSDT ")

        locks.release("BTCUSDT")
        assert locks.state("btcusdt") is LockState.FREE

    @pytest.mark.asyncio
    async def test_hold_raises_locked_signal_when_busy(self):
        locks = InstrumentLockRegistry()

        async with locks.hold("ETHUSDT"):
            with pytest.raises(InstrumentLockedError):
                async with locks.hold("ethusdt"):
                    pass
        assert not locks.is_locked("ETHUSDT")

    def test_locked_gauge_tracks_held_instruments(self):
        registry = CollectorRegistry()
        locks = InstrumentLockRegistry(metrics=GatewayMetrics(registry=registry))

        locks.try_acquire("A")
        locks.try_acquire("B")
        assert registry.get_sample_value("gateway_instruments_locked") == 2
        locks.release("A")
        assert registry.get_sample_value("gateway_instruments_locked") == 1


class TestJitteredThrottle:
    def test_delay_stays_within_jitter_band(self, clock):
        throttle = JitteredThrottle(base_delay_ms=300, jitter_ratio=0.1, clock=clock, rng=random.Random(1))

        delays = [throttle.next_delay() for _ in range(200)]

        assert all(0.27 <= d <= 0.33 for d in delays)
        assert len(set(delays)) > 1

    @pytest.mark.asyncio
    async def test_wait_sleeps_on_injected_clock(self, clock):
        throttle = JitteredThrottle(base_delay_ms=300, jitter_ratio=0.0, clock=clock)

        delay = await throttle.wait()

        assert delay == pytest.approx(0.3)
        assert clock.sleeps == [pytest.approx(0.3)]

    def test_rejects_invalid_configuration(self):
        with pytest.raises(ValueError):
            JitteredThrottle(base_delay_ms=-1)
        with pytest.raises(ValueError):
            JitteredThrottle(jitter_ratio=1.5)


class TestInstrumentExecutor:
    @pytest.mark.asyncio
    async def test_same_instrument_never_runs_concurrently(self, clock, rng, make_intent):
        executor = make_executor(clock, rng)
        recorder = ConcurrencyRecorder()
        await executor.start(recorder)
        try:
            futures = [
                await executor.submit(make_task(make_intent, instrument=instrument, task_id=f"{instrument}-{i}"))
                for i in range(4)
                for instrument in ("BTCUSDT", "ETHUSDT")
            ]
            results = await asyncio.wait_for(asyncio.gather(*futures), timeout=5)
        finally:
            await executor.stop()

        assert sorted(results) == sorted(f"{i}-{n}" for n in range(4) for i in ("BTCUSDT", "ETHUSDT"))
        assert recorder.max_active["BTCUSDT"] == 1
        assert recorder.max_active["ETHUSDT"] == 1

    @pytest.mark.asyncio
    async def test_second_close_is_requeued_until_first_completes(self, clock, rng, make_intent):
        registry = CollectorRegistry()
        executor = make_executor(clock, rng, metrics=GatewayMetrics(registry=registry))
        recorder = ConcurrencyRecorder(duration=0.05)
        await executor.start(recorder)
        try:
            first = await executor.submit(make_task(make_intent, task_id="close-1"))
            second = await executor.submit(make_task(make_intent, task_id="close-2"))
            await asyncio.wait_for(asyncio.gather(first, second), timeout=5)
        finally:
            await executor.stop()

        assert recorder.order == ["close-1", "close-2"]
        assert recorder.max_active["BTCUSDT"] == 1
        assert registry.get_sample_value("gateway_instrument_lock_rejections_total", {"instrument": "BTCUSDT"}) >= 1

    @pytest.mark.asyncio
    async def test_throttle_applied_before_each_handler(self, clock, rng, make_intent):
        executor = make_executor(clock, rng)
        await executor.start(ConcurrencyRecorder(duration=0))
        try:
            future = await executor.submit(make_task(make_intent))
            await asyncio.wait_for(future, timeout=5)
        finally:
            await executor.stop()

        assert len(clock.sleeps) == 1
        assert 0.27 <= clock.sleeps[0] <= 0.33

    @pytest.mark.asyncio
    async def test_transient_failure_is_redelivered(self, clock, rng, make_intent):
        calls = []

        async def flaky(task: Task):
            calls.append(task.attempts)
            if len(calls) < 3:
                raise BrokerTimeoutError("timed out", broker="binance")
            return "done"

        executor = make_executor(clock, rng)
        await executor.start(flaky)
        try:
            result = await asyncio.wait_for(await executor.submit(make_task(make_intent)), timeout=5)
        finally:
            await executor.stop()

        assert result == "done"
        assert calls == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_permanent_error_is_dead_lettered_at_once(self, clock, rng, make_intent):
        transport = LocalTaskTransport()
        registry = CollectorRegistry()
        calls = []

        async def rejecting(task: Task):
            calls.append(task.task_id)
            raise OrderError("Order rejected: insufficient balance")

        executor = make_executor(clock, rng, transport=transport, metrics=GatewayMetrics(registry=registry))
        await executor.start(rejecting)
        try:
            future = await executor.submit(make_task(make_intent))
            with pytest.raises(OrderError):
                await asyncio.wait_for(future, timeout=5)
        finally:
            await executor.stop()

        assert calls == ["t1"]
        assert [t.task_id for t in transport.dead_letters] == ["t1"]
        assert registry.get_sample_value("gateway_tasks_dead_lettered_total", {"kind": "close"}) == 1

    @pytest.mark.asyncio
    async def test_redeliveries_are_bounded(self, clock, rng, make_intent):
        settings = ExecutorSettings(base_delay_ms=0, failure_retry_delay_ms=0, max_redeliveries=3)
        transport = LocalTaskTransport()
        calls = []

        async def always_failing(task: Task):
            calls.append(task.attempts)
            raise RuntimeError("broker unavailable")

        executor = make_executor(clock, rng, settings=settings, transport=transport)
        await executor.start(always_failing)
        try:
            future = await executor.submit(make_task(make_intent))
            with pytest.raises(RuntimeError):
                await asyncio.wait_for(future, timeout=5)
        finally:
            await executor.stop()

        assert calls == [0, 1, 2]
        assert transport.dead_letters[0].attempts == 3

    @pytest.mark.asyncio
    async def test_lock_held_elsewhere_defers_without_counting_attempts(self, clock, rng, make_intent):
        locks = InstrumentLockRegistry()
        seen = []

        async def handler(task: Task):
            seen.append(task.attempts)
            return "ok"

        executor = make_executor(clock, rng, locks=locks)
        locks.try_acquire("BTCUSDT")
        await executor.start(handler)
        try:
            future = await executor.submit(make_task(make_intent))
            await asyncio.sleep(0.05)
            assert not future.done()
            locks.release("BTCUSDT")
            assert await asyncio.wait_for(future, timeout=5) == "ok"
        finally:
            await executor.stop()

        assert seen == [0]

    @pytest.mark.asyncio
    async def test_non_concurrent_transport_forces_single_in_flight(self, clock, rng, make_intent):
        transport = LocalTaskTransport()
        transport.supports_concurrent_handlers = False
        executor = make_executor(clock, rng, transport=transport)
        active = []
        peak = []

        async def handler(task: Task):
            active.append(task.task_id)
            peak.append(len(active))
            await asyncio.sleep(0.01)
            active.remove(task.task_id)

        await executor.start(handler)
        try:
            futures = [await executor.submit(make_task(make_intent, instrument=s, task_id=s))
                       for s in ("A", "B", "C")]
            await asyncio.wait_for(asyncio.gather(*futures), timeout=5)
        finally:
            await executor.stop()

        assert max(peak) == 1
