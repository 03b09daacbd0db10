import asyncio

import pytest

from safe_code_runner import ResourceLimits
from safe_code_runner.monitor import CPU_TIME, MEMORY, WALL_TIME, ProcessSample, ResourceMonitor

LIMITS = ResourceLimits(max_memory_bytes=1000, max_cpu_time_ms=500, max_wall_time_ms=10_000)


class _FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class _FakeProbe:
    def __init__(self, rss_bytes: int | None = None, cpu_time_ms: float | None = None) -> None:
        self.rss_bytes = rss_bytes
        self.cpu_time_ms = cpu_time_ms

    def sample(self, pid: int) -> ProcessSample:
        return ProcessSample(rss_bytes=self.rss_bytes, cpu_time_ms=self.cpu_time_ms)


def test_wall_time_violation_is_reported() -> None:
    clock = _FakeClock()
    monitor = ResourceMonitor(interval_ms=10, probe=_FakeProbe(), clock=clock)
    monitor.start("exec-1", LIMITS)

    assert monitor.check_limits("exec-1").within_limits
    clock.now += 10.0
    check = monitor.check_limits("exec-1")
    assert not check.within_limits
    assert check.exceeded == (WALL_TIME,)


def test_memory_and_cpu_are_measured_from_attach() -> None:
    probe = _FakeProbe(rss_bytes=500, cpu_time_ms=2_000.0)
    monitor = ResourceMonitor(interval_ms=10, probe=probe, clock=_FakeClock())
    monitor.start("exec-1", LIMITS)
    monitor.attach("exec-1", 4242)

    # CPU used before attach does not count.
    assert monitor.check_limits("exec-1").within_limits

    probe.rss_bytes = 5_000
    probe.cpu_time_ms = 2_600.0
    check = monitor.check_limits("exec-1")
    assert set(check.exceeded) == {MEMORY, CPU_TIME}
    assert check.usage is not None
    assert check.usage.cpu_time_ms == pytest.approx(600.0)
    assert check.usage.peak_memory_bytes == 5_000


def test_unavailable_metrics_never_count_as_violations() -> None:
    monitor = ResourceMonitor(interval_ms=10, probe=_FakeProbe(), clock=_FakeClock())
    monitor.start("exec-1", LIMITS)
    monitor.attach("exec-1", 4242)
    usage = monitor.sample("exec-1")
    assert usage.cpu_time_ms is None
    assert usage.memory_bytes is None
    assert monitor.check_limits("exec-1").within_limits


def test_reported_memory_feeds_peak_usage() -> None:
    monitor = ResourceMonitor(interval_ms=10, probe=_FakeProbe(), clock=_FakeClock())
    monitor.start("exec-1", LIMITS)
    monitor.report_memory("exec-1", 700)
    monitor.report_memory("exec-1", 300)
    final = monitor.stop("exec-1")
    assert final.peak_memory_bytes == 700
    assert not monitor.is_active("exec-1")


def test_stop_of_unknown_execution_returns_empty_usage() -> None:
    monitor = ResourceMonitor(interval_ms=10)
    assert monitor.stop("missing").wall_time_ms == 0.0


def test_start_twice_is_rejected() -> None:
    monitor = ResourceMonitor(interval_ms=10)
    monitor.start("exec-1", LIMITS)
    with pytest.raises(ValueError, match="already monitored"):
        monitor.start("exec-1", LIMITS)


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError, match="interval_ms"):
        ResourceMonitor(interval_ms=0)


def test_watch_returns_when_a_limit_trips() -> None:
    async def scenario():
        probe = _FakeProbe(rss_bytes=10)
        monitor = ResourceMonitor(interval_ms=5, probe=probe)
        monitor.start("exec-1", LIMITS)
        monitor.attach("exec-1", 4242)
        watcher = asyncio.ensure_future(monitor.watch("exec-1"))
        await asyncio.sleep(0.03)
        assert not watcher.done()
        probe.rss_bytes = 10_000
        return await asyncio.wait_for(watcher, 1.0)

    check = asyncio.run(scenario())
    assert check.exceeded == (MEMORY,)


def test_watch_ends_quietly_when_tracking_stops() -> None:
    async def scenario():
        monitor = ResourceMonitor(interval_ms=5, probe=_FakeProbe())
        monitor.start("exec-1", LIMITS)
        watcher = asyncio.ensure_future(monitor.watch("exec-1"))
        await asyncio.sleep(0.01)
        monitor.stop("exec-1")
        return await asyncio.wait_for(watcher, 1.0)

    assert asyncio.run(scenario()).within_limits


def test_wall_time_violation_surfaces_within_one_interval() -> None:
    async def scenario():
        limits = ResourceLimits(max_memory_bytes=1000, max_cpu_time_ms=500, max_wall_time_ms=50)
        monitor = ResourceMonitor(interval_ms=1000, probe=_FakeProbe())
        monitor.start("exec-1", limits)
        return await asyncio.wait_for(monitor.watch("exec-1"), 0.5)

    assert asyncio.run(scenario()).exceeded == (WALL_TIME,)
