from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

from .limits import ResourceLimits

logger = logging.getLogger(__name__)

WALL_TIME = "wall_time"
CPU_TIME = "cpu_time"
MEMORY = "memory"


@dataclass(frozen=True, slots=True)
class ProcessSample:
    """One reading of a process's resident memory and consumed CPU time.

    Either field is None when the host cannot report it.

    Example:
        ```python
        sample = ProcessSample(rss_bytes=52_428_800, cpu_time_ms=120.0)
        ```
    """

    rss_bytes: int | None
    cpu_time_ms: float | None


class UsageProbe(Protocol):
    def sample(self, pid: int) -> ProcessSample:
        """Read current usage for a process id.

        Example:
            ```python
            sample = probe.sample(4242)
            ```
        """
        ...


class ProcFsProbe:
    """Read process usage from /proc; reports absent metrics elsewhere.

    Example:
        ```python
        sample = ProcFsProbe().sample(os.getpid())
        ```
    """

    def __init__(self, root: str = "/proc") -> None:
        """Initialize the probe for a procfs mount point.

        Example:
            ```python
            probe = ProcFsProbe("/proc")
            ```
        """
        self._root = Path(root)
        try:
            self._ticks_per_second = os.sysconf("SC_CLK_TCK")
        except (AttributeError, ValueError, OSError):
            self._ticks_per_second = 100

    def sample(self, pid: int) -> ProcessSample:
        """Read VmRSS and user+system CPU ticks for `pid`.

        Example:
            ```python
            sample = probe.sample(os.getpid())
            ```
        """
        return ProcessSample(rss_bytes=self._rss(pid), cpu_time_ms=self._cpu_ms(pid))

    def _rss(self, pid: int) -> int | None:
        """Return resident set size in bytes, or None when unreadable.

        Example:
            ```python
            rss = probe._rss(os.getpid())
            ```
        """
        try:
            text = (self._root / str(pid) / "status").read_text(encoding="utf-8")
        except OSError:
            return None
        for line in text.splitlines():
            if line.startswith("VmRSS:"):
                parts = line.split()
                if len(parts) >= 2 and parts[1].isdigit():
                    return int(parts[1]) * 1024
        return None

    def _cpu_ms(self, pid: int) -> float | None:
        """Return user+system CPU time in milliseconds, or None when unreadable.

        Example:
            ```python
            cpu = probe._cpu_ms(os.getpid())
            ```
        """
        try:
            text = (self._root / str(pid) / "stat").read_text(encoding="utf-8")
        except OSError:
            return None
        # The command name may contain spaces; fields resume after the last ')'.
        fields_after = text.rsplit(")", 1)[-1].split()
        if len(fields_after) < 13:
            return None
        try:
            ticks = int(fields_after[11]) + int(fields_after[12])
        except ValueError:
            return None
        return ticks * 1000.0 / self._ticks_per_second


@dataclass(frozen=True, slots=True)
class ResourceUsage:
    """Usage snapshot for one execution; None means the metric is unavailable.

    Example:
        ```python
        usage = ResourceUsage(wall_time_ms=12.5, cpu_time_ms=None, memory_bytes=None, peak_memory_bytes=None)
        ```
    """

    wall_time_ms: float
    cpu_time_ms: float | None = None
    memory_bytes: int | None = None
    peak_memory_bytes: int | None = None


@dataclass(frozen=True, slots=True)
class LimitCheck:
    """Result of comparing usage against limits.

    Example:
        ```python
        check = LimitCheck(within_limits=False, exceeded=("wall_time",))
        ```
    """

    within_limits: bool
    exceeded: tuple[str, ...] = ()
    usage: ResourceUsage | None = None


@dataclass(slots=True)
class _Tracked:
    """Mutable bookkeeping for one monitored execution.

    Example:
        ```python
        tracked = _Tracked(limits=limits, started_at=time.monotonic())
        ```
    """

    limits: ResourceLimits
    started_at: float
    pid: int | None = None
    cpu_baseline_ms: float | None = None
    cpu_time_ms: float | None = None
    memory_bytes: int | None = None
    peak_memory_bytes: int | None = None


class ResourceMonitor:
    """Track wall time, CPU time and memory per execution and report violations.

    Example:
        ```python
        monitor = ResourceMonitor(interval_ms=100)
        monitor.start("exec-1", limits)
        check = await monitor.watch("exec-1")
        ```
    """

    def __init__(
        self,
        *,
        interval_ms: int = 100,
        probe: UsageProbe | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the monitor with a sampling interval and usage probe.

        Example:
            ```python
            monitor = ResourceMonitor(interval_ms=50, probe=ProcFsProbe())
            ```
        """
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self._interval_s = interval_ms / 1000.0
        self._probe: UsageProbe = probe or ProcFsProbe()
        self._clock = clock
        self._tracked: dict[str, _Tracked] = {}

    @property
    def interval_ms(self) -> float:
        """Return the sampling interval in milliseconds.

        Example:
            ```python
            interval = monitor.interval_ms
            ```
        """
        return self._interval_s * 1000.0

    def start(self, execution_id: str, limits: ResourceLimits) -> None:
        """Begin tracking an execution under the given limits.

        Example:
            ```python
            monitor.start("exec-1", limits)
            ```
        """
        if execution_id in self._tracked:
            raise ValueError(f"Execution '{execution_id}' is already monitored")
        self._tracked[execution_id] = _Tracked(limits=limits, started_at=self._clock())

    def attach(self, execution_id: str, pid: int) -> None:
        """Associate a process with an execution; CPU is measured from this point.

        Example:
            ```python
            monitor.attach("exec-1", proc.pid)
            ```
        """
        tracked = self._tracked.get(execution_id)
        if tracked is None:
            return
        tracked.pid = pid
        baseline = self._probe.sample(pid).cpu_time_ms
        tracked.cpu_baseline_ms = baseline
        logger.debug("Attached pid %s to execution %s", pid, execution_id)

    def report_memory(self, execution_id: str, memory_bytes: int | None) -> None:
        """Record an engine-reported peak memory figure.

        Example:
            ```python
            monitor.report_memory("exec-1", 48_000_000)
            ```
        """
        tracked = self._tracked.get(execution_id)
        if tracked is None or memory_bytes is None:
            return
        tracked.peak_memory_bytes = max(tracked.peak_memory_bytes or 0, memory_bytes)

    def is_active(self, execution_id: str) -> bool:
        """Return True while an execution is being tracked.

        Example:
            ```python
            assert monitor.is_active("exec-1")
            ```
        """
        return execution_id in self._tracked

    def sample(self, execution_id: str) -> ResourceUsage:
        """Take a fresh usage reading for an execution.

        Example:
            ```python
            usage = monitor.sample("exec-1")
            ```
        """
        tracked = self._require(execution_id)
        if tracked.pid is not None:
            reading = self._probe.sample(tracked.pid)
            if reading.rss_bytes is not None:
                tracked.memory_bytes = reading.rss_bytes
                tracked.peak_memory_bytes = max(tracked.peak_memory_bytes or 0, reading.rss_bytes)
            if reading.cpu_time_ms is not None:
                baseline = tracked.cpu_baseline_ms or 0.0
                tracked.cpu_time_ms = max(0.0, reading.cpu_time_ms - baseline)
        return self._usage(tracked)

    def check_limits(self, execution_id: str) -> LimitCheck:
        """Sample an execution and compare it against its limits.

        Metrics the host cannot report never count as a violation.

        Example:
            ```python
            check = monitor.check_limits("exec-1")
            ```
        """
        tracked = self._require(execution_id)
        usage = self.sample(execution_id)
        limits = tracked.limits
        exceeded: list[str] = []
        if usage.wall_time_ms >= limits.max_wall_time_ms:
            exceeded.append(WALL_TIME)
        if usage.cpu_time_ms is not None and usage.cpu_time_ms >= limits.max_cpu_time_ms:
            exceeded.append(CPU_TIME)
        if usage.memory_bytes is not None and usage.memory_bytes > limits.max_memory_bytes:
            exceeded.append(MEMORY)
        return LimitCheck(within_limits=not exceeded, exceeded=tuple(exceeded), usage=usage)

    def stop(self, execution_id: str) -> ResourceUsage:
        """Stop tracking an execution and return its final metrics.

        Example:
            ```python
            final = monitor.stop("exec-1")
            ```
        """
        tracked = self._tracked.pop(execution_id, None)
        if tracked is None:
            return ResourceUsage(wall_time_ms=0.0)
        return self._usage(tracked)

    async def watch(self, execution_id: str) -> LimitCheck:
        """Poll an execution until a limit trips; returns the violating check.

        The sleep before each sample never overshoots the remaining wall-clock
        budget, so wall-time violations surface within one interval.

        Example:
            ```python
            violation = await monitor.watch("exec-1")
            ```
        """
        while True:
            tracked = self._tracked.get(execution_id)
            if tracked is None:
                return LimitCheck(within_limits=True)
            remaining_s = tracked.limits.max_wall_time_ms / 1000.0 - (self._clock() - tracked.started_at)
            await asyncio.sleep(max(0.0, min(self._interval_s, remaining_s)))
            if execution_id not in self._tracked:
                return LimitCheck(within_limits=True)
            check = self.check_limits(execution_id)
            if not check.within_limits:
                logger.info("Execution %s exceeded %s", execution_id, ", ".join(check.exceeded))
                return check

    def _usage(self, tracked: _Tracked) -> ResourceUsage:
        """Build a usage snapshot from bookkeeping.

        Example:
            ```python
            usage = monitor._usage(tracked)
            ```
        """
        return ResourceUsage(
            wall_time_ms=max(0.0, (self._clock() - tracked.started_at) * 1000.0),
            cpu_time_ms=tracked.cpu_time_ms,
            memory_bytes=tracked.memory_bytes,
            peak_memory_bytes=tracked.peak_memory_bytes,
        )

    def _require(self, execution_id: str) -> _Tracked:
        """Return bookkeeping for an execution or raise KeyError.

        Example:
            ```python
            tracked = monitor._require("exec-1")
            ```
        """
        tracked = self._tracked.get(execution_id)
        if tracked is None:
            raise KeyError(f"Execution '{execution_id}' is not monitored")
        return tracked
