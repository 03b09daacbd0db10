from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field

from .config import RuntimePoolSettings
from .process import kill_process, make_workdir, python_command, remove_workdir, sandbox_env

logger = logging.getLogger(__name__)

# Responses carry SVG figures and table rows on a single line.
_STREAM_LIMIT = 32 * 1024 * 1024


@dataclass(slots=True)
class RuntimeLease:
    """Leased warm runtime process metadata.

    Example:
        ```python
        lease = RuntimeLease(pid=4242, created_at=0.0, last_used_at=0.0, run_count=0)
        ```
    """

    pid: int
    created_at: float
    last_used_at: float
    run_count: int
    preloaded: tuple[str, ...] = ()
    process: asyncio.subprocess.Process | None = field(default=None, repr=False)


@dataclass(slots=True)
class _RuntimeEntry:
    """Internal pool entry tracking lease state and the owning event loop.

    Example:
        ```python
        entry = _RuntimeEntry(lease=lease, loop=asyncio.get_running_loop(), workdir="/tmp/rt", in_use=False)
        ```
    """

    lease: RuntimeLease
    loop: asyncio.AbstractEventLoop
    workdir: str
    in_use: bool


def should_rotate(lease: RuntimeLease, settings: RuntimePoolSettings, now: float) -> bool:
    """Decide whether a pooled runtime should be rotated.

    Example:
        ```python
        rotate = should_rotate(lease, settings, now=time.time())
        ```
    """
    if lease.run_count >= settings.max_runs:
        return True
    return (now - lease.created_at) >= settings.ttl_seconds


class RuntimePool:
    """Manage a warm pool of persistent Python runtime processes.

    Runtimes are keyed by their memory ceiling because RLIMIT_AS is fixed
    when the process starts. Entries belong to the event loop that spawned
    them; entries from another or a closed loop are discarded on acquire.

    Example:
        ```python
        pool = RuntimePool()
        lease = await pool.acquire(settings=settings, memory_bytes=1024**3)
        ```
    """

    def __init__(self) -> None:
        """Initialize an empty pool.

        Example:
            ```python
            pool = RuntimePool()
            ```
        """
        self._by_limit: dict[int, list[_RuntimeEntry]] = {}
        self._starting: dict[int, int] = {}

    def __len__(self) -> int:
        """Return the number of live pooled runtimes.

        Example:
            ```python
            count = len(pool)
            ```
        """
        return sum(len(entries) for entries in self._by_limit.values())

    async def acquire(self, *, settings: RuntimePoolSettings, memory_bytes: int) -> RuntimeLease:
        """Acquire a ready runtime, starting one when the pool has room.

        Example:
            ```python
            lease = await pool.acquire(settings=settings, memory_bytes=1024**3)
            ```
        """
        loop = asyncio.get_running_loop()
        deadline = time.monotonic() + settings.startup_timeout_seconds
        while True:
            entries = self._by_limit.setdefault(memory_bytes, [])
            self._rotate(entries, settings, loop)
            for entry in entries:
                if entry.in_use:
                    continue
                entry.in_use = True
                return entry.lease

            starting = self._starting.get(memory_bytes, 0)
            if len(entries) + starting < settings.pool_size:
                self._starting[memory_bytes] = starting + 1
                try:
                    entry = await self._start_runtime(memory_bytes, settings, loop)
                finally:
                    self._starting[memory_bytes] -= 1
                self._by_limit.setdefault(memory_bytes, []).append(entry)
                return entry.lease

            if time.monotonic() >= deadline:
                raise TimeoutError(
                    f"Timed out acquiring a runtime from the pool after {settings.startup_timeout_seconds}s"
                )
            await asyncio.sleep(0.05)

    def release(self, lease: RuntimeLease, *, mark_bad: bool = False) -> None:
        """Release a lease back to the pool and update rotation counters.

        Example:
            ```python
            pool.release(lease, mark_bad=True)
            ```
        """
        for entries in self._by_limit.values():
            for entry in list(entries):
                if entry.lease is not lease:
                    continue
                entry.in_use = False
                entry.lease.last_used_at = time.time()
                entry.lease.run_count += 1
                if mark_bad:
                    logger.info("Discarding runtime pid %s", lease.pid)
                    self._remove_entry(entries, entry)
                return

    def reset(self) -> None:
        """Kill every pooled runtime and forget all entries.

        Example:
            ```python
            GLOBAL_RUNTIME_POOL.reset()
            ```
        """
        for entries in self._by_limit.values():
            for entry in list(entries):
                self._remove_entry(entries, entry)
        self._by_limit.clear()
        self._starting.clear()

    def _rotate(
        self,
        entries: list[_RuntimeEntry],
        settings: RuntimePoolSettings,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        """Drop idle runtimes that are dead, stale, or from another event loop.

        Example:
            ```python
            pool._rotate(entries, settings, asyncio.get_running_loop())
            ```
        """
        now = time.time()
        for entry in list(entries):
            if entry.in_use and entry.loop is loop:
                continue
            process = entry.lease.process
            if (
                entry.loop is not loop
                or entry.loop.is_closed()
                or process is None
                or process.returncode is not None
                or should_rotate(entry.lease, settings, now)
            ):
                self._remove_entry(entries, entry)

    def _remove_entry(self, entries: list[_RuntimeEntry], entry: _RuntimeEntry) -> None:
        """Remove a pooled entry and kill its runtime process.

        Example:
            ```python
            pool._remove_entry(entries, entry)
            ```
        """
        if entry.lease.process is not None:
            kill_process(entry.lease.process)
        remove_workdir(entry.workdir)
        entries.remove(entry)

    async def _start_runtime(
        self,
        memory_bytes: int,
        settings: RuntimePoolSettings,
        loop: asyncio.AbstractEventLoop,
    ) -> _RuntimeEntry:
        """Spawn a serving runtime and wait for its ready line.

        Example:
            ```python
            entry = await pool._start_runtime(1024**3, settings, asyncio.get_running_loop())
            ```
        """
        workdir = make_workdir()
        process = await asyncio.create_subprocess_exec(
            *python_command("--serve", "--memory-bytes", str(memory_bytes)),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            env=sandbox_env(workdir),
            cwd=workdir,
            start_new_session=True,
            limit=_STREAM_LIMIT,
        )
        assert process.stdout is not None
        try:
            line = await asyncio.wait_for(process.stdout.readline(), settings.startup_timeout_seconds)
            ready = json.loads(line) if line.strip() else {}
        except (asyncio.TimeoutError, json.JSONDecodeError, ValueError) as exc:
            kill_process(process)
            remove_workdir(workdir)
            raise RuntimeError(f"Runtime failed to start: {exc}") from exc
        if not isinstance(ready, dict) or not ready.get("ready"):
            kill_process(process)
            remove_workdir(workdir)
            raise RuntimeError("Runtime exited before it was ready")

        now = time.time()
        preloaded = tuple(str(name) for name in ready.get("preloaded", []))
        logger.info("Started runtime pid %s (preloaded: %s)", process.pid, ", ".join(preloaded) or "none")
        lease = RuntimeLease(
            pid=process.pid,
            created_at=now,
            last_used_at=now,
            run_count=0,
            preloaded=preloaded,
            process=process,
        )
        return _RuntimeEntry(lease=lease, loop=loop, workdir=workdir, in_use=True)


GLOBAL_RUNTIME_POOL = RuntimePool()
