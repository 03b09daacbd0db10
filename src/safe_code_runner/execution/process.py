from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

from ..errors import FailureHint
from .engine import CancellationToken
from .types import EngineRunConfig

logger = logging.getLogger(__name__)

_READ_CHUNK = 65536
# Protocol overhead on top of the user output budget (JSON framing, tracebacks).
_STREAM_SLACK_BYTES = 256 * 1024


@dataclass(slots=True)
class ProcessResult:
    """Captured result of one sandboxed child process.

    Example:
        ```python
        result = ProcessResult(stdout="{}", stderr="", returncode=0, cancelled_reason=None)
        ```
    """

    stdout: str
    stderr: str
    returncode: int | None
    cancelled_reason: str | None = None
    stdout_truncated: bool = False


def worker_path() -> Path:
    """Return the absolute path to the Python worker script.

    Example:
        ```python
        path = worker_path()
        ```
    """
    return Path(__file__).resolve().parents[1] / "worker.py"


def python_command(*args: str) -> list[str]:
    """Build an isolated-mode interpreter command line for the worker.

    Example:
        ```python
        cmd = python_command("--serve")
        ```
    """
    return [sys.executable, "-I", str(worker_path()), *args]


def node_executable() -> str | None:
    """Return the Node.js binary path, or None when it is not installed.

    Example:
        ```python
        node = node_executable()
        ```
    """
    return shutil.which("node")


def sandbox_env(workdir: str, extra: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a minimal environment for child processes.

    Example:
        ```python
        env = sandbox_env("/tmp/run")
        ```
    """
    env = {
        "PATH": os.environ.get("PATH", "/usr/bin:/bin"),
        "LANG": "C.UTF-8",
        "LC_ALL": "C.UTF-8",
        "PYTHONIOENCODING": "utf-8",
        "PYTHONDONTWRITEBYTECODE": "1",
        "HOME": workdir,
        "TMPDIR": workdir,
        "MPLBACKEND": "Agg",
        "MPLCONFIGDIR": workdir,
        "OPENBLAS_NUM_THREADS": "1",
        "OMP_NUM_THREADS": "1",
        "MKL_NUM_THREADS": "1",
    }
    if extra:
        env.update(extra)
    return env


def make_workdir() -> str:
    """Create a private scratch directory for one run.

    Example:
        ```python
        workdir = make_workdir()
        ```
    """
    return tempfile.mkdtemp(prefix="safe-code-runner-")


def remove_workdir(workdir: str) -> None:
    """Delete a scratch directory created by `make_workdir`.

    Example:
        ```python
        remove_workdir(workdir)
        ```
    """
    shutil.rmtree(workdir, ignore_errors=True)


def kill_process(proc: asyncio.subprocess.Process) -> None:
    """Kill a child and its process group; ignores already-exited children.

    Example:
        ```python
        kill_process(proc)
        ```
    """
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError, AttributeError):
        try:
            proc.kill()
        except ProcessLookupError:
            pass


def exit_hint(returncode: int | None) -> tuple[str, FailureHint]:
    """Describe an abnormal exit code and map it to a failure hint.

    Example:
        ```python
        message, hint = exit_hint(-signal.SIGXCPU)
        ```
    """
    if returncode is None:
        return "Process did not exit", FailureHint.HOST
    if returncode < 0:
        sig = -returncode
        if sig == getattr(signal, "SIGXCPU", -1):
            return "CPU time limit exceeded", FailureHint.TIMEOUT
        if sig == signal.SIGKILL:
            return "Process was killed (likely out of memory)", FailureHint.MEMORY
        if sig == signal.SIGSEGV:
            return "Process crashed (segmentation fault)", FailureHint.MEMORY
        try:
            name = signal.Signals(sig).name
        except ValueError:
            name = str(sig)
        return f"Process terminated by signal {name}", FailureHint.HOST
    return f"Process exited with status {returncode}", FailureHint.RUNTIME


async def _read_capped(stream: asyncio.StreamReader | None, cap: int) -> tuple[bytes, bool]:
    """Drain a stream, keeping at most `cap` bytes.

    Example:
        ```python
        data, truncated = await _read_capped(proc.stdout, 65536)
        ```
    """
    if stream is None:
        return b"", False
    kept = bytearray()
    truncated = False
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        room = cap - len(kept)
        if room > 0:
            kept.extend(chunk[:room])
        if len(chunk) > room:
            truncated = True
    return bytes(kept), truncated


async def run_process(
    cmd: Sequence[str],
    *,
    stdin_data: str,
    config: EngineRunConfig,
    token: CancellationToken,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
) -> ProcessResult:
    """Run one child process, feeding stdin and killing it on cancellation.

    The child runs in its own session so the whole process group can be killed.

    Example:
        ```python
        result = await run_process(python_command(), stdin_data=payload, config=config, token=token)
        ```
    """
    if token.cancelled:
        return ProcessResult("", "", None, token.reason)
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=dict(env) if env is not None else None,
        cwd=cwd,
        start_new_session=True,
    )
    logger.debug("Spawned pid %s for execution %s", proc.pid, config.execution_id)
    config.process_started(proc.pid)

    def _on_cancel(reason: str) -> None:
        """Kill the child when the token fires.

        Example:
            ```python
            _on_cancel("superseded")
            ```
        """
        logger.info("Killing pid %s for execution %s (%s)", proc.pid, config.execution_id, reason)
        kill_process(proc)

    token.add_callback(_on_cancel)
    cap = config.limits.max_output_bytes * 4 + _STREAM_SLACK_BYTES
    try:
        if proc.stdin is not None:
            try:
                proc.stdin.write(stdin_data.encode("utf-8"))
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                pass
            finally:
                proc.stdin.close()
        (stdout, truncated), (stderr, _) = await asyncio.gather(
            _read_capped(proc.stdout, cap),
            _read_capped(proc.stderr, cap),
        )
        await proc.wait()
    finally:
        token.remove_callback(_on_cancel)
        if proc.returncode is None:
            kill_process(proc)
            await proc.wait()
    return ProcessResult(
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        returncode=proc.returncode,
        cancelled_reason=token.reason,
        stdout_truncated=truncated,
    )
