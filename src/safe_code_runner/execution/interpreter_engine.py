from __future__ import annotations

import json
import logging

from ..errors import FailureHint
from ..policy import SandboxPolicy
from .capabilities import PROCESS, EngineCapabilities
from .config import RuntimePoolSettings, default_pool_settings
from .engine import CancellationToken
from .process import ProcessResult, kill_process
from .runtime_pool import GLOBAL_RUNTIME_POOL, RuntimePool
from .script_engine import outcome_from_worker
from .types import EngineOutcome, EngineRunConfig

logger = logging.getLogger(__name__)


class InterpreterEngine:
    """Run scientific Python in a warm runtime with numpy, pandas and matplotlib.

    The first run in a host process starts the runtime; later runs reuse it
    with a fresh namespace. A runtime that fails, overruns, or is cancelled
    is killed and replaced on next use.

    Example:
        ```python
        engine = InterpreterEngine(policy=SandboxPolicy())
        outcome = await engine.run("import numpy as np\\nprint(np.arange(3))", config, CancellationToken())
        ```
    """

    capabilities = EngineCapabilities(isolation=PROCESS, forced_termination=True, reports_memory=True, visual_output=True)

    def __init__(
        self,
        *,
        policy: SandboxPolicy | None = None,
        pool_settings: RuntimePoolSettings | None = None,
        pool: RuntimePool | None = None,
    ) -> None:
        """Bind the engine to a sandbox policy and a runtime pool.

        Example:
            ```python
            engine = InterpreterEngine(pool=RuntimePool())
            ```
        """
        self._policy = policy or SandboxPolicy()
        self._pool_settings = pool_settings or default_pool_settings()
        self._pool = pool if pool is not None else GLOBAL_RUNTIME_POOL

    async def run(self, code: str, config: EngineRunConfig, token: CancellationToken) -> EngineOutcome:
        """Send one request to a leased runtime and wait for its response line.

        Example:
            ```python
            outcome = await engine.run("import pandas as pd\\ndf = pd.DataFrame({'a': [1]})", config, token)
            ```
        """
        try:
            lease = await self._pool.acquire(settings=self._pool_settings, memory_bytes=config.limits.max_memory_bytes)
        except (TimeoutError, RuntimeError, OSError) as exc:
            logger.error("Interpreter runtime unavailable: %s", exc)
            return EngineOutcome.failed(f"Interpreter runtime unavailable: {exc}", FailureHint.HOST)

        process = lease.process
        assert process is not None and process.stdin is not None and process.stdout is not None
        config.process_started(lease.pid)

        def _on_cancel(reason: str) -> None:
            """Kill the leased runtime when the token fires.

            Example:
                ```python
                _on_cancel("wall_time")
                ```
            """
            logger.info("Killing runtime pid %s for execution %s (%s)", lease.pid, config.execution_id, reason)
            kill_process(process)

        token.add_callback(_on_cancel)
        mark_bad = True
        try:
            request = {"code": code, "policy": self._policy.to_payload(), "limits": config.limits.to_dict()}
            try:
                process.stdin.write((json.dumps(request) + "\n").encode("utf-8"))
                await process.stdin.drain()
                line = await process.stdout.readline()
            except (BrokenPipeError, ConnectionResetError):
                line = b""
            except ValueError as exc:
                return EngineOutcome.failed(f"Runtime response too large: {exc}", FailureHint.MEMORY)

            if not line:
                returncode = await process.wait()
                return outcome_from_worker(ProcessResult("", "", returncode, token.reason))

            outcome = outcome_from_worker(ProcessResult(line.decode("utf-8", errors="replace"), "", 0, token.reason))
            mark_bad = token.cancelled or (outcome.failure is not None and outcome.failure.hint is FailureHint.MEMORY)
            outcome.metadata["runtime_pid"] = lease.pid
            outcome.metadata["runtime_runs"] = lease.run_count + 1
            return outcome
        finally:
            token.remove_callback(_on_cancel)
            self._pool.release(lease, mark_bad=mark_bad)

    def release_session(self, session_id: str) -> None:
        """Nothing to release; each run already gets a fresh namespace.

        Example:
            ```python
            engine.release_session("tab-1")
            ```
        """
