from __future__ import annotations

import json
import logging
from typing import Any

from ..errors import FailureHint
from ..models import Language, RenderNode
from ..policy import SandboxPolicy
from .capabilities import PROCESS, EngineCapabilities
from .engine import CancellationToken
from .node_runtime import node_command, node_request
from .process import (
    ProcessResult,
    exit_hint,
    make_workdir,
    node_executable,
    python_command,
    remove_workdir,
    run_process,
    sandbox_env,
)
from .types import EngineOutcome, EngineRunConfig

logger = logging.getLogger(__name__)

_MEMORY_MARKERS = ("MemoryError", "heap out of memory", "Reached heap limit", "Cannot allocate memory")
_STDERR_TAIL = 2000


def last_json_line(text: str) -> dict[str, Any] | None:
    """Return the last stdout line that parses as a JSON object.

    Example:
        ```python
        payload = last_json_line('noise\\n{"ok": true}\\n')
        ```
    """
    for line in reversed(text.splitlines()):
        line = line.strip()
        if not line:
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


def combine_streams(stdout: str, stderr: str) -> str:
    """Join captured stdout and stderr into one console transcript.

    Example:
        ```python
        text = combine_streams("hi\\n", "warning\\n")
        ```
    """
    if not stderr:
        return stdout
    if stdout and not stdout.endswith("\n"):
        stdout += "\n"
    return stdout + stderr


def visual_from_payload(visuals: list[dict[str, Any]]) -> RenderNode | None:
    """Convert worker visual payloads into a render tree.

    A single visual becomes the root; several are stacked.

    Example:
        ```python
        node = visual_from_payload([{"kind": "image", "mime": "image/svg+xml", "data": "<svg/>"}])
        ```
    """
    nodes: list[RenderNode] = []
    for item in visuals:
        kind = item.get("kind")
        if kind == "image":
            nodes.append(
                RenderNode(
                    "image",
                    props={
                        "mime": item.get("mime", "image/svg+xml"),
                        "data": str(item.get("data", "")),
                        "title": item.get("title", ""),
                    },
                )
            )
        elif kind == "table":
            nodes.append(
                RenderNode(
                    "table",
                    props={
                        "title": item.get("title", ""),
                        "columns": list(item.get("columns", [])),
                        "rows": list(item.get("rows", [])),
                        "total_rows": item.get("total_rows", len(item.get("rows", []))),
                    },
                )
            )
    if not nodes:
        return None
    if len(nodes) == 1:
        return nodes[0]
    return RenderNode("stack", children=nodes)


def outcome_from_worker(result: ProcessResult) -> EngineOutcome:
    """Translate a worker process result into an engine outcome.

    Example:
        ```python
        outcome = outcome_from_worker(ProcessResult('{"ok": true, "stdout": "hi"}', "", 0))
        ```
    """
    if result.cancelled_reason is not None:
        return EngineOutcome.failed(
            f"Execution cancelled ({result.cancelled_reason})",
            FailureHint.CANCELLED,
            details=result.stderr[-_STDERR_TAIL:],
        )

    response = last_json_line(result.stdout)
    if response is None:
        message, hint = exit_hint(result.returncode)
        if any(marker in result.stderr for marker in _MEMORY_MARKERS):
            message, hint = "Memory limit exceeded", FailureHint.MEMORY
        elif result.returncode == 0:
            message, hint = "Runtime produced no response", FailureHint.HOST
        return EngineOutcome.failed(message, hint, details=result.stderr[-_STDERR_TAIL:])

    output = combine_streams(str(response.get("stdout") or ""), str(response.get("stderr") or ""))
    memory = response.get("peak_memory_bytes")
    memory_bytes = int(memory) if isinstance(memory, (int, float)) else None
    metadata: dict[str, Any] = {}
    if response.get("output_truncated") or result.stdout_truncated:
        metadata["output_truncated"] = True
    if response.get("result") is not None:
        metadata["result"] = response["result"]
    if response.get("dom"):
        metadata["dom_changes"] = response["dom"]

    if response.get("ok"):
        visual = visual_from_payload(list(response.get("visuals") or []))
        return EngineOutcome.ok(output, visual, memory_bytes=memory_bytes, metadata=metadata)

    if response.get("line") is not None:
        metadata["line"] = response["line"]
    return EngineOutcome.failed(
        str(response.get("error") or "Execution failed"),
        FailureHint.parse(response.get("hint")),
        details=str(response.get("traceback") or ""),
        output=output,
        memory_bytes=memory_bytes,
        metadata=metadata,
    )


class ScriptEngine:
    """Run Python or JavaScript snippets in a fresh sandboxed child process.

    Python runs in the policy-enforcing worker under RLIMIT_AS/RLIMIT_CPU;
    JavaScript runs in a Node.js `vm` context with code generation disabled.

    Example:
        ```python
        engine = ScriptEngine(Language.PYTHON, policy=SandboxPolicy())
        outcome = await engine.run("print(2 + 2)", config, CancellationToken())
        ```
    """

    def __init__(
        self,
        language: Language,
        *,
        policy: SandboxPolicy | None = None,
        node: str | None = None,
    ) -> None:
        """Configure the engine for one scripting language.

        Example:
            ```python
            engine = ScriptEngine(Language.JAVASCRIPT, node="/usr/bin/node")
            ```
        """
        if language not in {Language.PYTHON, Language.JAVASCRIPT}:
            raise ValueError(f"ScriptEngine does not support '{language.value}'")
        self.language = language
        self._policy = policy or SandboxPolicy()
        self._node = node or (node_executable() if language is Language.JAVASCRIPT else None)
        self.capabilities = EngineCapabilities(
            isolation=PROCESS,
            forced_termination=True,
            reports_memory=True,
            visual_output=language is Language.PYTHON,
        )

    @property
    def available(self) -> bool:
        """Return True when the runtime binary for this language exists.

        Example:
            ```python
            if engine.available:
                registry[engine.language] = engine
            ```
        """
        return self.language is Language.PYTHON or self._node is not None

    async def run(self, code: str, config: EngineRunConfig, token: CancellationToken) -> EngineOutcome:
        """Execute one snippet; every failure comes back as an outcome.

        Example:
            ```python
            outcome = await engine.run("result = 1", config, token)
            ```
        """
        if self.language is Language.PYTHON:
            cmd = python_command()
            payload = {"code": code, "policy": self._policy.to_payload(), "limits": config.limits.to_dict()}
        elif self._node is None:
            return EngineOutcome.failed("Node.js runtime is not installed", FailureHint.HOST)
        else:
            cmd = node_command(self._node, config.limits)
            payload = node_request(code, config.limits)

        workdir = make_workdir()
        try:
            result = await run_process(
                cmd,
                stdin_data=json.dumps(payload),
                config=config,
                token=token,
                env=sandbox_env(workdir),
                cwd=workdir,
            )
        except OSError as exc:
            logger.error("Could not start %s runtime: %s", self.language.value, exc)
            return EngineOutcome.failed(f"Could not start {self.language.value} runtime: {exc}", FailureHint.HOST)
        finally:
            remove_workdir(workdir)
        return outcome_from_worker(result)

    def release_session(self, session_id: str) -> None:
        """Nothing to release; every run uses a fresh process.

        Example:
            ```python
            engine.release_session("tab-1")
            ```
        """
