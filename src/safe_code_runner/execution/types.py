from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from ..errors import EngineFailure, FailureHint
from ..limits import ResourceLimits
from ..models import Language, RenderNode


@dataclass(frozen=True, slots=True)
class EngineRunConfig:
    """Per-run settings the router hands to an engine.

    `on_process_started` lets process-backed engines register the child pid
    with the resource monitor.

    Example:
        ```python
        config = EngineRunConfig(Language.PYTHON, session_id="tab-1", execution_id="exec-1", limits=limits)
        ```
    """

    language: Language
    session_id: str
    execution_id: str
    limits: ResourceLimits
    sample_data: bool = True
    on_process_started: Callable[[int], None] | None = None

    def process_started(self, pid: int) -> None:
        """Notify the router that a child process now runs this execution.

        Example:
            ```python
            config.process_started(proc.pid)
            ```
        """
        if self.on_process_started is not None:
            self.on_process_started(pid)


@dataclass(slots=True)
class EngineOutcome:
    """Raw output or raw failure returned by an engine.

    Example:
        ```python
        outcome = EngineOutcome.ok("hi\\n")
        failed = EngineOutcome.failed("SyntaxError: invalid syntax", FailureHint.SYNTAX)
        ```
    """

    success: bool
    output: str = ""
    visual: RenderNode | None = None
    failure: EngineFailure | None = None
    memory_bytes: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(
        cls,
        output: str = "",
        visual: RenderNode | None = None,
        *,
        memory_bytes: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "EngineOutcome":
        """Build a successful outcome.

        Example:
            ```python
            outcome = EngineOutcome.ok("done", metadata={"rows": 3})
            ```
        """
        return cls(True, output, visual, None, memory_bytes, dict(metadata or {}))

    @classmethod
    def failed(
        cls,
        message: str,
        hint: FailureHint = FailureHint.RUNTIME,
        *,
        details: str = "",
        output: str = "",
        memory_bytes: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "EngineOutcome":
        """Build a failed outcome carrying a classification hint.

        Example:
            ```python
            outcome = EngineOutcome.failed("Import 'os' is blocked by policy", FailureHint.SECURITY)
            ```
        """
        return cls(
            False,
            output,
            None,
            EngineFailure(message=message, hint=hint, details=details),
            memory_bytes,
            dict(metadata or {}),
        )
