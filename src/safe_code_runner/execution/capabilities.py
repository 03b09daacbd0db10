from __future__ import annotations

from dataclasses import dataclass

PROCESS = "process"
THREAD = "thread"


@dataclass(frozen=True, slots=True)
class EngineCapabilities:
    """Capability flags advertised by an engine.

    Example:
        ```python
        caps = EngineCapabilities(isolation="process", forced_termination=True, reports_memory=True, visual_output=False)
        ```
    """

    isolation: str
    forced_termination: bool
    reports_memory: bool
    visual_output: bool

    def __post_init__(self) -> None:
        """Validate the isolation kind.

        Example:
            ```python
            EngineCapabilities("thread", False, False, True)
            ```
        """
        if self.isolation not in {PROCESS, THREAD}:
            raise ValueError("isolation must be 'process' or 'thread'")


def describe(caps: EngineCapabilities) -> str:
    """Return a short human-readable summary of capabilities.

    Example:
        ```python
        text = describe(engine.capabilities)
        ```
    """
    parts = [caps.isolation]
    if caps.forced_termination:
        parts.append("killable")
    if caps.reports_memory:
        parts.append("memory")
    if caps.visual_output:
        parts.append("visual")
    return ", ".join(parts)
