from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .errors import ProcessedError


class Language(str, Enum):
    """Closed set of languages the router knows about.

    Example:
        ```python
        lang = Language.parse("Python")
        ```
    """

    PYTHON = "python"
    JAVASCRIPT = "javascript"
    HTML = "html"
    CSS = "css"
    PYTHON_SCIENTIFIC = "python-scientific"
    SQL = "sql"
    JSON = "json"
    YAML = "yaml"
    MARKDOWN = "markdown"
    REGEX = "regex"
    BASH = "bash"

    @classmethod
    def parse(cls, value: "Language | str") -> "Language | None":
        """Return the enum member for a language name, or None when unknown.

        Example:
            ```python
            assert Language.parse("sql") is Language.SQL
            assert Language.parse("cobol") is None
            ```
        """
        if isinstance(value, Language):
            return value
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        return None


class ExecutionStatus(str, Enum):
    """Terminal state of one execution.

    Example:
        ```python
        status = ExecutionStatus.COMPLETED
        ```
    """

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


class PresentationTab(str, Enum):
    """Tab a UI should show first for a result.

    Example:
        ```python
        tab = PresentationTab.VISUAL
        ```
    """

    VISUAL = "visual"
    CONSOLE = "console"
    ERROR = "error"


@dataclass(slots=True)
class RenderNode:
    """Node of the structured render tree carried in `visual_output`.

    Example:
        ```python
        node = RenderNode("table", props={"columns": ["id"], "rows": [[1]]})
        ```
    """

    kind: str
    props: dict[str, Any] = field(default_factory=dict)
    children: list["RenderNode"] = field(default_factory=list)
    text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize the node and its children to plain data.

        Example:
            ```python
            payload = RenderNode("code", props={"language": "json"}, text="{}").to_dict()
            ```
        """
        data: dict[str, Any] = {"kind": self.kind, "props": dict(self.props)}
        if self.text is not None:
            data["text"] = self.text
        if self.children:
            data["children"] = [child.to_dict() for child in self.children]
        return data

    def walk(self) -> list["RenderNode"]:
        """Return this node and all descendants in depth-first order.

        Example:
            ```python
            kinds = [node.kind for node in tree.walk()]
            ```
        """
        nodes = [self]
        for child in self.children:
            nodes.extend(child.walk())
        return nodes


def _positive_option(value: int | None, name: str) -> None:
    """Validate an optional positive integer option.

    Example:
        ```python
        _positive_option(2000, "timeout_ms")
        ```
    """
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"'{name}' must be an integer")
    if value <= 0:
        raise ValueError(f"'{name}' must be positive")


@dataclass(frozen=True, slots=True)
class ExecutionConfig:
    """Per-request options; limit overrides are clamped by the router.

    `identity_token` is only used for attribution and is never logged.

    Example:
        ```python
        config = ExecutionConfig(timeout_ms=2000, auto_retry=True)
        ```
    """

    timeout_ms: int | None = None
    max_output_bytes: int | None = None
    max_memory_bytes: int | None = None
    max_cpu_time_ms: int | None = None
    auto_retry: bool = False
    identity_token: str | None = None
    sample_data: bool = True

    def __post_init__(self) -> None:
        """Validate numeric overrides.

        Example:
            ```python
            ExecutionConfig(timeout_ms=1000)
            ```
        """
        for name in ("timeout_ms", "max_output_bytes", "max_memory_bytes", "max_cpu_time_ms"):
            _positive_option(getattr(self, name), name)


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    """Immutable unit of work submitted to the router.

    Example:
        ```python
        request = ExecutionRequest(code="print('hi')", language="python", session_id="tab-1")
        ```
    """

    code: str
    language: Language | str
    session_id: str
    config: ExecutionConfig = field(default_factory=ExecutionConfig)

    def __post_init__(self) -> None:
        """Validate field types.

        Example:
            ```python
            ExecutionRequest(code="", language="json", session_id="s")
            ```
        """
        if not isinstance(self.code, str):
            raise TypeError("'code' must be a string")
        if not isinstance(self.session_id, str) or not self.session_id:
            raise ValueError("'session_id' must be a non-empty string")

    @property
    def language_name(self) -> str:
        """Return the requested language as a plain string.

        Example:
            ```python
            name = request.language_name
            ```
        """
        if isinstance(self.language, Language):
            return self.language.value
        return str(self.language)


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Uniform result returned for every request.

    Example:
        ```python
        result = ExecutionResult(success=True, output="hi\\n", execution_time_ms=3.2, session_id="tab-1")
        ```
    """

    success: bool
    session_id: str
    execution_time_ms: float
    output: str = ""
    visual_output: RenderNode | None = None
    error: str | None = None
    memory_usage_bytes: int | None = None
    execution_id: str = ""
    language: str = ""
    status: ExecutionStatus = ExecutionStatus.COMPLETED
    processed_error: "ProcessedError | None" = None
    default_tab: PresentationTab = PresentationTab.CONSOLE
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def retry_available(self) -> bool:
        """Return True when a manual retry makes sense for this result.

        Example:
            ```python
            if result.retry_available:
                result = await router.execute(request)
            ```
        """
        return not self.success and self.processed_error is not None and self.processed_error.can_retry

    def to_dict(self) -> dict[str, Any]:
        """Serialize the result to JSON-friendly data.

        Example:
            ```python
            payload = result.to_dict()
            ```
        """
        return {
            "success": self.success,
            "session_id": self.session_id,
            "execution_id": self.execution_id,
            "language": self.language,
            "status": self.status.value,
            "output": self.output,
            "visual_output": self.visual_output.to_dict() if self.visual_output is not None else None,
            "error": self.error,
            "processed_error": self.processed_error.to_dict() if self.processed_error is not None else None,
            "execution_time_ms": self.execution_time_ms,
            "memory_usage_bytes": self.memory_usage_bytes,
            "default_tab": self.default_tab.value,
            "retry_available": self.retry_available,
            "metadata": self.metadata,
        }
