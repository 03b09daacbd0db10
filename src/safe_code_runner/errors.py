from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Classified failure kinds.

    Example:
        ```python
        kind = ErrorKind.SYNTAX
        ```
    """

    SYNTAX = "syntax"
    RUNTIME = "runtime"
    TIMEOUT = "timeout"
    MEMORY = "memory"
    SECURITY = "security"
    NETWORK = "network"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({ErrorKind.TIMEOUT, ErrorKind.NETWORK, ErrorKind.RUNTIME})


class FailureHint(str, Enum):
    """Classification hint an engine attaches to a raw failure.

    Example:
        ```python
        hint = FailureHint.SECURITY
        ```
    """

    SYNTAX = "syntax"
    RUNTIME = "runtime"
    SECURITY = "security"
    NETWORK = "network"
    TIMEOUT = "timeout"
    MEMORY = "memory"
    CANCELLED = "cancelled"
    HOST = "host"

    @classmethod
    def parse(cls, value: Any, default: "FailureHint | None" = None) -> "FailureHint":
        """Map a worker-reported hint string to a hint, defaulting to runtime.

        Example:
            ```python
            hint = FailureHint.parse("syntax")
            ```
        """
        for member in cls:
            if member.value == value:
                return member
        return default if default is not None else cls.RUNTIME


@dataclass(frozen=True, slots=True)
class EngineFailure:
    """Raw failure reported by an engine or synthesized by the router.

    Example:
        ```python
        failure = EngineFailure("NameError: name 'x' is not defined", FailureHint.RUNTIME)
        ```
    """

    message: str
    hint: FailureHint = FailureHint.RUNTIME
    details: str = ""


@dataclass(frozen=True, slots=True)
class ErrorContext:
    """Request context the classifier uses for language-aware suggestions.

    Example:
        ```python
        context = ErrorContext(language="python", code="print x")
        ```
    """

    language: str
    code: str = ""
    execution_id: str = ""
    session_id: str = ""


@dataclass(frozen=True, slots=True)
class Suggestion:
    """Advisory remediation hint; never applied automatically.

    Example:
        ```python
        tip = Suggestion("Check spelling", "Verify the name is spelled correctly", "fix", 8)
        ```
    """

    title: str
    description: str
    category: str = "fix"
    priority: int = 5
    example: str | None = None
    link: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize the suggestion, omitting empty optional fields.

        Example:
            ```python
            payload = tip.to_dict()
            ```
        """
        data: dict[str, Any] = {
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "priority": self.priority,
        }
        if self.example is not None:
            data["example"] = self.example
        if self.link is not None:
            data["link"] = self.link
        return data


@dataclass(frozen=True, slots=True)
class ProcessedError:
    """Classified failure with retry eligibility and ordered suggestions.

    Example:
        ```python
        error = ProcessedError(ErrorKind.SYNTAX, "SyntaxError: invalid syntax", False)
        ```
    """

    kind: ErrorKind
    technical_details: str
    can_retry: bool
    suggestions: tuple[Suggestion, ...] = field(default_factory=tuple)
    user_message: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize the processed error.

        Example:
            ```python
            payload = error.to_dict()
            ```
        """
        return {
            "kind": self.kind.value,
            "technical_details": self.technical_details,
            "can_retry": self.can_retry,
            "user_message": self.user_message,
            "suggestions": [tip.to_dict() for tip in self.suggestions],
        }
