from .errors import ErrorKind, ProcessedError, Suggestion
from .events import EventChannel, EventKind, ExecutionEvent
from .limits import ResourceLimits
from .models import (
    ExecutionConfig,
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatus,
    Language,
    PresentationTab,
    RenderNode,
)
from .policy import RunnerSettings, SandboxPolicy
from .router import ExecutionRouter, run_code

__all__ = [
    "ExecutionRouter",
    "run_code",
    "ExecutionConfig",
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionStatus",
    "Language",
    "PresentationTab",
    "RenderNode",
    "ErrorKind",
    "ProcessedError",
    "Suggestion",
    "EventChannel",
    "EventKind",
    "ExecutionEvent",
    "ResourceLimits",
    "RunnerSettings",
    "SandboxPolicy",
]
