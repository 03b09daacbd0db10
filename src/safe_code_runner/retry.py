from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable

from .errors import ErrorKind
from .events import EventChannel, EventKind, ExecutionEvent
from .models import ExecutionRequest, ExecutionResult, ExecutionStatus

logger = logging.getLogger(__name__)

MAX_DELAY_MS = 30_000

Executor = Callable[[ExecutionRequest], Awaitable[ExecutionResult]]
Sleeper = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class RetryStrategy:
    """Attempt budget and exponential backoff; `max_attempts` includes the first run.

    Example:
        ```python
        strategy = RetryStrategy(max_attempts=3, base_delay_ms=1000, backoff_multiplier=1.5)
        ```
    """

    max_attempts: int = 3
    base_delay_ms: int = 1000
    backoff_multiplier: float = 1.5
    max_delay_ms: int = MAX_DELAY_MS

    def __post_init__(self) -> None:
        """Validate strategy values.

        Example:
            ```python
            RetryStrategy(max_attempts=1)
            ```
        """
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must not be negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")

    def delay_for(self, retry_number: int) -> int:
        """Return the delay before retry `n` (1-based): base * multiplier^(n-1), clamped.

        Example:
            ```python
            assert RetryStrategy().delay_for(2) == 1500
            ```
        """
        if retry_number < 1:
            raise ValueError("retry_number must be at least 1")
        delay = self.base_delay_ms * self.backoff_multiplier ** (retry_number - 1)
        return int(min(delay, self.max_delay_ms))


_STRATEGIES: dict[ErrorKind, RetryStrategy] = {
    ErrorKind.NETWORK: RetryStrategy(max_attempts=5, base_delay_ms=2000),
    ErrorKind.TIMEOUT: RetryStrategy(max_attempts=2, base_delay_ms=5000),
}


def strategy_for(kind: ErrorKind) -> RetryStrategy | None:
    """Return the retry strategy for an error kind, or None when not retryable.

    Example:
        ```python
        strategy = strategy_for(ErrorKind.NETWORK)
        ```
    """
    if kind in (ErrorKind.MEMORY, ErrorKind.SYNTAX, ErrorKind.SECURITY, ErrorKind.UNKNOWN):
        return None
    return _STRATEGIES.get(kind, RetryStrategy())


@dataclass(frozen=True, slots=True)
class RetryAttempt:
    """Record of one attempt inside a retry sequence.

    Example:
        ```python
        attempt = RetryAttempt(attempt=1, execution_id="exec-1", success=False, error_kind="runtime")
        ```
    """

    attempt: int
    execution_id: str
    success: bool
    error_kind: str | None = None


@dataclass(slots=True)
class RetryState:
    """Live state of a retry sequence; cleared on success, exhaustion or cancel.

    Example:
        ```python
        state = RetryState(is_retrying=True, current_attempt=1, max_attempts=3, next_delay_ms=1000)
        ```
    """

    is_retrying: bool
    current_attempt: int
    max_attempts: int
    next_delay_ms: int
    strategy: RetryStrategy = field(default_factory=RetryStrategy)
    history: list[RetryAttempt] = field(default_factory=list)


class RetryController:
    """Schedule and supervise automatic re-execution of retryable failures.

    Sequences are keyed by the execution id of the first attempt. Backoff
    delays are awaited in a task that `cancel_retry` cancels, so a cancelled
    sequence never fires another attempt.

    Example:
        ```python
        controller = RetryController(events=channel)
        result = await controller.run(request, first_result, router.execute_once)
        ```
    """

    def __init__(self, *, events: EventChannel | None = None, sleep: Sleeper = asyncio.sleep) -> None:
        """Initialize the controller.

        Example:
            ```python
            controller = RetryController(sleep=fake_sleep)
            ```
        """
        self._events = events
        self._sleep = sleep
        self._states: dict[str, RetryState] = {}
        self._timers: dict[str, asyncio.Future[None]] = {}
        self._cancelled: set[str] = set()
        self._owned: set[str] = set()
        self._sessions: dict[str, str] = {}

    def state(self, execution_id: str) -> RetryState | None:
        """Return the live retry state for a sequence, or None.

        Example:
            ```python
            state = controller.state("exec-1")
            ```
        """
        return self._states.get(execution_id)

    def active_for_session(self, session_id: str) -> list[str]:
        """Return retry sequence keys currently running for a session.

        Example:
            ```python
            keys = controller.active_for_session("tab-1")
            ```
        """
        return [key for key, owner in self._sessions.items() if owner == session_id]

    def start_retry(self, execution_id: str, strategy: RetryStrategy, *, session_id: str = "") -> RetryState:
        """Open a retry sequence whose first attempt is `execution_id`.

        Example:
            ```python
            state = controller.start_retry("exec-1", RetryStrategy())
            ```
        """
        state = RetryState(
            is_retrying=True,
            current_attempt=1,
            max_attempts=strategy.max_attempts,
            next_delay_ms=strategy.delay_for(1),
            strategy=strategy,
        )
        self._states[execution_id] = state
        self._sessions[execution_id] = session_id
        self._cancelled.discard(execution_id)
        return state

    def complete_retry(self, execution_id: str, outcome: ExecutionResult) -> int | None:
        """Record an attempt's outcome; return the next delay, or None when finished.

        The state is cleared when the attempt succeeded, is not retryable, or
        used the last attempt.

        Example:
            ```python
            delay_ms = controller.complete_retry("exec-1", result)
            ```
        """
        state = self._states.get(execution_id)
        if state is None:
            return None
        error = outcome.processed_error
        state.history.append(
            RetryAttempt(
                attempt=state.current_attempt,
                execution_id=outcome.execution_id,
                success=outcome.success,
                error_kind=error.kind.value if error is not None else None,
            )
        )
        if outcome.success or not outcome.retry_available or outcome.status is ExecutionStatus.CANCELLED:
            self._clear(execution_id)
            return None
        if state.current_attempt >= state.max_attempts:
            logger.info("Retry attempts exhausted for %s after %d attempt(s)", execution_id, state.current_attempt)
            self._emit(EventKind.RETRY_EXHAUSTED, execution_id, outcome, {"attempts": state.current_attempt})
            self._clear(execution_id)
            return None
        state.next_delay_ms = state.strategy.delay_for(state.current_attempt)
        state.current_attempt += 1
        return state.next_delay_ms

    def cancel_retry(self, execution_id: str) -> bool:
        """Cancel a sequence; a pending backoff never fires afterwards.

        Example:
            ```python
            controller.cancel_retry("exec-1")
            ```
        """
        if execution_id not in self._states:
            return False
        # Only a running loop reads the marker; it removes it on exit.
        if execution_id in self._owned:
            self._cancelled.add(execution_id)
        timer = self._timers.pop(execution_id, None)
        if timer is not None:
            timer.cancel()
        session_id = self._sessions.get(execution_id, "")
        self._clear(execution_id)
        logger.info("Retry cancelled for %s", execution_id)
        if self._events is not None:
            self._events.publish(ExecutionEvent(EventKind.RETRY_CANCELLED, execution_id, session_id))
        return True

    async def run(self, request: ExecutionRequest, first: ExecutionResult, execute: Executor) -> ExecutionResult:
        """Re-submit `request` through `execute` until success or exhaustion.

        The returned result carries the attempt history under `metadata["retry"]`.

        Example:
            ```python
            final = await controller.run(request, first_result, router.execute_once)
            ```
        """
        error = first.processed_error
        strategy = strategy_for(error.kind) if error is not None else None
        if strategy is None or first.success:
            return first
        key = first.execution_id
        self.start_retry(key, strategy, session_id=first.session_id)
        self._owned.add(key)
        state = self._states[key]
        last = first
        try:
            delay_ms = self.complete_retry(key, first)
            while delay_ms is not None:
                logger.info(
                    "Scheduling retry %d/%d for %s in %d ms", state.current_attempt, state.max_attempts, key, delay_ms
                )
                self._emit(
                    EventKind.RETRY_SCHEDULED,
                    key,
                    last,
                    {"attempt": state.current_attempt, "max_attempts": state.max_attempts, "delay_ms": delay_ms},
                )
                timer = asyncio.ensure_future(self._sleep(delay_ms / 1000.0))
                self._timers[key] = timer
                try:
                    await timer
                except asyncio.CancelledError:
                    if key not in self._cancelled:
                        raise
                finally:
                    self._timers.pop(key, None)
                if key in self._cancelled:
                    break
                last = await execute(request)
                delay_ms = self.complete_retry(key, last)
            cancelled = key in self._cancelled
        finally:
            self._owned.discard(key)
            self._cancelled.discard(key)
        history = list(state.history)
        retry_meta = {
            "attempts": len(history),
            "max_attempts": state.max_attempts,
            "cancelled": cancelled,
            "history": [
                {"attempt": a.attempt, "execution_id": a.execution_id, "success": a.success, "error_kind": a.error_kind}
                for a in history
            ],
        }
        return replace(last, metadata={**last.metadata, "retry": retry_meta})

    def _emit(self, kind: EventKind, key: str, result: ExecutionResult, detail: dict[str, object]) -> None:
        """Publish a retry event when a channel is configured.

        Example:
            ```python
            controller._emit(EventKind.RETRY_SCHEDULED, "exec-1", result, {"delay_ms": 1000})
            ```
        """
        if self._events is None:
            return
        self._events.publish(
            ExecutionEvent(kind, key, result.session_id, language=result.language, detail=dict(detail))
        )

    def _clear(self, execution_id: str) -> None:
        """Drop all bookkeeping for a sequence.

        Example:
            ```python
            controller._clear("exec-1")
            ```
        """
        self._states.pop(execution_id, None)
        self._sessions.pop(execution_id, None)
