from __future__ import annotations

import asyncio
import logging
from typing import Callable, Protocol

from .capabilities import EngineCapabilities
from .types import EngineOutcome, EngineRunConfig

logger = logging.getLogger(__name__)

USER_CANCELLED = "cancelled"
SUPERSEDED = "superseded"
SESSION_CLOSED = "session_closed"
WALL_TIME_EXCEEDED = "wall_time"
CPU_TIME_EXCEEDED = "cpu_time"
MEMORY_EXCEEDED = "memory"


class CancellationToken:
    """Cooperative cancellation handle shared by the router and one engine run.

    Process-backed engines register a callback that kills their child, which
    turns cooperative cancellation into forced termination.

    Example:
        ```python
        token = CancellationToken()
        token.add_callback(lambda reason: proc.kill())
        token.cancel("superseded")
        ```
    """

    def __init__(self) -> None:
        """Create an untriggered token.

        Example:
            ```python
            token = CancellationToken()
            ```
        """
        self._reason: str | None = None
        self._event: asyncio.Event | None = None
        self._callbacks: list[Callable[[str], None]] = []

    @property
    def cancelled(self) -> bool:
        """Return True once `cancel` has been called; safe to read from threads.

        Example:
            ```python
            if token.cancelled:
                return
            ```
        """
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        """Return the cancellation reason, or None.

        Example:
            ```python
            why = token.reason
            ```
        """
        return self._reason

    def cancel(self, reason: str = USER_CANCELLED) -> bool:
        """Trigger cancellation; the first reason wins. Returns True on first call.

        Example:
            ```python
            token.cancel("wall_time")
            ```
        """
        if self._reason is not None:
            return False
        self._reason = reason
        if self._event is not None:
            self._event.set()
        for callback in list(self._callbacks):
            try:
                callback(reason)
            except Exception:
                logger.exception("Cancellation callback failed")
        return True

    def add_callback(self, callback: Callable[[str], None]) -> None:
        """Run `callback(reason)` on cancellation, immediately if already cancelled.

        Example:
            ```python
            token.add_callback(lambda reason: proc.kill())
            ```
        """
        if self._reason is not None:
            callback(self._reason)
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[str], None]) -> None:
        """Unregister a callback added with `add_callback`.

        Example:
            ```python
            token.remove_callback(kill)
            ```
        """
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    async def wait(self) -> str:
        """Suspend until the token is cancelled and return the reason.

        Example:
            ```python
            reason = await token.wait()
            ```
        """
        if self._reason is None:
            if self._event is None:
                self._event = asyncio.Event()
            await self._event.wait()
        assert self._reason is not None
        return self._reason


class LanguageEngine(Protocol):
    capabilities: EngineCapabilities

    async def run(self, code: str, config: EngineRunConfig, token: CancellationToken) -> EngineOutcome:
        """Execute source text and return raw output or a raw failure; never raises.

        Example:
            ```python
            outcome = await engine.run("print('hi')", config, CancellationToken())
            ```
        """
        ...

    def release_session(self, session_id: str) -> None:
        """Drop any per-session state the engine keeps.

        Example:
            ```python
            engine.release_session("tab-1")
            ```
        """
        ...
