from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

EvictionListener = Callable[["Session"], None]


@dataclass(slots=True)
class Session:
    """Logical editing context (one per editor tab).

    Example:
        ```python
        session = Session(id="tab-1", language="python", created_at=0.0, last_accessed_at=0.0)
        ```
    """

    id: str
    language: str
    created_at: float
    last_accessed_at: float
    last_code: str = ""
    active_execution_id: str | None = None
    auto_retry: bool = False
    execution_count: int = 0


class SessionManager:
    """Registry of sessions with idle eviction and a capacity bound.

    Eviction is a maintenance sweep: `evict_idle` runs on demand and lazily when
    a new session would exceed `max_sessions`. Sessions with an active execution
    are never evicted.

    Example:
        ```python
        manager = SessionManager(max_sessions=16, idle_timeout_ms=60_000)
        session = manager.get_or_create("tab-1", "python")
        ```
    """

    def __init__(
        self,
        *,
        max_sessions: int = 256,
        idle_timeout_ms: int = 30 * 60 * 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize an empty registry.

        Example:
            ```python
            manager = SessionManager(clock=lambda: 0.0)
            ```
        """
        if max_sessions <= 0:
            raise ValueError("max_sessions must be positive")
        self._max_sessions = max_sessions
        self._idle_timeout_ms = idle_timeout_ms
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._listeners: list[EvictionListener] = []

    def __len__(self) -> int:
        """Return the number of live sessions.

        Example:
            ```python
            count = len(manager)
            ```
        """
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        """Return True when a session id is registered.

        Example:
            ```python
            assert "tab-1" in manager
            ```
        """
        return session_id in self._sessions

    def add_eviction_listener(self, listener: EvictionListener) -> None:
        """Register a callback invoked for each evicted or closed session.

        Example:
            ```python
            manager.add_eviction_listener(lambda session: print(session.id))
            ```
        """
        self._listeners.append(listener)

    def get(self, session_id: str) -> Session | None:
        """Return a session by id, or None.

        Example:
            ```python
            session = manager.get("tab-1")
            ```
        """
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str, language: str) -> Session:
        """Return the session for an id, creating it on first use.

        An existing session follows the language of its latest request.

        Example:
            ```python
            session = manager.get_or_create("tab-1", "sql")
            ```
        """
        session = self._sessions.get(session_id)
        if session is not None:
            session.language = language
            return session
        if len(self._sessions) >= self._max_sessions:
            self.evict_idle()
        if len(self._sessions) >= self._max_sessions:
            self._evict_least_recent()
        now = self._clock()
        session = Session(id=session_id, language=language, created_at=now, last_accessed_at=now)
        self._sessions[session_id] = session
        logger.debug("Created session %s (%s)", session_id, language)
        return session

    def touch(self, session_id: str, code: str | None = None) -> None:
        """Refresh a session's access time and optionally its code snapshot.

        Example:
            ```python
            manager.touch("tab-1", code="print('hi')")
            ```
        """
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.last_accessed_at = self._clock()
        if code is not None:
            session.last_code = code

    def set_active_execution(self, session_id: str, execution_id: str | None) -> None:
        """Set or clear the in-flight execution for a session.

        Example:
            ```python
            manager.set_active_execution("tab-1", "exec-1")
            manager.set_active_execution("tab-1", None)
            ```
        """
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.active_execution_id = execution_id
        if execution_id is not None:
            session.execution_count += 1

    def clear_active_execution(self, session_id: str, execution_id: str) -> None:
        """Clear the in-flight execution only if it is still `execution_id`.

        Example:
            ```python
            manager.clear_active_execution("tab-1", "exec-1")
            ```
        """
        session = self._sessions.get(session_id)
        if session is not None and session.active_execution_id == execution_id:
            session.active_execution_id = None

    def evict_idle(self, max_idle_ms: int | None = None) -> int:
        """Evict sessions idle for at least `max_idle_ms`; returns how many.

        Example:
            ```python
            removed = manager.evict_idle(max_idle_ms=60_000)
            ```
        """
        limit_ms = self._idle_timeout_ms if max_idle_ms is None else max_idle_ms
        now = self._clock()
        stale = [
            session
            for session in self._sessions.values()
            if session.active_execution_id is None and (now - session.last_accessed_at) * 1000.0 >= limit_ms
        ]
        for session in stale:
            self._remove(session.id)
        if stale:
            logger.info("Evicted %d idle session(s)", len(stale))
        return len(stale)

    def close(self, session_id: str) -> Session | None:
        """Remove a session explicitly and notify listeners.

        Example:
            ```python
            manager.close("tab-1")
            ```
        """
        return self._remove(session_id)

    def sessions(self) -> list[Session]:
        """Return a snapshot list of live sessions.

        Example:
            ```python
            ids = [s.id for s in manager.sessions()]
            ```
        """
        return list(self._sessions.values())

    def _evict_least_recent(self) -> None:
        """Evict the least recently used session that is not running.

        Example:
            ```python
            manager._evict_least_recent()
            ```
        """
        candidates = [s for s in self._sessions.values() if s.active_execution_id is None]
        if not candidates:
            return
        oldest = min(candidates, key=lambda s: s.last_accessed_at)
        logger.info("Session capacity reached; evicting %s", oldest.id)
        self._remove(oldest.id)

    def _remove(self, session_id: str) -> Session | None:
        """Drop a session and notify eviction listeners.

        Example:
            ```python
            manager._remove("tab-1")
            ```
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        for listener in self._listeners:
            try:
                listener(session)
            except Exception:
                logger.exception("Session eviction listener failed for %s", session_id)
        return session
