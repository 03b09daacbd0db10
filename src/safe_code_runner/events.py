from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Status updates the router and retry controller emit.

    Example:
        ```python
        kind = EventKind.STARTED
        ```
    """

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    RETRY_SCHEDULED = "retry_scheduled"
    RETRY_CANCELLED = "retry_cancelled"
    RETRY_EXHAUSTED = "retry_exhausted"
    DISCARDED = "discarded"


@dataclass(frozen=True, slots=True)
class ExecutionEvent:
    """One status update keyed by execution and session.

    Example:
        ```python
        event = ExecutionEvent(EventKind.STARTED, execution_id="exec-1", session_id="tab-1")
        ```
    """

    kind: EventKind
    execution_id: str
    session_id: str
    language: str = ""
    detail: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class Subscription:
    """Async-iterable view of events matching an optional filter.

    Backed by a bounded queue; when full, the oldest event is dropped.

    Example:
        ```python
        async for event in channel.subscribe(session_id="tab-1"):
            print(event.kind)
        ```
    """

    def __init__(
        self,
        channel: "EventChannel",
        *,
        execution_id: str | None,
        session_id: str | None,
        maxsize: int,
    ) -> None:
        """Create a subscription; use `EventChannel.subscribe` instead.

        Example:
            ```python
            sub = Subscription(channel, execution_id=None, session_id="tab-1", maxsize=100)
            ```
        """
        self._channel = channel
        self._execution_id = execution_id
        self._session_id = session_id
        self._queue: asyncio.Queue[ExecutionEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        """Return True once the subscription is detached.

        Example:
            ```python
            assert not sub.closed
            ```
        """
        return self._closed

    def matches(self, event: ExecutionEvent) -> bool:
        """Return True when an event passes this subscription's filter.

        Example:
            ```python
            wanted = sub.matches(event)
            ```
        """
        if self._execution_id is not None and event.execution_id != self._execution_id:
            return False
        if self._session_id is not None and event.session_id != self._session_id:
            return False
        return True

    def deliver(self, event: ExecutionEvent) -> None:
        """Enqueue an event without blocking, dropping the oldest when full.

        Example:
            ```python
            sub.deliver(event)
            ```
        """
        if self._closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    def get_nowait(self) -> ExecutionEvent | None:
        """Return the next queued event, or None when the queue is empty.

        Example:
            ```python
            event = sub.get_nowait()
            ```
        """
        if self._queue.empty():
            return None
        return self._queue.get_nowait()

    def drain(self) -> list[ExecutionEvent]:
        """Return all queued events without waiting.

        Example:
            ```python
            events = sub.drain()
            ```
        """
        events: list[ExecutionEvent] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not None:
                events.append(item)
        return events

    def close(self) -> None:
        """Detach from the channel and wake any pending iterator.

        Example:
            ```python
            sub.close()
            ```
        """
        if self._closed:
            return
        self._closed = True
        self._channel._detach(self)
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    def __aiter__(self) -> "Subscription":
        """Return self as the async iterator.

        Example:
            ```python
            iterator = aiter(sub)
            ```
        """
        return self

    async def __anext__(self) -> ExecutionEvent:
        """Wait for the next event; stops after `close()`.

        Example:
            ```python
            event = await anext(sub)
            ```
        """
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item


class EventChannel:
    """Fan-out channel of execution events to any number of subscribers.

    Example:
        ```python
        channel = EventChannel()
        sub = channel.subscribe(execution_id="exec-1")
        channel.publish(ExecutionEvent(EventKind.STARTED, "exec-1", "tab-1"))
        ```
    """

    def __init__(self, *, max_queue: int = 256) -> None:
        """Initialize a channel with a per-subscriber queue bound.

        Example:
            ```python
            channel = EventChannel(max_queue=32)
            ```
        """
        if max_queue <= 0:
            raise ValueError("max_queue must be positive")
        self._max_queue = max_queue
        self._subscribers: list[Subscription] = []

    def subscribe(self, *, execution_id: str | None = None, session_id: str | None = None) -> Subscription:
        """Create a subscription filtered by execution and/or session id.

        Example:
            ```python
            sub = channel.subscribe(session_id="tab-1")
            ```
        """
        sub = Subscription(self, execution_id=execution_id, session_id=session_id, maxsize=self._max_queue)
        self._subscribers.append(sub)
        return sub

    def publish(self, event: ExecutionEvent) -> None:
        """Deliver an event to every matching subscriber.

        Example:
            ```python
            channel.publish(ExecutionEvent(EventKind.COMPLETED, "exec-1", "tab-1"))
            ```
        """
        logger.debug("Event %s for execution %s", event.kind.value, event.execution_id)
        for sub in list(self._subscribers):
            if sub.matches(event):
                sub.deliver(event)

    def _detach(self, sub: Subscription) -> None:
        """Remove a subscription from the fan-out list.

        Example:
            ```python
            channel._detach(sub)
            ```
        """
        if sub in self._subscribers:
            self._subscribers.remove(sub)
