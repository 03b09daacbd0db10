from __future__ import annotations

import asyncio
import logging
import time
import traceback
import uuid
from functools import partial
from typing import Any, Callable, Mapping

from .classifier import classify
from .errors import EngineFailure, ErrorContext, FailureHint
from .events import EventChannel, EventKind, ExecutionEvent
from .execution.engine import (
    CPU_TIME_EXCEEDED,
    MEMORY_EXCEEDED,
    SESSION_CLOSED,
    SUPERSEDED,
    USER_CANCELLED,
    WALL_TIME_EXCEEDED,
    CancellationToken,
    LanguageEngine,
)
from .execution.registry import build_default_engines
from .execution.types import EngineOutcome, EngineRunConfig
from .limits import ResourceLimits
from .models import (
    ExecutionConfig,
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatus,
    Language,
    PresentationTab,
)
from .monitor import CPU_TIME, MEMORY, WALL_TIME, ResourceMonitor, ResourceUsage
from .policy import RunnerSettings
from .retry import RetryController
from .sessions import Session, SessionManager

logger = logging.getLogger(__name__)

TRUNCATION_SUFFIX = "\n... (output truncated)"

_CANCEL_REASONS = {
    USER_CANCELLED: "cancelled by request",
    SUPERSEDED: "superseded by a newer request",
    SESSION_CLOSED: "session was closed",
}
_STATUS_EVENTS = {
    ExecutionStatus.COMPLETED: EventKind.COMPLETED,
    ExecutionStatus.FAILED: EventKind.FAILED,
    ExecutionStatus.CANCELLED: EventKind.CANCELLED,
    ExecutionStatus.TIMED_OUT: EventKind.TIMED_OUT,
}


def _new_execution_id() -> str:
    """Return a fresh opaque execution id.

    Example:
        ```python
        execution_id = _new_execution_id()
        ```
    """
    return f"exec-{uuid.uuid4().hex[:12]}"


def _violation_reason(exceeded: tuple[str, ...]) -> str:
    """Pick the cancellation reason for a set of exceeded limits.

    Example:
        ```python
        reason = _violation_reason(("wall_time",))
        ```
    """
    if MEMORY in exceeded:
        return MEMORY_EXCEEDED
    if CPU_TIME in exceeded:
        return CPU_TIME_EXCEEDED
    return WALL_TIME_EXCEEDED


def truncate_output(text: str, max_bytes: int, already_truncated: bool = False) -> tuple[str, bool]:
    """Clip text to `max_bytes` of UTF-8 and mark it as truncated.

    Example:
        ```python
        text, clipped = truncate_output("x" * 10, 4)
        ```
    """
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes and not already_truncated:
        return text, False
    clipped = encoded[:max_bytes].decode("utf-8", errors="ignore")
    return clipped + TRUNCATION_SUFFIX, True


def _retrieve_exception(task: asyncio.Future[Any]) -> None:
    """Consume an abandoned task's exception so it is logged once, not leaked.

    Example:
        ```python
        task.add_done_callback(_retrieve_exception)
        ```
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Abandoned engine task finished with %s: %s", type(exc).__name__, exc)


class ExecutionRouter:
    """Single entry point that validates, dispatches, supervises and classifies runs.

    Example:
        ```python
        router = ExecutionRouter()
        result = await router.execute(ExecutionRequest("print('hi')", "python", "tab-1"))
        ```
    """

    def __init__(
        self,
        settings: RunnerSettings | None = None,
        *,
        engines: Mapping[Language, LanguageEngine] | None = None,
        monitor: ResourceMonitor | None = None,
        sessions: SessionManager | None = None,
        events: EventChannel | None = None,
        retry: RetryController | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Wire the router's collaborators; defaults come from `settings`.

        Example:
            ```python
            router = ExecutionRouter(RunnerSettings.from_file("settings.toml"))
            ```
        """
        self._settings = settings or RunnerSettings.default()
        self._engines: dict[Language, LanguageEngine] = (
            dict(engines) if engines is not None else build_default_engines(self._settings)
        )
        self._monitor = monitor or ResourceMonitor(interval_ms=self._settings.monitor_interval_ms)
        self._sessions = sessions or SessionManager(
            max_sessions=self._settings.sessions.max_sessions,
            idle_timeout_ms=self._settings.sessions.idle_timeout_ms,
        )
        self._events = events or EventChannel()
        self._retry = retry or RetryController(events=self._events)
        self._clock = clock
        self._tokens: dict[str, CancellationToken] = {}
        self._finished: dict[str, asyncio.Event] = {}
        self._sessions.add_eviction_listener(self._on_session_removed)

    @property
    def settings(self) -> RunnerSettings:
        """Return the settings the router was built with.

        Example:
            ```python
            limits = router.settings.limits
            ```
        """
        return self._settings

    @property
    def events(self) -> EventChannel:
        """Return the status event channel.

        Example:
            ```python
            subscription = router.events.subscribe(session_id="tab-1")
            ```
        """
        return self._events

    @property
    def sessions(self) -> SessionManager:
        """Return the session manager.

        Example:
            ```python
            count = len(router.sessions)
            ```
        """
        return self._sessions

    @property
    def retry(self) -> RetryController:
        """Return the retry controller.

        Example:
            ```python
            state = router.retry.state("exec-1")
            ```
        """
        return self._retry

    def languages(self) -> list[str]:
        """Return the registered language names, sorted.

        Example:
            ```python
            assert "python" in router.languages()
            ```
        """
        return sorted(language.value for language in self._engines)

    def engine_for(self, language: Language | str) -> LanguageEngine | None:
        """Return the engine registered for a language, or None.

        Example:
            ```python
            engine = router.engine_for("sql")
            ```
        """
        parsed = Language.parse(language)
        return self._engines.get(parsed) if parsed is not None else None

    def get_session(self, session_id: str) -> Session | None:
        """Return a live session, or None.

        Example:
            ```python
            session = router.get_session("tab-1")
            ```
        """
        return self._sessions.get(session_id)

    def close_session(self, session_id: str) -> None:
        """Close a session, cancelling its in-flight execution and pending retries.

        Example:
            ```python
            router.close_session("tab-1")
            ```
        """
        self._sessions.close(session_id)

    def evict_idle(self, max_idle_ms: int | None = None) -> int:
        """Run an idle-session sweep and return how many sessions were evicted.

        Example:
            ```python
            removed = router.evict_idle(60_000)
            ```
        """
        return self._sessions.evict_idle(max_idle_ms)

    def enable_auto_retry(self, session_id: str, language: Language | str, enabled: bool = True) -> None:
        """Opt a session in to (or out of) automatic retry of retryable failures.

        Example:
            ```python
            router.enable_auto_retry("tab-1", "python")
            ```
        """
        parsed = Language.parse(language)
        session = self._sessions.get_or_create(session_id, parsed.value if parsed is not None else str(language))
        session.auto_retry = enabled

    def cancel(self, execution_id: str) -> bool:
        """Cancel an in-flight execution or a pending retry sequence.

        Unknown or already finished ids are a no-op and return False.

        Example:
            ```python
            router.cancel(result.execution_id)
            ```
        """
        token = self._tokens.get(execution_id)
        if token is not None:
            logger.info("Cancel requested for %s", execution_id)
            return token.cancel(USER_CANCELLED)
        return self._retry.cancel_retry(execution_id)

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run a request, then auto-retry retryable failures when opted in.

        Never raises; host failures come back as `unknown` results.

        Example:
            ```python
            result = await router.execute(ExecutionRequest("SELECT 1", "sql", "tab-1"))
            ```
        """
        try:
            for key in self._retry.active_for_session(request.session_id):
                self._retry.cancel_retry(key)
            first = await self.execute_once(request)
            if self._should_auto_retry(request, first):
                return await self._retry.run(request, first, self.execute_once)
            return first
        except Exception as exc:
            logger.exception("Execution router failed")
            return self._host_failure(request, exc)

    async def execute_once(self, request: ExecutionRequest) -> ExecutionResult:
        """Run a request exactly once, without retry; never raises.

        Example:
            ```python
            result = await router.execute_once(request)
            ```
        """
        try:
            return await self._run(request)
        except Exception as exc:
            logger.exception("Execution failed at the host boundary")
            return self._host_failure(request, exc)

    def _should_auto_retry(self, request: ExecutionRequest, result: ExecutionResult) -> bool:
        """Return True when a failed result qualifies for automatic retry.

        Example:
            ```python
            retry = router._should_auto_retry(request, result)
            ```
        """
        if result.success or not result.retry_available:
            return False
        if result.status not in {ExecutionStatus.FAILED, ExecutionStatus.TIMED_OUT}:
            return False
        session = self._sessions.get(request.session_id)
        return request.config.auto_retry or (session is not None and session.auto_retry)

    async def _run(self, request: ExecutionRequest) -> ExecutionResult:
        """Validate, supervise and classify one execution.

        Example:
            ```python
            result = await router._run(request)
            ```
        """
        started = self._clock()
        execution_id = _new_execution_id()
        language = Language.parse(request.language)
        name = language.value if language is not None else request.language_name
        session = self._sessions.get_or_create(request.session_id, name)
        self._sessions.touch(session.id, request.code)
        logger.info(
            "Accepted execution %s (%s) for session %s, identity %s",
            execution_id,
            name,
            session.id,
            "present" if request.config.identity_token else "absent",
        )

        engine = self._engines.get(language) if language is not None else None
        if engine is None:
            failure = EngineFailure(f"Language '{name}' is not supported", FailureHint.HOST)
            return self._finish(request, execution_id, name, started, None, failure, ExecutionStatus.FAILED)
        if not request.code.strip():
            return self._finish(request, execution_id, name, started, EngineOutcome.ok(""), None, ExecutionStatus.COMPLETED)
        code_bytes = len(request.code.encode("utf-8"))
        if code_bytes > self._settings.max_code_bytes:
            failure = EngineFailure(
                f"Code is {code_bytes} bytes; the limit is {self._settings.max_code_bytes} bytes",
                FailureHint.SECURITY,
            )
            return self._finish(request, execution_id, name, started, None, failure, ExecutionStatus.FAILED)

        limits = self._settings.limits.resolve(name, request.config)
        token = CancellationToken()
        finished = asyncio.Event()
        self._tokens[execution_id] = token
        self._finished[execution_id] = finished
        # Claim the session before waiting on the prior run.
        prior = session.active_execution_id
        self._sessions.set_active_execution(session.id, execution_id)
        outcome: EngineOutcome | None = None
        usage: ResourceUsage | None = None
        try:
            await self._supersede(session.id, prior)
            if token.cancelled:
                logger.info("Execution %s was superseded before it started", execution_id)
            else:
                self._monitor.start(execution_id, limits)
                self._events.publish(ExecutionEvent(EventKind.STARTED, execution_id, session.id, language=name))
                run_config = EngineRunConfig(
                    language=language,
                    session_id=session.id,
                    execution_id=execution_id,
                    limits=limits,
                    sample_data=request.config.sample_data,
                    on_process_started=partial(self._monitor.attach, execution_id),
                )
                try:
                    outcome = await self._supervise(engine, request.code, run_config, token)
                    if outcome is not None:
                        self._monitor.report_memory(execution_id, outcome.memory_bytes)
                finally:
                    usage = self._monitor.stop(execution_id)
        finally:
            self._tokens.pop(execution_id, None)
            self._finished.pop(execution_id, None)
            finished.set()
            self._sessions.clear_active_execution(session.id, execution_id)
            self._sessions.touch(session.id)

        if request.session_id not in self._sessions:
            logger.info("Discarding late result of %s; session %s is gone", execution_id, request.session_id)
            self._events.publish(
                ExecutionEvent(EventKind.DISCARDED, execution_id, request.session_id, language=name)
            )
            failure = EngineFailure("Session was closed before the execution finished", FailureHint.CANCELLED)
            status = ExecutionStatus.CANCELLED
        else:
            failure, status = self._resolve(outcome, token.reason, limits)
        return self._finish(request, execution_id, name, started, outcome, failure, status, limits=limits, usage=usage)

    async def _supersede(self, session_id: str, prior: str | None) -> None:
        """Cancel the prior in-flight execution of a session and wait briefly for it to end.

        Example:
            ```python
            await router._supersede("tab-1", "exec-1")
            ```
        """
        if prior is None:
            return
        token = self._tokens.get(prior)
        if token is not None:
            logger.info("Superseding %s for session %s", prior, session_id)
            token.cancel(SUPERSEDED)
        finished = self._finished.get(prior)
        if finished is None:
            return
        bound = 2 * self._settings.termination_grace_ms / 1000.0 + self._monitor.interval_ms / 1000.0
        try:
            await asyncio.wait_for(finished.wait(), bound)
        except asyncio.TimeoutError:
            logger.warning("Superseded execution %s did not finish within %.0f ms", prior, bound * 1000)

    async def _supervise(
        self,
        engine: LanguageEngine,
        code: str,
        config: EngineRunConfig,
        token: CancellationToken,
    ) -> EngineOutcome | None:
        """Race the engine against the monitor and the cancellation token.

        Returns None when the engine had to be abandoned after cancellation.

        Example:
            ```python
            outcome = await router._supervise(engine, "print(1)", config, token)
            ```
        """
        engine_task = asyncio.ensure_future(engine.run(code, config, token))
        watch_task = asyncio.ensure_future(self._monitor.watch(config.execution_id))
        cancel_task = asyncio.ensure_future(token.wait())
        waiting: set[asyncio.Future[Any]] = {engine_task, watch_task, cancel_task}
        try:
            while True:
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                if engine_task in done:
                    return self._engine_result(engine_task, config)
                if watch_task in done:
                    waiting.discard(watch_task)
                    check = watch_task.result()
                    if not check.within_limits:
                        reason = _violation_reason(check.exceeded)
                        logger.info("Execution %s hit its %s limit", config.execution_id, reason)
                        token.cancel(reason)
                if token.cancelled:
                    break
            return await self._drain(engine_task, config)
        except asyncio.CancelledError:
            token.cancel(USER_CANCELLED)
            engine_task.add_done_callback(_retrieve_exception)
            engine_task.cancel()
            raise
        finally:
            watch_task.cancel()
            cancel_task.cancel()

    def _engine_result(self, task: asyncio.Future[EngineOutcome], config: EngineRunConfig) -> EngineOutcome:
        """Return a finished engine's outcome, converting contract breaches to host failures.

        Example:
            ```python
            outcome = router._engine_result(engine_task, config)
            ```
        """
        try:
            return task.result()
        except Exception as exc:
            logger.exception("Engine for %s raised instead of returning a failure", config.execution_id)
            return EngineOutcome.failed(
                f"Engine crashed: {type(exc).__name__}: {exc}",
                FailureHint.HOST,
                details=traceback.format_exc(),
            )

    async def _drain(self, task: asyncio.Future[EngineOutcome], config: EngineRunConfig) -> EngineOutcome | None:
        """Give a cancelled engine the grace period to stop, then abandon it.

        Example:
            ```python
            outcome = await router._drain(engine_task, config)
            ```
        """
        grace_s = self._settings.termination_grace_ms / 1000.0
        try:
            await asyncio.wait_for(asyncio.shield(task), grace_s)
        except asyncio.TimeoutError:
            logger.warning(
                "Engine for %s did not stop within %d ms; abandoning it",
                config.execution_id,
                self._settings.termination_grace_ms,
            )
            task.add_done_callback(_retrieve_exception)
            task.cancel()
            return None
        except Exception:
            pass
        return self._engine_result(task, config)

    def _resolve(
        self,
        outcome: EngineOutcome | None,
        reason: str | None,
        limits: ResourceLimits,
    ) -> tuple[EngineFailure | None, ExecutionStatus]:
        """Decide the terminal status and raw failure of a supervised run.

        Example:
            ```python
            failure, status = router._resolve(outcome, None, limits)
            ```
        """
        if outcome is not None and outcome.success:
            return None, ExecutionStatus.COMPLETED
        if reason == WALL_TIME_EXCEEDED:
            message = f"Execution exceeded the {limits.max_wall_time_ms} ms wall-clock limit"
            return EngineFailure(message, FailureHint.TIMEOUT), ExecutionStatus.TIMED_OUT
        if reason == CPU_TIME_EXCEEDED:
            message = f"Execution exceeded the {limits.max_cpu_time_ms} ms CPU time limit"
            return EngineFailure(message, FailureHint.TIMEOUT), ExecutionStatus.TIMED_OUT
        if reason == MEMORY_EXCEEDED:
            message = f"Execution exceeded the memory limit of {limits.max_memory_bytes} bytes"
            return EngineFailure(message, FailureHint.MEMORY), ExecutionStatus.FAILED
        if reason is not None:
            message = f"Execution was cancelled ({_CANCEL_REASONS.get(reason, reason)})"
            return EngineFailure(message, FailureHint.CANCELLED), ExecutionStatus.CANCELLED
        if outcome is None or outcome.failure is None:
            return EngineFailure("Engine returned no outcome", FailureHint.HOST), ExecutionStatus.FAILED
        if outcome.failure.hint is FailureHint.TIMEOUT:
            return outcome.failure, ExecutionStatus.TIMED_OUT
        if outcome.failure.hint is FailureHint.CANCELLED:
            return outcome.failure, ExecutionStatus.CANCELLED
        return outcome.failure, ExecutionStatus.FAILED

    def _finish(
        self,
        request: ExecutionRequest,
        execution_id: str,
        language: str,
        started: float,
        outcome: EngineOutcome | None,
        failure: EngineFailure | None,
        status: ExecutionStatus,
        *,
        limits: ResourceLimits | None = None,
        usage: ResourceUsage | None = None,
    ) -> ExecutionResult:
        """Assemble the uniform result, classify failures and publish the event.

        Example:
            ```python
            result = router._finish(request, "exec-1", "python", started, outcome, None, ExecutionStatus.COMPLETED)
            ```
        """
        elapsed_ms = max(0.0, (self._clock() - started) * 1000.0)
        max_output = limits.max_output_bytes if limits is not None else self._settings.limits.default.max_output_bytes
        metadata: dict[str, Any] = dict(outcome.metadata) if outcome is not None else {}
        flagged = bool(metadata.pop("output_truncated", False))
        output, truncated = truncate_output(outcome.output if outcome is not None else "", max_output, flagged)
        if truncated:
            metadata["output_truncated"] = True
        if limits is not None:
            metadata["limits"] = limits.to_dict()
        if usage is not None and usage.cpu_time_ms is not None:
            metadata["cpu_time_ms"] = round(usage.cpu_time_ms, 3)

        memory = None
        if usage is not None:
            memory = usage.peak_memory_bytes
        if memory is None and outcome is not None:
            memory = outcome.memory_bytes

        if failure is None:
            visual = outcome.visual if outcome is not None else None
            result = ExecutionResult(
                success=True,
                session_id=request.session_id,
                execution_time_ms=elapsed_ms,
                output=output,
                visual_output=visual,
                memory_usage_bytes=memory,
                execution_id=execution_id,
                language=language,
                status=ExecutionStatus.COMPLETED,
                default_tab=PresentationTab.VISUAL if visual is not None else PresentationTab.CONSOLE,
                metadata=metadata,
            )
            logger.info("Execution %s completed in %.1f ms", execution_id, elapsed_ms)
        else:
            context = ErrorContext(
                language=language,
                code=request.code,
                execution_id=execution_id,
                session_id=request.session_id,
            )
            processed = classify(failure, context)
            result = ExecutionResult(
                success=False,
                session_id=request.session_id,
                execution_time_ms=elapsed_ms,
                output=output,
                error=failure.message,
                memory_usage_bytes=memory,
                execution_id=execution_id,
                language=language,
                status=status,
                processed_error=processed,
                default_tab=PresentationTab.ERROR,
                metadata=metadata,
            )
            logger.info(
                "Execution %s ended %s in %.1f ms (error kind: %s)",
                execution_id,
                status.value,
                elapsed_ms,
                processed.kind.value,
            )

        detail: dict[str, Any] = {"elapsed_ms": round(elapsed_ms, 3)}
        if result.processed_error is not None:
            detail["error_kind"] = result.processed_error.kind.value
        self._events.publish(
            ExecutionEvent(_STATUS_EVENTS[result.status], execution_id, request.session_id, language=language, detail=detail)
        )
        return result

    def _host_failure(self, request: ExecutionRequest, exc: BaseException) -> ExecutionResult:
        """Map an unexpected host exception to an `unknown` failure result.

        Example:
            ```python
            result = router._host_failure(request, RuntimeError("boom"))
            ```
        """
        failure = EngineFailure(
            f"Internal execution error: {type(exc).__name__}: {exc}",
            FailureHint.HOST,
            details="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        )
        name = request.language_name
        processed = classify(failure, ErrorContext(language=name, code=request.code, session_id=request.session_id))
        return ExecutionResult(
            success=False,
            session_id=request.session_id,
            execution_time_ms=0.0,
            error=failure.message,
            language=name,
            status=ExecutionStatus.FAILED,
            processed_error=processed,
            default_tab=PresentationTab.ERROR,
        )

    def _on_session_removed(self, session: Session) -> None:
        """Cancel work and release engine state for a closed or evicted session.

        Example:
            ```python
            router._on_session_removed(session)
            ```
        """
        if session.active_execution_id is not None:
            token = self._tokens.get(session.active_execution_id)
            if token is not None:
                token.cancel(SESSION_CLOSED)
        for key in self._retry.active_for_session(session.id):
            self._retry.cancel_retry(key)
        for engine in self._engines.values():
            try:
                engine.release_session(session.id)
            except Exception:
                logger.exception("Engine failed to release session %s", session.id)
        logger.info("Session %s closed", session.id)


def run_code(
    code: str,
    language: Language | str = Language.PYTHON,
    *,
    session_id: str = "default",
    config: ExecutionConfig | None = None,
    settings: RunnerSettings | None = None,
) -> ExecutionResult:
    """Run one snippet synchronously with a fresh router.

    Example:
        ```python
        from safe_code_runner import run_code
        result = run_code("print(2 + 2)", "python")
        ```
    """

    async def _run() -> ExecutionResult:
        """Build a router inside the event loop and execute the request.

        Example:
            ```python
            result = asyncio.run(_run())
            ```
        """
        router = ExecutionRouter(settings)
        request = ExecutionRequest(code=code, language=language, session_id=session_id, config=config or ExecutionConfig())
        return await router.execute(request)

    return asyncio.run(_run())
