import asyncio

from safe_code_runner import (
    ErrorKind,
    EventKind,
    ExecutionConfig,
    ExecutionRequest,
    ExecutionRouter,
    ExecutionStatus,
    Language,
    PresentationTab,
    RenderNode,
    RunnerSettings,
)
from safe_code_runner.errors import FailureHint
from safe_code_runner.execution import THREAD, EngineCapabilities, EngineOutcome
from safe_code_runner.monitor import ProcessSample, ResourceMonitor
from safe_code_runner.retry import RetryController
from safe_code_runner.router import TRUNCATION_SUFFIX


class _FakeEngine:
    """Engine double: `slow...` code holds until cancelled, everything else replays outcomes."""

    capabilities = EngineCapabilities(isolation=THREAD, forced_termination=False, reports_memory=False, visual_output=True)

    def __init__(
        self,
        *outcomes: EngineOutcome,
        hold_s: float = 5.0,
        ignore_cancel: bool = False,
        pid: int | None = None,
    ) -> None:
        self.outcomes = list(outcomes)
        self.hold_s = hold_s
        self.ignore_cancel = ignore_cancel
        self.pid = pid
        self.calls: list[str] = []
        self.released: list[str] = []

    async def run(self, code, config, token) -> EngineOutcome:
        self.calls.append(code)
        if self.pid is not None:
            config.process_started(self.pid)
        if code.startswith("slow"):
            if self.ignore_cancel:
                await asyncio.sleep(self.hold_s)
            else:
                try:
                    reason = await asyncio.wait_for(token.wait(), self.hold_s)
                except asyncio.TimeoutError:
                    pass
                else:
                    return EngineOutcome.failed(f"Execution cancelled ({reason})", FailureHint.CANCELLED)
        if not self.outcomes:
            return EngineOutcome.ok(f"ran {code}\n")
        if len(self.outcomes) > 1:
            return self.outcomes.pop(0)
        return self.outcomes[0]

    def release_session(self, session_id: str) -> None:
        self.released.append(session_id)


class _CountingEngine(_FakeEngine):
    """Tracks how many runs are inside the engine at once."""

    def __init__(self, *outcomes: EngineOutcome, **kwargs) -> None:
        super().__init__(*outcomes, **kwargs)
        self.running = 0
        self.max_running = 0

    async def run(self, code, config, token) -> EngineOutcome:
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            return await super().run(code, config, token)
        finally:
            self.running -= 1


class _RaisingEngine(_FakeEngine):
    async def run(self, code, config, token) -> EngineOutcome:
        raise RuntimeError("engine bug")


class _FakeProbe:
    def __init__(self, rss_bytes=None, cpu_after_attach=None) -> None:
        self.rss_bytes = rss_bytes
        self.cpu_after_attach = cpu_after_attach
        self.calls = 0

    def sample(self, pid: int) -> ProcessSample:
        self.calls += 1
        cpu = 0.0 if self.calls == 1 else self.cpu_after_attach
        return ProcessSample(rss_bytes=self.rss_bytes, cpu_time_ms=cpu)


def _router(engine, *, probe=None, delays=None) -> ExecutionRouter:
    async def fake_sleep(seconds: float) -> None:
        if delays is not None:
            delays.append(seconds)

    return ExecutionRouter(
        RunnerSettings.default(),
        engines={Language.PYTHON: engine},
        monitor=ResourceMonitor(interval_ms=10, probe=probe or _FakeProbe()),
        retry=RetryController(sleep=fake_sleep),
    )


async def _active_execution(router: ExecutionRouter, session_id: str) -> str:
    for _ in range(500):
        session = router.get_session(session_id)
        if session is not None and session.active_execution_id is not None:
            return session.active_execution_id
        await asyncio.sleep(0.005)
    raise AssertionError("execution never became active")


def _request(code: str, session_id: str = "tab-1", **config) -> ExecutionRequest:
    return ExecutionRequest(code=code, language="python", session_id=session_id, config=ExecutionConfig(**config))


def test_successful_run_publishes_started_and_completed() -> None:
    async def scenario():
        router = _router(_FakeEngine())
        sub = router.events.subscribe(session_id="tab-1")
        result = await router.execute(_request("print(1)"))
        return result, [event.kind for event in sub.drain()], router

    result, kinds, router = asyncio.run(scenario())
    assert result.success
    assert result.output == "ran print(1)\n"
    assert result.status is ExecutionStatus.COMPLETED
    assert result.default_tab is PresentationTab.CONSOLE
    assert result.execution_id.startswith("exec-")
    assert result.language == "python"
    assert result.metadata["limits"]["max_wall_time_ms"] == 10000
    assert kinds == [EventKind.STARTED, EventKind.COMPLETED]
    assert router.get_session("tab-1").active_execution_id is None


def test_visual_output_selects_visual_tab() -> None:
    visual = RenderNode("table", props={"columns": ["a"], "rows": [[1]]})
    result = asyncio.run(_router(_FakeEngine(EngineOutcome.ok("", visual))).execute(_request("x")))
    assert result.default_tab is PresentationTab.VISUAL
    assert result.visual_output is visual


def test_unknown_and_unregistered_languages_fail_as_unknown() -> None:
    async def scenario():
        router = _router(_FakeEngine())
        cobol = await router.execute(ExecutionRequest("DISPLAY 'HI'.", "cobol", "tab-1"))
        bash = await router.execute(ExecutionRequest("echo hi", Language.BASH, "tab-2"))
        return cobol, bash

    for result in asyncio.run(scenario()):
        assert not result.success
        assert result.processed_error.kind is ErrorKind.UNKNOWN
        assert result.retry_available is False
        assert "not supported" in (result.error or "")
        assert result.default_tab is PresentationTab.ERROR


def test_empty_code_never_reaches_the_engine() -> None:
    engine = _FakeEngine()
    result = asyncio.run(_router(engine).execute(_request("  \n")))
    assert result.success
    assert result.output == ""
    assert engine.calls == []


def test_wall_time_limit_times_out_the_run() -> None:
    result = asyncio.run(_router(_FakeEngine()).execute(_request("slow", timeout_ms=50)))
    assert not result.success
    assert result.status is ExecutionStatus.TIMED_OUT
    assert result.processed_error.kind is ErrorKind.TIMEOUT
    assert "50 ms wall-clock limit" in (result.error or "")
    assert result.execution_time_ms < 2000


def test_engine_that_ignores_cancellation_is_abandoned_after_grace() -> None:
    engine = _FakeEngine(hold_s=5.0, ignore_cancel=True)
    result = asyncio.run(_router(engine).execute(_request("slow", timeout_ms=50)))
    assert result.status is ExecutionStatus.TIMED_OUT
    assert result.execution_time_ms < 2000


def test_memory_violation_fails_without_retry() -> None:
    engine = _FakeEngine(pid=4242)
    probe = _FakeProbe(rss_bytes=10**12, cpu_after_attach=0.0)
    result = asyncio.run(_router(engine, probe=probe).execute(_request("slow")))
    assert result.status is ExecutionStatus.FAILED
    assert result.processed_error.kind is ErrorKind.MEMORY
    assert result.retry_available is False
    assert result.memory_usage_bytes == 10**12


def test_cpu_violation_times_out() -> None:
    engine = _FakeEngine(pid=4242)
    probe = _FakeProbe(rss_bytes=1024, cpu_after_attach=10**7)
    result = asyncio.run(_router(engine, probe=probe).execute(_request("slow")))
    assert result.status is ExecutionStatus.TIMED_OUT
    assert "CPU time limit" in (result.error or "")


def test_cancel_in_flight_execution() -> None:
    async def scenario():
        router = _router(_FakeEngine())
        sub = router.events.subscribe(session_id="tab-1")
        task = asyncio.ensure_future(router.execute(_request("slow")))
        execution_id = await _active_execution(router, "tab-1")
        cancelled = router.cancel(execution_id)
        result = await asyncio.wait_for(task, 2.0)
        return cancelled, result, router.cancel(execution_id), [event.kind for event in sub.drain()]

    cancelled, result, second_cancel, kinds = asyncio.run(scenario())
    assert cancelled is True
    assert second_cancel is False
    assert result.status is ExecutionStatus.CANCELLED
    assert result.processed_error.kind is ErrorKind.TIMEOUT
    assert result.processed_error.can_retry is True
    assert kinds[-1] is EventKind.CANCELLED


def test_cancel_unknown_execution_is_a_no_op() -> None:
    assert _router(_FakeEngine()).cancel("exec-missing") is False


def test_new_request_supersedes_the_running_one() -> None:
    async def scenario():
        engine = _FakeEngine()
        router = _router(engine)
        first = asyncio.ensure_future(router.execute(_request("slow first")))
        await _active_execution(router, "tab-1")
        second = await router.execute(_request("print(2)"))
        return await asyncio.wait_for(first, 2.0), second

    first, second = asyncio.run(scenario())
    assert first.status is ExecutionStatus.CANCELLED
    assert "superseded" in (first.error or "")
    assert second.success
    assert second.output == "ran print(2)\n"


def test_rapid_requests_keep_one_run_per_session() -> None:
    async def scenario():
        engine = _CountingEngine(hold_s=0.3)
        router = _router(engine)
        first = asyncio.ensure_future(router.execute(_request("slow a", "s")))
        await _active_execution(router, "s")
        second, third = await asyncio.gather(
            router.execute(_request("slow b", "s")),
            router.execute(_request("slow c", "s")),
        )
        return await asyncio.wait_for(first, 2.0), second, third, engine

    first, second, third, engine = asyncio.run(scenario())
    assert [first.status, second.status, third.status] == [
        ExecutionStatus.CANCELLED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.COMPLETED,
    ]
    assert "superseded" in (second.error or "")
    assert third.output == "ran slow c\n"
    assert engine.calls == ["slow a", "slow c"]
    assert engine.max_running == 1


def test_other_sessions_run_concurrently() -> None:
    async def scenario():
        router = _router(_FakeEngine(hold_s=0.1))
        return await asyncio.gather(router.execute(_request("slow a", "tab-a")), router.execute(_request("slow b", "tab-b")))

    first, second = asyncio.run(scenario())
    assert first.success and second.success


def test_closing_a_session_discards_its_late_result() -> None:
    async def scenario():
        engine = _FakeEngine(hold_s=5.0)
        router = _router(engine)
        sub = router.events.subscribe(session_id="tab-1")
        task = asyncio.ensure_future(router.execute(_request("slow")))
        await _active_execution(router, "tab-1")
        router.close_session("tab-1")
        result = await asyncio.wait_for(task, 2.0)
        return result, engine.released, [event.kind for event in sub.drain()], router

    result, released, kinds, router = asyncio.run(scenario())
    assert result.status is ExecutionStatus.CANCELLED
    assert "Session was closed" in (result.error or "")
    assert EventKind.DISCARDED in kinds
    assert released == ["tab-1"]
    assert router.get_session("tab-1") is None


def test_auto_retry_from_request_config() -> None:
    delays: list[float] = []
    engine = _FakeEngine(
        EngineOutcome.failed("ValueError: flaky", FailureHint.RUNTIME),
        EngineOutcome.ok("second time\n"),
    )
    result = asyncio.run(_router(engine, delays=delays).execute(_request("x", auto_retry=True)))
    assert result.success
    assert result.output == "second time\n"
    assert result.metadata["retry"]["attempts"] == 2
    assert delays == [1.0]
    assert len(engine.calls) == 2


def test_auto_retry_enabled_per_session() -> None:
    async def scenario():
        engine = _FakeEngine(EngineOutcome.failed("ValueError: flaky"), EngineOutcome.ok("ok\n"))
        router = _router(engine)
        router.enable_auto_retry("tab-1", "python")
        result = await router.execute(_request("x"))
        return result, router.get_session("tab-1").auto_retry

    result, enabled = asyncio.run(scenario())
    assert enabled
    assert result.success


def test_auto_retry_never_repeats_non_retryable_failures() -> None:
    engine = _FakeEngine(EngineOutcome.failed("SyntaxError: invalid syntax", FailureHint.SYNTAX))
    result = asyncio.run(_router(engine).execute(_request("x", auto_retry=True)))
    assert not result.success
    assert "retry" not in result.metadata
    assert len(engine.calls) == 1


def test_without_opt_in_failures_are_not_retried() -> None:
    engine = _FakeEngine(EngineOutcome.failed("ValueError: flaky"))
    result = asyncio.run(_router(engine).execute(_request("x")))
    assert result.retry_available
    assert len(engine.calls) == 1


def test_engine_exception_becomes_unknown_failure() -> None:
    result = asyncio.run(_router(_RaisingEngine()).execute(_request("x")))
    assert not result.success
    assert result.processed_error.kind is ErrorKind.UNKNOWN
    assert "engine bug" in (result.error or "")


def test_output_is_truncated_to_the_limit() -> None:
    engine = _FakeEngine(EngineOutcome.ok("é" * 40))
    result = asyncio.run(_router(engine).execute(_request("x", max_output_bytes=11)))
    assert result.output == "é" * 5 + TRUNCATION_SUFFIX
    assert result.metadata["output_truncated"] is True


def test_idle_sessions_release_engine_state() -> None:
    async def scenario():
        engine = _FakeEngine()
        router = _router(engine)
        await router.execute(_request("x"))
        return router.evict_idle(0), engine.released

    evicted, released = asyncio.run(scenario())
    assert evicted == 1
    assert released == ["tab-1"]


def test_languages_lists_registered_engines() -> None:
    assert _router(_FakeEngine()).languages() == ["python"]
