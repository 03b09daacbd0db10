import asyncio
import shutil
from dataclasses import replace

import pytest

from safe_code_runner import Language, RunnerSettings
from safe_code_runner.errors import FailureHint
from safe_code_runner.execution import CancellationToken, EngineRunConfig
from safe_code_runner.execution.script_engine import ScriptEngine

pytestmark = pytest.mark.skipif(shutil.which("node") is None, reason="Node.js is not installed")


def _run(code: str, **limit_overrides):
    limits = RunnerSettings.default().limits.profile_for("javascript")
    if limit_overrides:
        limits = replace(limits, **limit_overrides)
    config = EngineRunConfig(language=Language.JAVASCRIPT, session_id="tab-1", execution_id="exec-test", limits=limits)
    return asyncio.run(ScriptEngine(Language.JAVASCRIPT).run(code, config, CancellationToken()))


def test_console_output_and_last_expression() -> None:
    outcome = _run("console.log('sum', 1 + 1);\nconst x = 41;\nx + 1")
    assert outcome.success
    assert outcome.output == "sum 2\n"
    assert outcome.metadata["result"] == 42


def test_console_error_goes_to_output() -> None:
    outcome = _run("console.error('careful')")
    assert outcome.success
    assert "careful" in outcome.output


def test_timers_run_before_the_response() -> None:
    outcome = _run("setTimeout(() => console.log('later'), 10);\nconsole.log('now')")
    assert outcome.output == "now\nlater\n"


def test_string_code_generation_is_blocked() -> None:
    outcome = _run("eval('1 + 1')")
    assert not outcome.success
    assert outcome.failure.hint is FailureHint.SECURITY


def test_syntax_errors_are_flagged() -> None:
    outcome = _run("console.log(")
    assert outcome.failure.hint is FailureHint.SYNTAX
    assert outcome.failure.message.startswith("SyntaxError")


def test_runtime_errors_report_the_user_line() -> None:
    outcome = _run("const a = 1;\nnull.boom();")
    assert outcome.failure.hint is FailureHint.RUNTIME
    assert outcome.failure.message.startswith("TypeError")
    assert outcome.metadata["line"] == 2


def test_busy_loops_hit_the_wall_clock_limit() -> None:
    outcome = _run("while (true) {}", max_wall_time_ms=300)
    assert outcome.failure.hint is FailureHint.TIMEOUT


def test_host_modules_are_unreachable() -> None:
    outcome = _run("typeof require + ' ' + typeof process")
    assert outcome.success
    assert outcome.metadata["result"] == "undefined undefined"
