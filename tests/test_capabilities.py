import pytest

from safe_code_runner import Language, RunnerSettings
from safe_code_runner.execution import PROCESS, THREAD, EngineCapabilities
from safe_code_runner.execution.registry import build_default_engines
from safe_code_runner.execution.capabilities import describe


def test_process_engines_can_be_force_terminated() -> None:
    engines = build_default_engines(RunnerSettings.default(), node=None)

    for language in (Language.PYTHON, Language.PYTHON_SCIENTIFIC, Language.REGEX):
        caps = engines[language].capabilities
        assert caps.isolation == PROCESS
        assert caps.forced_termination

    assert engines[Language.PYTHON].capabilities.reports_memory
    assert engines[Language.PYTHON].capabilities.visual_output


def test_thread_engines_cancel_cooperatively() -> None:
    engines = build_default_engines(RunnerSettings.default(), node=None)

    for language in (Language.SQL, Language.JSON, Language.YAML, Language.MARKDOWN):
        caps = engines[language].capabilities
        assert caps.isolation == THREAD
        assert not caps.forced_termination


def test_registry_skips_javascript_without_node_and_never_registers_bash(monkeypatch: pytest.MonkeyPatch) -> None:
    from safe_code_runner.execution import registry

    monkeypatch.setattr(registry, "node_executable", lambda: None)
    engines = registry.build_default_engines(RunnerSettings.default())

    assert Language.JAVASCRIPT not in engines
    assert Language.BASH not in engines
    assert Language.HTML in engines


def test_describe_lists_capabilities() -> None:
    caps = EngineCapabilities(isolation=PROCESS, forced_termination=True, reports_memory=False, visual_output=True)
    assert describe(caps) == "process, killable, visual"


def test_capabilities_reject_unknown_isolation() -> None:
    with pytest.raises(ValueError, match="isolation"):
        EngineCapabilities(isolation="container", forced_termination=True, reports_memory=True, visual_output=False)
