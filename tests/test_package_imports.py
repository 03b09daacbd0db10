import os
import subprocess
import sys
from pathlib import Path

import pytest

SRC = Path(__file__).resolve().parents[1] / "src"


@pytest.mark.parametrize(
    "module",
    [
        "safe_code_runner",
        "safe_code_runner.policy",
        "safe_code_runner.execution",
        "safe_code_runner.execution.interpreter_engine",
        "safe_code_runner.execution.registry",
        "scr.cli",
    ],
)
def test_each_entry_module_imports_in_a_fresh_interpreter(module: str) -> None:
    """Import order must not matter; each module loads on its own."""
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(SRC), env.get("PYTHONPATH")]))
    completed = subprocess.run(
        [sys.executable, "-c", f"import {module}"],
        capture_output=True,
        text=True,
        env=env,
        timeout=60,
    )
    assert completed.returncode == 0, completed.stderr


def test_execution_package_exports_core_types() -> None:
    import safe_code_runner.execution as execution

    assert set(execution.__all__) == {
        "PROCESS",
        "THREAD",
        "EngineCapabilities",
        "CancellationToken",
        "LanguageEngine",
        "EngineOutcome",
        "EngineRunConfig",
    }
