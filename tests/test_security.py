from pathlib import Path

from safe_code_runner import ErrorKind, RunnerSettings, run_code


def _settings_blocking(tmp_path: Path, imports: str = '["os"]', builtins: str = '["eval", "exec", "open"]') -> RunnerSettings:
    config = tmp_path / "settings.toml"
    config.write_text(
        f"[sandbox]\nmode = \"restrict\"\nblocked_imports = {imports}\nblocked_builtins = {builtins}\n",
        encoding="utf-8",
    )
    return RunnerSettings.from_file(str(config))


def test_blocked_import_direct(tmp_path: Path) -> None:
    """Verify that directly importing a blocked module fails."""
    result = run_code("import os", "python", settings=_settings_blocking(tmp_path))
    assert not result.success
    assert "blocked by policy" in (result.error or "")
    assert result.processed_error is not None
    assert result.processed_error.kind is ErrorKind.SECURITY
    assert result.retry_available is False


def test_blocked_import_alias(tmp_path: Path) -> None:
    """Verify that aliasing a blocked module still fails."""
    result = run_code("import os as my_os", "python", settings=_settings_blocking(tmp_path))
    assert not result.success
    assert "blocked by policy" in (result.error or "")


def test_blocked_import_from(tmp_path: Path) -> None:
    """Verify that 'from x import y' on a blocked module fails."""
    result = run_code("from os import path", "python", settings=_settings_blocking(tmp_path))
    assert not result.success
    assert "blocked by policy" in (result.error or "")


def test_blocked_builtin_eval(tmp_path: Path) -> None:
    """Blocked builtins are replaced by stubs that raise a policy violation."""
    result = run_code("x = eval('1 + 1')", "python", settings=_settings_blocking(tmp_path))
    assert not result.success
    assert "Builtin 'eval' is blocked by policy" in (result.error or "")
    assert result.processed_error is not None
    assert result.processed_error.kind is ErrorKind.SECURITY


def test_blocked_builtin_exec(tmp_path: Path) -> None:
    result = run_code("exec('x = 1')", "python", settings=_settings_blocking(tmp_path))
    assert not result.success
    assert "Builtin 'exec' is blocked by policy" in (result.error or "")


def test_blocked_builtin_open(tmp_path: Path) -> None:
    result = run_code("f = open('test.txt', 'w')", "python", settings=_settings_blocking(tmp_path))
    assert not result.success
    assert "Builtin 'open' is blocked by policy" in (result.error or "")


def test_system_exit_code() -> None:
    """Verify that SystemExit is handled like Python does."""
    result = run_code("raise SystemExit(0)", "python")
    assert result.success is True

    result_err = run_code("raise SystemExit(1)", "python")
    assert result_err.success is False
    assert "SystemExit: 1" in (result_err.error or "")


def test_system_exit_string_message() -> None:
    result = run_code("raise SystemExit('stop now')", "python")
    assert result.success is False
    assert "SystemExit: stop now" in (result.error or "")
    assert "stop now" in result.output


def test_importlib_bypass_attempt(tmp_path: Path) -> None:
    """importlib itself is refused by the import hook."""
    code = """
import importlib
os = importlib.import_module("os")
"""
    result = run_code(code, "python", settings=_settings_blocking(tmp_path))
    assert not result.success
    assert "blocked by policy" in (result.error or "")


def test_dunder_import_bypass_attempt(tmp_path: Path) -> None:
    """Attempt to bypass using __import__."""
    result = run_code('os = __import__("os")', "python", settings=_settings_blocking(tmp_path))
    assert not result.success
    assert "blocked by policy" in (result.error or "")


def test_secure_defaults_block_os_and_sys_imports() -> None:
    for code in ("import os", "import sys", "import subprocess", "import socket"):
        result = run_code(code, "python")
        assert result.success is False, code
        assert "blocked by policy" in (result.error or "")


def test_secure_defaults_block_eval_builtin() -> None:
    result = run_code("result = eval('1+1')", "python")
    assert result.success is False
    assert "blocked by policy" in (result.error or "")


def test_relative_import_is_blocked() -> None:
    result = run_code("from . import sibling", "python")
    assert result.success is False
    assert "Relative imports are blocked by policy" in (result.error or "")


def test_code_over_size_limit_is_security_failure(tmp_path: Path) -> None:
    config = tmp_path / "settings.toml"
    config.write_text("[limits]\nmax_code_bytes = 16\n", encoding="utf-8")
    result = run_code("print('this is longer than sixteen bytes')", "python", settings=RunnerSettings.from_file(str(config)))
    assert result.success is False
    assert result.processed_error is not None
    assert result.processed_error.kind is ErrorKind.SECURITY
