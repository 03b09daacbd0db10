from pathlib import Path

import pytest

from safe_code_runner import RunnerSettings, run_code


def test_settings_file_blocks_imports_and_builtins(tmp_path: Path) -> None:
    settings_file = tmp_path / "settings.toml"
    settings_file.write_text(
        (
            "[sandbox]\n"
            "mode = \"restrict\"\n"
            "blocked_imports = [\"math\"]\n"
            "blocked_builtins = [\"len\"]\n"
        ),
        encoding="utf-8",
    )
    settings = RunnerSettings.from_file(str(settings_file))

    import_result = run_code("import math", "python", settings=settings)
    assert import_result.success is False
    assert "blocked by policy" in (import_result.error or "")

    builtin_result = run_code("result = len([1, 2, 3])", "python", settings=settings)
    assert builtin_result.success is False
    assert "Builtin 'len' is blocked by policy" in (builtin_result.error or "")

    # os is no longer in the blocked list once the file replaces it.
    os_result = run_code("import os\nresult = os.sep", "python", settings=settings)
    assert os_result.success is True


def test_allow_mode_allows_only_selected_symbols(tmp_path: Path) -> None:
    settings_file = tmp_path / "settings.toml"
    settings_file.write_text(
        (
            "[sandbox]\n"
            "mode = \"allow\"\n"
            "allowed_imports = [\"math\"]\n"
            "allowed_builtins = [\"len\", \"sum\", \"range\", \"print\"]\n"
        ),
        encoding="utf-8",
    )
    settings = RunnerSettings.from_file(str(settings_file))

    allowed = run_code("import math\nresult = math.sqrt(16) + sum(range(4))", "python", settings=settings)
    assert allowed.success is True
    assert allowed.metadata["result"] == 10.0

    blocked_import = run_code("import json", "python", settings=settings)
    assert blocked_import.success is False
    assert "not allowed by policy" in (blocked_import.error or "")

    blocked_builtin = run_code("result = abs(-1)", "python", settings=settings)
    assert blocked_builtin.success is False
    assert "name 'abs' is not defined" in (blocked_builtin.error or "")


def test_settings_file_rejects_unknown_mode(tmp_path: Path) -> None:
    settings_file = tmp_path / "settings.toml"
    settings_file.write_text("[sandbox]\nmode = \"permissive\"\n", encoding="utf-8")

    with pytest.raises(ValueError, match="mode must be 'allow' or 'restrict'"):
        RunnerSettings.from_file(str(settings_file))
