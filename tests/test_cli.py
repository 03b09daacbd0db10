from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from scr import cli


def _write(tmp_path: Path, name: str, text: str) -> str:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_cli_run_json_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    source = _write(tmp_path, "data.json", '{"name": "Ada"}')
    code = cli.main(["run", source, "--language", "json"])
    output = capsys.readouterr().out
    assert code == 0
    assert "JSON is valid!" in output
    assert "Type: object" in output


def test_cli_run_python_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    source = _write(tmp_path, "script.py", "print([1, 2, 3])")
    code = cli.main(["run", source, "-l", "python"])
    output = capsys.readouterr().out
    assert code == 0
    assert "[1, 2, 3]" in output


def test_cli_run_failure_shows_error_and_suggestions(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    source = _write(tmp_path, "broken.json", '{"name": }')
    code = cli.main(["run", source, "--language", "json"])
    output = capsys.readouterr().out
    assert code == 1
    assert "JSON Syntax Error" in output
    assert "Kind: syntax" in output
    assert "Suggestions" in output


def test_cli_run_from_stdin_as_json(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO("SELECT COUNT(*) AS n FROM employees"))
    code = cli.main(["run", "-", "--language", "sql", "--json"])
    data = json.loads(capsys.readouterr().out)
    assert code == 0
    assert data["success"] is True
    assert data["language"] == "sql"
    assert "Row 1: 8" in data["output"]


def test_cli_run_unsupported_language(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    source = _write(tmp_path, "hello.cob", "DISPLAY 'HI'.")
    code = cli.main(["run", source, "--language", "cobol"])
    output = capsys.readouterr().out
    assert code == 1
    assert "not supported" in output


def test_cli_run_missing_source(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["run", str(tmp_path / "missing.py"), "--language", "python"])
    output = capsys.readouterr().out
    assert code == 2
    assert "Could not read" in output


def test_cli_bad_config(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config = _write(tmp_path, "settings.toml", '[sandbox]\nmode = "sometimes"\n')
    code = cli.main(["--config", config, "limits"])
    output = capsys.readouterr().out
    assert code == 2
    assert "Could not load settings" in output


def test_cli_languages(capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["languages"])
    output = capsys.readouterr().out
    assert code == 0
    assert "Registered Languages" in output
    assert "sql" in output


def test_cli_limits(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config = _write(tmp_path, "settings.toml", "[limits]\ntermination_grace_ms = 750\n")
    code = cli.main(["--config", config, "limits"])
    output = capsys.readouterr().out
    assert code == 0
    assert "Limit Profiles" in output
    assert "(ceiling)" in output
    assert "termination grace 750 ms" in output


def test_cli_rejects_non_positive_timeout(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["run", "x.py", "--language", "python", "--timeout-ms", "0"])
    assert exc.value.code == 2
    assert "must be positive" in capsys.readouterr().out


def test_cli_top_level_help_examples(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["--help"])
    output = capsys.readouterr().out
    assert exc.value.code == 0
    assert "Quick Examples:" in output
    assert "python -m scr languages" in output


def test_cli_print_help_writes_to_requested_stream(capsys: pytest.CaptureFixture[str]) -> None:
    parser = cli.build_parser()
    buffer = io.StringIO()
    parser.print_help(file=buffer)
    assert capsys.readouterr().out == ""
    help_text = buffer.getvalue()
    assert "Usage:" in help_text
    assert "safe-code-runner CLI" in help_text
