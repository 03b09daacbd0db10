import asyncio

from safe_code_runner import Language, RunnerSettings
from safe_code_runner.errors import FailureHint
from safe_code_runner.execution import CancellationToken, EngineRunConfig
from safe_code_runner.execution.structured import MAX_YAML_ALIASES, JsonEngine, MarkdownEngine, YamlEngine, max_depth, value_type


def _run(engine, code: str):
    config = EngineRunConfig(
        language=engine.language,
        session_id="tab-1",
        execution_id="exec-test",
        limits=RunnerSettings.default().limits.profile_for(engine.language.value),
    )
    return asyncio.run(engine.run(code, config, CancellationToken()))


def test_json_valid_document_is_pretty_printed() -> None:
    outcome = _run(JsonEngine(), '{"a": [1, 2], "b": {"c": null}}')
    assert outcome.success
    assert outcome.output.startswith("JSON is valid!")
    assert '"a": [\n    1,' in outcome.output
    assert "- Object keys: 2" in outcome.output
    assert outcome.metadata == {"type": "object", "depth": 2}
    code, summary = outcome.visual.children
    assert code.props["language"] == "json"
    assert summary.props["items"][0] == ["Type", "object"]


def test_json_syntax_error_reports_position() -> None:
    outcome = _run(JsonEngine(), '{"a": }')
    assert not outcome.success
    assert outcome.failure.hint is FailureHint.SYNTAX
    assert outcome.failure.message.startswith("JSON Syntax Error at line 1, column 7")
    assert outcome.metadata["line"] == 1


def test_json_array_reports_length() -> None:
    outcome = _run(JsonEngine(), "[1, 2, 3]")
    assert "- Array length: 3" in outcome.output


def test_yaml_shows_json_equivalent() -> None:
    outcome = _run(YamlEngine(), "# team\nname: Ada\nskills: [math, logic]\n")
    assert outcome.success
    assert outcome.output.startswith("YAML is valid!")
    assert '"skills": [\n    "math",' in outcome.output
    assert "- Has comments: Yes" in outcome.output
    assert "- Has arrays: Yes" in outcome.output
    assert outcome.metadata == {"documents": 1, "type": "object"}


def test_yaml_multiple_documents() -> None:
    outcome = _run(YamlEngine(), "a: 1\n---\nb: 2\n")
    assert outcome.metadata["documents"] == 2
    assert "- Documents: 2" in outcome.output


def test_yaml_syntax_error_reports_position() -> None:
    outcome = _run(YamlEngine(), "name: Ada\nkey: value: other\n")
    assert outcome.failure.hint is FailureHint.SYNTAX
    assert outcome.failure.message.startswith("YAML Syntax Error at line 2")
    assert outcome.metadata["line"] == 2


def test_yaml_alias_bombs_are_refused() -> None:
    aliases = ", ".join(["*a"] * (MAX_YAML_ALIASES + 1))
    outcome = _run(YamlEngine(), f"a: &a [1, 2]\nb: [{aliases}]\n")
    assert outcome.failure.hint is FailureHint.SECURITY


def test_yaml_never_constructs_python_objects() -> None:
    outcome = _run(YamlEngine(), "!!python/object/apply:os.system ['echo hi']\n")
    assert outcome.failure.hint is FailureHint.SYNTAX


def test_markdown_renders_a_locked_down_preview() -> None:
    source = "# Title\n\nSee [docs](https://example.com) and ![logo](logo.png).\n\n```\ncode\n```\n"
    outcome = _run(MarkdownEngine(), source)
    assert outcome.success
    assert "<h1>Title</h1>" in outcome.metadata["html"]
    assert "- Headings: 1" in outcome.output
    assert "- Links: 1" in outcome.output
    assert "- Images: 1" in outcome.output
    assert "- Code blocks: 1" in outcome.output
    preview = outcome.visual.children[0]
    assert preview.kind == "html-preview"
    assert preview.props["sandbox"] == ""
    assert "Content-Security-Policy" in preview.props["srcdoc"]


def test_markdown_tables_extension_is_enabled() -> None:
    outcome = _run(MarkdownEngine(), "| a | b |\n|---|---|\n| 1 | 2 |\n")
    assert "<table>" in outcome.metadata["html"]


def test_value_helpers() -> None:
    assert value_type(True) == "boolean"
    assert value_type(1.5) == "number"
    assert value_type(None) == "null"
    assert value_type([1]) == "array"
    assert max_depth(1) == 0
    assert max_depth({"a": [{"b": 1}]}) == 3
    assert Language.JSON is JsonEngine.language
