import asyncio
from dataclasses import replace

from safe_code_runner import Language, RunnerSettings
from safe_code_runner.errors import FailureHint
from safe_code_runner.execution import CancellationToken, EngineRunConfig
from safe_code_runner.execution.sql_engine import SqlEngine, detect_query_type, split_statements

_HEAVY_QUERY = (
    "WITH RECURSIVE c(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM c WHERE x < 1000000000) "
    "SELECT count(*) FROM c"
)


def _config(session_id: str = "tab-1", *, sample_data: bool = True, **limit_overrides) -> EngineRunConfig:
    limits = RunnerSettings.default().limits.profile_for("sql")
    if limit_overrides:
        limits = replace(limits, **limit_overrides)
    return EngineRunConfig(
        language=Language.SQL,
        session_id=session_id,
        execution_id="exec-test",
        limits=limits,
        sample_data=sample_data,
    )


def _run(engine: SqlEngine, code: str, config: EngineRunConfig | None = None, token: CancellationToken | None = None):
    return asyncio.run(engine.run(code, config or _config(), token or CancellationToken()))


def test_select_from_sample_data() -> None:
    outcome = _run(SqlEngine(), "SELECT name FROM employees WHERE department = 'Engineering' ORDER BY id")
    assert outcome.success
    assert "Rows: 3" in outcome.output
    assert "Row 1: Alice Johnson" in outcome.output
    assert outcome.visual.kind == "table"
    assert outcome.visual.props["columns"] == ["name"]
    assert outcome.visual.props["rows"][2] == ["Frank Miller"]
    assert outcome.metadata["query_type"] == "SELECT"
    assert outcome.metadata["tables_involved"] == ["employees"]
    assert outcome.memory_bytes > 0


def test_preview_lists_first_rows_only() -> None:
    outcome = _run(SqlEngine(), "SELECT * FROM employees")
    assert "Rows: 8" in outcome.output
    assert "... and 3 more rows" in outcome.output
    assert outcome.metadata["rows_returned"] == 8


def test_multiple_result_sets_are_stacked() -> None:
    outcome = _run(SqlEngine(), "SELECT 1 AS a; SELECT 'x;y' AS b")
    assert outcome.visual.kind == "stack"
    assert [child.props["columns"] for child in outcome.visual.children] == [["a"], ["b"]]
    assert "Query 2 Results:" in outcome.output


def test_state_persists_within_a_session() -> None:
    engine = SqlEngine()
    created = _run(engine, "CREATE TABLE notes (body TEXT); INSERT INTO notes VALUES ('a'), ('b')")
    assert created.output == "CREATE statement executed successfully."
    counted = _run(engine, "SELECT COUNT(*) AS n FROM notes")
    assert "Row 1: 2" in counted.output


def test_sessions_are_isolated() -> None:
    engine = SqlEngine()
    _run(engine, "CREATE TABLE notes (body TEXT)")
    outcome = _run(engine, "SELECT * FROM notes", _config("tab-2"))
    assert not outcome.success
    assert "no such table" in outcome.failure.message
    assert outcome.failure.hint is FailureHint.RUNTIME


def test_sample_data_can_be_skipped() -> None:
    outcome = _run(SqlEngine(), "SELECT * FROM employees", _config(sample_data=False))
    assert not outcome.success
    assert "no such table: employees" in outcome.failure.message


def test_syntax_errors_are_flagged() -> None:
    outcome = _run(SqlEngine(), "SELEC name FROM employees")
    assert outcome.failure.hint is FailureHint.SYNTAX
    assert outcome.failure.message.startswith("SQL Syntax Error:")


def test_attach_and_pragma_writes_are_blocked() -> None:
    engine = SqlEngine()
    attach = _run(engine, "ATTACH DATABASE ':memory:' AS other")
    pragma = _run(engine, "PRAGMA journal_mode = OFF")
    vacuum = _run(engine, "VACUUM")
    for outcome in (attach, pragma, vacuum):
        assert not outcome.success
        assert outcome.failure.hint is FailureHint.SECURITY


def test_read_only_pragmas_are_allowed() -> None:
    outcome = _run(SqlEngine(), "PRAGMA table_info(employees)")
    assert outcome.success
    assert "Rows: 5" in outcome.output


def test_cancelled_token_interrupts_the_query() -> None:
    token = CancellationToken()
    token.cancel()
    outcome = _run(SqlEngine(), _HEAVY_QUERY, token=token)
    assert outcome.failure.hint is FailureHint.CANCELLED
    assert outcome.failure.message == "SQL execution was cancelled"


def test_cpu_budget_interrupts_long_queries() -> None:
    outcome = _run(SqlEngine(), _HEAVY_QUERY, _config(max_cpu_time_ms=50))
    assert outcome.failure.hint is FailureHint.TIMEOUT


def test_release_session_drops_the_database() -> None:
    engine = SqlEngine()
    _run(engine, "CREATE TABLE notes (body TEXT)")
    assert "tab-1" in engine
    engine.release_session("tab-1")
    assert "tab-1" not in engine
    assert _run(engine, "SELECT * FROM notes").failure is not None


def test_split_statements_respects_quoted_semicolons() -> None:
    assert split_statements("SELECT ';'; SELECT 2;") == ["SELECT ';';", "SELECT 2;"]
    assert split_statements("  ;  ") == []


def test_detect_query_type_skips_comments() -> None:
    assert detect_query_type("-- note\ninsert into t values (1)") == "INSERT"
    assert detect_query_type("") == "UNKNOWN"
