from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from ..errors import FailureHint
from ..models import RenderNode
from .capabilities import THREAD, EngineCapabilities
from .engine import CancellationToken
from .types import EngineOutcome, EngineRunConfig

logger = logging.getLogger(__name__)

ROW_LIMIT = 1000
PREVIEW_ROWS = 5
PROGRESS_STEPS = 10_000
_MIN_PAGES = 64

_SAMPLE_SCHEMA = """
CREATE TABLE IF NOT EXISTS employees (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  department TEXT NOT NULL,
  salary INTEGER NOT NULL,
  hire_date DATE NOT NULL
);
CREATE TABLE IF NOT EXISTS departments (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  budget INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS projects (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  department_id INTEGER,
  start_date DATE,
  end_date DATE,
  FOREIGN KEY (department_id) REFERENCES departments (id)
);
"""

_SAMPLE_EMPLOYEES = (
    ("Alice Johnson", "Engineering", 75000, "2022-01-15"),
    ("Bob Smith", "Marketing", 65000, "2021-03-20"),
    ("Carol Davis", "Engineering", 80000, "2020-07-10"),
    ("David Wilson", "Sales", 70000, "2022-05-01"),
    ("Eva Brown", "HR", 60000, "2021-11-30"),
    ("Frank Miller", "Engineering", 85000, "2019-09-15"),
    ("Grace Lee", "Marketing", 68000, "2022-02-28"),
    ("Henry Taylor", "Sales", 72000, "2021-08-12"),
)
_SAMPLE_DEPARTMENTS = (
    ("Engineering", 500000),
    ("Marketing", 200000),
    ("Sales", 300000),
    ("HR", 150000),
)
_SAMPLE_PROJECTS = (
    ("Website Redesign", 2, "2023-01-01", "2023-06-30"),
    ("Mobile App", 1, "2023-02-15", "2023-12-31"),
    ("Sales Campaign Q2", 3, "2023-04-01", "2023-06-30"),
    ("Employee Training", 4, "2023-03-01", "2023-05-31"),
)

# Pragmas that only read state; anything else, or any pragma assignment, is denied.
_READ_ONLY_PRAGMAS = frozenset(
    {
        "page_count",
        "page_size",
        "table_list",
        "function_list",
        "collation_list",
        "foreign_keys",
        "user_version",
        "schema_version",
        "encoding",
    }
)
_INTROSPECTION_PRAGMAS = frozenset(
    {"table_info", "table_xinfo", "index_list", "index_info", "index_xinfo", "foreign_key_list", "table_list"}
)
_WRITE_TYPES = ("INSERT", "UPDATE", "DELETE", "CREATE", "DROP", "ALTER")
_VACUUM = re.compile(r"^\s*VACUUM\b", re.I)
_TABLE_NAMES = re.compile(r"\b(?:FROM|JOIN|INTO|UPDATE|TABLE)\s+([A-Za-z_][A-Za-z0-9_]*)", re.I)
_SYNTAX_MARKERS = ("syntax error", "incomplete input", "unrecognized token", "near \"")


@dataclass(slots=True)
class _SessionDatabase:
    """One session's in-memory database and the lock serializing its use.

    Example:
        ```python
        database = _SessionDatabase(sqlite3.connect(":memory:", check_same_thread=False))
        ```
    """

    connection: sqlite3.Connection
    lock: threading.Lock = field(default_factory=threading.Lock)
    closed: bool = False


def split_statements(sql: str) -> list[str]:
    """Split a script into complete statements, respecting quoted semicolons.

    Example:
        ```python
        parts = split_statements("SELECT ';'; SELECT 2")
        ```
    """
    statements: list[str] = []
    pieces = sql.split(";")
    buffer = ""
    for piece in pieces[:-1]:
        buffer += piece + ";"
        if sqlite3.complete_statement(buffer):
            if buffer.strip().rstrip(";").strip():
                statements.append(buffer.strip())
            buffer = ""
    buffer += pieces[-1]
    if buffer.strip().rstrip(";").strip():
        statements.append(buffer.strip())
    return statements


def detect_query_type(sql: str) -> str:
    """Return the leading keyword of the first statement, upper-cased.

    Example:
        ```python
        kind = detect_query_type("insert into t values (1)")
        ```
    """
    stripped = re.sub(r"^\s*(?:--[^\n]*\n\s*)*", "", sql)
    match = re.match(r"\s*([A-Za-z]+)", stripped)
    return match.group(1).upper() if match else "UNKNOWN"


def _authorize(action: int, arg1: str | None, arg2: str | None, db_name: str | None, trigger: str | None) -> int:
    """SQLite authorizer denying attachments and state-changing pragmas.

    Example:
        ```python
        connection.set_authorizer(_authorize)
        ```
    """
    if action in (sqlite3.SQLITE_ATTACH, sqlite3.SQLITE_DETACH):
        return sqlite3.SQLITE_DENY
    if action == sqlite3.SQLITE_PRAGMA:
        name = (arg1 or "").lower()
        if arg2 is None and name in _READ_ONLY_PRAGMAS:
            return sqlite3.SQLITE_OK
        if name in _INTROSPECTION_PRAGMAS:
            return sqlite3.SQLITE_OK
        return sqlite3.SQLITE_DENY
    return sqlite3.SQLITE_OK


def _cell(value: Any) -> Any:
    """Make a SQLite value JSON-friendly for table nodes.

    Example:
        ```python
        text = _cell(b"\\x00\\x01")
        ```
    """
    if isinstance(value, bytes):
        return value.hex()
    return value


def _format_results(sql: str, results: list[tuple[list[str], list[tuple[Any, ...]], bool]]) -> str:
    """Render result sets as the plain-text console transcript.

    Example:
        ```python
        text = _format_results("SELECT 1", [(["1"], [(1,)], False)])
        ```
    """
    if not results:
        query_type = detect_query_type(sql)
        if query_type in _WRITE_TYPES:
            return f"{query_type} statement executed successfully."
        return "Query executed successfully. No results returned."

    lines: list[str] = []
    for index, (columns, rows, truncated) in enumerate(results, start=1):
        lines.append(f"Query {index} Results:")
        lines.append(f"Columns: {', '.join(columns)}")
        count = f"{len(rows)}+" if truncated else str(len(rows))
        lines.append(f"Rows: {count}")
        lines.append("")
        shown = rows[:PREVIEW_ROWS]
        for number, row in enumerate(shown, start=1):
            lines.append(f"Row {number}: {' | '.join('' if value is None else str(value) for value in row)}")
        if len(rows) > len(shown):
            lines.append(f"... and {len(rows) - len(shown)} more rows")
        lines.append("")
    return "\n".join(lines).strip() or "Query executed successfully."


def _classify_sql_error(exc: sqlite3.Error, token: CancellationToken) -> tuple[str, FailureHint]:
    """Map a SQLite error to a user message and failure hint.

    Example:
        ```python
        message, hint = _classify_sql_error(sqlite3.OperationalError("not authorized"), token)
        ```
    """
    text = str(exc)
    lowered = text.lower()
    if "interrupted" in lowered:
        if token.cancelled:
            return "SQL execution was cancelled", FailureHint.CANCELLED
        return "SQL execution exceeded the time limit", FailureHint.TIMEOUT
    if "not authorized" in lowered:
        return f"SQL Error: {text} (statement blocked by policy)", FailureHint.SECURITY
    if "database or disk is full" in lowered:
        return f"SQL Error: {text} (database size limit reached)", FailureHint.MEMORY
    if any(marker in lowered for marker in _SYNTAX_MARKERS):
        return f"SQL Syntax Error: {text}", FailureHint.SYNTAX
    return f"SQL Error: {text}", FailureHint.RUNTIME


class SqlEngine:
    """Run SQL against one in-memory SQLite database per session.

    Queries run in a worker thread. Cancellation is cooperative through the
    progress handler, which also enforces the CPU-time budget.

    Example:
        ```python
        engine = SqlEngine()
        outcome = await engine.run("SELECT name FROM employees", config, CancellationToken())
        ```
    """

    capabilities = EngineCapabilities(isolation=THREAD, forced_termination=False, reports_memory=True, visual_output=True)

    def __init__(self) -> None:
        """Start with no session databases.

        Example:
            ```python
            engine = SqlEngine()
            ```
        """
        self._databases: dict[str, _SessionDatabase] = {}
        self._guard = threading.Lock()

    def __contains__(self, session_id: object) -> bool:
        """Return True when a database exists for the session.

        Example:
            ```python
            assert "tab-1" in engine
            ```
        """
        with self._guard:
            return session_id in self._databases

    async def run(self, code: str, config: EngineRunConfig, token: CancellationToken) -> EngineOutcome:
        """Execute every statement in `code` inside the session database.

        Example:
            ```python
            outcome = await engine.run("CREATE TABLE t (x); INSERT INTO t VALUES (1)", config, token)
            ```
        """
        return await asyncio.to_thread(self._run_sync, code, config, token)

    def release_session(self, session_id: str) -> None:
        """Drop the session database; a running query closes it when done.

        Example:
            ```python
            engine.release_session("tab-1")
            ```
        """
        with self._guard:
            database = self._databases.pop(session_id, None)
        if database is None:
            return
        database.closed = True
        if database.lock.acquire(blocking=False):
            try:
                database.connection.close()
            finally:
                database.lock.release()
        logger.debug("Released SQL database for session %s", session_id)

    def _database(self, session_id: str, sample_data: bool) -> _SessionDatabase:
        """Return the session database, creating and seeding it on first use.

        Example:
            ```python
            database = engine._database("tab-1", sample_data=True)
            ```
        """
        with self._guard:
            database = self._databases.get(session_id)
            if database is not None:
                return database
            connection = sqlite3.connect(":memory:", check_same_thread=False, isolation_level=None)
            if sample_data:
                self._seed(connection)
            connection.set_authorizer(_authorize)
            database = _SessionDatabase(connection)
            self._databases[session_id] = database
            return database

    @staticmethod
    def _seed(connection: sqlite3.Connection) -> None:
        """Create and fill the sample employees, departments and projects tables.

        Example:
            ```python
            SqlEngine._seed(sqlite3.connect(":memory:"))
            ```
        """
        connection.executescript(_SAMPLE_SCHEMA)
        connection.executemany(
            "INSERT INTO employees (name, department, salary, hire_date) VALUES (?, ?, ?, ?)",
            _SAMPLE_EMPLOYEES,
        )
        connection.executemany("INSERT INTO departments (name, budget) VALUES (?, ?)", _SAMPLE_DEPARTMENTS)
        connection.executemany(
            "INSERT INTO projects (name, department_id, start_date, end_date) VALUES (?, ?, ?, ?)",
            _SAMPLE_PROJECTS,
        )

    def _run_sync(self, code: str, config: EngineRunConfig, token: CancellationToken) -> EngineOutcome:
        """Thread body: apply limits, run statements, and format results.

        Example:
            ```python
            outcome = engine._run_sync("SELECT 1", config, token)
            ```
        """
        database = self._database(config.session_id, config.sample_data)
        with database.lock:
            if database.closed:
                return EngineOutcome.failed("Session database was closed", FailureHint.CANCELLED)
            connection = database.connection
            deadline = time.monotonic() + config.limits.max_cpu_time_ms / 1000

            def _progress() -> int:
                """Abort the running statement on cancellation or budget overrun.

                Example:
                    ```python
                    connection.set_progress_handler(_progress, PROGRESS_STEPS)
                    ```
                """
                return 1 if token.cancelled or time.monotonic() > deadline else 0

            try:
                self._apply_page_limit(connection, config.limits.max_memory_bytes)
                connection.set_progress_handler(_progress, PROGRESS_STEPS)
                return self._execute_statements(connection, code, token)
            finally:
                if database.closed:
                    connection.close()
                else:
                    connection.set_progress_handler(None, 0)

    def _apply_page_limit(self, connection: sqlite3.Connection, max_memory_bytes: int) -> None:
        """Bound database growth to the memory budget via `max_page_count`.

        Example:
            ```python
            engine._apply_page_limit(connection, 128 * 1024 * 1024)
            ```
        """
        connection.set_authorizer(None)
        try:
            page_size = int(connection.execute("PRAGMA page_size").fetchone()[0])
            pages = max(_MIN_PAGES, max_memory_bytes // page_size)
            connection.execute(f"PRAGMA max_page_count = {pages}")
        finally:
            connection.set_authorizer(_authorize)

    def _execute_statements(self, connection: sqlite3.Connection, code: str, token: CancellationToken) -> EngineOutcome:
        """Run statements in order and collect result sets.

        Example:
            ```python
            outcome = engine._execute_statements(connection, "SELECT 1; SELECT 2", token)
            ```
        """
        statements = split_statements(code)
        results: list[tuple[list[str], list[tuple[Any, ...]], bool]] = []
        try:
            for statement in statements:
                if _VACUUM.match(statement):
                    return EngineOutcome.failed("SQL Error: VACUUM is blocked by policy", FailureHint.SECURITY)
                cursor = connection.execute(statement)
                if cursor.description is None:
                    continue
                columns = [str(column[0]) for column in cursor.description]
                rows = cursor.fetchmany(ROW_LIMIT + 1)
                truncated = len(rows) > ROW_LIMIT
                results.append((columns, [tuple(row) for row in rows[:ROW_LIMIT]], truncated))
        except sqlite3.Error as exc:
            if connection.in_transaction:
                connection.rollback()
            message, hint = _classify_sql_error(exc, token)
            return EngineOutcome.failed(message, hint, details=f"{type(exc).__name__}: {exc}")

        page_count = int(connection.execute("PRAGMA page_count").fetchone()[0])
        page_size = int(connection.execute("PRAGMA page_size").fetchone()[0])
        tables = sorted({name.lower() for name in _TABLE_NAMES.findall(code)})
        metadata = {
            "query_type": detect_query_type(code),
            "statements": len(statements),
            "rows_returned": sum(len(rows) for _, rows, _ in results),
            "tables_involved": tables,
            "rows_truncated": any(truncated for _, _, truncated in results),
        }
        return EngineOutcome.ok(
            _format_results(code, results),
            self._visual(results),
            memory_bytes=page_count * page_size,
            metadata=metadata,
        )

    def _visual(self, results: list[tuple[list[str], list[tuple[Any, ...]], bool]]) -> RenderNode | None:
        """Build table nodes for every result set.

        Example:
            ```python
            node = engine._visual([(["id"], [(1,)], False)])
            ```
        """
        tables = [
            RenderNode(
                "table",
                props={
                    "title": f"Query {index} Results ({len(rows)} rows)",
                    "columns": columns,
                    "rows": [[_cell(value) for value in row] for row in rows],
                    "truncated": truncated,
                },
            )
            for index, (columns, rows, truncated) in enumerate(results, start=1)
        ]
        if not tables:
            return None
        if len(tables) == 1:
            return tables[0]
        return RenderNode("stack", children=tables)
