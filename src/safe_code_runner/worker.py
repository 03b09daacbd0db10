from __future__ import annotations

import contextlib
import io
import json
import linecache
import os
import re
import sys
import traceback
from typing import Any, Callable, TextIO

_resource: Any
try:
    import resource as _resource_module  # POSIX only
    _resource = _resource_module
except Exception:  # pragma: no cover - platform specific
    _resource = None

USER_FILENAME = "<user_code>"
PRELOAD_MODULES = ("numpy", "pandas", "matplotlib", "matplotlib.pyplot")
TABLE_ROW_LIMIT = 100
REGEX_MAX_MATCHES = 1000
_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}


class PolicyViolation(Exception):
    """Raised when sandboxed code calls a builtin the policy blocks.

    Example:
        ```python
        raise PolicyViolation("Builtin 'open' is blocked by policy")
        ```
    """


class _BoundedWriter(io.StringIO):
    """StringIO that stops storing text past a character budget.

    Example:
        ```python
        buffer = _BoundedWriter(1024)
        ```
    """

    def __init__(self, limit: int) -> None:
        """Initialize with a character budget.

        Example:
            ```python
            buffer = _BoundedWriter(limit=65536)
            ```
        """
        super().__init__()
        self.limit = max(0, int(limit))
        self.truncated = False
        self._size = 0

    def write(self, text: str) -> int:
        """Store text up to the budget and report it as fully written.

        Example:
            ```python
            buffer.write("hello\\n")
            ```
        """
        room = self.limit - self._size
        if room <= 0:
            self.truncated = self.truncated or bool(text)
            return len(text)
        if len(text) > room:
            self.truncated = True
            super().write(text[:room])
            self._size = self.limit
        else:
            super().write(text)
            self._size += len(text)
        return len(text)


def _set_limits(memory_bytes: int | None, cpu_time_ms: int | None) -> list[str]:
    """Apply RLIMIT_AS and RLIMIT_CPU to the current process.

    Example:
        ```python
        problems = _set_limits(256 * 1024 * 1024, 10_000)
        ```
    """
    errors: list[str] = []
    if _resource is None:
        errors.append("RLIMIT limits unavailable on this platform")
        return errors

    targets: list[tuple[int, int]] = []
    if memory_bytes:
        targets.append((_resource.RLIMIT_AS, int(memory_bytes)))
    if cpu_time_ms:
        # RLIMIT_CPU has one-second granularity; round up so short budgets still run.
        targets.append((_resource.RLIMIT_CPU, max(1, -(-int(cpu_time_ms) // 1000))))

    for which, value in targets:
        try:
            _, current_hard = _resource.getrlimit(which)
            if current_hard in (-1, _resource.RLIM_INFINITY):
                target_hard = value
            else:
                target_hard = min(value, current_hard)
            _resource.setrlimit(which, (min(value, target_hard), target_hard))
        except (ValueError, OSError) as exc:
            errors.append(f"rlimit {which} not applied: {exc}")
    return errors


def _safe_import_factory_mode(
    mode: str,
    allowed_imports: set[str],
    blocked_imports: set[str],
) -> Callable[..., Any]:
    """Return an `__import__` replacement enforcing the import policy.

    Example:
        ```python
        safe_import = _safe_import_factory_mode("restrict", set(), {"os"})
        ```
    """

    def _safe_import(
        name: str,
        globals: dict[str, Any] | None = None,
        locals: dict[str, Any] | None = None,
        fromlist: Any = (),
        level: int = 0,
    ) -> Any:
        """Import `name` unless the policy blocks it.

        Example:
            ```python
            math = _safe_import("math")
            ```
        """
        if level:
            raise ImportError("Relative imports are blocked by policy")
        if name == "importlib" or name.startswith("importlib."):
            raise ImportError("Import 'importlib' is blocked by policy")

        root = name.split(".")[0]
        if mode == "allow":
            if root not in allowed_imports:
                raise ImportError(f"Import '{name}' is not allowed by policy")
        elif root in blocked_imports:
            raise ImportError(f"Import '{name}' is blocked by policy")
        return __import__(name, globals, locals, fromlist, level)

    return _safe_import


def _blocked_builtin(name: str) -> Callable[..., Any]:
    """Return a stub that raises a policy violation when called.

    Example:
        ```python
        open_stub = _blocked_builtin("open")
        ```
    """

    def _stub(*args: Any, **kwargs: Any) -> Any:
        """Refuse the call.

        Example:
            ```python
            _stub("file.txt")  # raises PolicyViolation
            ```
        """
        raise PolicyViolation(f"Builtin '{name}' is blocked by policy")

    _stub.__name__ = name
    return _stub


def _build_safe_builtins(
    mode: str,
    allowed_builtins: set[str],
    blocked_builtins: set[str],
    safe_import: Any,
) -> dict[str, Any]:
    """Return the builtins mapping exposed to user code.

    Example:
        ```python
        builtins_map = _build_safe_builtins("restrict", set(), {"open"}, safe_import)
        ```
    """
    raw_builtins = __builtins__
    if isinstance(raw_builtins, dict):
        builtins_obj: dict[str, Any] = raw_builtins
    else:
        builtins_obj = vars(raw_builtins)

    safe: dict[str, Any] = {}
    for name, value in builtins_obj.items():
        if mode == "allow":
            if name not in allowed_builtins:
                continue
        elif name in blocked_builtins:
            safe[name] = _blocked_builtin(name)
            continue
        safe[name] = value

    safe["__import__"] = safe_import
    return safe


def _normalize_system_exit(exit_code: Any) -> tuple[bool, str | None]:
    """Map a SystemExit code to success and an error message.

    Example:
        ```python
        ok, error = _normalize_system_exit(0)
        ```
    """
    if exit_code in (None, 0):
        return True, None
    return False, f"SystemExit: {exit_code}"


def _peak_memory_bytes() -> int | None:
    """Return this process's peak resident memory in bytes.

    Example:
        ```python
        peak = _peak_memory_bytes()
        ```
    """
    if _resource is None:
        return None
    peak = _resource.getrusage(_resource.RUSAGE_SELF).ru_maxrss
    return int(peak) if sys.platform == "darwin" else int(peak) * 1024


def _user_traceback(exc: BaseException) -> str:
    """Format a traceback showing only frames from user code.

    Example:
        ```python
        text = _user_traceback(exc)
        ```
    """
    trace = traceback.TracebackException.from_exception(exc)
    trace.stack = traceback.StackSummary.from_list([f for f in trace.stack if f.filename == USER_FILENAME])
    return "".join(trace.format())


def _user_line(exc: BaseException) -> int | None:
    """Return the innermost user-code line number of an exception.

    Example:
        ```python
        line = _user_line(exc)
        ```
    """
    if isinstance(exc, SyntaxError):
        return exc.lineno
    line = None
    for frame, lineno in traceback.walk_tb(exc.__traceback__):
        if frame.f_code.co_filename == USER_FILENAME:
            line = lineno
    return line


def _response(**fields: Any) -> dict[str, Any]:
    """Build a worker response with all keys present.

    Example:
        ```python
        payload = _response(ok=True, stdout="hi\\n")
        ```
    """
    base: dict[str, Any] = {
        "ok": False,
        "result": None,
        "stdout": "",
        "stderr": "",
        "error": None,
        "hint": None,
        "line": None,
        "traceback": "",
        "output_truncated": False,
        "visuals": [],
        "peak_memory_bytes": None,
    }
    base.update(fields)
    return base


def _failure_hint(exc: BaseException) -> str:
    """Map an exception raised by user code to a classification hint.

    Example:
        ```python
        hint = _failure_hint(ImportError("Import 'os' is blocked by policy"))
        ```
    """
    if isinstance(exc, PolicyViolation):
        return "security"
    if isinstance(exc, ImportError) and "by policy" in str(exc):
        return "security"
    if isinstance(exc, MemoryError):
        return "memory"
    if isinstance(exc, ConnectionError):
        return "network"
    return "runtime"


def _collect_visuals(namespace: dict[str, Any]) -> list[dict[str, Any]]:
    """Turn open matplotlib figures and public DataFrames into render payloads.

    Example:
        ```python
        visuals = _collect_visuals({"df": frame})
        ```
    """
    visuals: list[dict[str, Any]] = []
    pyplot = sys.modules.get("matplotlib.pyplot")
    if pyplot is not None:
        for number in pyplot.get_fignums():
            figure = pyplot.figure(number)
            buffer = io.StringIO()
            figure.savefig(buffer, format="svg", bbox_inches="tight")
            visuals.append(
                {"kind": "image", "mime": "image/svg+xml", "data": buffer.getvalue(), "title": f"Figure {number}"}
            )
        pyplot.close("all")
    pandas = sys.modules.get("pandas")
    if pandas is not None:
        for name, value in namespace.items():
            if name.startswith("_") or not isinstance(value, pandas.DataFrame):
                continue
            frame = value.head(TABLE_ROW_LIMIT)
            data = json.loads(frame.to_json(orient="split", default_handler=str, date_format="iso"))
            visuals.append(
                {
                    "kind": "table",
                    "title": name,
                    "columns": [str(column) for column in data.get("columns", [])],
                    "rows": data.get("data", []),
                    "total_rows": int(len(value)),
                }
            )
    return visuals


def _execute(code: str, namespace: dict[str, Any], max_output_chars: int) -> dict[str, Any]:
    """Compile and run user code in `namespace` with captured output.

    Example:
        ```python
        response = _execute("print('hi')", {"__builtins__": builtins_map}, 65536)
        ```
    """
    try:
        byte_code = compile(code, USER_FILENAME, "exec")
    except SyntaxError as exc:
        return _response(
            error=f"{type(exc).__name__}: {exc.msg} (line {exc.lineno})",
            hint="syntax",
            line=exc.lineno,
            traceback="".join(traceback.format_exception_only(type(exc), exc)),
        )

    linecache.cache[USER_FILENAME] = (len(code), None, code.splitlines(True), USER_FILENAME)
    stdout_buffer = _BoundedWriter(max_output_chars)
    stderr_buffer = _BoundedWriter(max_output_chars)
    ok = True
    error: str | None = None
    hint: str | None = None
    line: int | None = None
    trace_text = ""
    try:
        with (
            contextlib.redirect_stdout(stdout_buffer),
            contextlib.redirect_stderr(stderr_buffer),
        ):
            exec(byte_code, namespace, namespace)
    except SystemExit as exc:
        # Preserve Python semantics: non-zero/str exits are failures.
        ok, error = _normalize_system_exit(exc.code)
        if isinstance(exc.code, str):
            stderr_buffer.write(f"{exc.code}\n")
        hint = None if ok else "runtime"
    except MemoryError:
        namespace.clear()
        ok, error, hint = False, "MemoryError: memory limit exceeded", "memory"
    except Exception as exc:
        ok = False
        error = f"{type(exc).__name__}: {exc}"
        hint = _failure_hint(exc)
        line = _user_line(exc)
        trace_text = _user_traceback(exc)

    return _response(
        ok=ok,
        result=namespace.get("result"),
        stdout=stdout_buffer.getvalue(),
        stderr=stderr_buffer.getvalue(),
        error=error,
        hint=hint,
        line=line,
        traceback=trace_text,
        output_truncated=stdout_buffer.truncated or stderr_buffer.truncated,
    )


def _run_request(request: dict[str, Any]) -> dict[str, Any]:
    """Run one execution request under its sandbox policy.

    Example:
        ```python
        response = _run_request({"code": "print(1)", "policy": {"mode": "restrict"}})
        ```
    """
    code = str(request.get("code", ""))
    policy = request.get("policy", {}) or {}
    limits = request.get("limits", {}) or {}
    mode = str(policy.get("mode", "restrict"))
    if mode not in {"allow", "restrict"}:
        return _response(error="mode must be 'allow' or 'restrict'", hint="host")

    safe_import = _safe_import_factory_mode(
        mode,
        set(policy.get("allowed_imports", [])),
        set(policy.get("blocked_imports", [])),
    )
    safe_builtins = _build_safe_builtins(
        mode,
        set(policy.get("allowed_builtins", [])),
        set(policy.get("blocked_builtins", [])),
        safe_import,
    )
    namespace: dict[str, Any] = {"__builtins__": safe_builtins, "__name__": "__main__", "result": None}
    response = _execute(code, namespace, int(limits.get("max_output_bytes", 65536)))
    if response["ok"]:
        try:
            response["visuals"] = _collect_visuals(namespace)
        except Exception as exc:
            response["stderr"] += f"\n[visual output unavailable: {type(exc).__name__}: {exc}]"
    response["peak_memory_bytes"] = _peak_memory_bytes()
    return response


def _protocol_stream() -> TextIO:
    """Reserve the real stdout for protocol frames and point fd 1 at stderr.

    Example:
        ```python
        protocol = _protocol_stream()
        ```
    """
    protocol = os.fdopen(os.dup(1), "w", encoding="utf-8")
    os.dup2(2, 1)
    return protocol


def _send(stream: TextIO, payload: dict[str, Any]) -> None:
    """Write one JSON frame followed by a newline.

    Example:
        ```python
        _send(protocol, {"ready": True})
        ```
    """
    stream.write(json.dumps(payload, default=str) + "\n")
    stream.flush()


def _preload() -> list[str]:
    """Import the scientific stack when installed, using the Agg backend.

    Example:
        ```python
        loaded = _preload()
        ```
    """
    loaded: list[str] = []
    for name in PRELOAD_MODULES:
        try:
            module = __import__(name, fromlist=["_"])
        except ImportError:
            continue
        if name == "matplotlib":
            module.use("Agg")
        loaded.append(name)
    return loaded


def serve(memory_bytes: int | None) -> int:
    """Run as a persistent runtime: one JSON request and response per line.

    Example:
        ```python
        exit_code = serve(memory_bytes=1024 * 1024 * 1024)
        ```
    """
    protocol = _protocol_stream()
    limit_errors = _set_limits(memory_bytes, None)
    preloaded = _preload()
    _send(protocol, {"ready": True, "pid": os.getpid(), "preloaded": preloaded, "limit_errors": limit_errors})
    for raw_line in sys.stdin:
        if not raw_line.strip():
            continue
        try:
            request = json.loads(raw_line)
        except json.JSONDecodeError as exc:
            _send(protocol, _response(error=f"Invalid request: {exc}", hint="host"))
            continue
        if request.get("op") == "shutdown":
            break
        try:
            _send(protocol, _run_request(request))
        except MemoryError:
            _send(protocol, _response(error="MemoryError: memory limit exceeded", hint="memory"))
    return 0


def _regex_flags(flags: str) -> tuple[int, bool]:
    """Translate `g i m s x` flag letters into `re` flags and a global switch.

    Example:
        ```python
        value, find_all = _regex_flags("gi")
        ```
    """
    value = 0
    find_all = False
    for letter in flags:
        if letter == "g":
            find_all = True
        elif letter in _REGEX_FLAGS:
            value |= _REGEX_FLAGS[letter]
        else:
            raise ValueError(f"Invalid regular expression flag '{letter}'")
    return value, find_all


def match_regex(request: dict[str, Any]) -> dict[str, Any]:
    """Run a regex request and return matches with positions and groups.

    Example:
        ```python
        response = match_regex({"pattern": r"\\d+", "text": "a1b22", "flags": "g"})
        ```
    """
    try:
        flag_value, find_all = _regex_flags(str(request.get("flags", "")))
        pattern = re.compile(str(request.get("pattern", "")), flag_value)
    except (re.error, ValueError) as exc:
        return {"ok": False, "error": f"Invalid regular expression: {exc}", "hint": "syntax"}
    text = str(request.get("text", ""))
    limit = int(request.get("max_matches", REGEX_MAX_MATCHES))
    matches: list[dict[str, Any]] = []
    truncated = False
    for found in pattern.finditer(text):
        if len(matches) >= limit:
            truncated = True
            break
        matches.append(
            {
                "match": found.group(0),
                "index": found.start(),
                "end": found.end(),
                "groups": list(found.groups()),
                "named": found.groupdict(),
            }
        )
        if not find_all:
            break
    return {"ok": True, "matches": matches, "truncated": truncated, "global": find_all}


def main(argv: list[str] | None = None) -> int:
    """Worker entry point: one-shot run, `--serve` runtime, or `--regex` match.

    Example:
        ```python
        exit_code = main(["--serve", "--memory-bytes", "1073741824"])
        ```
    """
    args = list(sys.argv[1:] if argv is None else argv)
    memory_bytes: int | None = None
    if "--memory-bytes" in args:
        memory_bytes = int(args[args.index("--memory-bytes") + 1])
    if "--serve" in args:
        return serve(memory_bytes)

    protocol = _protocol_stream()
    try:
        request = json.loads(sys.stdin.read() or "{}")
    except json.JSONDecodeError as exc:
        _send(protocol, _response(error=f"Invalid request: {exc}", hint="host"))
        return 1
    limits = request.get("limits", {}) or {}
    _set_limits(limits.get("max_memory_bytes"), limits.get("max_cpu_time_ms"))

    if "--regex" in args:
        try:
            response = match_regex(request)
        except MemoryError:
            response = {"ok": False, "error": "MemoryError: memory limit exceeded", "hint": "memory"}
        _send(protocol, response)
        return 0 if response["ok"] else 1

    try:
        response = _run_request(request)
    except MemoryError:
        response = _response(error="MemoryError: memory limit exceeded", hint="memory")
    _send(protocol, response)
    return 0 if response["ok"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
