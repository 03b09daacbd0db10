from __future__ import annotations

import re
from dataclasses import dataclass

from .errors import (
    RETRYABLE_KINDS,
    EngineFailure,
    ErrorContext,
    ErrorKind,
    FailureHint,
    ProcessedError,
    Suggestion,
)

MAX_SUGGESTIONS = 5

_SECURITY_PATTERN = re.compile(
    r"blocked by policy|not allowed by policy|security violation|not authorized|"
    r"code generation from strings disallowed",
    re.IGNORECASE,
)
_NETWORK_PATTERN = re.compile(
    r"ConnectionError|ConnectionRefused|ConnectionReset|network is unreachable|"
    r"name or service not known|getaddrinfo|ECONNREFUSED|ENOTFOUND|urlopen error|"
    r"failed to fetch|fetch is not defined|XMLHttpRequest|WebSocket",
    re.IGNORECASE,
)
_SYNTAX_PATTERN = re.compile(
    r"^(SyntaxError|IndentationError|TabError)\b|syntax error|unexpected token|"
    r"unexpected end of input|invalid syntax|JSON Syntax Error|YAML Syntax Error|"
    r"Invalid regular expression",
    re.IGNORECASE | re.MULTILINE,
)

_USER_MESSAGES = {
    ErrorKind.SYNTAX: (
        "There's a syntax error in your {language} code. Check for typos, missing brackets, or incorrect punctuation."
    ),
    ErrorKind.RUNTIME: (
        "Your code ran into an issue while executing. This usually means a variable or function "
        "wasn't found or used incorrectly."
    ),
    ErrorKind.SECURITY: (
        "Your code was blocked for security reasons. Some operations aren't allowed in this environment for safety."
    ),
    ErrorKind.TIMEOUT: (
        "Your code took too long to execute and was stopped. Try optimizing your code or reducing complexity."
    ),
    ErrorKind.MEMORY: (
        "Your code used too much memory. Try processing smaller amounts of data or optimizing memory usage."
    ),
    ErrorKind.NETWORK: (
        "There was a network-related issue. Network requests aren't allowed in this environment."
    ),
    ErrorKind.UNKNOWN: (
        "Something went wrong while running your code. Check the technical details below."
    ),
}


@dataclass(frozen=True, slots=True)
class _Rule:
    """Suggestion rule keyed by languages and a message pattern.

    Example:
        ```python
        rule = _Rule(("python",), re.compile("NameError"), (tip,))
        ```
    """

    languages: tuple[str, ...]
    pattern: re.Pattern[str]
    suggestions: tuple[Suggestion, ...]


def _rule(languages: tuple[str, ...], pattern: str, *suggestions: Suggestion) -> _Rule:
    """Build a case-insensitive suggestion rule.

    Example:
        ```python
        rule = _rule(("sql",), r"no such table", Suggestion("Create the table", "..."))
        ```
    """
    return _Rule(languages, re.compile(pattern, re.IGNORECASE), suggestions)


_PY = ("python", "python-scientific")
_JS = ("javascript", "html")

_RULES: tuple[_Rule, ...] = (
    _rule(
        _PY,
        r"IndentationError: (expected an indented block|unexpected indent|unindent)",
        Suggestion(
            "Add indentation",
            "Python requires indented blocks after colons (:)",
            "fix",
            10,
            example='if condition:\n    # This line must be indented\n    print("Hello")',
        ),
        Suggestion("Use consistent indentation", "Use either spaces or tabs consistently (4 spaces recommended)", "fix", 9),
    ),
    _rule(
        _PY,
        r"NameError: name .* is not defined",
        Suggestion("Define the variable", "Make sure to define the variable before using it", "fix", 9,
                   example='variable_name = "value"'),
        Suggestion("Check spelling", "Verify the name is spelled correctly, including upper and lower case", "fix", 8),
        Suggestion("Import the module", "If using a function from a module, import it first", "fix", 7,
                   example="import module_name\n# or\nfrom module_name import function_name"),
    ),
    _rule(
        _PY,
        r"ZeroDivisionError",
        Suggestion("Guard the divisor", "Check that the divisor is not zero before dividing", "fix", 9,
                   example="if divisor != 0:\n    result = value / divisor"),
    ),
    _rule(
        _PY,
        r"IndexError: .*index out of range",
        Suggestion("Check the index", "Indexes start at 0 and must be smaller than len(sequence)", "fix", 9,
                   example="if 0 <= i < len(items):\n    print(items[i])"),
    ),
    _rule(
        _PY,
        r"KeyError",
        Suggestion("Use dict.get", "Look up keys with a default instead of failing", "fix", 9,
                   example='value = data.get("key", default)'),
        Suggestion("Check the key", "Print the dictionary keys to see what is available", "fix", 7,
                   example="print(list(data.keys()))"),
    ),
    _rule(
        _PY,
        r"AttributeError: .* has no attribute",
        Suggestion("Check the attribute name", "Verify the object actually has this attribute or method", "fix", 9,
                   example="print(dir(obj))"),
    ),
    _rule(
        _PY,
        r"TypeError: .* takes .* positional argument",
        Suggestion("Check the call arguments", "The function was called with the wrong number of arguments", "fix", 9),
    ),
    _rule(
        _PY,
        r"RecursionError",
        Suggestion("Add a base case", "Recursive functions need a condition that stops the recursion", "fix", 9),
    ),
    _rule(
        _PY,
        r"(ImportError|ModuleNotFoundError).*(blocked|not allowed) by policy",
        Suggestion("Use an allowed module", "This module is disabled in the sandbox; use the standard library "
                   "modules that are available", "alternative", 9),
    ),
    _rule(
        _PY,
        r"(ImportError|ModuleNotFoundError): No module named",
        Suggestion("Check the module name", "The module is not installed in the sandbox or the name is misspelled",
                   "fix", 8),
    ),
    _rule(
        _JS,
        r"ReferenceError: .* is not defined",
        Suggestion("Declare the variable", "Make sure to declare the variable before using it", "fix", 9,
                   example='let variableName = "value";\n// or\nconst variableName = "value";'),
        Suggestion("Check spelling", "Verify the variable name is spelled correctly", "fix", 8),
        Suggestion("Check scope", "Make sure the variable is accessible in the current scope", "fix", 7),
    ),
    _rule(
        _JS,
        r"TypeError: Cannot (read|set) propert(y|ies) .* of (null|undefined)",
        Suggestion("Add null check", "Check if the object exists before accessing its properties", "fix", 9,
                   example="if (object && object.property) {\n  // Use object.property\n}"),
        Suggestion("Use optional chaining", "Use the ?. operator to safely access properties", "fix", 8,
                   example="object?.property"),
        Suggestion("Initialize the object", "Make sure the object is properly initialized", "fix", 7,
                   example="const object = {}; // or appropriate initialization"),
    ),
    _rule(
        _JS,
        r"TypeError: .* is not a function",
        Suggestion("Check function name", "Verify the function name is spelled correctly", "fix", 9),
        Suggestion("Ensure function is defined", "Make sure the function is declared before calling it", "fix", 8,
                   example="function myFunction() {\n  // function body\n}\n\nmyFunction(); // Call after declaration"),
        Suggestion("Check object method", "If calling a method, ensure the object has that method", "fix", 7,
                   example='if (typeof object.method === "function") {\n  object.method();\n}'),
    ),
    _rule(
        _JS,
        r"TypeError: Assignment to constant variable",
        Suggestion("Use let", "Variables declared with const cannot be reassigned; declare them with let", "fix", 9,
                   example="let counter = 0;\ncounter = counter + 1;"),
    ),
    _rule(
        _JS,
        r"RangeError: Maximum call stack size exceeded",
        Suggestion("Add a base case", "Recursive functions need a condition that stops the recursion", "fix", 9),
    ),
    _rule(
        ("sql",),
        r"no such table",
        Suggestion("Create the table first", "Make sure to create the table before querying it", "fix", 9,
                   example="CREATE TABLE table_name (\n  id INTEGER PRIMARY KEY,\n  name TEXT\n);"),
        Suggestion("Check table name spelling", "Verify the table name is spelled correctly", "fix", 8),
        Suggestion("View available tables", "See what tables are available in the database", "example", 7,
                   example="SELECT name FROM sqlite_master WHERE type='table';"),
    ),
    _rule(
        ("sql",),
        r"no such column",
        Suggestion("Check column names", "Verify the column exists in the table you are querying", "fix", 9,
                   example="PRAGMA table_info(employees);"),
        Suggestion("Qualify the column", "When joining tables, prefix the column with its table name", "fix", 7,
                   example="SELECT employees.name FROM employees JOIN departments ON ..."),
    ),
    _rule(
        ("sql",),
        r"syntax error",
        Suggestion("Check SQL syntax", "Review your SQL syntax for typos or missing keywords", "fix", 9),
        Suggestion("Add missing semicolon", "Make sure to end SQL statements with a semicolon", "fix", 8,
                   example="SELECT * FROM table_name;"),
        Suggestion("SQL Reference", "Check SQL syntax documentation", "documentation", 6,
                   link="https://www.sqlite.org/lang.html"),
    ),
    _rule(
        ("sql",),
        r"(UNIQUE|NOT NULL) constraint failed",
        Suggestion("Check constraint values", "The statement violates a table constraint; check the inserted values",
                   "fix", 9),
    ),
    _rule(
        ("sql",),
        r"ambiguous column name",
        Suggestion("Qualify the column", "Prefix the column with its table name or alias", "fix", 9,
                   example="SELECT e.name FROM employees e JOIN departments d ON e.department = d.name;"),
    ),
    _rule(
        ("json",),
        r"JSON Syntax Error",
        Suggestion("Quote keys and strings", "JSON keys and string values must use double quotes", "fix", 9,
                   example='{"name": "value"}'),
        Suggestion("Remove trailing commas", "JSON does not allow a comma after the last item", "fix", 8),
    ),
    _rule(
        ("yaml",),
        r"YAML Syntax Error",
        Suggestion("Check indentation", "YAML structure is defined by consistent space indentation (no tabs)", "fix", 9),
        Suggestion("Quote special values", "Quote strings that contain ':' or start with special characters", "fix", 7,
                   example='title: "Note: quoted"'),
    ),
    _rule(
        ("regex",),
        r"Invalid regular expression|Invalid format",
        Suggestion("Use the input format", "Provide pattern|||test string|||flags", "example", 9,
                   example="\\d+|||Hello 123 World|||g"),
        Suggestion("Escape special characters", "Characters like ( ) [ ] . * + ? need a backslash to match literally",
                   "fix", 8),
    ),
)

_KIND_SUGGESTIONS: dict[ErrorKind, tuple[Suggestion, ...]] = {
    ErrorKind.TIMEOUT: (
        Suggestion("Check for infinite loops", "Make sure every loop has a condition that eventually stops it", "fix", 8,
                   example="while count < 10:\n    count += 1"),
        Suggestion("Reduce the workload", "Process less data or break the work into smaller parts", "alternative", 6),
    ),
    ErrorKind.MEMORY: (
        Suggestion("Use less data", "Process smaller datasets or stream data instead of building large collections",
                   "alternative", 8),
        Suggestion("Avoid unbounded growth", "Check for lists or strings that grow inside loops without limit", "fix", 7),
    ),
    ErrorKind.SECURITY: (
        Suggestion("Remove restricted operations", "File, process, and network access are disabled in this environment",
                   "fix", 9),
    ),
    ErrorKind.NETWORK: (
        Suggestion("Use local data", "Network requests are not available; define sample data inline instead",
                   "alternative", 9),
    ),
}

_DOC_SUGGESTIONS: dict[str, Suggestion] = {
    "python": Suggestion("Python Documentation", "Check the official Python documentation", "documentation", 5,
                         link="https://docs.python.org/3/"),
    "python-scientific": Suggestion("Python Documentation", "Check the official Python documentation",
                                    "documentation", 5, link="https://docs.python.org/3/"),
    "javascript": Suggestion("JavaScript Reference", "Check the MDN JavaScript documentation", "documentation", 5,
                             link="https://developer.mozilla.org/en-US/docs/Web/JavaScript"),
    "html": Suggestion("HTML Reference", "Check the MDN HTML documentation", "documentation", 5,
                       link="https://developer.mozilla.org/en-US/docs/Web/HTML"),
    "css": Suggestion("CSS Reference", "Check the MDN CSS documentation", "documentation", 5,
                      link="https://developer.mozilla.org/en-US/docs/Web/CSS"),
    "sql": Suggestion("SQLite Documentation", "Check the SQLite documentation", "documentation", 5,
                      link="https://www.sqlite.org/docs.html"),
}


def classify_kind(failure: EngineFailure) -> ErrorKind:
    """Return the error kind for a raw failure (first match wins).

    Example:
        ```python
        kind = classify_kind(EngineFailure("SyntaxError: invalid syntax", FailureHint.SYNTAX))
        ```
    """
    if failure.hint in (FailureHint.TIMEOUT, FailureHint.CANCELLED):
        return ErrorKind.TIMEOUT
    if failure.hint is FailureHint.MEMORY:
        return ErrorKind.MEMORY
    if failure.hint is FailureHint.HOST:
        return ErrorKind.UNKNOWN
    if failure.hint is FailureHint.SECURITY or _SECURITY_PATTERN.search(failure.message):
        return ErrorKind.SECURITY
    if failure.hint is FailureHint.NETWORK or _NETWORK_PATTERN.search(failure.message):
        return ErrorKind.NETWORK
    if failure.hint is FailureHint.SYNTAX or _SYNTAX_PATTERN.search(failure.message):
        return ErrorKind.SYNTAX
    return ErrorKind.RUNTIME


def _contextual_suggestions(code: str, language: str) -> list[Suggestion]:
    """Inspect source text for common beginner mistakes.

    Example:
        ```python
        tips = _contextual_suggestions("print 'hi'", "python")
        ```
    """
    found: list[Suggestion] = []
    if language in _PY:
        if re.search(r"^\s*print\s+[^(\s=]", code, re.MULTILINE):
            found.append(
                Suggestion("Python 3 print syntax", "Use print() function instead of print statement", "fix", 9,
                           example='print("Hello World")')
            )
        lines = code.split("\n")
        for current, following in zip(lines, lines[1:]):
            if current.rstrip().endswith(":") and following.strip() and not following[:1].isspace():
                found.append(
                    Suggestion("Indentation required", "Python requires indented blocks after colons", "fix", 10,
                               example='if condition:\n    print("Indented block")')
                )
                break
    if language in _JS and re.search(r"console\.log(?!\s*\()", code):
        found.append(
            Suggestion("Missing parentheses", "console.log requires parentheses", "fix", 8,
                       example='console.log("Hello World");')
        )
    return found


def build_suggestions(kind: ErrorKind, failure: EngineFailure, context: ErrorContext) -> tuple[Suggestion, ...]:
    """Collect, rank, and cap suggestions for a classified failure.

    Example:
        ```python
        tips = build_suggestions(ErrorKind.RUNTIME, failure, ErrorContext(language="python"))
        ```
    """
    collected: list[Suggestion] = []
    for rule in _RULES:
        if context.language in rule.languages and rule.pattern.search(failure.message):
            collected.extend(rule.suggestions)
            break
    collected.extend(_KIND_SUGGESTIONS.get(kind, ()))
    collected.extend(_contextual_suggestions(context.code, context.language))
    if not collected and context.language in _DOC_SUGGESTIONS:
        collected.append(_DOC_SUGGESTIONS[context.language])
    unique: dict[str, Suggestion] = {}
    for tip in collected:
        unique.setdefault(tip.title, tip)
    ranked = sorted(unique.values(), key=lambda tip: tip.priority, reverse=True)
    return tuple(ranked[:MAX_SUGGESTIONS])


def classify(failure: EngineFailure, context: ErrorContext) -> ProcessedError:
    """Map a raw failure to a processed error; pure and deterministic.

    Example:
        ```python
        error = classify(EngineFailure("NameError: name 'x' is not defined"), ErrorContext(language="python"))
        assert error.kind is ErrorKind.RUNTIME and error.can_retry
        ```
    """
    kind = classify_kind(failure)
    details = failure.message if not failure.details else f"{failure.message}\n\n{failure.details}"
    return ProcessedError(
        kind=kind,
        technical_details=details,
        can_retry=kind in RETRYABLE_KINDS,
        suggestions=build_suggestions(kind, failure, context),
        user_message=_USER_MESSAGES[kind].format(language=context.language),
    )
