from safe_code_runner import ErrorKind
from safe_code_runner.classifier import MAX_SUGGESTIONS, classify, classify_kind
from safe_code_runner.errors import EngineFailure, ErrorContext, FailureHint


def _classify(message: str, hint: FailureHint = FailureHint.RUNTIME, language: str = "python", code: str = ""):
    return classify(EngineFailure(message, hint), ErrorContext(language=language, code=code))


def test_hints_take_precedence_over_message_patterns() -> None:
    assert classify_kind(EngineFailure("SyntaxError: oops", FailureHint.TIMEOUT)) is ErrorKind.TIMEOUT
    assert classify_kind(EngineFailure("anything", FailureHint.CANCELLED)) is ErrorKind.TIMEOUT
    assert classify_kind(EngineFailure("anything", FailureHint.MEMORY)) is ErrorKind.MEMORY
    assert classify_kind(EngineFailure("anything", FailureHint.HOST)) is ErrorKind.UNKNOWN


def test_message_patterns_classify_runtime_hinted_failures() -> None:
    assert classify_kind(EngineFailure("Import 'os' is blocked by policy")) is ErrorKind.SECURITY
    assert classify_kind(EngineFailure("ConnectionRefusedError: [Errno 111]")) is ErrorKind.NETWORK
    assert classify_kind(EngineFailure("SyntaxError: invalid syntax")) is ErrorKind.SYNTAX
    assert classify_kind(EngineFailure("ValueError: bad value")) is ErrorKind.RUNTIME


def test_retry_eligibility_by_kind() -> None:
    assert _classify("ValueError: bad").can_retry is True
    assert _classify("took too long", FailureHint.TIMEOUT).can_retry is True
    assert _classify("ConnectionError", FailureHint.NETWORK).can_retry is True
    assert _classify("SyntaxError: bad", FailureHint.SYNTAX).can_retry is False
    assert _classify("blocked by policy", FailureHint.SECURITY).can_retry is False
    assert _classify("MemoryError", FailureHint.MEMORY).can_retry is False
    assert _classify("host broke", FailureHint.HOST).can_retry is False


def test_name_error_suggestions_are_ranked_by_priority() -> None:
    error = _classify("NameError: name 'x' is not defined")
    titles = [tip.title for tip in error.suggestions]
    assert titles[:3] == ["Define the variable", "Check spelling", "Import the module"]
    priorities = [tip.priority for tip in error.suggestions]
    assert priorities == sorted(priorities, reverse=True)


def test_suggestions_are_capped() -> None:
    code = "if True:\nprint 'x'\n"
    error = _classify("IndentationError: expected an indented block", FailureHint.SYNTAX, code=code)
    assert len(error.suggestions) <= MAX_SUGGESTIONS
    assert error.suggestions[0].title == "Add indentation"


def test_contextual_python_print_statement_suggestion() -> None:
    error = _classify("SyntaxError: Missing parentheses in call to 'print'", FailureHint.SYNTAX, code="print 'hi'")
    assert any(tip.title == "Python 3 print syntax" for tip in error.suggestions)


def test_javascript_reference_error_suggestions() -> None:
    error = _classify("ReferenceError: foo is not defined", language="javascript")
    assert error.kind is ErrorKind.RUNTIME
    assert error.suggestions[0].title == "Declare the variable"


def test_sql_missing_table_suggestions() -> None:
    error = _classify("no such table: people", language="sql")
    assert [tip.title for tip in error.suggestions][:2] == ["Create the table first", "Check table name spelling"]


def test_documentation_fallback_when_nothing_matches() -> None:
    error = _classify("Error: something odd", language="css")
    assert [tip.category for tip in error.suggestions] == ["documentation"]


def test_user_message_mentions_language_for_syntax_errors() -> None:
    error = _classify("SyntaxError: invalid syntax", FailureHint.SYNTAX, language="python")
    assert "python" in error.user_message


def test_technical_details_include_engine_details() -> None:
    failure = EngineFailure("ValueError: bad", FailureHint.RUNTIME, details="Traceback ...")
    error = classify(failure, ErrorContext(language="python"))
    assert error.technical_details == "ValueError: bad\n\nTraceback ..."


def test_classification_is_deterministic() -> None:
    first = _classify("KeyError: 'a'")
    second = _classify("KeyError: 'a'")
    assert first == second
