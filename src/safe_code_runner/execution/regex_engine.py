from __future__ import annotations

import json
import logging
import re
from typing import Any

from ..errors import FailureHint
from ..models import RenderNode
from .capabilities import PROCESS, EngineCapabilities
from .engine import CancellationToken
from .process import exit_hint, make_workdir, python_command, remove_workdir, run_process, sandbox_env
from .script_engine import last_json_line
from .types import EngineOutcome, EngineRunConfig

logger = logging.getLogger(__name__)

SEPARATOR = "|||"
MAX_PATTERN_LENGTH = 1000
MAX_MATCHES = 1000
FORMAT_HELP = "Invalid format. Use: pattern|||testString|||flags (optional)\nExample: \\d+|||Hello 123 World|||g"
_VALID_FLAGS = frozenset("gimsx")


def parse_input(code: str) -> tuple[str, str, str] | None:
    """Split `pattern|||test string|||flags` into its parts, or None if malformed.

    Example:
        ```python
        pattern, text, flags = parse_input(r"\\d+|||Hello 123 World|||g")
        ```
    """
    parts = code.split(SEPARATOR)
    if len(parts) < 2:
        return None
    flags = parts[2].strip() if len(parts) > 2 else ""
    return parts[0], parts[1], flags


def analyze_pattern(pattern: str) -> dict[str, Any]:
    """Describe a pattern's length, features and rough complexity.

    Example:
        ```python
        info = analyze_pattern(r"(\\d+)-\\w*")
        ```
    """
    has_quantifiers = bool(re.search(r"[*+?{]", pattern))
    has_groups = bool(re.search(r"[()]", pattern))
    has_classes = bool(re.search(r"[\[\]\\]", pattern))
    features = sum((has_quantifiers, has_groups, has_classes))
    complexity = "Complex" if features == 3 else "Moderate" if features else "Simple"
    return {
        "pattern_length": len(pattern),
        "complexity": complexity,
        "has_quantifiers": has_quantifiers,
        "has_groups": has_groups,
        "has_character_classes": has_classes,
    }


def _format_output(pattern: str, text: str, flags: str, matches: list[dict[str, Any]], info: dict[str, Any]) -> str:
    """Render match results and pattern analysis as console text.

    Example:
        ```python
        output = _format_output("a", "banana", "g", matches, analyze_pattern("a"))
        ```
    """
    lines = [
        "Regex Test Results:",
        f"Pattern: {pattern}",
        f"Flags: {flags or 'none'}",
        f"Test String: {text}",
        f"Matches Found: {len(matches)}",
        "",
    ]
    if matches:
        lines.append("Matches:")
        for number, match in enumerate(matches, start=1):
            entry = f'{number}. "{match["match"]}" at position {match["index"]}'
            groups = match.get("groups") or []
            if groups:
                entry += f" (groups: {', '.join('' if group is None else str(group) for group in groups)})"
            lines.append(entry)
    else:
        lines.append("No matches found.")
    yes_no = {True: "Yes", False: "No"}
    lines += [
        "",
        "Regex Analysis:",
        f"- Pattern length: {info['pattern_length']}",
        f"- Complexity: {info['complexity']}",
        f"- Has quantifiers: {yes_no[info['has_quantifiers']]}",
        f"- Has groups: {yes_no[info['has_groups']]}",
        f"- Has character classes: {yes_no[info['has_character_classes']]}",
        f"- Matches found: {len(matches)}",
    ]
    return "\n".join(lines)


def highlight(text: str, matches: list[dict[str, Any]]) -> RenderNode:
    """Build a highlighted-text node with alternating text and match segments.

    Example:
        ```python
        node = highlight("a1b", [{"match": "1", "index": 1, "end": 2}])
        ```
    """
    children: list[RenderNode] = []
    cursor = 0
    for number, match in enumerate(matches, start=1):
        start, end = int(match["index"]), int(match["end"])
        if end <= start or start < cursor:
            continue
        if start > cursor:
            children.append(RenderNode("text", text=text[cursor:start]))
        children.append(RenderNode("match", props={"number": number}, text=text[start:end]))
        cursor = end
    if cursor < len(text):
        children.append(RenderNode("text", text=text[cursor:]))
    return RenderNode("highlighted-text", children=children)


class RegexEngine:
    """Test a regular expression against a string in a killable child process.

    Matching runs out of process because a catastrophic pattern holds the
    interpreter lock and cannot be interrupted in a thread.

    Example:
        ```python
        outcome = await RegexEngine().run(r"\\d+|||a1b22|||g", config, CancellationToken())
        ```
    """

    capabilities = EngineCapabilities(isolation=PROCESS, forced_termination=True, reports_memory=False, visual_output=True)

    async def run(self, code: str, config: EngineRunConfig, token: CancellationToken) -> EngineOutcome:
        """Validate the input format and flags, then match in the worker.

        Example:
            ```python
            outcome = await engine.run("cat|||concatenate", config, token)
            ```
        """
        parsed = parse_input(code)
        if parsed is None:
            return EngineOutcome.failed(FORMAT_HELP, FailureHint.SYNTAX)
        pattern, text, flags = parsed
        unknown = sorted(set(flags) - _VALID_FLAGS)
        if unknown:
            return EngineOutcome.failed(
                f"Invalid regular expression flags: {''.join(unknown)} (supported: g i m s x)",
                FailureHint.SYNTAX,
            )
        if len(pattern) > MAX_PATTERN_LENGTH:
            return EngineOutcome.failed(
                f"Pattern is {len(pattern)} characters; at most {MAX_PATTERN_LENGTH} are allowed",
                FailureHint.RUNTIME,
            )

        request = {
            "pattern": pattern,
            "text": text,
            "flags": flags,
            "max_matches": MAX_MATCHES,
            "limits": config.limits.to_dict(),
        }
        workdir = make_workdir()
        try:
            result = await run_process(
                python_command("--regex"),
                stdin_data=json.dumps(request),
                config=config,
                token=token,
                env=sandbox_env(workdir),
                cwd=workdir,
            )
        except OSError as exc:
            logger.error("Could not start regex worker: %s", exc)
            return EngineOutcome.failed(f"Could not start regex worker: {exc}", FailureHint.HOST)
        finally:
            remove_workdir(workdir)

        if result.cancelled_reason is not None:
            return EngineOutcome.failed(f"Execution cancelled ({result.cancelled_reason})", FailureHint.CANCELLED)
        response = last_json_line(result.stdout)
        if response is None:
            message, hint = exit_hint(result.returncode)
            return EngineOutcome.failed(f"Regex matching stopped: {message}", hint, details=result.stderr[-2000:])
        if not response.get("ok"):
            return EngineOutcome.failed(
                str(response.get("error") or "Invalid regular expression"),
                FailureHint.parse(response.get("hint"), FailureHint.SYNTAX),
            )

        matches = list(response.get("matches") or [])
        info = analyze_pattern(pattern)
        metadata = {
            "pattern": pattern,
            "flags": flags,
            "match_count": len(matches),
            "test_string_length": len(text),
            "matches_truncated": bool(response.get("truncated")),
            **info,
        }
        return EngineOutcome.ok(
            _format_output(pattern, text, flags, matches, info),
            highlight(text, matches),
            metadata=metadata,
        )

    def release_session(self, session_id: str) -> None:
        """Nothing to release; every match runs in a fresh process.

        Example:
            ```python
            engine.release_session("tab-1")
            ```
        """
