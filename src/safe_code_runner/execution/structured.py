from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

import markdown
import yaml

from ..errors import FailureHint
from ..models import Language, RenderNode
from .capabilities import THREAD, EngineCapabilities
from .engine import CancellationToken
from .markup_engine import wrap_document
from .types import EngineOutcome, EngineRunConfig

logger = logging.getLogger(__name__)

MAX_YAML_ALIASES = 100
MARKDOWN_EXTENSIONS = ("fenced_code", "tables")

_HEADING = re.compile(r"^#{1,6}\s", re.M)
_LINK = re.compile(r"(?<!!)\[([^\]\n]+)\]\(([^)\n]+)\)")
_IMAGE = re.compile(r"!\[([^\]\n]*)\]\(([^)\n]+)\)")
_CODE_BLOCK = re.compile(r"```.*?```", re.S)
_YAML_COMMENT = re.compile(r"(^|\s)#", re.M)
_YAML_SEQUENCE = re.compile(r"^\s*-\s|:\s*\[", re.M)


def value_type(value: Any) -> str:
    """Name a parsed value's type the way JSON tooling does.

    Example:
        ```python
        kind = value_type({"a": 1})
        ```
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def max_depth(value: Any) -> int:
    """Return the container nesting depth of a parsed value.

    Example:
        ```python
        depth = max_depth({"a": [1, 2]})
        ```
    """
    deepest = 0
    stack: list[tuple[Any, int]] = [(value, 0)]
    while stack:
        current, depth = stack.pop()
        deepest = max(deepest, depth)
        if isinstance(current, dict):
            stack.extend((child, depth + 1) for child in current.values())
        elif isinstance(current, list):
            stack.extend((child, depth + 1) for child in current)
    return deepest


def _summary(title: str, items: list[tuple[str, Any]]) -> tuple[str, RenderNode]:
    """Render analysis items as console text and a summary node.

    Example:
        ```python
        text, node = _summary("JSON Analysis", [("Type", "object")])
        ```
    """
    lines = [f"{title}:"] + [f"- {label}: {value}" for label, value in items]
    node = RenderNode("summary", props={"title": title, "items": [[label, value] for label, value in items]})
    return "\n".join(lines), node


def _yes_no(flag: bool) -> str:
    """Format a flag the way the analysis summaries do.

    Example:
        ```python
        text = _yes_no(True)
        ```
    """
    return "Yes" if flag else "No"


class StructuredEngine:
    """Base for pure parse/validate/pretty-print engines run in a worker thread.

    Example:
        ```python
        outcome = await JsonEngine().run('{"a": 1}', config, CancellationToken())
        ```
    """

    language: Language
    capabilities = EngineCapabilities(isolation=THREAD, forced_termination=False, reports_memory=False, visual_output=True)

    async def run(self, code: str, config: EngineRunConfig, token: CancellationToken) -> EngineOutcome:
        """Process the document off the event loop.

        Example:
            ```python
            outcome = await engine.run("a: 1", config, token)
            ```
        """
        return await asyncio.to_thread(self._guarded, code)

    def _guarded(self, code: str) -> EngineOutcome:
        """Run `process`, turning unexpected errors into runtime failures.

        Example:
            ```python
            outcome = engine._guarded("[1, 2]")
            ```
        """
        try:
            return self.process(code)
        except RecursionError:
            return EngineOutcome.failed("Document nesting is too deep to process", FailureHint.RUNTIME)
        except MemoryError:
            return EngineOutcome.failed("Document is too large to process", FailureHint.MEMORY)

    def process(self, code: str) -> EngineOutcome:
        """Parse and analyze one document.

        Example:
            ```python
            outcome = engine.process('{"a": 1}')
            ```
        """
        raise NotImplementedError

    def release_session(self, session_id: str) -> None:
        """Nothing to release; structured engines are stateless.

        Example:
            ```python
            engine.release_session("tab-1")
            ```
        """


class JsonEngine(StructuredEngine):
    """Validate and pretty-print JSON with a short structural analysis.

    Example:
        ```python
        outcome = JsonEngine().process('{"name": "Ada"}')
        ```
    """

    language = Language.JSON

    def process(self, code: str) -> EngineOutcome:
        """Parse JSON; syntax errors report line and column.

        Example:
            ```python
            outcome = JsonEngine().process("[1, 2, 3]")
            ```
        """
        try:
            data = json.loads(code)
        except json.JSONDecodeError as exc:
            return EngineOutcome.failed(
                f"JSON Syntax Error at line {exc.lineno}, column {exc.colno}: {exc.msg}",
                FailureHint.SYNTAX,
                metadata={"line": exc.lineno, "column": exc.colno},
            )

        formatted = json.dumps(data, indent=2, ensure_ascii=False)
        kind = value_type(data)
        depth = max_depth(data)
        items: list[tuple[str, Any]] = [("Type", kind), ("Max depth", depth)]
        if isinstance(data, list):
            items.append(("Array length", len(data)))
        elif isinstance(data, dict) and data:
            items.append(("Object keys", len(data)))
        analysis, summary = _summary("JSON Analysis", items)
        visual = RenderNode("stack", children=[RenderNode("code", props={"language": "json"}, text=formatted), summary])
        return EngineOutcome.ok(
            f"JSON is valid!\n\nFormatted JSON:\n{formatted}\n\n{analysis}",
            visual,
            metadata={"type": kind, "depth": depth},
        )


class YamlEngine(StructuredEngine):
    """Validate YAML with PyYAML's safe loader and show its JSON equivalent.

    Example:
        ```python
        outcome = YamlEngine().process("name: Ada\\nskills: [math]")
        ```
    """

    language = Language.YAML

    def process(self, code: str) -> EngineOutcome:
        """Parse every document; errors report the problem mark.

        Example:
            ```python
            outcome = YamlEngine().process("a: 1\\n---\\nb: 2")
            ```
        """
        try:
            aliases = sum(1 for token in yaml.scan(code) if isinstance(token, yaml.AliasToken))
            if aliases > MAX_YAML_ALIASES:
                return EngineOutcome.failed(
                    f"YAML document uses {aliases} aliases; at most {MAX_YAML_ALIASES} are allowed by policy",
                    FailureHint.SECURITY,
                )
            documents = list(yaml.safe_load_all(code))
        except yaml.YAMLError as exc:
            return self._syntax_failure(exc)

        data: Any = documents[0] if len(documents) == 1 else documents
        equivalent = json.dumps(data, indent=2, ensure_ascii=False, default=str)
        first = documents[0] if documents else None
        keys = len(first) if isinstance(first, dict) else 0
        items: list[tuple[str, Any]] = [
            ("Documents", len(documents)),
            ("Lines", len(code.split("\n"))),
            ("Type", value_type(first)),
            ("Keys", keys),
            ("Has comments", _yes_no(bool(_YAML_COMMENT.search(code)))),
            ("Has arrays", _yes_no(bool(_YAML_SEQUENCE.search(code)))),
        ]
        analysis, summary = _summary("YAML Analysis", items)
        visual = RenderNode("stack", children=[RenderNode("code", props={"language": "json"}, text=equivalent), summary])
        return EngineOutcome.ok(
            f"YAML is valid!\n\nJSON equivalent:\n{equivalent}\n\n{analysis}",
            visual,
            metadata={"documents": len(documents), "type": value_type(first)},
        )

    @staticmethod
    def _syntax_failure(exc: yaml.YAMLError) -> EngineOutcome:
        """Describe a YAML error with its line and column when known.

        Example:
            ```python
            outcome = YamlEngine._syntax_failure(exc)
            ```
        """
        mark = getattr(exc, "problem_mark", None)
        problem = getattr(exc, "problem", None) or str(exc)
        if mark is not None:
            return EngineOutcome.failed(
                f"YAML Syntax Error at line {mark.line + 1}, column {mark.column + 1}: {problem}",
                FailureHint.SYNTAX,
                details=str(exc),
                metadata={"line": mark.line + 1, "column": mark.column + 1},
            )
        return EngineOutcome.failed(f"YAML Syntax Error: {problem}", FailureHint.SYNTAX, details=str(exc))


class MarkdownEngine(StructuredEngine):
    """Render Markdown to a script-free HTML preview with document statistics.

    Example:
        ```python
        outcome = MarkdownEngine().process("# Title\\n\\nSome *text*.")
        ```
    """

    language = Language.MARKDOWN

    def process(self, code: str) -> EngineOutcome:
        """Render with fenced code and tables, then count structure.

        Example:
            ```python
            outcome = MarkdownEngine().process("- item\\n- item")
            ```
        """
        rendered = markdown.markdown(code, extensions=list(MARKDOWN_EXTENSIONS), output_format="html")
        items: list[tuple[str, Any]] = [
            ("Lines", len(code.split("\n"))),
            ("Words", len(code.split())),
            ("Characters", len(code)),
            ("Headings", len(_HEADING.findall(code))),
            ("Links", len(_LINK.findall(code))),
            ("Images", len(_IMAGE.findall(code))),
            ("Code blocks", len(_CODE_BLOCK.findall(code))),
        ]
        analysis, summary = _summary("Markdown Analysis", items)
        preview = RenderNode(
            "html-preview",
            props={"srcdoc": wrap_document(rendered, title="Markdown Preview"), "sandbox": "", "title": "Markdown Preview"},
        )
        return EngineOutcome.ok(
            f"Markdown processed successfully!\n\n{analysis}",
            RenderNode("stack", children=[preview, summary]),
            metadata={"html": rendered},
        )
