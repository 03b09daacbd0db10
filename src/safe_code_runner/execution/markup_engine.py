from __future__ import annotations

import html
import json
import logging
import re
from html.parser import HTMLParser
from typing import Any

from ..errors import FailureHint
from ..models import Language, RenderNode
from .capabilities import PROCESS, EngineCapabilities
from .engine import CancellationToken
from .node_runtime import node_command, node_request
from .process import make_workdir, node_executable, remove_workdir, run_process, sandbox_env
from .script_engine import outcome_from_worker
from .types import EngineOutcome, EngineRunConfig

logger = logging.getLogger(__name__)

PREVIEW_SANDBOX = "allow-scripts"
PREVIEW_CSP = (
    "default-src 'none'; script-src 'unsafe-inline'; style-src 'unsafe-inline'; "
    "img-src data:; font-src data:; media-src data:; connect-src 'none'; "
    "frame-src 'none'; form-action 'none'; base-uri 'none'"
)

# Bounded quantifiers keep the scan linear on hostile input.
_HTML_BLOCKLIST: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"<script\b[^>]{0,2000}\bsrc\s*=", re.I), "external script sources are not allowed"),
    (re.compile(r"javascript\s*:", re.I), "javascript: URLs are not allowed"),
    (re.compile(r"<iframe\b[^>]{0,2000}\bsrc\s*=", re.I), "embedded frames are not allowed"),
    (re.compile(r"<object\b", re.I), "<object> elements are not allowed"),
    (re.compile(r"<embed\b", re.I), "<embed> elements are not allowed"),
    (re.compile(r"<base\b", re.I), "<base> elements are not allowed"),
    (re.compile(r"<meta\b[^>]{0,2000}http-equiv\s*=\s*[\"']?\s*refresh", re.I), "meta refresh is not allowed"),
    (re.compile(r"data:\s*text/html", re.I), "data:text/html URLs are not allowed"),
    (re.compile(r"<link\b[^>]{0,2000}\bhref\s*=\s*[\"']?\s*(?:https?:)?//", re.I), "external stylesheets are not allowed"),
    (re.compile(r"<form\b[^>]{0,2000}\baction\s*=\s*[\"']?\s*(?:https?:)?//", re.I), "external form targets are not allowed"),
)
_CSS_BLOCKLIST: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"@import\b", re.I), "@import is not allowed"),
    (re.compile(r"url\(\s*[\"']?\s*(?:https?:|//|javascript:)", re.I), "external url() references are not allowed"),
    (re.compile(r"expression\s*\(", re.I), "CSS expressions are not allowed"),
    (re.compile(r"behavior\s*:", re.I), "CSS behaviors are not allowed"),
    (re.compile(r"-moz-binding", re.I), "XBL bindings are not allowed"),
    (re.compile(r"</\s*style", re.I), "closing the style element is not allowed"),
)

_CSS_DEMO_BODY = """<div class="preview-container">
  <header class="preview-header"><h1>CSS Preview</h1><p class="subtitle">Your styles applied to sample content</p></header>
  <main class="preview-main">
    <section class="typography-demo">
      <h2>Typography</h2>
      <h3>Heading 3</h3>
      <p>This is a paragraph with <strong>bold text</strong>, <em>italic text</em>, and <a href="#">a link</a>.</p>
      <blockquote>This is a blockquote.</blockquote>
      <code>inline code</code>
    </section>
    <section class="button-demo">
      <h2>Buttons</h2>
      <button class="btn btn-primary">Primary</button>
      <button class="btn btn-secondary">Secondary</button>
      <button class="btn" disabled>Disabled</button>
    </section>
    <section class="form-demo">
      <h2>Form Elements</h2>
      <form>
        <label for="demo-input">Text Input:</label>
        <input type="text" id="demo-input" placeholder="Enter text here">
        <label for="demo-select">Select:</label>
        <select id="demo-select"><option>Option 1</option><option>Option 2</option></select>
        <label for="demo-textarea">Textarea:</label>
        <textarea id="demo-textarea" rows="3" placeholder="Enter longer text here"></textarea>
      </form>
    </section>
    <section class="list-demo">
      <h2>Lists</h2>
      <ul class="demo-list"><li>Unordered list item 1</li><li>Unordered list item 2</li></ul>
      <ol class="demo-list"><li>Ordered list item 1</li><li>Ordered list item 2</li></ol>
    </section>
    <section class="table-demo">
      <h2>Table</h2>
      <table class="demo-table">
        <thead><tr><th>Header 1</th><th>Header 2</th><th>Header 3</th></tr></thead>
        <tbody><tr><td>Cell 1</td><td>Cell 2</td><td>Cell 3</td></tr><tr><td>Cell 4</td><td>Cell 5</td><td>Cell 6</td></tr></tbody>
      </table>
    </section>
  </main>
  <footer class="preview-footer"><p>End of CSS preview content</p></footer>
</div>"""


class _MarkupScanner(HTMLParser):
    """Collect element statistics, ids and inline scripts from markup.

    Example:
        ```python
        scanner = _MarkupScanner()
        scanner.feed("<p id='x'>hi</p>")
        ```
    """

    def __init__(self) -> None:
        """Start with empty counters.

        Example:
            ```python
            scanner = _MarkupScanner()
            ```
        """
        super().__init__(convert_charrefs=True)
        self.elements = 0
        self.tags: dict[str, int] = {}
        self.ids: list[str] = []
        self.scripts: list[str] = []
        self._in_script = False
        self._script_parts: list[str] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        """Count an element and remember ids and script openings.

        Example:
            ```python
            scanner.handle_starttag("div", [("id", "app")])
            ```
        """
        self.elements += 1
        self.tags[tag] = self.tags.get(tag, 0) + 1
        attributes = dict(attrs)
        if attributes.get("id"):
            self.ids.append(str(attributes["id"]))
        if tag == "script" and str(attributes.get("type") or "text/javascript").lower() in {
            "text/javascript",
            "application/javascript",
            "module",
        }:
            self._in_script = True
            self._script_parts = []

    def handle_endtag(self, tag: str) -> None:
        """Close an inline script and store its source.

        Example:
            ```python
            scanner.handle_endtag("script")
            ```
        """
        if tag == "script" and self._in_script:
            self._in_script = False
            source = "".join(self._script_parts).strip()
            if source:
                self.scripts.append(source)

    def handle_data(self, data: str) -> None:
        """Accumulate text inside an inline script.

        Example:
            ```python
            scanner.handle_data("console.log('hi')")
            ```
        """
        if self._in_script:
            self._script_parts.append(data)


def find_violation(code: str, language: Language) -> str | None:
    """Return the first dangerous construct found in markup or CSS, else None.

    Example:
        ```python
        problem = find_violation('<script src="https://x"></script>', Language.HTML)
        ```
    """
    rules = _CSS_BLOCKLIST if language is Language.CSS else _HTML_BLOCKLIST
    for pattern, message in rules:
        if pattern.search(code):
            return message
    return None


def _csp_meta() -> str:
    """Return the Content-Security-Policy meta tag for previews.

    Example:
        ```python
        tag = _csp_meta()
        ```
    """
    return f'<meta http-equiv="Content-Security-Policy" content="{html.escape(PREVIEW_CSP, quote=True)}">'


def wrap_document(markup: str, *, title: str = "Preview", style: str = "") -> str:
    """Wrap a fragment in a full document, or inject the CSP into a full one.

    Example:
        ```python
        document = wrap_document("<h1>Hello</h1>")
        ```
    """
    head_extra = _csp_meta()
    if style:
        head_extra += f"\n<style>\n{style}\n</style>"
    if re.search(r"<html[\s>]", markup, re.I):
        head = re.search(r"<head\b[^>]{0,2000}>", markup, re.I)
        if head is not None:
            return markup[: head.end()] + head_extra + markup[head.end() :]
        opening = re.search(r"<html\b[^>]{0,2000}>", markup, re.I)
        assert opening is not None
        return markup[: opening.end()] + f"<head>{head_extra}</head>" + markup[opening.end() :]
    return (
        "<!DOCTYPE html>\n<html>\n<head>\n<meta charset=\"utf-8\">\n"
        f"{head_extra}\n<title>{html.escape(title)}</title>\n</head>\n<body>\n{markup}\n</body>\n</html>"
    )


def css_features(css: str) -> dict[str, Any]:
    """Report which notable CSS features a stylesheet uses.

    Example:
        ```python
        features = css_features("a { transition: color 1s; }")
        ```
    """
    return {
        "rules": css.count("{"),
        "has_animations": "@keyframes" in css or "animation" in css or "transition" in css,
        "has_flexbox": "flex" in css or "grid" in css,
        "has_media_queries": "@media" in css,
        "has_custom_properties": "--" in css or "var(" in css,
    }


class MarkupEngine:
    """Render HTML or CSS into a sandboxed preview and replay inline scripts.

    Inline scripts run in the Node.js `vm` context against a DOM stub so
    their console output reaches the console tab.

    Example:
        ```python
        engine = MarkupEngine(Language.HTML)
        outcome = await engine.run("<h1>Hello</h1>", config, CancellationToken())
        ```
    """

    def __init__(self, language: Language, *, node: str | None = None) -> None:
        """Configure the engine for HTML or CSS.

        Example:
            ```python
            engine = MarkupEngine(Language.CSS)
            ```
        """
        if language not in {Language.HTML, Language.CSS}:
            raise ValueError(f"MarkupEngine does not support '{language.value}'")
        self.language = language
        self._node = node or node_executable()
        self.capabilities = EngineCapabilities(
            isolation=PROCESS,
            forced_termination=True,
            reports_memory=False,
            visual_output=True,
        )

    async def run(self, code: str, config: EngineRunConfig, token: CancellationToken) -> EngineOutcome:
        """Validate, render, and capture script output for one document.

        Example:
            ```python
            outcome = await engine.run("<p id='x'></p><script>console.log(1)</script>", config, token)
            ```
        """
        problem = find_violation(code, self.language)
        if problem is not None:
            return EngineOutcome.failed(f"Security violation: {problem}", FailureHint.SECURITY)

        if self.language is Language.CSS:
            document = wrap_document(_CSS_DEMO_BODY, title="CSS Preview", style=code)
            return EngineOutcome.ok(
                "CSS applied successfully to preview elements",
                self._preview(document, "CSS Preview"),
                metadata=css_features(code),
            )

        scanner = _MarkupScanner()
        scanner.feed(code)
        scanner.close()
        document = wrap_document(code)
        metadata: dict[str, Any] = {
            "elements": scanner.elements,
            "tags": scanner.tags,
            "inline_scripts": len(scanner.scripts),
        }
        visual = self._preview(document, "HTML Preview")
        if not scanner.scripts:
            return EngineOutcome.ok("HTML rendered successfully", visual, metadata=metadata)
        if self._node is None:
            metadata["scripts_executed"] = False
            return EngineOutcome.ok(
                "HTML rendered successfully\n(inline scripts were not executed: Node.js is not available)",
                visual,
                metadata=metadata,
            )
        return await self._run_scripts(scanner, config, token, visual, metadata)

    async def _run_scripts(
        self,
        scanner: _MarkupScanner,
        config: EngineRunConfig,
        token: CancellationToken,
        visual: RenderNode,
        metadata: dict[str, Any],
    ) -> EngineOutcome:
        """Replay inline scripts in Node and merge their console output.

        Example:
            ```python
            outcome = await engine._run_scripts(scanner, config, token, visual, {})
            ```
        """
        assert self._node is not None
        source = "\n;\n".join(scanner.scripts)
        request = node_request(source, config.limits, dom=True, element_ids=scanner.ids)
        workdir = make_workdir()
        try:
            result = await run_process(
                node_command(self._node, config.limits),
                stdin_data=json.dumps(request),
                config=config,
                token=token,
                env=sandbox_env(workdir),
                cwd=workdir,
            )
        except OSError as exc:
            logger.error("Could not start Node.js for inline scripts: %s", exc)
            return EngineOutcome.failed(f"Could not start Node.js: {exc}", FailureHint.HOST)
        finally:
            remove_workdir(workdir)

        scripted = outcome_from_worker(result)
        metadata["scripts_executed"] = True
        metadata.update(scripted.metadata)
        if scripted.failure is not None and scripted.failure.hint in {
            FailureHint.TIMEOUT,
            FailureHint.MEMORY,
            FailureHint.CANCELLED,
            FailureHint.HOST,
        }:
            return EngineOutcome.failed(
                scripted.failure.message,
                scripted.failure.hint,
                details=scripted.failure.details,
                output=scripted.output,
                metadata=metadata,
            )
        lines = [scripted.output.rstrip("\n")] if scripted.output.strip() else []
        if scripted.failure is not None:
            metadata["script_error"] = scripted.failure.message
            lines.append(f"Runtime Error: {scripted.failure.message}")
        output = "\n".join(lines) if lines else "HTML rendered successfully"
        return EngineOutcome.ok(output, visual, memory_bytes=scripted.memory_bytes, metadata=metadata)

    def _preview(self, document: str, title: str) -> RenderNode:
        """Build the sandboxed preview node.

        Example:
            ```python
            node = engine._preview("<html></html>", "HTML Preview")
            ```
        """
        return RenderNode(
            "html-preview",
            props={"srcdoc": document, "sandbox": PREVIEW_SANDBOX, "csp": PREVIEW_CSP, "title": title},
        )

    def release_session(self, session_id: str) -> None:
        """Nothing to release; previews are stateless.

        Example:
            ```python
            engine.release_session("tab-1")
            ```
        """
