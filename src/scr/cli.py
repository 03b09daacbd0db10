from __future__ import annotations

import argparse
import logging
import sys
from functools import partial
from typing import Any, Never, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich_argparse import RawTextRichHelpFormatter
from safe_code_runner import ExecutionConfig, ExecutionResult, RenderNode, RunnerSettings, run_code
from safe_code_runner.execution.capabilities import describe
from safe_code_runner.router import ExecutionRouter

_CONSOLE = Console(no_color=False)


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="python -m scr")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors in a red panel and exit with status 2.

        Example:
            ```python
            parser.error("missing --language")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_help()
        raise SystemExit(2)


def _positive_int(value: str) -> int:
    """Parse a strictly positive integer CLI argument.

    Example:
        ```python
        timeout = _positive_int("2000")
        ```
    """
    try:
        parsed = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"'{value}' is not an integer") from None
    if parsed <= 0:
        raise argparse.ArgumentTypeError(f"'{value}' must be positive")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI parser for running snippets and inspecting the runner.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m scr",
        description=(
            "safe-code-runner CLI\n"
            "Run code snippets through the sandboxed multi-language router.\n"
            "Every run is bounded by the configured memory, CPU and wall-clock limits."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m scr run script.py --language python\n"
            "  echo 'SELECT * FROM employees' | python -m scr run - --language sql\n"
            "  python -m scr run data.yaml --language yaml --json\n"
            "  python -m scr languages\n"
            "  python -m scr limits --config settings.toml"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log router and engine activity to stderr.",
    )
    parser.add_argument(
        "--config",
        help=(
            "Path to a settings TOML file.\n"
            "Missing keys fall back to the bundled defaults."
        ),
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    run_cmd = sub.add_parser(
        "run",
        help="Execute a file or stdin.",
        description=(
            "Execute source text through the router and print the result.\n"
            "Exit status is 0 on success and 1 on failure."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    run_cmd.add_argument("source", help="Source file path, or '-' to read stdin.")
    run_cmd.add_argument("-l", "--language", required=True, help="Language of the source (see `languages`).")
    run_cmd.add_argument("--session", default="cli", help="Session id (default: cli).")
    run_cmd.add_argument("--timeout-ms", type=_positive_int, help="Wall-clock limit override in milliseconds.")
    run_cmd.add_argument("--auto-retry", action="store_true", help="Retry retryable failures automatically.")
    run_cmd.add_argument("--json", action="store_true", help="Print the full result as JSON.")

    sub.add_parser(
        "languages",
        help="List registered languages.",
        description="Show each registered language with its engine, isolation and limit profile.",
        formatter_class=_HELP_FORMATTER,
    )
    sub.add_parser(
        "limits",
        help="Show the effective limit table.",
        description="Show per-language limit profiles and the ceiling request overrides are clamped to.",
        formatter_class=_HELP_FORMATTER,
    )
    return parser


def _configure_logging(verbose: bool) -> None:
    """Install a Rich log handler on the root logger when verbose.

    Example:
        ```python
        _configure_logging(True)
        ```
    """
    if not verbose:
        return
    logging.basicConfig(
        level=logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _load_settings(config_path: str | None) -> RunnerSettings:
    """Load settings from a file, or the bundled defaults.

    Example:
        ```python
        settings = _load_settings(None)
        ```
    """
    if config_path:
        return RunnerSettings.from_file(config_path)
    return RunnerSettings.default()


def _read_source(source: str) -> str:
    """Read code from a path, or stdin for '-'.

    Example:
        ```python
        code = _read_source("script.py")
        ```
    """
    if source == "-":
        return sys.stdin.read()
    with open(source, encoding="utf-8") as handle:
        return handle.read()


def _format_bytes(value: int) -> str:
    """Format a byte count with a binary unit.

    Example:
        ```python
        text = _format_bytes(64 * 1024 * 1024)
        ```
    """
    size = float(value)
    for unit in ("B", "KiB", "MiB"):
        if size < 1024:
            return f"{size:.0f} {unit}"
        size /= 1024
    return f"{size:.1f} GiB"


def _visual_lines(node: RenderNode) -> list[str]:
    """Summarize a render tree as one line per visual node.

    Example:
        ```python
        lines = _visual_lines(RenderNode("table", props={"rows": [[1]]}))
        ```
    """
    lines: list[str] = []
    for item in node.walk():
        props = item.props
        if item.kind == "table":
            title = props.get("title") or "table"
            lines.append(f"table {title}: {len(props.get('rows', []))} row(s), {len(props.get('columns', []))} column(s)")
        elif item.kind == "image":
            lines.append(f"image {props.get('mime', '')} {props.get('title', '')}".rstrip())
        elif item.kind == "html-preview":
            lines.append(f"html preview ({len(props.get('srcdoc', ''))} chars)")
        elif item.kind == "highlighted-text":
            matches = sum(1 for child in item.children if child.kind == "match")
            lines.append(f"highlighted text: {matches} match(es)")
        elif item.kind == "summary":
            for label, value in props.get("items", []):
                lines.append(f"{label}: {value}")
    return lines


def _print_result(result: ExecutionResult) -> None:
    """Render a result as output, visual and error panels.

    Example:
        ```python
        _print_result(run_code("print(1)", "python"))
        ```
    """
    header = (
        f"{result.language} | {result.status.value} | "
        f"{result.execution_time_ms:.1f} ms | execution {result.execution_id or '-'}"
    )
    if result.output:
        _CONSOLE.print(Panel(Text(result.output.rstrip("\n")), title="Output", subtitle=header, border_style="cyan"))
    else:
        _CONSOLE.print(Panel.fit("(no output)", title="Output", subtitle=header, border_style="cyan"))
    if result.visual_output is not None:
        lines = _visual_lines(result.visual_output)
        if lines:
            _CONSOLE.print(Panel(Text("\n".join(lines)), title="Visual", border_style="magenta"))
    if result.success:
        return

    error = result.processed_error
    message = error.user_message if error is not None and error.user_message else ""
    body = f"[bold red]{escape(result.error or '')}[/bold red]"
    if message:
        body += f"\n{escape(message)}"
    if error is not None:
        body += f"\nKind: {error.kind.value} | Retry available: {'yes' if result.retry_available else 'no'}"
    _CONSOLE.print(Panel(body, title="Error", border_style="red"))
    if error is not None and error.suggestions:
        table = Table(title="Suggestions")
        table.add_column("Priority", style="cyan", justify="right")
        table.add_column("Suggestion", style="magenta")
        table.add_column("Details")
        for tip in error.suggestions:
            details = tip.description if tip.example is None else f"{tip.description}\n{tip.example}"
            table.add_row(str(tip.priority), Text(tip.title), Text(details))
        _CONSOLE.print(table)


def _print_languages(router: ExecutionRouter) -> None:
    """Render registered languages in a rich table.

    Example:
        ```python
        _print_languages(ExecutionRouter())
        ```
    """
    table = Table(title="Registered Languages")
    table.add_column("Language", style="cyan")
    table.add_column("Engine", style="magenta")
    table.add_column("Capabilities")
    table.add_column("Wall", justify="right")
    table.add_column("Memory", justify="right")
    for name in router.languages():
        engine = router.engine_for(name)
        if engine is None:
            continue
        limits = router.settings.limits.profile_for(name)
        table.add_row(
            name,
            type(engine).__name__,
            describe(engine.capabilities),
            f"{limits.max_wall_time_ms} ms",
            _format_bytes(limits.max_memory_bytes),
        )
    _CONSOLE.print(table)


def _print_limits(settings: RunnerSettings) -> None:
    """Render the limit table, default profile and ceiling.

    Example:
        ```python
        _print_limits(RunnerSettings.default())
        ```
    """
    table = Table(title="Limit Profiles")
    table.add_column("Profile", style="cyan")
    table.add_column("Memory", justify="right")
    table.add_column("CPU", justify="right")
    table.add_column("Wall", justify="right")
    table.add_column("Output", justify="right")
    rows: list[tuple[str, Any]] = [(name, settings.limits.profile_for(name)) for name in sorted(settings.limits.profiles)]
    rows.append(("(default)", settings.limits.default))
    rows.append(("(ceiling)", settings.limits.ceiling))
    for name, limits in rows:
        table.add_row(
            name,
            _format_bytes(limits.max_memory_bytes),
            f"{limits.max_cpu_time_ms} ms",
            f"{limits.max_wall_time_ms} ms",
            _format_bytes(limits.max_output_bytes),
        )
    _CONSOLE.print(table)
    _CONSOLE.print(
        f"Monitor interval {settings.monitor_interval_ms} ms, termination grace {settings.termination_grace_ms} ms, "
        f"max code size {_format_bytes(settings.max_code_bytes)}"
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `scr` CLI command handler.

    Example:
        ```python
        code = main(["run", "script.py", "--language", "python"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    _configure_logging(args.verbose)

    try:
        settings = _load_settings(args.config)
    except (OSError, ValueError) as exc:
        _CONSOLE.print(Panel.fit(f"Could not load settings: {escape(str(exc))}", style="bold red"))
        return 2

    if args.command == "languages":
        _print_languages(ExecutionRouter(settings))
        return 0
    if args.command == "limits":
        _print_limits(settings)
        return 0
    if args.command == "run":
        try:
            code = _read_source(args.source)
        except OSError as exc:
            _CONSOLE.print(Panel.fit(f"Could not read {escape(args.source)}: {escape(str(exc))}", style="bold red"))
            return 2
        config = ExecutionConfig(timeout_ms=args.timeout_ms, auto_retry=args.auto_retry)
        result = run_code(code, args.language, session_id=args.session, config=config, settings=settings)
        if args.json:
            _CONSOLE.print_json(data=result.to_dict(), default=str)
        else:
            _print_result(result)
        return 0 if result.success else 1

    parser.error("Unhandled command")
    return 2
