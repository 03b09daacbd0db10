from __future__ import annotations

import logging

from ..models import Language
from ..policy import RunnerSettings
from .engine import LanguageEngine
from .interpreter_engine import InterpreterEngine
from .markup_engine import MarkupEngine
from .process import node_executable
from .regex_engine import RegexEngine
from .runtime_pool import RuntimePool
from .script_engine import ScriptEngine
from .sql_engine import SqlEngine
from .structured import JsonEngine, MarkdownEngine, YamlEngine

logger = logging.getLogger(__name__)


def build_default_engines(
    settings: RunnerSettings,
    *,
    node: str | None = None,
    pool: RuntimePool | None = None,
) -> dict[Language, LanguageEngine]:
    """Build the engine registry for every supported language.

    JavaScript is registered only when Node.js is installed; `bash` is never
    registered.

    Example:
        ```python
        engines = build_default_engines(RunnerSettings.default())
        ```
    """
    node_path = node or node_executable()
    engines: dict[Language, LanguageEngine] = {
        Language.PYTHON: ScriptEngine(Language.PYTHON, policy=settings.sandbox),
        Language.HTML: MarkupEngine(Language.HTML, node=node_path),
        Language.CSS: MarkupEngine(Language.CSS, node=node_path),
        Language.PYTHON_SCIENTIFIC: InterpreterEngine(
            policy=settings.sandbox,
            pool_settings=settings.runtime_pool,
            pool=pool,
        ),
        Language.SQL: SqlEngine(),
        Language.JSON: JsonEngine(),
        Language.YAML: YamlEngine(),
        Language.MARKDOWN: MarkdownEngine(),
        Language.REGEX: RegexEngine(),
    }
    if node_path is not None:
        engines[Language.JAVASCRIPT] = ScriptEngine(Language.JAVASCRIPT, node=node_path)
    else:
        logger.info("Node.js not found; javascript is not available")
    return engines
