from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .execution.config import RuntimePoolSettings, default_pool_settings
from .limits import DEFAULT_LIMITS, HARD_CEILING, LimitTable, ResourceLimits


def _default_settings_path() -> Path:
    """Return bundled default settings TOML path.

    Example:
        ```python
        path = _default_settings_path()
        ```
    """
    return Path(__file__).with_name("default_settings.toml")


def _read_settings_toml(path: Path) -> dict[str, Any]:
    """Read a settings TOML file and return its top-level table.

    Example:
        ```python
        raw = _read_settings_toml(Path("/tmp/settings.toml"))
        ```
    """
    if not path.exists():
        raise ValueError(f"Settings file not found: {path}")
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"Invalid settings TOML in {path}: {exc}") from exc


def _table(raw: dict[str, Any], key: str, where: str) -> dict[str, Any]:
    """Return a nested TOML table, or an empty dict when absent.

    Example:
        ```python
        limits = _table(raw, "limits", "settings")
        ```
    """
    value = raw.get(key, {})
    if not isinstance(value, dict):
        raise ValueError(f"'{where}.{key}' must be a TOML table" if where else f"'{key}' must be a TOML table")
    return value


def _list_of_str(value: Any, field_name: str) -> list[str]:
    """Validate and normalize a list-of-strings settings field.

    Example:
        ```python
        blocked = _list_of_str(["os", "subprocess"], "blocked_imports")
        ```
    """
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"'{field_name}' must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"'{field_name}' must contain only strings")
        out.append(item)
    return out


def _positive_int(value: Any, field_name: str) -> int:
    """Validate a positive integer settings field.

    Example:
        ```python
        interval = _positive_int(100, "limits.monitor_interval_ms")
        ```
    """
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"'{field_name}' must be a positive integer")
    return value


_DEFAULT_SETTINGS_RAW = _read_settings_toml(_default_settings_path())
_DEFAULT_SANDBOX_RAW = _table(_DEFAULT_SETTINGS_RAW, "sandbox", "")
DEFAULT_MODE = str(_DEFAULT_SANDBOX_RAW.get("mode", "restrict"))
DEFAULT_BLOCKED_IMPORTS = _list_of_str(_DEFAULT_SANDBOX_RAW.get("blocked_imports", []), "sandbox.blocked_imports")
DEFAULT_BLOCKED_BUILTINS = _list_of_str(_DEFAULT_SANDBOX_RAW.get("blocked_builtins", []), "sandbox.blocked_builtins")
DEFAULT_ALLOWED_IMPORTS = _list_of_str(_DEFAULT_SANDBOX_RAW.get("allowed_imports", []), "sandbox.allowed_imports")
DEFAULT_ALLOWED_BUILTINS = _list_of_str(_DEFAULT_SANDBOX_RAW.get("allowed_builtins", []), "sandbox.allowed_builtins")
DEFAULT_IDLE_TIMEOUT_MS = 30 * 60 * 1000
DEFAULT_MAX_SESSIONS = 256


@dataclass(slots=True)
class SandboxPolicy:
    """Import and builtin policy applied to untrusted Python code.

    In `restrict` mode everything not blocked is available; in `allow` mode only
    the listed imports and builtins are.

    Example:
        ```python
        policy = SandboxPolicy(blocked_imports=["os", "socket"])
        ```
    """

    mode: str = DEFAULT_MODE
    allowed_imports: list[str] = field(default_factory=lambda: DEFAULT_ALLOWED_IMPORTS.copy())
    blocked_imports: list[str] = field(default_factory=lambda: DEFAULT_BLOCKED_IMPORTS.copy())
    allowed_builtins: list[str] = field(default_factory=lambda: DEFAULT_ALLOWED_BUILTINS.copy())
    blocked_builtins: list[str] = field(default_factory=lambda: DEFAULT_BLOCKED_BUILTINS.copy())

    def __post_init__(self) -> None:
        """Validate mode after dataclass initialization.

        Example:
            ```python
            SandboxPolicy(mode="restrict")
            ```
        """
        if self.mode not in {"allow", "restrict"}:
            raise ValueError("mode must be 'allow' or 'restrict'")

    @classmethod
    def from_mapping(cls, raw: dict[str, Any]) -> "SandboxPolicy":
        """Create a policy from a `[sandbox]` table, falling back to bundled defaults.

        Example:
            ```python
            policy = SandboxPolicy.from_mapping({"mode": "restrict", "blocked_imports": ["os"]})
            ```
        """
        return cls(
            mode=str(raw.get("mode", DEFAULT_MODE)),
            allowed_imports=_list_of_str(raw.get("allowed_imports", DEFAULT_ALLOWED_IMPORTS), "sandbox.allowed_imports"),
            blocked_imports=_list_of_str(raw.get("blocked_imports", DEFAULT_BLOCKED_IMPORTS), "sandbox.blocked_imports"),
            allowed_builtins=_list_of_str(
                raw.get("allowed_builtins", DEFAULT_ALLOWED_BUILTINS), "sandbox.allowed_builtins"
            ),
            blocked_builtins=_list_of_str(
                raw.get("blocked_builtins", DEFAULT_BLOCKED_BUILTINS), "sandbox.blocked_builtins"
            ),
        )

    def to_payload(self) -> dict[str, Any]:
        """Serialize the policy for the worker process.

        Example:
            ```python
            payload = SandboxPolicy().to_payload()
            ```
        """
        return {
            "mode": self.mode,
            "allowed_imports": list(self.allowed_imports),
            "blocked_imports": list(self.blocked_imports),
            "allowed_builtins": list(self.allowed_builtins),
            "blocked_builtins": list(self.blocked_builtins),
        }


@dataclass(frozen=True, slots=True)
class SessionSettings:
    """Idle eviction and capacity settings for the session manager.

    Example:
        ```python
        settings = SessionSettings(idle_timeout_ms=60_000, max_sessions=16)
        ```
    """

    idle_timeout_ms: int = DEFAULT_IDLE_TIMEOUT_MS
    max_sessions: int = DEFAULT_MAX_SESSIONS


def _limit_table(raw: dict[str, Any]) -> LimitTable:
    """Build the language limit table from a `[limits]` table.

    Example:
        ```python
        table = _limit_table({"profiles": {"python": {"max_wall_time_ms": 2000}}})
        ```
    """
    ceiling = ResourceLimits.from_mapping(_table(raw, "ceiling", "limits"), HARD_CEILING, "limits.ceiling")
    default = ResourceLimits.from_mapping(_table(raw, "default", "limits"), DEFAULT_LIMITS, "limits.default")
    profiles: dict[str, ResourceLimits] = {}
    for language, profile_raw in _table(raw, "profiles", "limits").items():
        if not isinstance(profile_raw, dict):
            raise ValueError(f"'limits.profiles.{language}' must be a TOML table")
        profiles[language] = ResourceLimits.from_mapping(profile_raw, default, f"limits.profiles.{language}")
    return LimitTable(profiles=profiles, default=default, ceiling=ceiling)


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge two TOML tables, with `override` taking precedence.

    Example:
        ```python
        merged = _merge({"limits": {"a": 1}}, {"limits": {"b": 2}})
        ```
    """
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@dataclass(frozen=True, slots=True)
class RunnerSettings:
    """Startup configuration for the execution router and its engines.

    Loaded once when the router is built and never mutated afterwards.

    Example:
        ```python
        settings = RunnerSettings.from_file("/etc/safe-code-runner.toml")
        ```
    """

    limits: LimitTable = field(default_factory=LimitTable)
    sandbox: SandboxPolicy = field(default_factory=SandboxPolicy)
    sessions: SessionSettings = field(default_factory=SessionSettings)
    runtime_pool: RuntimePoolSettings = field(default_factory=default_pool_settings)
    monitor_interval_ms: int = 100
    termination_grace_ms: int = 200
    max_code_bytes: int = 100_000
    config_path: str | None = None

    @classmethod
    def default(cls) -> "RunnerSettings":
        """Return settings built from the bundled defaults file.

        Example:
            ```python
            settings = RunnerSettings.default()
            ```
        """
        return cls._from_raw(_DEFAULT_SETTINGS_RAW, None)

    @classmethod
    def from_file(cls, config_path: str) -> "RunnerSettings":
        """Create settings from a TOML file; missing keys use bundled defaults.

        Example:
            ```python
            settings = RunnerSettings.from_file("/tmp/settings.toml")
            ```
        """
        raw = _read_settings_toml(Path(config_path))
        return cls._from_raw(_merge(_DEFAULT_SETTINGS_RAW, raw), config_path)

    @classmethod
    def _from_raw(cls, raw: dict[str, Any], config_path: str | None) -> "RunnerSettings":
        """Validate a merged settings table and build the settings object.

        Example:
            ```python
            settings = RunnerSettings._from_raw(_DEFAULT_SETTINGS_RAW, None)
            ```
        """
        limits_raw = _table(raw, "limits", "")
        sessions_raw = _table(raw, "sessions", "")
        pool_raw = _table(raw, "runtime_pool", "")
        pool_defaults = default_pool_settings()
        return cls(
            limits=_limit_table(limits_raw),
            sandbox=SandboxPolicy.from_mapping(_table(raw, "sandbox", "")),
            sessions=SessionSettings(
                idle_timeout_ms=_positive_int(
                    sessions_raw.get("idle_timeout_ms", DEFAULT_IDLE_TIMEOUT_MS), "sessions.idle_timeout_ms"
                ),
                max_sessions=_positive_int(
                    sessions_raw.get("max_sessions", DEFAULT_MAX_SESSIONS), "sessions.max_sessions"
                ),
            ),
            runtime_pool=RuntimePoolSettings(
                pool_size=_positive_int(pool_raw.get("pool_size", pool_defaults.pool_size), "runtime_pool.pool_size"),
                max_runs=_positive_int(pool_raw.get("max_runs", pool_defaults.max_runs), "runtime_pool.max_runs"),
                ttl_seconds=_positive_int(
                    pool_raw.get("ttl_seconds", pool_defaults.ttl_seconds), "runtime_pool.ttl_seconds"
                ),
                startup_timeout_seconds=_positive_int(
                    pool_raw.get("startup_timeout_seconds", pool_defaults.startup_timeout_seconds),
                    "runtime_pool.startup_timeout_seconds",
                ),
            ),
            monitor_interval_ms=_positive_int(
                limits_raw.get("monitor_interval_ms", 100), "limits.monitor_interval_ms"
            ),
            termination_grace_ms=_positive_int(
                limits_raw.get("termination_grace_ms", 200), "limits.termination_grace_ms"
            ),
            max_code_bytes=_positive_int(limits_raw.get("max_code_bytes", 100_000), "limits.max_code_bytes"),
            config_path=config_path,
        )
