from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:
    from .models import ExecutionConfig

LIMIT_FIELDS = ("max_memory_bytes", "max_cpu_time_ms", "max_wall_time_ms", "max_output_bytes")


@dataclass(frozen=True, slots=True)
class ResourceLimits:
    """Memory, CPU, wall-clock and output bounds for one execution.

    Example:
        ```python
        limits = ResourceLimits(max_memory_bytes=256 * 1024 * 1024, max_cpu_time_ms=10_000, max_wall_time_ms=10_000)
        ```
    """

    max_memory_bytes: int
    max_cpu_time_ms: int
    max_wall_time_ms: int
    max_output_bytes: int = 65536

    def __post_init__(self) -> None:
        """Reject non-positive limits.

        Example:
            ```python
            ResourceLimits(1, 1, 1, 1)
            ```
        """
        for name in LIMIT_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise TypeError(f"'{name}' must be an integer")
            if value <= 0:
                raise ValueError(f"'{name}' must be positive")

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], fallback: "ResourceLimits", where: str) -> "ResourceLimits":
        """Build limits from a TOML table, filling gaps from `fallback`.

        Example:
            ```python
            limits = ResourceLimits.from_mapping({"max_wall_time_ms": 2000}, DEFAULT_LIMITS, "limits.profiles.python")
            ```
        """
        unknown = set(raw) - set(LIMIT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown keys in '{where}': {', '.join(sorted(unknown))}")
        values: dict[str, int] = {}
        for name in LIMIT_FIELDS:
            value = raw.get(name, getattr(fallback, name))
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"'{where}.{name}' must be an integer")
            values[name] = value
        return cls(**values)

    def clamp(self, ceiling: "ResourceLimits") -> "ResourceLimits":
        """Return a copy where every limit is at most the ceiling's.

        Example:
            ```python
            safe = requested.clamp(ceiling)
            ```
        """
        return ResourceLimits(
            max_memory_bytes=min(self.max_memory_bytes, ceiling.max_memory_bytes),
            max_cpu_time_ms=min(self.max_cpu_time_ms, ceiling.max_cpu_time_ms),
            max_wall_time_ms=min(self.max_wall_time_ms, ceiling.max_wall_time_ms),
            max_output_bytes=min(self.max_output_bytes, ceiling.max_output_bytes),
        )

    def to_dict(self) -> dict[str, int]:
        """Return limits as a plain dictionary.

        Example:
            ```python
            payload = limits.to_dict()
            ```
        """
        return {name: getattr(self, name) for name in LIMIT_FIELDS}


DEFAULT_LIMITS = ResourceLimits(
    max_memory_bytes=64 * 1024 * 1024,
    max_cpu_time_ms=10_000,
    max_wall_time_ms=10_000,
    max_output_bytes=65536,
)
HARD_CEILING = ResourceLimits(
    max_memory_bytes=2 * 1024 * 1024 * 1024,
    max_cpu_time_ms=120_000,
    max_wall_time_ms=120_000,
    max_output_bytes=1024 * 1024,
)


@dataclass(frozen=True, slots=True)
class LimitTable:
    """Per-language limit profiles plus the ceiling request overrides are clamped to.

    Example:
        ```python
        table = LimitTable(profiles={"python": limits}, default=DEFAULT_LIMITS, ceiling=HARD_CEILING)
        ```
    """

    profiles: Mapping[str, ResourceLimits] = field(default_factory=dict)
    default: ResourceLimits = DEFAULT_LIMITS
    ceiling: ResourceLimits = HARD_CEILING

    def profile_for(self, language: str) -> ResourceLimits:
        """Return the configured profile for a language, clamped to the ceiling.

        Example:
            ```python
            limits = table.profile_for("python")
            ```
        """
        return self.profiles.get(language, self.default).clamp(self.ceiling)

    def resolve(self, language: str, config: "ExecutionConfig | None" = None) -> ResourceLimits:
        """Apply request-level overrides to a language profile and clamp the result.

        `timeout_ms` overrides the wall-clock limit; when the request does not also
        set `max_cpu_time_ms`, the CPU limit follows the wall-clock limit down.

        Example:
            ```python
            limits = table.resolve("python", ExecutionConfig(timeout_ms=2000))
            ```
        """
        limits = self.profile_for(language)
        if config is None:
            return limits
        overrides: dict[str, int] = {}
        if config.timeout_ms is not None:
            overrides["max_wall_time_ms"] = config.timeout_ms
            if config.max_cpu_time_ms is None:
                overrides["max_cpu_time_ms"] = min(limits.max_cpu_time_ms, config.timeout_ms)
        if config.max_cpu_time_ms is not None:
            overrides["max_cpu_time_ms"] = config.max_cpu_time_ms
        if config.max_memory_bytes is not None:
            overrides["max_memory_bytes"] = config.max_memory_bytes
        if config.max_output_bytes is not None:
            overrides["max_output_bytes"] = config.max_output_bytes
        if not overrides:
            return limits
        return replace(limits, **overrides).clamp(self.ceiling)

    def languages(self) -> list[str]:
        """Return languages with an explicit profile, sorted.

        Example:
            ```python
            names = table.languages()
            ```
        """
        return sorted(self.profiles)
