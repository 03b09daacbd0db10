from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class RuntimePoolSettings:
    """Sizing and rotation limits for the warm interpreter runtime pool.

    Example:
        ```python
        settings = RuntimePoolSettings(pool_size=2, max_runs=50, ttl_seconds=600, startup_timeout_seconds=60)
        ```
    """

    pool_size: int
    max_runs: int
    ttl_seconds: int
    startup_timeout_seconds: int

    def __post_init__(self) -> None:
        """Validate that every setting is positive.

        Example:
            ```python
            RuntimePoolSettings(1, 1, 1, 1)
            ```
        """
        for name in ("pool_size", "max_runs", "ttl_seconds", "startup_timeout_seconds"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"'runtime_pool.{name}' must be a positive integer")


def default_pool_settings() -> RuntimePoolSettings:
    """Return default pool settings sized to the host.

    Example:
        ```python
        defaults = default_pool_settings()
        ```
    """
    return RuntimePoolSettings(
        pool_size=min(os.cpu_count() or 1, 2),
        max_runs=50,
        ttl_seconds=600,
        startup_timeout_seconds=60,
    )
