import os
import time

import pytest

from safe_code_runner.execution.config import RuntimePoolSettings, default_pool_settings
from safe_code_runner.execution.runtime_pool import RuntimeLease, RuntimePool, should_rotate


def test_pool_default_size_is_cpu_with_cap() -> None:
    settings = default_pool_settings()
    assert settings.pool_size == min(os.cpu_count() or 1, 2)


def test_rotation_by_runs_threshold() -> None:
    now = time.time()
    lease = RuntimeLease(pid=1, created_at=now, last_used_at=now, run_count=25)
    settings = RuntimePoolSettings(pool_size=1, max_runs=25, ttl_seconds=600, startup_timeout_seconds=7)
    assert should_rotate(lease, settings, now=time.time()) is True


def test_rotation_by_ttl_threshold() -> None:
    now = time.time()
    lease = RuntimeLease(pid=1, created_at=now - 601, last_used_at=now, run_count=1)
    settings = RuntimePoolSettings(pool_size=1, max_runs=25, ttl_seconds=600, startup_timeout_seconds=7)
    assert should_rotate(lease, settings, now=now) is True


def test_fresh_lease_is_kept() -> None:
    now = time.time()
    lease = RuntimeLease(pid=1, created_at=now, last_used_at=now, run_count=3)
    settings = RuntimePoolSettings(pool_size=1, max_runs=25, ttl_seconds=600, startup_timeout_seconds=7)
    assert should_rotate(lease, settings, now=now) is False


def test_pool_settings_reject_non_positive_values() -> None:
    with pytest.raises(ValueError, match="runtime_pool.max_runs"):
        RuntimePoolSettings(pool_size=1, max_runs=0, ttl_seconds=600, startup_timeout_seconds=7)


def test_reset_on_empty_pool_is_safe() -> None:
    pool = RuntimePool()
    pool.reset()
    assert len(pool) == 0
