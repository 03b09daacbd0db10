from safe_code_runner.sessions import SessionManager


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def test_get_or_create_reuses_sessions_and_follows_language() -> None:
    manager = SessionManager(clock=_FakeClock())
    first = manager.get_or_create("tab-1", "python")
    second = manager.get_or_create("tab-1", "sql")
    assert first is second
    assert second.language == "sql"
    assert len(manager) == 1
    assert "tab-1" in manager


def test_touch_updates_access_time_and_code() -> None:
    clock = _FakeClock()
    manager = SessionManager(clock=clock)
    session = manager.get_or_create("tab-1", "python")
    clock.now += 5
    manager.touch("tab-1", "print(1)")
    assert session.last_accessed_at == clock.now
    assert session.last_code == "print(1)"
    manager.touch("missing")


def test_idle_sessions_are_evicted_and_listeners_notified() -> None:
    clock = _FakeClock()
    manager = SessionManager(idle_timeout_ms=1_000, clock=clock)
    evicted: list[str] = []
    manager.add_eviction_listener(lambda session: evicted.append(session.id))
    manager.get_or_create("old", "python")
    clock.now += 2
    manager.get_or_create("new", "python")

    assert manager.evict_idle() == 1
    assert evicted == ["old"]
    assert manager.get("old") is None
    assert manager.get("new") is not None


def test_running_sessions_are_never_evicted() -> None:
    clock = _FakeClock()
    manager = SessionManager(idle_timeout_ms=1_000, clock=clock)
    manager.get_or_create("busy", "python")
    manager.set_active_execution("busy", "exec-1")
    clock.now += 60
    assert manager.evict_idle() == 0

    manager.clear_active_execution("busy", "exec-other")
    assert manager.get("busy").active_execution_id == "exec-1"
    manager.clear_active_execution("busy", "exec-1")
    assert manager.evict_idle() == 1


def test_capacity_evicts_least_recently_used_session() -> None:
    clock = _FakeClock()
    manager = SessionManager(max_sessions=2, idle_timeout_ms=10**9, clock=clock)
    manager.get_or_create("a", "python")
    clock.now += 1
    manager.get_or_create("b", "python")
    clock.now += 1
    manager.touch("a")
    manager.get_or_create("c", "python")

    assert sorted(session.id for session in manager.sessions()) == ["a", "c"]


def test_close_notifies_listeners_once() -> None:
    manager = SessionManager()
    closed: list[str] = []
    manager.add_eviction_listener(lambda session: closed.append(session.id))
    manager.get_or_create("tab-1", "python")
    assert manager.close("tab-1") is not None
    assert manager.close("tab-1") is None
    assert closed == ["tab-1"]


def test_execution_count_tracks_started_runs() -> None:
    manager = SessionManager()
    manager.get_or_create("tab-1", "python")
    manager.set_active_execution("tab-1", "exec-1")
    manager.set_active_execution("tab-1", None)
    manager.set_active_execution("tab-1", "exec-2")
    assert manager.get("tab-1").execution_count == 2
