"""Unit tests for lane lock acquisition and release."""

import json
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from structlog.testing import capture_logs

from laneledger.core import lane_lock
from laneledger.core.lane_lock import (
    LaneLockManager,
    LockHeldError,
    acquires_lock_on,
    releases_lock_on,
)

pytestmark = pytest.mark.timeout(5)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _manager(locks_dir: Path, **kwargs) -> LaneLockManager:
    kwargs.setdefault("clock", lambda: NOW)
    kwargs.setdefault("hostname", "host-a")
    kwargs.setdefault("process_alive", lambda _pid: True)
    return LaneLockManager(locks_dir, **kwargs)


def test_second_unit_is_refused_until_release(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    first = manager.acquire("Team: X", "WU-1")
    assert first.status == "acquired"
    assert manager.lock_path("Team: X") == tmp_path / "team-x.lock"

    with pytest.raises(LockHeldError) as exc:
        manager.acquire("Team: X", "WU-2")
    assert exc.value.holder is not None
    assert exc.value.holder.wu_id == "WU-1"
    assert "WU-1" in str(exc.value) and "WU-2" in str(exc.value)

    release = manager.release("Team: X", wu_id="WU-1")
    assert release.released and not release.not_found

    assert manager.acquire("Team: X", "WU-2").status == "acquired"


def test_lock_record_contents(tmp_path: Path) -> None:
    manager = _manager(tmp_path, pid=4242)
    manager.acquire("Core", "WU-1", agent_session="sess-1")

    record = json.loads((tmp_path / "core.lock").read_text())
    assert record == {
        "lane": "Core",
        "wuId": "WU-1",
        "acquiredAt": "2026-03-01T12:00:00+00:00",
        "pid": 4242,
        "hostname": "host-a",
        "agentSession": "sess-1",
    }


def test_reacquire_by_same_unit_succeeds(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.acquire("Core", "WU-1")

    again = manager.acquire("Core", "WU-1")

    assert again.status == "already_held"
    assert again.lock is not None and again.lock.wu_id == "WU-1"


def test_policy_none_skips_locking(tmp_path: Path) -> None:
    manager = _manager(tmp_path, policy_resolver=lambda _lane: "none")

    assert manager.acquire("Core", "WU-1").skipped
    assert manager.acquire("Core", "WU-2").skipped
    assert not (tmp_path / "core.lock").exists()


def test_concurrent_acquire_has_exactly_one_winner(tmp_path: Path) -> None:
    contenders = 8
    barrier = threading.Barrier(contenders)
    outcomes: list[str] = []
    outcomes_lock = threading.Lock()

    def contend(index: int) -> None:
        manager = _manager(tmp_path)
        barrier.wait()
        try:
            manager.acquire("Core", f"WU-{index + 1}")
            outcome = "acquired"
        except LockHeldError:
            outcome = "refused"
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=contend, args=(i,)) for i in range(contenders)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("acquired") == 1
    assert outcomes.count("refused") == contenders - 1


def test_stale_lock_is_taken_over_with_warning(tmp_path: Path) -> None:
    old = _manager(tmp_path, clock=lambda: NOW - timedelta(hours=3))
    old.acquire("Core", "WU-1")
    manager = _manager(tmp_path)

    with capture_logs() as logs:
        result = manager.acquire("Core", "WU-2")

    assert result.status == "acquired"
    assert result.replaced_stale is not None and result.replaced_stale.wu_id == "WU-1"
    assert any(entry["log_level"] == "warning" and "stale" in entry["event"] for entry in logs)
    assert manager.read("Core").wu_id == "WU-2"


def test_dead_holder_process_on_same_host_is_stale(tmp_path: Path) -> None:
    _manager(tmp_path, pid=999).acquire("Core", "WU-1")
    manager = _manager(tmp_path, process_alive=lambda pid: pid != 999)

    status = manager.check("Core")
    assert status.stale
    assert "999" in (status.stale_reason or "")
    assert manager.acquire("Core", "WU-2").status == "acquired"


def test_dead_pid_on_other_host_is_not_stale(tmp_path: Path) -> None:
    _manager(tmp_path, hostname="host-b", pid=999).acquire("Core", "WU-1")
    manager = _manager(tmp_path, process_alive=lambda _pid: False)

    assert not manager.check("Core").stale
    with pytest.raises(LockHeldError):
        manager.acquire("Core", "WU-2")


def test_unreadable_lock_is_replaced(tmp_path: Path) -> None:
    (tmp_path / "core.lock").write_text("garbage")
    manager = _manager(tmp_path)

    result = manager.acquire("Core", "WU-2")

    assert result.status == "acquired"
    assert result.replaced_stale is None


def test_undecodable_lock_bytes_count_as_unreadable(tmp_path: Path) -> None:
    (tmp_path / "team-x.lock").write_bytes(b"\xff\xfe garbage")
    manager = _manager(tmp_path)

    release = manager.release("Team: X", wu_id="WU-1")
    assert not release.released
    assert "unreadable" in (release.error or "")

    status = manager.check("Team: X")
    assert status.locked and status.stale
    assert manager.all_locks() == {}

    assert manager.acquire("Team: X", "WU-2").status == "acquired"
    assert manager.release("Team: X", wu_id="WU-2").released


def test_takeover_losing_restore_race_logs_displaced_holder(tmp_path: Path, monkeypatch) -> None:
    manager = _manager(tmp_path)
    manager.acquire("Core", "WU-2")
    path = manager.lock_path("Core")
    intruder = json.dumps(
        {"lane": "Core", "wuId": "WU-3", "acquiredAt": NOW.isoformat(), "pid": 1, "hostname": "host-a"}
    )

    def link_after_intruder(_source, target):
        Path(target).write_text(intruder)
        raise FileExistsError(target)

    monkeypatch.setattr(lane_lock.os, "link", link_after_intruder)
    with capture_logs() as logs:
        taken = manager._take_over(path, "stale record")

    assert taken is False
    assert json.loads(path.read_text())["wuId"] == "WU-3"
    assert any(entry["log_level"] == "error" and "WU-2" in entry["event"] for entry in logs)
    assert list(tmp_path.glob(".core.lock.stale.*")) == []


def test_release_reports_not_found(tmp_path: Path) -> None:
    result = _manager(tmp_path).release("Core", wu_id="WU-1")

    assert result.released
    assert result.not_found
    assert result.error is None


def test_release_by_other_unit_is_refused_without_force(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.acquire("Core", "WU-1")

    refused = manager.release("Core", wu_id="WU-2")
    assert not refused.released
    assert "WU-1" in (refused.error or "")
    assert (tmp_path / "core.lock").exists()

    forced = manager.release("Core", force=True)
    assert forced.released
    assert not (tmp_path / "core.lock").exists()


def test_force_remove_stale_only_removes_stale_locks(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.acquire("Core", "WU-1")

    assert not manager.force_remove_stale("Core").released

    later = _manager(tmp_path, clock=lambda: NOW + timedelta(hours=5))
    assert later.force_remove_stale("Core").released
    assert later.read("Core") is None


def test_audited_unlock_requires_reason_and_force_for_active_locks(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.acquire("Core", "WU-1")

    with pytest.raises(ValueError):
        manager.audited_unlock("Core", reason=" ")

    assert not manager.audited_unlock("Core", reason="agent crashed").released
    with capture_logs() as logs:
        assert manager.audited_unlock("Core", reason="agent crashed", force=True).released
    assert any("agent crashed" in entry["event"] for entry in logs)


def test_all_locks_lists_every_lane(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.acquire("Core", "WU-1")
    manager.acquire("Team: X", "WU-2")

    locks = manager.all_locks()

    assert sorted(locks) == ["Core", "Team: X"]
    assert locks["Team: X"].wu_id == "WU-2"


@pytest.mark.parametrize(
    ("policy", "event_type", "acquires", "releases"),
    [
        ("active", "create", True, False),
        ("active", "claim", True, False),
        ("active", "block", False, True),
        ("active", "unblock", True, False),
        ("active", "complete", False, True),
        ("active", "release", False, True),
        ("all", "claim", True, False),
        ("all", "block", False, False),
        ("all", "unblock", False, False),
        ("all", "complete", False, True),
        ("none", "claim", False, False),
        ("none", "complete", False, False),
    ],
)
def test_lock_policy_table(policy, event_type, acquires, releases) -> None:
    assert acquires_lock_on(policy, event_type) is acquires
    assert releases_lock_on(policy, event_type) is releases
