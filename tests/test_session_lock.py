from __future__ import annotations

import json
import os
import threading
import time
from pathlib import Path

import pytest

from research_bridge.core.errors import SessionLocked
from research_bridge.runtime.lock import (
    LockRecord,
    acquire_session_lock,
    force_unlock,
    inspect_lock,
    read_lock,
)
from research_bridge.runtime.paths import SessionPaths, get_session_paths

pytestmark = pytest.mark.skipif(os.name == "nt", reason="session locks rely on fcntl")


def _paths(tmp_path: Path, sid: str = "s1") -> SessionPaths:
    rd = tmp_path / "rt"
    rd.mkdir(parents=True, exist_ok=True)
    return get_session_paths(runtime_dir=rd, session_id=sid)


def _write_lock(paths: SessionPaths, *, heartbeat_at_ms: int, token: str = "other") -> None:
    rec = LockRecord(
        session_id="s1",
        owner_token=token,
        owner_pid=999999,
        host="elsewhere",
        socket_path=str(paths.socket_path),
        created_at_ms=heartbeat_at_ms,
        heartbeat_at_ms=heartbeat_at_ms,
    )
    paths.lock_path.write_text(rec.to_json() + "\n", encoding="utf-8")


def test_second_acquire_fails_while_owner_is_live(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    h = acquire_session_lock(paths=paths, session_id="s1", stale_after_ms=10_000)
    try:
        with pytest.raises(SessionLocked) as ei:
            acquire_session_lock(paths=paths, session_id="s1", stale_after_ms=10_000)
        assert ei.value.code == "SESSION_LOCKED"
        assert ei.value.details["owner_pid"] == os.getpid()
    finally:
        h.release()
    assert not paths.lock_path.exists()


def test_concurrent_acquire_exactly_one_succeeds(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    barrier = threading.Barrier(8)
    winners: list[object] = []
    losers: list[BaseException] = []
    guard = threading.Lock()

    def _worker() -> None:
        barrier.wait()
        try:
            h = acquire_session_lock(paths=paths, session_id="s1", stale_after_ms=10_000)
        except SessionLocked as e:
            with guard:
                losers.append(e)
            return
        with guard:
            winners.append(h)

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert len(winners) == 1
    assert len(losers) == 7
    winners[0].release()  # type: ignore[attr-defined]


def test_stale_lock_is_reclaimed(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    _write_lock(paths, heartbeat_at_ms=int(time.time() * 1000) - 60_000)

    h = acquire_session_lock(paths=paths, session_id="s1", stale_after_ms=1000)
    try:
        rec = read_lock(paths.lock_path)
        assert rec is not None
        assert rec.owner_token == h.record.owner_token
        assert rec.owner_pid == os.getpid()
    finally:
        h.release()


def test_unparseable_lock_uses_mtime_for_liveness(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    paths.lock_path.write_text("", encoding="utf-8")

    # 刚创建（owner 可能尚未写完）：视为 live
    with pytest.raises(SessionLocked):
        acquire_session_lock(paths=paths, session_id="s1", stale_after_ms=5000)

    old = time.time() - 60
    os.utime(paths.lock_path, (old, old))
    h = acquire_session_lock(paths=paths, session_id="s1", stale_after_ms=5000)
    h.release()


def test_heartbeat_thread_refreshes_lock(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    h = acquire_session_lock(paths=paths, session_id="s1", stale_after_ms=10_000)
    first = h.record.heartbeat_at_ms
    h.start_heartbeat(20)
    try:
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and h.record.heartbeat_at_ms == first:
            time.sleep(0.02)
        assert h.record.heartbeat_at_ms > first
        on_disk = json.loads(paths.lock_path.read_text(encoding="utf-8"))
        assert on_disk["owner_token"] == h.record.owner_token
    finally:
        h.release()


def test_inspect_lock_reports_liveness(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    now = int(time.time() * 1000)
    assert inspect_lock(paths.lock_path, stale_after_ms=1000) == (None, False)

    _write_lock(paths, heartbeat_at_ms=now)
    rec, live = inspect_lock(paths.lock_path, stale_after_ms=1000, now=now + 500)
    assert rec is not None and live is True
    _rec, live2 = inspect_lock(paths.lock_path, stale_after_ms=1000, now=now + 1500)
    assert live2 is False


def test_force_unlock_requires_force_for_live_owner(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    h = acquire_session_lock(paths=paths, session_id="s1", stale_after_ms=10_000)

    with pytest.raises(SessionLocked):
        force_unlock(paths, force=False, stale_after_ms=10_000)
    assert paths.lock_path.exists()

    assert force_unlock(paths, force=True, stale_after_ms=10_000) is True
    assert not paths.lock_path.exists()
    assert force_unlock(paths, force=True, stale_after_ms=10_000) is False

    # 被强制解锁后，原 owner 刷新时发现 lock 已丢失
    assert h.refresh() is False
    assert h.lost is True
    h.release()


def test_release_does_not_remove_a_new_owners_lock(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    old = acquire_session_lock(paths=paths, session_id="s1", stale_after_ms=10_000)
    force_unlock(paths, force=True, stale_after_ms=10_000)
    new = acquire_session_lock(paths=paths, session_id="s1", stale_after_ms=10_000)

    old.release()
    rec = read_lock(paths.lock_path)
    assert rec is not None and rec.owner_token == new.record.owner_token
    new.release()
    assert not paths.lock_path.exists()
