import os
import time

import pytest

from tuneforge.lock import PID_FILE, LockBusy, LockManager, default_lock_path


def test_acquire_and_release(tmp_path):
    path = tmp_path / "run" / "tuneforge.lock"
    lock = LockManager(path)
    handle = lock.acquire()
    assert lock.held
    assert (path / PID_FILE).read_text().strip() == str(os.getpid())
    handle.release()
    assert not path.exists()
    # idempotent
    lock.release()
    assert not lock.held


def test_context_manager_releases(tmp_path):
    path = tmp_path / "tuneforge.lock"
    with LockManager(path).acquire():
        assert path.is_dir()
    assert not path.exists()


def test_live_owner_is_busy(tmp_path):
    path = tmp_path / "tuneforge.lock"
    LockManager(path, pid=4242, alive=lambda p: True).acquire()
    with pytest.raises(LockBusy) as exc:
        LockManager(path, pid=5151, alive=lambda p: True).acquire()
    assert exc.value.pid == 4242
    assert exc.value.path == str(path)


def test_dead_owner_is_reclaimed(tmp_path):
    path = tmp_path / "tuneforge.lock"
    LockManager(path, pid=4242).acquire()
    lock = LockManager(path, pid=5151, alive=lambda p: False)
    lock.acquire()
    assert lock.owner() == 5151


def test_marker_without_pid_waits_for_grace(tmp_path):
    path = tmp_path / "tuneforge.lock"
    path.mkdir()
    with pytest.raises(LockBusy) as exc:
        LockManager(path, stale_grace_s=10).acquire()
    assert exc.value.pid is None

    old = time.time() - 60
    os.utime(path, (old, old))
    lock = LockManager(path, stale_grace_s=10)
    lock.acquire()
    assert lock.owner() == os.getpid()


def test_release_leaves_someone_elses_marker(tmp_path):
    path = tmp_path / "tuneforge.lock"
    lock = LockManager(path, pid=4242)
    lock.acquire()
    (path / PID_FILE).write_text("5151\n")
    lock.release()
    assert path.is_dir()


def test_default_lock_path_falls_back_to_runtime_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_RUNTIME_DIR", str(tmp_path))
    monkeypatch.setattr("tuneforge.lock.os.access", lambda p, mode: False)
    assert default_lock_path("/run/lock/tuneforge.lock") == tmp_path / "tuneforge.lock"


def test_default_lock_path_keeps_writable_location(tmp_path):
    configured = tmp_path / "tuneforge.lock"
    assert default_lock_path(str(configured)) == configured
