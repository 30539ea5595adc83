"""Single-instance lock."""

import os

import pytest

from dbtools.core.exceptions import AlreadyLocked
from dbtools.utils.lock import InstanceLock


def test_flock_excludes_second_holder(tmp_path):
    path = tmp_path / "dbtools.lock"
    first = InstanceLock(path)
    first.acquire()
    try:
        with pytest.raises(AlreadyLocked) as exc_info:
            InstanceLock(path).acquire()
        assert exc_info.value.holder == str(os.getpid())
    finally:
        first.release()

    with InstanceLock(path) as again:
        assert again.held


def test_release_is_idempotent(tmp_path):
    lock = InstanceLock(tmp_path / "dbtools.lock")
    lock.acquire()
    lock.release()
    lock.release()
    assert not lock.held


def test_pidfile_times_out_naming_holder(tmp_path):
    path = tmp_path / "dbtools.lock"
    path.write_text(f"{os.getpid()}\n")
    sleeps = []
    lock = InstanceLock(path, use_flock=False, poll_interval=1, sleep=sleeps.append)

    with pytest.raises(AlreadyLocked) as exc_info:
        lock.acquire(timeout=3)
    assert exc_info.value.holder == str(os.getpid())
    assert sleeps == [1, 1, 1]
    assert path.exists()


def test_pidfile_replaces_stale_lock(tmp_path, monkeypatch):
    path = tmp_path / "dbtools.lock"
    path.write_text("999999\n")
    monkeypatch.setattr("dbtools.utils.lock._pid_alive", lambda pid: False)

    lock = InstanceLock(path, use_flock=False)
    lock.acquire(timeout=0)
    assert path.read_text().strip() == str(os.getpid())
    lock.release()
    assert not path.exists()
