import os
import subprocess
import sys
from pathlib import Path

import pytest

from autokanban.lease import LeaseHeldError, PidLease, pid_is_alive


def _dead_pid() -> int:
    proc = subprocess.run([sys.executable, "-c", "import os; print(os.getpid())"], check=True, capture_output=True, text=True)
    return int(proc.stdout.strip())


def test_acquire_and_release(tmp_path: Path) -> None:
    lease = PidLease(tmp_path / "run" / "engine.pid")
    lease.acquire()

    assert lease.read() == os.getpid()
    assert lease.holder() == os.getpid()
    assert lease.is_alive() is True

    lease.release()
    assert not lease.path.exists()
    assert lease.holder() is None


def test_live_holder_blocks_second_engine(tmp_path: Path) -> None:
    path = tmp_path / "engine.pid"
    path.write_text(f"{os.getppid()}\n", encoding="utf-8")

    with pytest.raises(LeaseHeldError) as excinfo:
        PidLease(path).acquire()
    assert excinfo.value.pid == os.getppid()
    assert path.read_text(encoding="utf-8").strip() == str(os.getppid())


def test_stale_marker_counts_as_absent(tmp_path: Path) -> None:
    path = tmp_path / "engine.pid"
    dead = _dead_pid()
    path.write_text(f"{dead}\n", encoding="utf-8")
    lease = PidLease(path)

    assert pid_is_alive(dead) is False
    assert lease.holder() is None
    lease.acquire()
    assert lease.read() == os.getpid()


def test_release_leaves_foreign_marker(tmp_path: Path) -> None:
    path = tmp_path / "engine.pid"
    lease = PidLease(path)
    lease.acquire()
    path.write_text(f"{os.getppid()}\n", encoding="utf-8")

    lease.release()
    assert path.exists()


def test_garbage_marker_reads_as_none(tmp_path: Path) -> None:
    path = tmp_path / "engine.pid"
    path.write_text("not-a-pid", encoding="utf-8")

    assert PidLease(path).read() is None
    assert pid_is_alive(0) is False


def test_context_manager(tmp_path: Path) -> None:
    path = tmp_path / "engine.pid"
    with PidLease(path) as lease:
        assert lease.holder() == os.getpid()
    assert not path.exists()
