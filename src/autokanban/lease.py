from __future__ import annotations

import logging
import os
from pathlib import Path

from autokanban.errors import AutokanbanError

log = logging.getLogger(__name__)


def pid_is_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class LeaseHeldError(AutokanbanError):
    """Raised when another live engine already holds the liveness marker."""

    def __init__(self, pid: int) -> None:
        super().__init__(f"Another engine is already running (PID {pid}).")
        self.pid = pid


class PidLease:
    """Liveness marker holding the engine's PID; a marker naming a dead process counts as absent."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._pid: int | None = None

    def read(self) -> int | None:
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    def holder(self) -> int | None:
        """PID of the live engine holding the marker, or ``None``."""
        pid = self.read()
        if pid is None or not pid_is_alive(pid):
            return None
        return pid

    def is_alive(self) -> bool:
        return self.holder() is not None

    def acquire(self, pid: int | None = None) -> None:
        pid = os.getpid() if pid is None else pid
        current = self.holder()
        if current is not None and current != pid:
            raise LeaseHeldError(current)
        if current is None and self.path.exists():
            log.info("Removing stale engine marker %s", self.path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(f"{pid}\n", encoding="utf-8")
        self._pid = pid

    def release(self) -> None:
        if self._pid is None:
            return
        if self.read() in {self._pid, None}:
            self.path.unlink(missing_ok=True)
        self._pid = None

    def __enter__(self) -> PidLease:
        self.acquire()
        return self

    def __exit__(self, *_exc: object) -> None:
        self.release()
