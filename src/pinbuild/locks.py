# locks.py
from __future__ import annotations

import fcntl
import os
import socket
import threading
import time
from pathlib import Path
from typing import Optional

from .errors import LockContention


class FileLock:
    """
    Advisory exclusive lock on a file (flock).

    flock locks belong to the open file description, so two threads of the
    same process that each open the file contend like two processes do.

    timeout=None blocks forever, timeout=0 fails immediately.
    """

    def __init__(self, path: str | Path, *, timeout: Optional[float] = None, poll: float = 0.05):
        self.path = Path(path)
        self.timeout = timeout
        self.poll = poll
        self._fd: Optional[int] = None

    def acquire(self, cancel: threading.Event | None = None) -> "FileLock":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o644)

        if self.timeout is None and cancel is None:
            fcntl.flock(fd, fcntl.LOCK_EX)
        else:
            deadline = None if self.timeout is None else time.monotonic() + self.timeout
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    expired = deadline is not None and time.monotonic() >= deadline
                    if expired or (cancel is not None and cancel.is_set()):
                        holder = _read_holder(fd)
                        os.close(fd)
                        raise LockContention(path=str(self.path), holder=holder)
                    time.sleep(self.poll)

        os.ftruncate(fd, 0)
        os.write(fd, f"{socket.gethostname()}:{os.getpid()}\n".encode("utf-8"))
        self._fd = fd
        return self

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    @property
    def locked(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> "FileLock":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def _read_holder(fd: int) -> str:
    try:
        os.lseek(fd, 0, os.SEEK_SET)
        return os.read(fd, 256).decode("utf-8", "replace").strip()
    except OSError:
        return ""


WORKSPACE_LOCK = ".pinbuild.lock"


def workspace_lock(work_root: str | Path) -> FileLock:
    """Single-owner lock for a build's staging tree; fails instead of waiting."""
    return FileLock(Path(work_root) / WORKSPACE_LOCK, timeout=0)
