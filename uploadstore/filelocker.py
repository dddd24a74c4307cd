"""Exclusive upload locks backed by PID-holding lock files on disk."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass

from .info import FileLockedError


class LockOwnershipError(RuntimeError):
    """The lock file belongs to another process and must not be removed."""


def _process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if pid == os.getpid():
        return True
    if os.name == "nt":
        # Signal 0 would terminate the process on Windows; assume it is alive.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


@dataclass(frozen=True)
class FileLock:
    """A lock on one upload, held by writing this process's PID to ``path``."""

    path: str

    def _try_acquire(self) -> bool:
        directory, base = os.path.split(self.path)
        fd, tmp = tempfile.mkstemp(prefix=base + ".", dir=directory)
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(f"{os.getpid()}\n")
            try:
                os.link(tmp, self.path)
            except FileExistsError:
                return False
            return os.path.samefile(tmp, self.path)
        finally:
            os.remove(tmp)

    def _read_owner(self) -> int | None:
        with open(self.path, encoding="utf-8") as handle:
            content = handle.read().strip()
        try:
            pid = int(content)
        except ValueError:
            return None
        return pid if pid > 0 else None

    def lock(self) -> None:
        """Acquire the lock, raising FileLockedError if a live process holds it."""
        while True:
            if self._try_acquire():
                return
            try:
                owner = self._read_owner()
            except FileNotFoundError:
                continue
            if owner is not None and _process_alive(owner):
                raise FileLockedError()
            # Stale or corrupt lock file: remove it and try again.
            try:
                os.remove(self.path)
            except FileNotFoundError:
                pass

    def unlock(self) -> None:
        """Release the lock; a missing lock file is not an error."""
        try:
            owner = self._read_owner()
        except FileNotFoundError:
            return
        if owner != os.getpid():
            raise LockOwnershipError(
                f"lock file {self.path} is not owned by this process"
            )
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass


@dataclass(frozen=True)
class FileLocker:
    """Creates lock files named ``<id>.lock`` inside ``path``.

    The directory is not created; it must exist before locking.
    """

    path: str

    def new_lock(self, upload_id: str) -> FileLock:
        return FileLock(os.path.abspath(os.path.join(self.path, upload_id + ".lock")))