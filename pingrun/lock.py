"""
Advisory per-command lock so overlapping invocations of the same command skip.
"""

from __future__ import annotations

import getpass
import hashlib
import logging
import os
import stat
import tempfile
from pathlib import Path
from typing import IO, List, Optional, Sequence

try:
    import fcntl
except ImportError:  # pragma: no cover - not available on Windows
    fcntl = None

logger = logging.getLogger("pingrun")

LOCK_PREFIX = "pingrun"


def candidate_lock_dirs(user: Optional[str] = None) -> List[Path]:
    if not user:
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = str(os.getuid()) if hasattr(os, "getuid") else "user"
    dirs = [
        Path("/dev/shm") / f"{LOCK_PREFIX}_{user}",
        Path(tempfile.gettempdir()) / f"{LOCK_PREFIX}_{user}",
    ]
    try:
        dirs.append(Path.home() / ".cache")
    except (KeyError, RuntimeError):
        pass
    return dirs


def is_writable_and_owned(path: Path) -> bool:
    try:
        path.mkdir(mode=0o700, parents=True, exist_ok=True)
        info = path.stat()
    except OSError:
        return False
    if not stat.S_ISDIR(info.st_mode):
        return False
    if hasattr(os, "getuid") and info.st_uid != os.getuid():
        return False
    return bool(info.st_mode & stat.S_IWUSR)


def lock_name(argv: Sequence[str]) -> str:
    return hashlib.md5(" ".join(argv).encode("utf-8")).hexdigest()


class InstanceLock:
    """Exclusive non-blocking flock on a file named after the command line."""

    def __init__(self, argv: Sequence[str], dirs: Optional[List[Path]] = None) -> None:
        self.argv = list(argv)
        self.dirs = dirs
        self.path: Optional[Path] = None
        self._handle: Optional[IO[bytes]] = None

    def acquire(self) -> bool:
        """Return True when the lock is held by this process.

        False means another process holds it or no lock file could be set up.
        """
        if fcntl is None:
            logger.warning("Single-instance lock is not supported on this platform.")
            return False

        dirs = self.dirs if self.dirs is not None else candidate_lock_dirs()
        lock_dir = next((d for d in dirs if is_writable_and_owned(d)), None)
        if lock_dir is None:
            logger.warning("Could not find a writable lock directory among %s", [str(d) for d in dirs])
            return False

        path = lock_dir / lock_name(self.argv)
        try:
            handle = open(path, "a+b")
        except OSError as exc:
            logger.warning("Could not open lock file %s: %s", path, exc)
            return False
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            logger.info("Lock %s is held by another process.", path)
            return False
        except OSError as exc:
            handle.close()
            logger.warning("Could not lock %s: %s", path, exc)
            return False

        self.path = path
        self._handle = handle
        return True

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
        if self.path is not None:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass

    def __enter__(self) -> bool:
        return self.acquire()

    def __exit__(self, *exc_info: object) -> None:
        self.release()
