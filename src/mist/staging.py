"""
Staging area and profile lock.

The staging area is a private (0700) directory that holds ciphertext and
decryption scratch for exactly one session. It is removed on every exit
path. The profile lock keeps two sessions from ever sharing it.

Layout under the staging root:

    <root>/
    ├── <profile>.lock            # flock target, holds the owner PID
    └── <profile>.staging/        # exists only while a session runs
        ├── ciphertext/
        └── plaintext/
"""

from __future__ import annotations

import fcntl
import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from .errors import AlreadyRunningError, StagingError
from .models import Profile

logger = logging.getLogger("mist.staging")

LOCK_SUFFIX = ".lock"
STAGING_SUFFIX = ".staging"


def default_staging_root(home: Path) -> Path:
    """Default staging root for profiles that do not configure one."""
    return home / ".cache" / "mist" / "staging"


def staging_root_for(profile: Profile, default_root: Path) -> Path:
    """The staging root a profile uses."""
    return (profile.staging_path or default_root).expanduser()


class ProfileLock:
    """Exclusive, non-blocking lock on one profile.

    An ``flock`` on ``<root>/<profile>.lock``, held through an open
    descriptor for the life of the session. The file records the owner's
    PID for error messages only. The kernel drops the lock when its
    owner dies, so a file left behind by a crash is simply taken over.
    """

    def __init__(self, root: Path, profile_name: str):
        self.root = Path(root)
        self.profile_name = profile_name
        self.path = self.root / f"{profile_name}{LOCK_SUFFIX}"
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> "ProfileLock":
        """Take the lock or fail immediately.

        Raises:
            AlreadyRunningError: If another session holds the lock.
            StagingError: If the lock file cannot be opened or written.
        """
        try:
            self.root.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as exc:
            raise StagingError(f"Cannot create staging root {self.root}: {exc}") from exc

        while True:
            try:
                fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o600)
            except OSError as exc:
                raise StagingError(f"Cannot open lock {self.path}: {exc}") from exc
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                raise AlreadyRunningError(self.profile_name, self._read_owner()) from None
            except OSError as exc:
                os.close(fd)
                raise StagingError(f"Cannot lock {self.path}: {exc}") from exc

            # the previous holder unlinks on release; a lock on that inode is worthless
            if _same_file(fd, self.path):
                break
            os.close(fd)

        previous = self._read_owner()
        if previous is not None and previous != os.getpid():
            logger.warning("Taking over lock %s left by pid %s", self.path, previous)
        try:
            os.ftruncate(fd, 0)
            os.write(fd, str(os.getpid()).encode("ascii"))
        except OSError as exc:
            os.close(fd)
            raise StagingError(f"Cannot write lock {self.path}: {exc}") from exc

        self._fd = fd
        logger.debug("Acquired lock %s", self.path)
        return self

    def release(self) -> None:
        """Drop the lock if this instance holds it. Safe to call twice."""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        # unlink while still holding the lock so no waiter locks a doomed inode
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("Could not remove lock %s: %s", self.path, exc)
        os.close(fd)
        logger.debug("Released lock %s", self.path)

    def _read_owner(self) -> Optional[int]:
        try:
            return int(self.path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def __enter__(self) -> "ProfileLock":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def _same_file(fd: int, path: Path) -> bool:
    try:
        return os.path.samestat(os.fstat(fd), os.stat(path))
    except FileNotFoundError:
        return False



class StagingArea:
    """Ephemeral, user-private directory owned by one session.

    Create with :meth:`acquire`; :meth:`release` deletes everything and
    is bound to every exit path when used as a context manager.
    """

    def __init__(self, path: Path):
        self._path = Path(path)
        self._released = False

    @classmethod
    def acquire(cls, profile: Profile, root: Path) -> "StagingArea":
        """Create the staging directory for a profile.

        The caller must already hold the profile's :class:`ProfileLock`;
        the directory name is stable per profile so the sync engine
        recognizes the replica from one run to the next.

        Args:
            profile: Profile being synced.
            root: Staging root directory.

        Returns:
            StagingArea: The freshly created, empty staging area.

        Raises:
            StagingError: If the directory cannot be created or would
                overlap the local plaintext tree.
        """
        root = Path(root).expanduser()
        path = root / f"{profile.name}{STAGING_SUFFIX}"

        resolved = path.resolve(strict=False)
        local = profile.local_path.resolve(strict=False)
        if resolved == local or local in resolved.parents or resolved in local.parents:
            raise StagingError(
                f"Staging directory {path} overlaps local path {profile.local_path}"
            )

        try:
            root.mkdir(mode=0o700, parents=True, exist_ok=True)
            if path.exists() or path.is_symlink():
                logger.warning("Removing leftover staging directory %s", path)
                _remove_tree(path)
            path.mkdir(mode=0o700)
            # mkdir honours the umask; make sure nobody else can read
            os.chmod(path, 0o700)
        except OSError as exc:
            raise StagingError(f"Cannot create staging directory {path}: {exc}") from exc

        logger.info("Staging area ready: %s", path)
        return cls(path)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def ciphertext(self) -> Path:
        """Where the ciphertext tree lives."""
        return self._path / "ciphertext"

    @property
    def plaintext(self) -> Path:
        """Scratch space for decrypted output before it is installed."""
        return self._path / "plaintext"

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        """Delete the staging directory. Idempotent, never raises.

        Failures are logged and otherwise ignored.
        """
        if self._released:
            return
        self._released = True
        if not self._path.exists() and not self._path.is_symlink():
            return
        try:
            _remove_tree(self._path)
            logger.info("Staging area removed: %s", self._path)
        except OSError as exc:
            logger.error("Could not remove staging area %s: %s", self._path, exc)

    def __enter__(self) -> "StagingArea":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def _remove_tree(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
        return

    shutil.rmtree(path)
