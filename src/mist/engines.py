"""
Sync engines -- how ciphertext moves between here and there.

An engine offers two capabilities:

    mirror(source, destination)   one-way copy, deleting extras
    reconcile(local, remote)      two-way merge, returns what changed locally

The default engine needs nothing on the remote host but ``ssh``,
``rsync`` and ``mkdir``. Bidirectional reconciliation happens locally:
the remote tree is mirrored into a replica next to the local ciphertext,
``unison`` merges the two with its own conflict policy, and the replica
is mirrored back.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shlex
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .cache import sha256_file
from .errors import EngineFailureError, TransportFailureError

logger = logging.getLogger("mist.engines")

REPLICA_SUFFIX = ".replica"
UNISON_ENV = "UNISON"

SSH_FAILURE_MARKERS = (
    "ssh:",
    "Connection refused",
    "Connection timed out",
    "Connection closed",
    "connection unexpectedly closed",
    "Could not resolve hostname",
    "Host key verification failed",
    "Permission denied (publickey",
    "No route to host",
)


@dataclass(frozen=True)
class Endpoint:
    """A directory, local or on a host reachable over SSH."""

    path: str
    host: Optional[str] = None

    @property
    def is_remote(self) -> bool:
        return self.host is not None

    @property
    def rsync_spec(self) -> str:
        """``host:path/`` form; the trailing slash means *contents of*."""
        path = self.path.rstrip("/") + "/"
        return f"{self.host}:{path}" if self.host else path

    def __str__(self) -> str:
        return f"{self.host}:{self.path}" if self.host else self.path


class SyncEngine(ABC):
    """Abstract directory synchronization engine."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable engine name."""

    @abstractmethod
    def mirror(self, source: Endpoint, destination: Endpoint) -> None:
        """Make ``destination`` an exact copy of ``source``.

        Raises:
            TransportFailureError: If the remote side is unreachable.
            EngineFailureError: If the engine reports any other failure.
        """

    @abstractmethod
    def reconcile(self, local: Path, remote: Endpoint) -> list[str]:
        """Bring ``local`` and ``remote`` into agreement in both directions.

        Args:
            local: Local ciphertext tree.
            remote: Remote ciphertext tree.

        Returns:
            list[str]: Relative paths under ``local`` the engine created,
            modified or removed.
        """

    def forget(self, local: Path, remote: Endpoint) -> None:
        """Drop whatever the engine remembers about this pair.

        Called when a session fails after ``reconcile`` returned, so the
        next reconcile treats both sides as new instead of replaying
        deletions the local plaintext never saw. Must not raise.
        """


def _looks_like_transport_failure(returncode: int, stderr: str) -> bool:
    if returncode == 255:
        return True
    return any(marker in stderr for marker in SSH_FAILURE_MARKERS)


def snapshot(root: Path) -> dict[str, str]:
    """Map every regular file under ``root`` to its SHA-256."""
    root = Path(root)
    if not root.is_dir():
        return {}
    return {
        p.relative_to(root).as_posix(): sha256_file(p)
        for p in sorted(root.rglob("*"))
        if p.is_file() and not p.is_symlink()
    }


def default_archive_root(home: Path) -> Path:
    """Where unison keeps its archives for mist, apart from ~/.unison."""
    return home / ".cache" / "mist" / "unison"


class RsyncUnisonEngine(SyncEngine):
    """rsync for mirroring, unison for two-way merges."""

    def __init__(
        self,
        rsync: str = "rsync",
        unison: str = "unison",
        ssh: str = "ssh",
        timeout: Optional[int] = None,
        archive_root: Optional[Path] = None,
    ):
        self.rsync = rsync
        self.unison = unison
        self.ssh = ssh
        self.timeout = timeout
        self.archive_root = Path(archive_root) if archive_root else default_archive_root(Path.home())

    @property
    def name(self) -> str:
        return "rsync+unison"

    def mirror(self, source: Endpoint, destination: Endpoint) -> None:
        if destination.is_remote:
            self.ensure_remote_dir(destination)
        else:
            Path(destination.path).mkdir(parents=True, exist_ok=True)

        cmd = [
            self.rsync, "-a", "--delete", "--checksum", "--protect-args",
            "-e", self.ssh,
            source.rsync_spec, destination.rsync_spec,
        ]
        logger.info("Mirroring %s -> %s", source, destination)
        result = self._run(cmd, "rsync")
        if result.returncode != 0:
            stderr = result.stderr.strip()
            if _looks_like_transport_failure(result.returncode, stderr):
                raise TransportFailureError(stderr or f"rsync exited {result.returncode}")
            raise EngineFailureError("rsync", result.returncode, stderr)

    def reconcile(self, local: Path, remote: Endpoint) -> list[str]:
        local = Path(local)
        replica = local.with_name(local.name + REPLICA_SUFFIX)

        # first sync against a fresh remote: give rsync something to read
        if remote.is_remote:
            self.ensure_remote_dir(remote)
        else:
            Path(remote.path).mkdir(parents=True, exist_ok=True)
        self.mirror(remote, Endpoint(str(replica)))

        before = snapshot(local)
        cmd = [
            self.unison, str(local), str(replica),
            "-batch", "-auto", "-ui", "text",
        ]
        archive = self.archive_dir(local, remote)
        archive.mkdir(mode=0o700, parents=True, exist_ok=True)
        logger.info("Reconciling %s <-> %s", local, remote)
        result = self._run(cmd, "unison", env={**os.environ, UNISON_ENV: str(archive)})
        if result.returncode == 1:
            logger.warning(
                "unison skipped conflicting files; they keep their local version here "
                "and their remote version there"
            )
        elif result.returncode != 0:
            stderr = result.stderr.strip()
            if result.returncode == 3 and _looks_like_transport_failure(3, stderr):
                raise TransportFailureError(stderr)
            raise EngineFailureError("unison", result.returncode, stderr)
        after = snapshot(local)

        self.mirror(Endpoint(str(replica)), remote)

        changed = sorted(
            rel for rel in set(before) | set(after) if before.get(rel) != after.get(rel)
        )
        logger.info("unison changed %d local file(s)", len(changed))
        return changed

    def forget(self, local: Path, remote: Endpoint) -> None:
        archive = self.archive_dir(Path(local), remote)
        if not archive.exists():
            return
        try:
            shutil.rmtree(archive)
            logger.info("Dropped unison archive for %s <-> %s", local, remote)
        except OSError as exc:
            logger.error("Could not remove unison archive %s: %s", archive, exc)

    def archive_dir(self, local: Path, remote: Endpoint) -> Path:
        """Private unison state directory for one local/remote pair."""
        key = hashlib.sha256(f"{local}\0{remote}".encode("utf-8")).hexdigest()[:16]
        return self.archive_root / key

    def ensure_remote_dir(self, remote: Endpoint) -> None:
        """Create the remote directory with plain ``mkdir -p``."""
        cmd = [self.ssh, remote.host, "mkdir", "-p", "--", shlex.quote(remote.path)]
        result = self._run(cmd, "ssh")
        if result.returncode != 0:
            stderr = result.stderr.strip()
            if _looks_like_transport_failure(result.returncode, stderr):
                raise TransportFailureError(stderr or f"ssh exited {result.returncode}")
            raise EngineFailureError("ssh mkdir", result.returncode, stderr)

    def _run(
        self, cmd: list[str], tool: str, env: Optional[dict[str, str]] = None
    ) -> subprocess.CompletedProcess:
        logger.debug("Running: %s", " ".join(shlex.quote(c) for c in cmd))
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
                env=env,
            )
        except FileNotFoundError:
            raise EngineFailureError(tool, None, f"'{cmd[0]}' not found in PATH") from None
        except subprocess.TimeoutExpired:
            raise EngineFailureError(tool, None, "timed out") from None
