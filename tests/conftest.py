"""Shared test fixtures for mist.

The real collaborators shell out to gpg, rsync and unison. These fakes
stand in for them so the orchestration logic runs deterministically:

* FakeBackend "encrypts" by XOR with a keystream derived from the
  recipient and a random nonce, so ciphertext is unreadable, differs on
  every call (like GnuPG), and only decrypts for recipients whose
  secret key it holds.
* FakeEngine maps ``host:path`` endpoints onto directories under a
  temporary "hosts" root and copies files around with shutil.
"""

from __future__ import annotations

import hashlib
import os
import shutil
import threading
import time
from pathlib import Path
from typing import Optional

import pytest

from mist.backends import EncryptionBackend
from mist.config import from_mapping
from mist.engines import Endpoint, SyncEngine, snapshot
from mist.errors import (
    BackendUnavailableError,
    DecryptFailedError,
    EncryptFailedError,
    EngineFailureError,
    KeyNotFoundError,
)
from mist.gateway import EncryptionGateway
from mist.models import Configuration
from mist.orchestrator import SyncOrchestrator

MAGIC = b"FAKEPGP1"


def _keystream(recipient: str, nonce: bytes, length: int) -> bytes:
    out = bytearray()
    counter = 0
    while len(out) < length:
        block = hashlib.sha256(
            recipient.encode() + nonce + counter.to_bytes(8, "big")
        ).digest()
        out.extend(block)
        counter += 1
    return bytes(out[:length])


class FakeBackend(EncryptionBackend):
    """In-process stand-in for GnuPG."""

    def __init__(
        self,
        public_keys: Optional[set[str]] = None,
        secret_keys: Optional[set[str]] = None,
        fail_on: Optional[set[str]] = None,
        is_available: bool = True,
    ):
        self.public_keys = {"KEYID"} if public_keys is None else public_keys
        self.secret_keys = {"KEYID"} if secret_keys is None else secret_keys
        self.fail_on = fail_on or set()
        self.is_available = is_available
        self.encrypt_calls = 0
        self.decrypt_calls = 0

    @property
    def name(self) -> str:
        return "fake"

    def available(self) -> bool:
        return self.is_available

    def ensure_recipient(self, recipient: str) -> None:
        if not self.is_available:
            raise BackendUnavailableError(self.name)
        if recipient not in self.public_keys:
            raise KeyNotFoundError(recipient)

    def encrypt_file(self, source: Path, dest: Path, recipient: str) -> None:
        if source.name in self.fail_on:
            raise EncryptFailedError(str(source), "simulated failure")
        data = source.read_bytes()
        nonce = os.urandom(16)
        body = bytes(a ^ b for a, b in zip(data, _keystream(recipient, nonce, len(data))))
        dest.write_bytes(MAGIC + recipient.encode() + b"\0" + nonce + body)
        self.encrypt_calls += 1

    def decrypt_file(self, source: Path, dest: Path) -> None:
        blob = source.read_bytes()
        if not blob.startswith(MAGIC):
            raise DecryptFailedError(str(source), "not OpenPGP data")
        recipient, _, rest = blob[len(MAGIC):].partition(b"\0")
        recipient = recipient.decode()
        if recipient not in self.secret_keys:
            raise DecryptFailedError(str(source), "no secret key")
        nonce, body = rest[:16], rest[16:]
        dest.write_bytes(
            bytes(a ^ b for a, b in zip(body, _keystream(recipient, nonce, len(body))))
        )
        self.decrypt_calls += 1


class FakeEngine(SyncEngine):
    """Directory-backed stand-in for rsync + unison.

    Remote endpoints live under ``hosts_root/<host>/<path>``. Reconcile
    keeps an archive of digests per (local, remote) pair, like unison
    does, so one-sided edits and deletions propagate and files changed
    on both sides are left alone.
    """

    def __init__(self, hosts_root: Path):
        self.hosts_root = Path(hosts_root)
        self.mirrored: list[tuple[Endpoint, Endpoint, dict[str, str]]] = []
        self.reconciled: list[tuple[Path, Endpoint]] = []
        self.archive: dict[tuple[str, str], dict[str, str]] = {}
        self.fail_with: Optional[BaseException] = None
        self.send_signal: Optional[int] = None
        self.forgotten: list[tuple[Path, Endpoint]] = []
        self.entered = threading.Event()
        self.proceed: Optional[threading.Event] = None

    @property
    def name(self) -> str:
        return "fake"

    def resolve(self, endpoint: Endpoint) -> Path:
        if endpoint.host is None:
            return Path(endpoint.path)
        return self.hosts_root / endpoint.host / endpoint.path.lstrip("/")

    def _gate(self) -> None:
        self.entered.set()
        if self.proceed is not None:
            self.proceed.wait(timeout=10)
        if self.send_signal is not None:
            os.kill(os.getpid(), self.send_signal)
            # give the interpreter a chance to run the handler
            for _ in range(200):
                time.sleep(0.01)
        if self.fail_with is not None:
            raise self.fail_with

    def mirror(self, source: Endpoint, destination: Endpoint) -> None:
        self._gate()
        src, dst = self.resolve(source), self.resolve(destination)
        if not src.is_dir():
            raise EngineFailureError("fake", 23, f"{src}: No such file or directory")
        self.mirrored.append((source, destination, snapshot(src)))
        if dst.exists():
            shutil.rmtree(dst)
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(src, dst)

    def reconcile(self, local: Path, remote: Endpoint) -> list[str]:
        self._gate()
        local = Path(local)
        self.reconciled.append((local, remote))
        remote_dir = self.resolve(remote)
        remote_dir.mkdir(parents=True, exist_ok=True)
        key = (str(local), str(remote_dir))
        known = self.archive.get(key, {})

        here, there = snapshot(local), snapshot(remote_dir)
        changed = []
        for rel in sorted(set(here) | set(there)):
            mine, theirs, base = here.get(rel), there.get(rel), known.get(rel)
            if mine == theirs:
                continue
            if mine == base:
                # only the remote side moved
                if theirs is None:
                    (local / rel).unlink()
                else:
                    _copy(remote_dir / rel, local / rel)
                changed.append(rel)
            elif theirs == base:
                if mine is None:
                    (remote_dir / rel).unlink()
                else:
                    _copy(local / rel, remote_dir / rel)
            # both moved: conflict, each side keeps its own

        self.archive[key] = snapshot(local)
        return changed

    def forget(self, local: Path, remote: Endpoint) -> None:
        self.forgotten.append((Path(local), remote))
        self.archive.pop((str(local), str(self.resolve(remote))), None)


def _copy(src: Path, dst: Path) -> None:
    dst.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(src, dst)


def write_tree(root: Path, files: dict[str, bytes]) -> Path:
    """Create files under root from a relative-path -> bytes mapping."""
    for rel, data in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    return root


def read_tree(root: Path) -> dict[str, bytes]:
    """Relative-path -> bytes of every regular file under root."""
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """A throwaway home directory."""
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def gateway(backend: FakeBackend) -> EncryptionGateway:
    return EncryptionGateway(backend)


@pytest.fixture
def engine(tmp_path: Path) -> FakeEngine:
    return FakeEngine(tmp_path / "hosts")


@pytest.fixture
def make_configuration(home: Path):
    """Build an in-memory configuration with one profile per keyword."""

    def _make(**profiles: dict) -> Configuration:
        data = {}
        for name, overrides in profiles.items():
            section = {
                "local_path": str(home / name),
                "remote_host": "host",
                "remote_path": f"/remote/{name}",
                "recipient": "KEYID",
            }
            section.update(overrides)
            data[name] = section
        return from_mapping(data)

    return _make


@pytest.fixture
def docs_configuration(make_configuration) -> Configuration:
    return make_configuration(docs={})


@pytest.fixture
def make_orchestrator(home: Path, gateway: EncryptionGateway, engine: FakeEngine):
    """Orchestrator wired to the fakes, with roots under the test home."""

    def _make(configuration: Configuration, **kwargs) -> SyncOrchestrator:
        kwargs.setdefault("gateway", gateway)
        kwargs.setdefault("engine", engine)
        return SyncOrchestrator(configuration, home=home, **kwargs)

    return _make
