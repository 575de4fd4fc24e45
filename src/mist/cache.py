"""
Ciphertext cache -- keeps unchanged files' ciphertext stable.

GnuPG output is randomized: encrypting the same file twice yields two
different artifacts. Left alone, every push would rewrite every remote
file and every bidirectional sync would see every file as changed on
both sides. The cache remembers, per relative path, which plaintext
digest produced which ciphertext, and hands the old artifact back when
the plaintext has not changed.

Only ciphertext is stored here. Layout:

    <cache_root>/<profile>/
    ├── index.json
    └── objects/<sha256 of ciphertext>
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger("mist.cache")

INDEX_FILE = "index.json"
OBJECTS_DIR = "objects"


def default_cache_root(home: Path) -> Path:
    """Default location of all profiles' ciphertext caches."""
    return home / ".cache" / "mist" / "ciphertext"


def sha256_file(path: Path) -> str:
    """Compute SHA-256 hex digest of a file.

    Args:
        path: File to hash.

    Returns:
        Hex-encoded SHA-256 digest.
    """
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


class CacheEntry(BaseModel):
    """What one plaintext file was last encrypted to."""

    plaintext_sha256: str
    ciphertext_sha256: str
    recipient: str


class CacheIndex(BaseModel):
    """On-disk index of a profile's cache."""

    version: int = 1
    entries: dict[str, CacheEntry] = Field(default_factory=dict)


class CiphertextCache:
    """Per-profile store of previously produced ciphertext."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.objects = self.root / OBJECTS_DIR
        self.index_path = self.root / INDEX_FILE
        self.index = self._load_index()

    def _load_index(self) -> CacheIndex:
        if not self.index_path.exists():
            return CacheIndex()
        try:
            return CacheIndex.model_validate_json(
                self.index_path.read_text(encoding="utf-8")
            )
        except (OSError, ValidationError, ValueError) as exc:
            logger.warning("Ignoring unreadable cache index %s: %s", self.index_path, exc)
            return CacheIndex()

    def lookup(self, relpath: str, plaintext_sha256: str, recipient: str) -> Optional[Path]:
        """Find reusable ciphertext for a plaintext file.

        Args:
            relpath: Plaintext path relative to the tree root.
            plaintext_sha256: Current digest of the plaintext.
            recipient: Recipient the ciphertext must be encrypted to.

        Returns:
            Path to the cached artifact, or None if it must be re-encrypted.
        """
        entry = self.index.entries.get(relpath)
        if entry is None:
            return None
        if entry.plaintext_sha256 != plaintext_sha256 or entry.recipient != recipient:
            return None
        blob = self.objects / entry.ciphertext_sha256
        if not blob.is_file():
            return None
        return blob

    def store(self, relpath: str, plaintext_sha256: str, recipient: str, artifact: Path) -> None:
        """Remember the ciphertext produced for a plaintext file.

        Args:
            relpath: Plaintext path relative to the tree root.
            plaintext_sha256: Digest of the plaintext.
            recipient: Recipient the artifact is encrypted to.
            artifact: The ciphertext file to copy into the cache.
        """
        digest = sha256_file(artifact)
        self.objects.mkdir(mode=0o700, parents=True, exist_ok=True)
        blob = self.objects / digest
        if not blob.exists():
            tmp = blob.with_name(blob.name + ".tmp")
            shutil.copyfile(artifact, tmp)
            os.replace(tmp, blob)
        self.index.entries[relpath] = CacheEntry(
            plaintext_sha256=plaintext_sha256,
            ciphertext_sha256=digest,
            recipient=recipient,
        )

    def forget(self, relpath: str) -> None:
        self.index.entries.pop(relpath, None)

    def retain(self, relpaths: set[str]) -> None:
        """Drop every entry whose path is not in ``relpaths``."""
        for rel in list(self.index.entries):
            if rel not in relpaths:
                del self.index.entries[rel]

    def save(self) -> None:
        """Write the index and prune blobs nothing refers to."""
        self.root.mkdir(mode=0o700, parents=True, exist_ok=True)
        tmp = self.index_path.with_name(INDEX_FILE + ".tmp")
        tmp.write_text(self.index.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, self.index_path)

        if not self.objects.exists():
            return
        live = {e.ciphertext_sha256 for e in self.index.entries.values()}
        pruned = 0
        for blob in self.objects.iterdir():
            if blob.name not in live:
                blob.unlink()
                pruned += 1
        if pruned:
            logger.debug("Pruned %d unreferenced cache object(s)", pruned)
