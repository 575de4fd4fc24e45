"""
Encryption gateway -- whole trees in, whole trees out.

Wraps an EncryptionBackend so the orchestrator can think in trees
instead of files. Every regular file ``a/b.txt`` becomes the artifact
``a/b.txt.gpg`` at the same relative path. Directory structure is kept;
symlinks and special files are refused rather than silently dropped.

A tree operation is all-or-nothing: output is assembled in a
``.partial`` sibling and only renamed into place once every file
succeeded. The gateway never deletes its inputs.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from .backends import EncryptionBackend
from .cache import CiphertextCache, sha256_file
from .errors import (
    BackendUnavailableError,
    DecryptFailedError,
    EncryptFailedError,
    LocalTreeError,
    UnsupportedFileTypeError,
)

logger = logging.getLogger("mist.gateway")

ARTIFACT_SUFFIX = ".gpg"
PARTIAL_SUFFIX = ".partial"


def artifact_name(relpath: str) -> str:
    """Relative path of the artifact for a plaintext file."""
    return relpath + ARTIFACT_SUFFIX


def plaintext_name(artifact: str) -> str:
    """Relative path of the plaintext for an artifact.

    Raises:
        ValueError: If ``artifact`` is not a ciphertext artifact name.
    """
    if not artifact.endswith(ARTIFACT_SUFFIX) or artifact == ARTIFACT_SUFFIX:
        raise ValueError(f"not a ciphertext artifact: {artifact}")
    return artifact[: -len(ARTIFACT_SUFFIX)]


@dataclass
class EncryptReport:
    """What an encrypt pass produced."""

    tree: Path
    files: list[str] = field(default_factory=list)
    encrypted: int = 0
    reused: int = 0


@dataclass
class DecryptReport:
    """What a decrypt pass produced."""

    tree: Path
    files: list[str] = field(default_factory=list)


def scan_tree(root: Path) -> tuple[list[str], list[str]]:
    """List directories and regular files under a tree.

    Args:
        root: Tree to scan.

    Returns:
        (directories, files) as sorted POSIX relative paths.

    Raises:
        UnsupportedFileTypeError: On a symlink or special file.
    """
    dirs: list[str] = []
    files: list[str] = []
    for current, dirnames, filenames in os.walk(root):
        here = Path(current)
        for name in dirnames:
            path = here / name
            rel = path.relative_to(root).as_posix()
            if path.is_symlink():
                raise UnsupportedFileTypeError(rel, "symlink")
            dirs.append(rel)
        for name in filenames:
            path = here / name
            rel = path.relative_to(root).as_posix()
            mode = path.lstat().st_mode
            if stat.S_ISLNK(mode):
                raise UnsupportedFileTypeError(rel, "symlink")
            if not stat.S_ISREG(mode):
                raise UnsupportedFileTypeError(rel, "special file")
            files.append(rel)
    return sorted(dirs), sorted(files)


class EncryptionGateway:
    """Tree-level encrypt/decrypt on top of an EncryptionBackend."""

    def __init__(self, backend: EncryptionBackend):
        self.backend = backend

    def _check_backend(self) -> None:
        if not self.backend.available():
            raise BackendUnavailableError(self.backend.name)

    def encrypt(
        self,
        source_tree: Path,
        recipient: str,
        dest: Path,
        cache: Optional[CiphertextCache] = None,
    ) -> EncryptReport:
        """Encrypt every regular file under ``source_tree`` into ``dest``.

        Args:
            source_tree: Plaintext directory.
            recipient: Key the artifacts are encrypted to.
            dest: Where the ciphertext tree should appear. Must not exist.
            cache: Reuse previous ciphertext for unchanged files.

        Returns:
            EncryptReport: The finished tree and per-file counts.

        Raises:
            LocalTreeError: If ``source_tree`` is not a directory.
            UnsupportedFileTypeError: On symlinks or special files.
            KeyNotFoundError: If the recipient has no usable key.
            EncryptFailedError: If any file fails; nothing is left at ``dest``.
        """
        source_tree = Path(source_tree)
        if not source_tree.is_dir():
            raise LocalTreeError(f"Local path {source_tree} is not a directory")

        self._check_backend()
        self.backend.ensure_recipient(recipient)

        # refuse bad trees before producing a single artifact
        dirs, files = scan_tree(source_tree)

        partial = _fresh_partial(dest)
        report = EncryptReport(tree=Path(dest))
        try:
            for rel in dirs:
                (partial / rel).mkdir(parents=True, exist_ok=True)

            for rel in files:
                src = source_tree / rel
                out = partial / artifact_name(rel)
                out.parent.mkdir(parents=True, exist_ok=True)

                digest = sha256_file(src) if cache is not None else None
                cached = cache.lookup(rel, digest, recipient) if cache is not None else None
                if cached is not None:
                    shutil.copyfile(cached, out)
                    report.reused += 1
                else:
                    try:
                        self.backend.encrypt_file(src, out, recipient)
                    except EncryptFailedError as exc:
                        raise EncryptFailedError(rel, exc.detail) from exc
                    if cache is not None:
                        cache.store(rel, digest, recipient, out)
                    report.encrypted += 1
                report.files.append(rel)
        except BaseException:
            shutil.rmtree(partial, ignore_errors=True)
            raise

        os.replace(partial, dest)
        if cache is not None:
            cache.retain(set(files))

        logger.info(
            "Encrypted %s -> %s (%d encrypted, %d reused)",
            source_tree, dest, report.encrypted, report.reused,
        )
        return report

    def decrypt(
        self,
        ciphertext_tree: Path,
        dest: Path,
        recipient: Optional[str] = None,
        only: Optional[Iterable[str]] = None,
        cache: Optional[CiphertextCache] = None,
    ) -> DecryptReport:
        """Decrypt artifacts under ``ciphertext_tree`` into ``dest``.

        Args:
            ciphertext_tree: Tree of ``.gpg`` artifacts.
            dest: Where the plaintext tree should appear. Must not exist.
            recipient: Recipient to record in the cache for these artifacts.
            only: Artifact paths to decrypt. None decrypts the whole tree.
                Directories are recreated either way.
            cache: Remember the artifacts so the next push reuses them.

        Returns:
            DecryptReport: The finished tree and the plaintext paths in it.

        Raises:
            DecryptFailedError: Naming the first artifact that failed.
            UnsupportedFileTypeError: On symlinks or special files.
        """
        ciphertext_tree = Path(ciphertext_tree)
        self._check_backend()

        dirs, artifacts = scan_tree(ciphertext_tree) if ciphertext_tree.is_dir() else ([], [])
        if only is not None:
            wanted = set(only)
            artifacts = [a for a in artifacts if a in wanted]

        partial = _fresh_partial(dest)
        report = DecryptReport(tree=Path(dest))
        try:
            for rel in dirs:
                (partial / rel).mkdir(parents=True, exist_ok=True)

            for art in artifacts:
                try:
                    rel = plaintext_name(art)
                except ValueError:
                    raise DecryptFailedError(art, "not a ciphertext artifact") from None
                src = ciphertext_tree / art
                out = partial / rel
                out.parent.mkdir(parents=True, exist_ok=True)
                try:
                    self.backend.decrypt_file(src, out)
                except DecryptFailedError as exc:
                    raise DecryptFailedError(art, exc.detail) from exc
                if cache is not None and recipient:
                    cache.store(rel, sha256_file(out), recipient, src)
                report.files.append(rel)
        except BaseException:
            # plaintext must not outlive a failed pass
            shutil.rmtree(partial, ignore_errors=True)
            raise

        os.replace(partial, dest)
        logger.info("Decrypted %d artifact(s) from %s", len(report.files), ciphertext_tree)
        return report

    def install(self, plaintext_tree: Path, local_path: Path) -> list[str]:
        """Move a decrypted tree into the local directory.

        Same-named local files are overwritten; local files the tree
        does not mention are left alone.

        Args:
            plaintext_tree: Output of :meth:`decrypt`.
            local_path: The profile's local directory.

        Returns:
            list[str]: Relative paths written.

        Raises:
            LocalTreeError: If a file would replace a local directory.
        """
        local_path = Path(local_path)
        try:
            local_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LocalTreeError(f"Cannot create local path {local_path}: {exc}") from exc

        dirs, files = scan_tree(plaintext_tree)
        for rel in dirs:
            target = local_path / rel
            if target.exists() and not target.is_dir():
                raise LocalTreeError(f"{target} exists and is not a directory")
            target.mkdir(parents=True, exist_ok=True)

        for rel in files:
            target = local_path / rel
            if target.is_dir() and not target.is_symlink():
                raise LocalTreeError(f"{target} is a directory, cannot overwrite with a file")
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(plaintext_tree / rel), str(target))

        logger.info("Installed %d file(s) into %s", len(files), local_path)
        return files

    def remove(self, local_path: Path, relpaths: Iterable[str]) -> list[str]:
        """Delete local plaintext files, pruning directories left empty.

        Args:
            local_path: The profile's local directory.
            relpaths: Plaintext paths relative to ``local_path``.

        Returns:
            list[str]: Paths that were actually removed.
        """
        local_path = Path(local_path)
        removed = []
        for rel in sorted(set(relpaths)):
            target = local_path / rel
            if not (target.is_file() or target.is_symlink()):
                continue
            target.unlink()
            removed.append(rel)
            parent = target.parent
            while parent != local_path and local_path in parent.parents:
                try:
                    parent.rmdir()
                except OSError:
                    break
                parent = parent.parent
        if removed:
            logger.info("Removed %d file(s) from %s", len(removed), local_path)
        return removed


def _fresh_partial(dest: Path) -> Path:
    dest = Path(dest)
    partial = dest.with_name(dest.name + PARTIAL_SUFFIX)
    dest.parent.mkdir(parents=True, exist_ok=True)
    if partial.exists():
        shutil.rmtree(partial)
    partial.mkdir(mode=0o700)
    return partial
