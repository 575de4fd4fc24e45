"""
Encryption backends -- who turns plaintext into ciphertext.

The gateway only needs four capabilities: is the backend there, does
the recipient resolve, encrypt one file, decrypt one file. GnuPG is the
default; anything that can do those four things can stand in for it.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from .errors import (
    BackendUnavailableError,
    DecryptFailedError,
    EncryptFailedError,
    KeyNotFoundError,
)

logger = logging.getLogger("mist.backends")

DEFAULT_TIMEOUT = 300


class EncryptionBackend(ABC):
    """Abstract public-key encryption backend."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name."""

    @abstractmethod
    def available(self) -> bool:
        """Check if the backend can be used at all."""

    @abstractmethod
    def ensure_recipient(self, recipient: str) -> None:
        """Verify the recipient resolves to a usable public key.

        Raises:
            KeyNotFoundError: If no key matches.
            BackendUnavailableError: If the backend cannot be queried.
        """

    @abstractmethod
    def encrypt_file(self, source: Path, dest: Path, recipient: str) -> None:
        """Encrypt one file to the recipient.

        Raises:
            EncryptFailedError: If the backend rejects the file.
        """

    @abstractmethod
    def decrypt_file(self, source: Path, dest: Path) -> None:
        """Decrypt one artifact with whatever private key matches.

        Raises:
            DecryptFailedError: Wrong key, corrupted input, or no secret key.
        """


class GpgBackend(EncryptionBackend):
    """GnuPG via its command line.

    Every call runs ``gpg --batch`` so nothing ever prompts; the agent
    supplies passphrases for secret keys.
    """

    def __init__(self, program: Optional[str] = None, timeout: int = DEFAULT_TIMEOUT):
        self.program = program or "gpg"
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "gpg"

    def available(self) -> bool:
        return shutil.which(self.program) is not None

    def ensure_recipient(self, recipient: str) -> None:
        try:
            result = self._run(["--list-keys", "--with-colons", "--", recipient])
        except subprocess.TimeoutExpired:
            raise BackendUnavailableError(self.name, "key listing timed out") from None
        if result.returncode != 0:
            logger.debug("gpg --list-keys %s: %s", recipient, result.stderr.strip())
            raise KeyNotFoundError(recipient)

        # an expired or revoked key still lists, but cannot encrypt
        usable = any(
            line.startswith("pub:") and line.split(":")[1] not in ("e", "r")
            for line in result.stdout.splitlines()
        )
        if not usable:
            raise KeyNotFoundError(recipient)

    def encrypt_file(self, source: Path, dest: Path, recipient: str) -> None:
        cmd = [
            "--yes", "--trust-model", "always",
            "--encrypt", "--recipient", recipient,
            "--output", str(dest), str(source),
        ]
        try:
            result = self._run(cmd)
        except subprocess.TimeoutExpired:
            raise EncryptFailedError(str(source), "gpg timed out") from None
        if result.returncode != 0:
            detail = _last_line(result.stderr)
            if "No public key" in result.stderr or "unusable public key" in result.stderr:
                raise KeyNotFoundError(recipient)
            raise EncryptFailedError(str(source), detail)

    def decrypt_file(self, source: Path, dest: Path) -> None:
        cmd = ["--yes", "--decrypt", "--output", str(dest), str(source)]
        try:
            result = self._run(cmd)
        except subprocess.TimeoutExpired:
            raise DecryptFailedError(str(source), "gpg timed out") from None
        if result.returncode != 0:
            raise DecryptFailedError(str(source), _last_line(result.stderr))

    def _run(self, args: list[str]) -> subprocess.CompletedProcess:
        if not self.available():
            raise BackendUnavailableError(self.name, f"'{self.program}' not found in PATH")
        try:
            return subprocess.run(
                [self.program, "--batch", *args],
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except OSError as exc:
            raise BackendUnavailableError(self.name, str(exc)) from exc


def _last_line(text: str) -> str:
    lines = [line for line in text.strip().splitlines() if line.strip()]
    return lines[-1] if lines else ""
