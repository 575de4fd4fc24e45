"""
Exception taxonomy for mist.

Every failure a run can end in is one of these. Each family carries the
process exit code the CLI reports, so scripts can tell a broken config
from a broken key from a broken network.
"""

from __future__ import annotations

from typing import Optional

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_USAGE = 2
EXIT_CONFIG = 3
EXIT_ENCRYPTION = 4
EXIT_SYNC = 5
EXIT_IO = 6
EXIT_CANCELLED = 130


class MistError(Exception):
    """Base class for every error mist reports to the user."""

    exit_code = EXIT_UNEXPECTED


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigError(MistError):
    """The configuration could not be loaded or a profile resolved."""

    exit_code = EXIT_CONFIG


class NoFileFoundError(ConfigError):
    """None of the candidate configuration files exist."""

    def __init__(self, candidates: list) -> None:
        self.candidates = [str(c) for c in candidates]
        listed = ", ".join(self.candidates) or "(no candidates)"
        super().__init__(f"No configuration file found. Looked in: {listed}")


class ParseError(ConfigError):
    """The configuration file is not well-formed."""

    def __init__(self, source: str, detail: str) -> None:
        self.source = source
        self.detail = detail
        super().__init__(f"Cannot parse {source}: {detail}")


class DuplicateProfileError(ConfigError):
    """Two sections of one configuration share a profile name."""

    def __init__(self, name: str, source: Optional[str] = None) -> None:
        self.name = name
        self.source = source
        where = f" in {source}" if source else ""
        super().__init__(f"Profile [{name}] is defined more than once{where}")


class MissingFieldError(ConfigError):
    """A profile lacks a required field."""

    def __init__(self, profile: str, field: str) -> None:
        self.profile = profile
        self.field = field
        super().__init__(f"Profile [{profile}] is missing '{field}'")


class InvalidFieldError(ConfigError):
    """A profile field is present but unusable."""

    def __init__(self, profile: str, field: str, detail: str) -> None:
        self.profile = profile
        self.field = field
        self.detail = detail
        super().__init__(f"Profile [{profile}] has an invalid '{field}': {detail}")


class ProfileNotFoundError(ConfigError):
    """No profile with the requested name exists."""

    def __init__(self, name: str, available: Optional[list[str]] = None) -> None:
        self.name = name
        self.available = sorted(available or [])
        hint = f" (available: {', '.join(self.available)})" if self.available else ""
        super().__init__(f"Profile [{name}] not found{hint}")


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------


class EncryptionError(MistError):
    """The encryption backend could not produce or read ciphertext."""

    exit_code = EXIT_ENCRYPTION

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        self.path = path
        super().__init__(message)


class BackendUnavailableError(EncryptionError):
    """The encryption backend is not installed or cannot be started."""

    def __init__(self, backend: str, detail: str = "") -> None:
        self.backend = backend
        suffix = f": {detail}" if detail else ""
        super().__init__(f"Encryption backend '{backend}' is unavailable{suffix}")


class KeyNotFoundError(EncryptionError):
    """The recipient does not resolve to a usable public key."""

    def __init__(self, recipient: str) -> None:
        self.recipient = recipient
        super().__init__(f"No usable public key for recipient '{recipient}'")


class UnsupportedFileTypeError(EncryptionError):
    """A tree contains a symlink or special file."""

    def __init__(self, path: str, kind: str = "special file") -> None:
        self.kind = kind
        super().__init__(f"Refusing to process {kind}: {path}", path=path)


class EncryptFailedError(EncryptionError):
    """The backend failed to encrypt one file."""

    def __init__(self, path: str, detail: str = "") -> None:
        self.detail = detail
        suffix = f": {detail}" if detail else ""
        super().__init__(f"Encryption failed for {path}{suffix}", path=path)


class DecryptFailedError(EncryptionError):
    """The backend failed to decrypt one artifact."""

    def __init__(self, path: str, detail: str = "") -> None:
        self.detail = detail
        suffix = f": {detail}" if detail else ""
        super().__init__(f"Decryption failed for {path}{suffix}", path=path)


# ---------------------------------------------------------------------------
# Sync engine
# ---------------------------------------------------------------------------


class SyncError(MistError):
    """The sync engine or its transport failed."""

    exit_code = EXIT_SYNC


class TransportFailureError(SyncError):
    """The SSH transport could not reach the remote side."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Transport failure: {detail}")


class EngineFailureError(SyncError):
    """The sync engine exited unsuccessfully."""

    def __init__(self, engine: str, returncode: Optional[int], detail: str = "") -> None:
        self.engine = engine
        self.returncode = returncode
        self.detail = detail
        code = f" (exit {returncode})" if returncode is not None else ""
        suffix = f": {detail}" if detail else ""
        super().__init__(f"{engine} failed{code}{suffix}")


class AlreadyRunningError(SyncError):
    """Another session holds the profile lock."""

    def __init__(self, profile: str, pid: Optional[int] = None) -> None:
        self.profile = profile
        self.pid = pid
        owner = f" by pid {pid}" if pid else ""
        super().__init__(f"Profile [{profile}] is already being synced{owner}")


# ---------------------------------------------------------------------------
# Local I/O
# ---------------------------------------------------------------------------


class StagingError(MistError):
    """The staging area could not be created."""

    exit_code = EXIT_IO


class LocalTreeError(MistError):
    """The local plaintext directory is missing or unusable."""

    exit_code = EXIT_IO


class SessionCancelled(MistError):
    """The session was interrupted by a signal."""

    exit_code = EXIT_CANCELLED

    def __init__(self, signal_name: str = "SIGINT") -> None:
        self.signal_name = signal_name
        super().__init__(f"Cancelled by {signal_name}")


def exit_code_for(exc: BaseException) -> int:
    """Map an exception to the CLI exit code for its family.

    Args:
        exc: The exception that ended a run.

    Returns:
        int: Process exit code.
    """
    if isinstance(exc, MistError):
        return exc.exit_code
    if isinstance(exc, KeyboardInterrupt):
        return EXIT_CANCELLED
    return EXIT_UNEXPECTED
