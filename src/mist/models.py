"""
Data models for profiles, configurations, and sync sessions.

Profiles and configurations are immutable once loaded. A SyncSession is
the mutable runtime state of a single invocation and is never persisted;
a SyncResult is what that invocation reports when it ends.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import EXIT_OK, ProfileNotFoundError

if TYPE_CHECKING:
    from .staging import StagingArea

REQUIRED_FIELDS = ("local_path", "remote_host", "remote_path", "recipient")


class SyncMode(str, Enum):
    """Direction of a run."""

    PUSH = "push"
    PULL = "pull"
    SYNC = "sync"


class SessionState(str, Enum):
    """Lifecycle state of a sync session."""

    IDLE = "idle"
    STAGING = "staging"
    TRANSPORTING = "transporting"
    RECONCILING = "reconciling"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset(
        {SessionState.STAGING, SessionState.TRANSPORTING, SessionState.FAILED}
    ),
    SessionState.STAGING: frozenset(
        {
            SessionState.TRANSPORTING,
            SessionState.RECONCILING,
            SessionState.DONE,
            SessionState.FAILED,
        }
    ),
    SessionState.TRANSPORTING: frozenset(
        {SessionState.STAGING, SessionState.DONE, SessionState.FAILED}
    ),
    SessionState.RECONCILING: frozenset(
        {SessionState.STAGING, SessionState.DONE, SessionState.FAILED}
    ),
    SessionState.DONE: frozenset(),
    SessionState.FAILED: frozenset(),
}


class Profile(BaseModel):
    """One local/remote directory pairing and its encryption recipient.

    Attributes:
        name: Unique profile name within a configuration.
        local_path: Plaintext directory on this machine.
        remote_host: SSH destination holding the ciphertext copy.
        remote_path: Directory on the remote host holding ciphertext.
        recipient: Key id, fingerprint, or email to encrypt to.
        staging_path: Staging root. None selects the default root.
        gpg_program: Alternate GnuPG executable.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    local_path: Path
    remote_host: str
    remote_path: str
    recipient: str
    staging_path: Optional[Path] = None
    gpg_program: Optional[str] = None

    @field_validator("local_path", "staging_path", mode="before")
    @classmethod
    def _expand_user(cls, value: Any) -> Any:
        if isinstance(value, (str, Path)):
            return Path(value).expanduser()
        return value

    @field_validator("name", "remote_host", "remote_path", "recipient")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value

    @model_validator(mode="after")
    def _staging_is_separate(self) -> "Profile":
        if self.staging_path is None:
            return self
        staging = _normalize(self.staging_path)
        local = _normalize(self.local_path)
        if staging == local:
            raise ValueError("staging_path must differ from local_path")
        if local in staging.parents:
            raise ValueError("staging_path must not be inside local_path")
        if staging == Path(self.remote_path):
            raise ValueError("staging_path must differ from remote_path")
        return self

    @property
    def remote(self) -> str:
        """The remote location as ``host:path``."""
        return f"{self.remote_host}:{self.remote_path}"


class Configuration(BaseModel):
    """A loaded set of profiles, keyed by name.

    Produced once and handed explicitly to whoever needs it.
    """

    model_config = ConfigDict(frozen=True)

    source: Optional[Path] = None
    profiles: dict[str, Profile] = Field(default_factory=dict)

    def lookup(self, name: str) -> Profile:
        """Find a profile by exact, case-sensitive name.

        Args:
            name: Profile name.

        Returns:
            Profile: The matching profile.

        Raises:
            ProfileNotFoundError: If no profile has that name.
        """
        try:
            return self.profiles[name]
        except KeyError:
            raise ProfileNotFoundError(name, self.names()) from None

    def names(self) -> list[str]:
        """Profile names in sorted order."""
        return sorted(self.profiles)


@dataclass
class SyncSession:
    """Runtime state of one invocation.

    Owned exclusively by the orchestrator for the duration of a run.
    """

    profile: Profile
    mode: SyncMode
    staging: Optional["StagingArea"] = None
    state: SessionState = SessionState.IDLE
    reason: Optional[str] = None
    history: list[SessionState] = field(default_factory=lambda: [SessionState.IDLE])
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def advance(self, state: SessionState) -> None:
        """Move to the next state.

        Args:
            state: Target state.

        Raises:
            RuntimeError: If the transition is not part of the state machine.
        """
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal session transition {self.state.value} -> {state.value}"
            )
        self.state = state
        self.history.append(state)

    def fail(self, reason: str) -> None:
        """Enter the failed state, keeping the first recorded reason."""
        if self.state is SessionState.FAILED:
            return
        self.advance(SessionState.FAILED)
        self.reason = reason


class SyncResult(BaseModel):
    """Terminal outcome of a run."""

    profile: str
    mode: SyncMode
    state: SessionState
    reason: Optional[str] = None
    error_kind: Optional[str] = None
    exit_code: int = EXIT_OK
    encrypted: int = 0
    decrypted: int = 0
    changed: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    history: list[SessionState] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.state is SessionState.DONE


def _normalize(path: Path) -> Path:
    """Absolute, symlink-free form of a path that may not exist yet."""
    return Path(path).expanduser().resolve(strict=False)
