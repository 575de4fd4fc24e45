"""
Sync orchestrator -- the session state machine.

    mist docs --push  ->  lock -> stage -> encrypt -> mirror up    -> done
    mist docs --pull  ->  lock -> stage -> mirror down -> decrypt  -> done
    mist docs         ->  lock -> stage -> encrypt -> reconcile
                                        -> decrypt what changed    -> done

Plaintext never leaves this machine: only the staging ciphertext tree
is handed to the sync engine. Whatever happens (success, error, Ctrl-C,
SIGTERM) the staging area is removed and the lock released before
``run`` returns. Nothing is retried; a failed run is a final answer.
"""

from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Union

from .backends import GpgBackend
from .cache import CiphertextCache, default_cache_root
from .config import home_from_env
from .engines import Endpoint, RsyncUnisonEngine, SyncEngine, default_archive_root
from .errors import (
    EXIT_IO,
    EXIT_OK,
    LocalTreeError,
    MistError,
    SessionCancelled,
    exit_code_for,
)
from .gateway import EncryptionGateway, plaintext_name
from .models import (
    Configuration,
    Profile,
    SessionState,
    SyncMode,
    SyncResult,
    SyncSession,
)
from .staging import ProfileLock, StagingArea, default_staging_root, staging_root_for

logger = logging.getLogger("mist.orchestrator")

CANCELLED = "cancelled"


@dataclass
class _Tally:
    encrypted: int = 0
    decrypted: int = 0
    changed: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


@contextmanager
def _signals_cancel_session() -> Iterator[None]:
    """Turn SIGTERM and SIGHUP into SessionCancelled for the duration.

    SIGINT already arrives as KeyboardInterrupt. Handlers can only be
    installed from the main thread; elsewhere this is a no-op.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handle(signum, frame):
        raise SessionCancelled(signal.Signals(signum).name)

    previous = {}
    for name in ("SIGTERM", "SIGHUP"):
        sig = getattr(signal, name, None)
        if sig is not None:
            previous[sig] = signal.signal(sig, _handle)
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


class SyncOrchestrator:
    """Drives one profile through Push, Pull, or Sync.

    Collaborators are injectable so tests can run the whole state
    machine against in-memory fakes.
    """

    def __init__(
        self,
        configuration: Configuration,
        gateway: Optional[EncryptionGateway] = None,
        engine: Optional[SyncEngine] = None,
        staging_root: Optional[Path] = None,
        cache_root: Optional[Path] = None,
        home: Optional[Path] = None,
    ):
        """Initialize the orchestrator.

        Args:
            configuration: Loaded profiles. Never modified.
            gateway: Encryption gateway. Defaults to GnuPG per profile.
            engine: Sync engine. Defaults to rsync + unison.
            staging_root: Default staging root for profiles without one.
            cache_root: Root of the per-profile ciphertext caches.
            home: Home directory used to derive the default roots.
        """
        self.configuration = configuration
        self._gateway = gateway
        self._engine = engine
        if staging_root is None or cache_root is None:
            home = home or home_from_env()
        self.home = home
        self.staging_root = Path(staging_root) if staging_root else default_staging_root(home)
        self.cache_root = Path(cache_root) if cache_root else default_cache_root(home)

    def gateway_for(self, profile: Profile) -> EncryptionGateway:
        return self._gateway or EncryptionGateway(GpgBackend(profile.gpg_program))

    @property
    def engine(self) -> SyncEngine:
        if self._engine is None:
            home = self.home or home_from_env()
            self._engine = RsyncUnisonEngine(archive_root=default_archive_root(home))
        return self._engine

    def run(self, profile: Union[str, Profile], mode: Union[str, SyncMode]) -> SyncResult:
        """Run one session to a terminal state.

        Args:
            profile: Profile, or the name of one in the configuration.
            mode: Push, Pull, or Sync.

        Returns:
            SyncResult: ``done``, or ``failed`` with a reason and exit code.

        Raises:
            ProfileNotFoundError: If ``profile`` names no known profile.
        """
        if isinstance(profile, str):
            profile = self.configuration.lookup(profile)
        session = SyncSession(profile=profile, mode=SyncMode(mode))
        tally = _Tally()
        error: Optional[BaseException] = None

        logger.info("Starting %s of profile [%s]", session.mode.value, profile.name)
        try:
            with _signals_cancel_session():
                lock = ProfileLock(staging_root_for(profile, self.staging_root), profile.name)
                with lock:
                    session.staging = StagingArea.acquire(profile, lock.root)
                    with session.staging:
                        self._dispatch(session, tally)
        except (MistError, OSError) as exc:
            error = exc
        except KeyboardInterrupt:
            error = SessionCancelled("SIGINT")

        return self._finish(session, tally, error)

    def _dispatch(self, session: SyncSession, tally: _Tally) -> None:
        steps = {
            SyncMode.PUSH: self._push,
            SyncMode.PULL: self._pull,
            SyncMode.SYNC: self._sync,
        }
        steps[session.mode](session, tally)

    def _enter(self, session: SyncSession, state: SessionState) -> None:
        logger.info("[%s] %s -> %s", session.profile.name, session.state.value, state.value)
        session.advance(state)

    def _cache(self, profile: Profile) -> CiphertextCache:
        return CiphertextCache(self.cache_root / profile.name)

    def _push(self, session: SyncSession, tally: _Tally) -> None:
        profile, staging = session.profile, session.staging
        if not profile.local_path.is_dir():
            raise LocalTreeError(f"Local path {profile.local_path} does not exist; nothing to push")
        gateway = self.gateway_for(profile)
        cache = self._cache(profile)

        self._enter(session, SessionState.STAGING)
        report = gateway.encrypt(profile.local_path, profile.recipient, staging.ciphertext, cache=cache)
        tally.encrypted = len(report.files)

        self._enter(session, SessionState.TRANSPORTING)
        self.engine.mirror(Endpoint(str(staging.ciphertext)), _remote(profile))

        cache.save()
        self._enter(session, SessionState.DONE)

    def _pull(self, session: SyncSession, tally: _Tally) -> None:
        profile, staging = session.profile, session.staging
        gateway = self.gateway_for(profile)
        cache = self._cache(profile)

        self._enter(session, SessionState.TRANSPORTING)
        self.engine.mirror(_remote(profile), Endpoint(str(staging.ciphertext)))

        self._enter(session, SessionState.STAGING)
        gateway.decrypt(
            staging.ciphertext, staging.plaintext, recipient=profile.recipient, cache=cache
        )
        written = gateway.install(staging.plaintext, profile.local_path)
        tally.decrypted = len(written)

        cache.save()
        self._enter(session, SessionState.DONE)

    def _sync(self, session: SyncSession, tally: _Tally) -> None:
        profile, staging = session.profile, session.staging
        try:
            profile.local_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LocalTreeError(f"Cannot create local path {profile.local_path}: {exc}") from exc
        gateway = self.gateway_for(profile)
        cache = self._cache(profile)

        self._enter(session, SessionState.STAGING)
        report = gateway.encrypt(profile.local_path, profile.recipient, staging.ciphertext, cache=cache)
        tally.encrypted = len(report.files)

        self._enter(session, SessionState.RECONCILING)
        remote = _remote(profile)
        try:
            changed = self.engine.reconcile(staging.ciphertext, remote)

            self._enter(session, SessionState.STAGING)
            present = [a for a in changed if (staging.ciphertext / a).is_file()]
            gone = []
            for art in changed:
                if art in present:
                    continue
                try:
                    gone.append(plaintext_name(art))
                except ValueError:
                    logger.warning("Ignoring non-artifact removed by the engine: %s", art)

            gateway.decrypt(
                staging.ciphertext,
                staging.plaintext,
                recipient=profile.recipient,
                only=present,
                cache=cache,
            )
            tally.changed = gateway.install(staging.plaintext, profile.local_path)
            tally.decrypted = len(tally.changed)
            tally.removed = gateway.remove(profile.local_path, gone)
            for rel in gone:
                cache.forget(rel)

            cache.save()
        except BaseException:
            # the remote may now hold changes the local tree never received
            self.engine.forget(staging.ciphertext, remote)
            raise
        self._enter(session, SessionState.DONE)

    def _finish(
        self, session: SyncSession, tally: _Tally, error: Optional[BaseException]
    ) -> SyncResult:
        exit_code = EXIT_OK
        error_kind = None
        if error is not None:
            error_kind = type(error).__name__
            exit_code = EXIT_IO if isinstance(error, OSError) else exit_code_for(error)
            reason = CANCELLED if isinstance(error, SessionCancelled) else str(error)
            session.fail(reason)
            logger.error("[%s] %s failed: %s", session.profile.name, session.mode.value, error)
        else:
            logger.info("[%s] %s done", session.profile.name, session.mode.value)

        return SyncResult(
            profile=session.profile.name,
            mode=session.mode,
            state=session.state,
            reason=session.reason,
            error_kind=error_kind,
            exit_code=exit_code,
            encrypted=tally.encrypted,
            decrypted=tally.decrypted,
            changed=tally.changed,
            removed=tally.removed,
            history=list(session.history),
            started_at=session.started_at,
            finished_at=datetime.now(timezone.utc),
        )


def _remote(profile: Profile) -> Endpoint:
    return Endpoint(profile.remote_path, profile.remote_host)
