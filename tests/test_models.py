"""Tests for profiles, configurations, and the session state machine."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from mist.models import (
    Configuration,
    Profile,
    SessionState,
    SyncMode,
    SyncResult,
    SyncSession,
)


def _profile(**overrides) -> Profile:
    fields = {
        "name": "docs",
        "local_path": "/home/u/docs",
        "remote_host": "host",
        "remote_path": "/remote/docs",
        "recipient": "KEYID",
    }
    fields.update(overrides)
    return Profile(**fields)


class TestProfile:
    """Tests for the Profile model."""

    def test_profile_is_frozen(self):
        profile = _profile()
        with pytest.raises(ValidationError):
            profile.recipient = "OTHER"

    def test_staging_must_differ_from_remote_path(self):
        with pytest.raises(ValidationError):
            _profile(staging_path="/remote/docs")

    def test_separate_staging_is_fine(self):
        profile = _profile(staging_path="/var/tmp/mist")
        assert profile.staging_path == Path("/var/tmp/mist")

    def test_blank_recipient_rejected(self):
        with pytest.raises(ValidationError):
            _profile(recipient="")


class TestConfiguration:
    """Tests for the Configuration container."""

    def test_names_sorted(self):
        config = Configuration(
            profiles={"b": _profile(name="b"), "a": _profile(name="a")}
        )
        assert config.names() == ["a", "b"]

    def test_lookup_returns_same_profile(self):
        profile = _profile()
        config = Configuration(profiles={"docs": profile})
        assert config.lookup("docs") is profile


class TestSyncSession:
    """Tests for the session state machine."""

    def test_starts_idle(self):
        session = SyncSession(profile=_profile(), mode=SyncMode.PUSH)
        assert session.state is SessionState.IDLE
        assert session.history == [SessionState.IDLE]

    def test_push_path(self):
        session = SyncSession(profile=_profile(), mode=SyncMode.PUSH)
        for state in (SessionState.STAGING, SessionState.TRANSPORTING, SessionState.DONE):
            session.advance(state)
        assert session.history[-1] is SessionState.DONE
        with pytest.raises(RuntimeError):
            session.advance(SessionState.STAGING)

    def test_sync_path_revisits_staging(self):
        session = SyncSession(profile=_profile(), mode=SyncMode.SYNC)
        for state in (
            SessionState.STAGING,
            SessionState.RECONCILING,
            SessionState.STAGING,
            SessionState.DONE,
        ):
            session.advance(state)
        assert session.state is SessionState.DONE

    def test_illegal_transition(self):
        session = SyncSession(profile=_profile(), mode=SyncMode.PUSH)
        with pytest.raises(RuntimeError, match="idle -> reconciling"):
            session.advance(SessionState.RECONCILING)

    def test_terminal_states_are_final(self):
        session = SyncSession(profile=_profile(), mode=SyncMode.PUSH)
        session.fail("boom")
        with pytest.raises(RuntimeError):
            session.advance(SessionState.STAGING)

    def test_fail_keeps_first_reason(self):
        session = SyncSession(profile=_profile(), mode=SyncMode.PULL)
        session.advance(SessionState.TRANSPORTING)
        session.fail("first")
        session.fail("second")
        assert session.reason == "first"
        assert session.history.count(SessionState.FAILED) == 1


class TestSyncResult:
    def test_ok(self):
        result = SyncResult(profile="docs", mode=SyncMode.SYNC, state=SessionState.DONE)
        assert result.ok
        failed = result.model_copy(update={"state": SessionState.FAILED})
        assert not failed.ok
