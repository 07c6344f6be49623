"""
tests/test_session_authenticator.py -- Tests for auth/session.SessionAuthenticator.

Covers:
  - successful login opens a live session and resets the failure counter
  - unknown handle, wrong password and inactive account give INVALID_CREDENTIALS
  - lockout after max_failed_attempts; a locked account refuses the right password,
    including a lock that lands while the password is being verified
  - lockout window lapse unlocks automatically; administrative locks never lapse
  - session expiry and logout
  - remember-me tokens: hashed at rest, 30-day window, cleared by logout
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from auth.models import AuthError, Session
from auth.session import SessionAuthenticator
from auth.tokens import hash_token

PASSWORD = "Passw0rd-x"


def _login(authenticator: SessionAuthenticator, handle: str = "alice", password: str = PASSWORD) -> Session:
    result = authenticator.authenticate(handle, password)
    assert result.ok, result.error
    return result.session


# ---------------------------------------------------------------------------
# authenticate()
# ---------------------------------------------------------------------------


class TestAuthenticate:
    def test_success_opens_session(self, authenticator, make_account, clock) -> None:
        account = make_account("alice")
        result = authenticator.authenticate("alice", PASSWORD)
        assert result.ok
        assert result.error is None
        assert result.session.account_id == account.id
        assert result.session.expires_at == clock.now + timedelta(seconds=3600)
        assert authenticator.get_session(result.session.session_id) == result.session

    def test_handle_lookup_ignores_case(self, authenticator, make_account) -> None:
        make_account("Alice")
        assert authenticator.authenticate("ALICE", PASSWORD).ok

    def test_session_id_is_stored_hashed(self, authenticator, store, make_account) -> None:
        make_account("alice")
        session = _login(authenticator)
        assert store.get_session(session.session_id) is None
        assert store.get_session(hash_token(session.session_id)) is not None

    def test_unknown_handle(self, authenticator) -> None:
        result = authenticator.authenticate("ghost", PASSWORD)
        assert not result.ok
        assert result.error is AuthError.INVALID_CREDENTIALS

    def test_wrong_password_same_error_as_unknown_handle(self, authenticator, make_account) -> None:
        make_account("alice")
        result = authenticator.authenticate("alice", "Wrong-pass1")
        assert result.error is AuthError.INVALID_CREDENTIALS

    def test_inactive_account_cannot_log_in(self, authenticator, make_account) -> None:
        make_account("alice", active=False)
        assert authenticator.authenticate("alice", PASSWORD).error is AuthError.INVALID_CREDENTIALS

    def test_success_resets_failed_attempts(self, authenticator, store, make_account, clock) -> None:
        make_account("alice")
        authenticator.authenticate("alice", "Wrong-pass1")
        authenticator.authenticate("alice", "Wrong-pass1")
        assert store.find_by_handle("alice").failed_attempts == 2

        _login(authenticator)
        account = store.find_by_handle("alice")
        assert account.failed_attempts == 0
        assert account.last_login == clock.now


# ---------------------------------------------------------------------------
# Lockout
# ---------------------------------------------------------------------------


class TestLockout:
    def test_locks_after_max_failures(self, authenticator, store, make_account) -> None:
        """max_failed_attempts is 3 in the fixture."""
        make_account("alice")
        for _ in range(3):
            assert authenticator.authenticate("alice", "Wrong-pass1").error is AuthError.INVALID_CREDENTIALS
        assert store.find_by_handle("alice").account_locked is True

        result = authenticator.authenticate("alice", PASSWORD)
        assert result.error is AuthError.LOCKED_OUT

    def test_locked_account_with_correct_password(self, authenticator, store, make_account) -> None:
        account = make_account("alice")
        store.lock(account.id)
        assert authenticator.authenticate("alice", PASSWORD).error is AuthError.LOCKED_OUT

    def test_locked_out_does_not_count_as_failure(self, authenticator, store, make_account) -> None:
        account = make_account("alice")
        store.lock(account.id)
        authenticator.authenticate("alice", "Wrong-pass1")
        assert store.get_by_id(account.id).failed_attempts == 0

    def test_lapsed_window_unlocks(self, authenticator, store, make_account, clock) -> None:
        make_account("alice")
        for _ in range(3):
            authenticator.authenticate("alice", "Wrong-pass1")

        clock.advance(seconds=899)
        assert authenticator.authenticate("alice", PASSWORD).error is AuthError.LOCKED_OUT

        clock.advance(seconds=1)
        assert authenticator.authenticate("alice", PASSWORD).ok
        account = store.find_by_handle("alice")
        assert (account.account_locked, account.failed_attempts) == (False, 0)

    def test_wrong_password_after_lapse_counts_from_zero(self, authenticator, store, make_account, clock) -> None:
        make_account("alice")
        for _ in range(3):
            authenticator.authenticate("alice", "Wrong-pass1")
        clock.advance(seconds=900)
        authenticator.authenticate("alice", "Wrong-pass1")
        account = store.find_by_handle("alice")
        assert (account.account_locked, account.failed_attempts) == (False, 1)

    def test_lockout_during_verification_wins(self, authenticator, store, make_account, clock, monkeypatch) -> None:
        """Guesses that lock the account after it was read still refuse the right password."""
        account = make_account("alice")
        read = store.find_by_handle

        def read_then_lock(handle: str):
            found = read(handle)
            for _ in range(3):
                store.record_failed_attempt(account.id, 3, clock.now)
            return found

        monkeypatch.setattr(store, "find_by_handle", read_then_lock)
        result = authenticator.authenticate("alice", PASSWORD)
        assert result.error is AuthError.LOCKED_OUT
        assert result.session is None

        loaded = store.get_by_id(account.id)
        assert (loaded.account_locked, loaded.failed_attempts) == (True, 3)
        assert loaded.last_login is None

    def test_administrative_lock_never_lapses(self, authenticator, store, make_account, clock) -> None:
        account = make_account("alice")
        store.lock(account.id)
        clock.advance(days=365)
        assert authenticator.authenticate("alice", PASSWORD).error is AuthError.LOCKED_OUT

    def test_zero_window_requires_admin_unlock(self, store, codec, make_account, clock) -> None:
        strict = SessionAuthenticator(store, codec, max_failed_attempts=1, lockout_seconds=0, clock=clock)
        account = make_account("alice")
        strict.authenticate("alice", "Wrong-pass1")
        clock.advance(days=30)
        assert strict.authenticate("alice", PASSWORD).error is AuthError.LOCKED_OUT

        store.unlock(account.id)
        assert strict.authenticate("alice", PASSWORD).ok


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    def test_expired_session_is_gone(self, authenticator, store, make_account, clock) -> None:
        make_account("alice")
        session = _login(authenticator)
        clock.advance(seconds=3599)
        assert authenticator.get_session(session.session_id) is not None
        clock.advance(seconds=1)
        assert authenticator.get_session(session.session_id) is None
        assert store.get_session(hash_token(session.session_id)) is None

    def test_unknown_session_id(self, authenticator) -> None:
        assert authenticator.get_session("not-a-session") is None

    def test_logout_ends_session(self, authenticator, make_account) -> None:
        make_account("alice")
        session = _login(authenticator)
        authenticator.logout(session)
        assert authenticator.get_session(session.session_id) is None


# ---------------------------------------------------------------------------
# Remember-me
# ---------------------------------------------------------------------------


class TestRememberMe:
    def test_issue_returns_raw_value_and_stores_hash(self, authenticator, store, make_account, clock) -> None:
        make_account("alice")
        token = authenticator.issue_remember_token(_login(authenticator))
        assert token.value
        assert token.value.isalnum()
        assert token.token_hash == hash_token(token.value)
        assert token.expires_at == clock.now + timedelta(days=30)

        stored = store.get_remember_token(token.token_hash)
        assert stored.handle == "alice"
        assert stored.value is None

    def test_resolves_to_handle(self, authenticator, make_account) -> None:
        make_account("alice")
        token = authenticator.issue_remember_token(_login(authenticator))
        assert authenticator.resolve_remember_token(token.value) == "alice"

    def test_thirty_day_window_boundary(self, authenticator, make_account, clock) -> None:
        make_account("alice")
        token = authenticator.issue_remember_token(_login(authenticator))

        clock.advance(days=30, seconds=-1)
        assert authenticator.resolve_remember_token(token.value) == "alice"

        clock.advance(seconds=2)
        assert authenticator.resolve_remember_token(token.value) is None

    def test_expired_token_row_is_deleted(self, authenticator, store, make_account, clock) -> None:
        make_account("alice")
        token = authenticator.issue_remember_token(_login(authenticator))
        clock.advance(days=31)
        authenticator.resolve_remember_token(token.value)
        assert store.get_remember_token(token.token_hash) is None

    @pytest.mark.parametrize("value", [None, "", "alice", "forged-token-value"])
    def test_unknown_values_resolve_to_none(self, authenticator, make_account, value) -> None:
        """A bare handle is not a remember-me token."""
        make_account("alice")
        authenticator.issue_remember_token(_login(authenticator))
        assert authenticator.resolve_remember_token(value) is None

    def test_logout_clears_remember_tokens(self, authenticator, make_account) -> None:
        make_account("alice")
        session = _login(authenticator)
        first = authenticator.issue_remember_token(session)
        second = authenticator.issue_remember_token(session)
        authenticator.logout(session)
        assert authenticator.resolve_remember_token(first.value) is None
        assert authenticator.resolve_remember_token(second.value) is None

    def test_requires_live_session(self, authenticator, make_account) -> None:
        make_account("alice")
        session = _login(authenticator)
        authenticator.logout(session)
        with pytest.raises(PermissionError):
            authenticator.issue_remember_token(session)
