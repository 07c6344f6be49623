"""
auth/session.py -- Login, lockout, sessions and remember-me tokens.

SessionAuthenticator is the only component that changes login state:
  Anonymous -> authenticate() -> Authenticated (a Session exists)
  Authenticated -> logout() / expiry -> Anonymous
  repeated failures -> LockedOut, until the lockout window passes or an
  administrator unlocks the account.

Everything it needs is passed in: the store, the password codec, the policy
numbers and a clock. Nothing is read from ambient request state, so the HTTP
layer, the CLI and the tests all drive it the same way.

Security:
  [C1] Unknown and inactive handles still run one password verification
       against a dummy digest, so response time does not reveal whether an
       account exists. The outcome is INVALID_CREDENTIALS for both, the same
       as a wrong password.
  A remember-me token only ever resolves to a handle. It never produces a
  Session; the client still has to log in.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from auth.models import AuthError, AuthResult, RememberToken, Session
from auth.passwords import URLSAFE_ALPHABET, PasswordCodec
from auth.store import CredentialStore
from auth.tokens import hash_token, remember_expiry
from core.config import Settings, get_settings

logger = logging.getLogger("adminconsole.auth")

REMEMBER_TOKEN_LENGTH = 48


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionAuthenticator:
    """Credential verification plus session and remember-me lifecycle.

    Usage:
        authn = SessionAuthenticator(store, PasswordCodec.from_settings())
        result = authn.authenticate("alice", "S3cret-pass")
        if result.ok:
            token = authn.issue_remember_token(result.session)
        authn.logout(result.session)
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: PasswordCodec,
        *,
        max_failed_attempts: int = 5,
        lockout_seconds: int = 900,
        session_seconds: int = 3600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.max_failed_attempts = max_failed_attempts
        self.lockout_seconds = lockout_seconds
        self.session_seconds = session_seconds
        self.clock = clock
        # Timing equalization [C1]. Computed once, with this codec's cost
        # parameters, so a miss costs the same as a real verification.
        self._dummy_salt = codec.generate_salt()
        self._dummy_digest = codec.hash(secrets.token_urlsafe(16), self._dummy_salt)

    @classmethod
    def from_settings(
        cls,
        store: CredentialStore,
        settings: Settings | None = None,
        codec: PasswordCodec | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> SessionAuthenticator:
        cfg = settings or get_settings()
        return cls(
            store,
            codec or PasswordCodec.from_settings(cfg),
            max_failed_attempts=cfg.max_failed_attempts,
            lockout_seconds=cfg.lockout_seconds,
            session_seconds=cfg.session_expire_seconds,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def authenticate(self, handle: str, password: str) -> AuthResult:
        """Verify handle + password and open a Session on success.

        Lookup ignores case. Storage faults propagate as StorageError; every
        other failure comes back as an AuthResult with an AuthError.
        """
        account = self.store.find_by_handle(handle)
        if account is None or not account.active:
            self.codec.verify(password, self._dummy_digest, self._dummy_salt)
            logger.info("Login failed (invalid credentials)")
            return AuthResult(error=AuthError.INVALID_CREDENTIALS)

        now = self.clock()
        if account.account_locked:
            if not self._lock_lapsed(account.locked_at, now):
                logger.warning("Login refused for locked account %s", account.handle)
                return AuthResult(error=AuthError.LOCKED_OUT)
            self.store.unlock(account.id)
            logger.info("Lockout window elapsed for %s; account unlocked", account.handle)

        if not self.codec.verify(password, account.password_hash, account.password_salt):
            updated = self.store.record_failed_attempt(account.id, self.max_failed_attempts, now)
            if updated is not None and updated.account_locked:
                logger.warning(
                    "Account %s locked after %d failed attempts", account.handle, updated.failed_attempts
                )
            else:
                logger.info("Login failed (invalid credentials)")
            return AuthResult(error=AuthError.INVALID_CREDENTIALS)

        if not self.store.record_successful_login(account.id, now):
            logger.warning("Login refused for %s: account locked during verification", account.handle)
            return AuthResult(error=AuthError.LOCKED_OUT)
        session = self._open_session(account.id, account.handle, now)
        logger.info("User logged in: %s", account.handle)
        return AuthResult(session=session)

    def _lock_lapsed(self, locked_at: datetime | None, now: datetime) -> bool:
        # No timestamp means an administrative lock: only unlock() clears it.
        if locked_at is None or self.lockout_seconds <= 0:
            return False
        return now >= locked_at + timedelta(seconds=self.lockout_seconds)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _open_session(self, account_id: int, handle: str, now: datetime) -> Session:
        session = Session(
            session_id=secrets.token_urlsafe(32),
            account_id=account_id,
            handle=handle,
            created_at=now,
            expires_at=now + timedelta(seconds=self.session_seconds),
        )
        self.store.create_session(hash_token(session.session_id), session)
        return session

    def get_session(self, session_id: str) -> Session | None:
        """Return the live Session for a raw session id, or None.

        Expired rows are deleted on sight.
        """
        session_hash = hash_token(session_id)
        stored = self.store.get_session(session_hash)
        if stored is None:
            return None
        if self.clock() >= stored.expires_at:
            self.store.delete_session(session_hash)
            return None
        return replace(stored, session_id=session_id)

    def logout(self, session: Session) -> None:
        """Destroy the Session and every remember-me token bound to its handle."""
        self.store.delete_session(hash_token(session.session_id))
        cleared = self.store.delete_remember_tokens_for(session.handle)
        logger.info("User logged out: %s (%d remember-me token(s) cleared)", session.handle, cleared)

    # ------------------------------------------------------------------
    # Remember-me
    # ------------------------------------------------------------------

    def issue_remember_token(self, session: Session) -> RememberToken:
        """Issue a 30-day remember-me token for the session's handle.

        Only a live session can request one; anything else raises
        PermissionError. The returned token carries the raw value, which is
        not stored and cannot be recovered later.
        """
        if self.get_session(session.session_id) is None:
            raise PermissionError("A remember-me token requires an authenticated session.")
        issued_at = self.clock()
        value = self.codec.random_token(REMEMBER_TOKEN_LENGTH, alphabet=URLSAFE_ALPHABET)
        token = RememberToken(
            handle=session.handle,
            token_hash=hash_token(value),
            issued_at=issued_at,
            expires_at=remember_expiry(issued_at),
        )
        self.store.create_remember_token(token)
        return replace(token, value=value)

    def resolve_remember_token(self, value: str | None) -> str | None:
        """Return the handle bound to a remember-me value, or None.

        The handle is for pre-filling the login form only. Expired tokens are
        removed and resolve to None.
        """
        if not value:
            return None
        token_hash = hash_token(value)
        token = self.store.get_remember_token(token_hash)
        if token is None:
            return None
        if self.clock() >= token.expires_at:
            self.store.delete_remember_token(token_hash)
            return None
        return token.handle
