"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class. Dataclasses own the domain shape; the store, the
authenticator and the routes do the work. The only behaviour kept here is the
role-set bookkeeping on Account, so callers never copy the set by hand.

Layer rule: no imports from api/ or directory/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

ADMIN_ROLE = "admin"
DEFAULT_ROLE = "user"


@dataclass
class Account:
    """An identity record in the console directory.

    handle and email are unique across accounts and compared
    case-insensitively. password_salt is base64 text of 16 random bytes;
    password_hash is the Argon2id digest of (password, salt), also base64.

    locked_at is None for an administrative lock (never expires on its own)
    and for unlocked accounts. version is the optimistic-lock counter the store
    checks on every update.
    """

    handle: str
    email: str
    password_hash: str = ""
    password_salt: str = ""
    first_name: str = ""
    last_name: str = ""
    active: bool = True
    roles: set[str] = field(default_factory=set)
    account_locked: bool = False
    locked_at: datetime | None = None
    failed_attempts: int = 0
    created_at: datetime | None = None  # set by the store on insert
    last_login: datetime | None = None
    id: int | None = None
    version: int = 1

    def add_role(self, role: str) -> None:
        self.roles.add(role)

    def remove_role(self, role: str) -> None:
        self.roles.discard(role)

    def has_role(self, role: str) -> bool:
        return role in self.roles

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


@dataclass(frozen=True)
class Session:
    """One authenticated login context.

    session_id is the raw opaque value handed to the client (inside the signed
    access token). The store only ever sees its HMAC.
    """

    session_id: str
    account_id: int
    handle: str
    created_at: datetime
    expires_at: datetime


@dataclass
class RememberToken:
    """A long-lived credential that pre-fills the handle on the login form.

    value is the raw token and is only populated on the instance returned at
    issuance. It is never persisted -- the store keeps token_hash, an
    HMAC-SHA256 of the value keyed with SECRET_KEY.
    """

    handle: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    value: str | None = None


class AuthError(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    LOCKED_OUT = "locked_out"


@dataclass(frozen=True)
class AuthResult:
    """Outcome of SessionAuthenticator.authenticate().

    Exactly one of session / error is set.
    """

    session: Session | None = None
    error: AuthError | None = None

    @property
    def ok(self) -> bool:
        return self.session is not None
