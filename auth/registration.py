"""
auth/registration.py -- Self-service registration and administrator account creation.

Both paths share _build_account(), so every stored password goes through the
same fresh-salt Argon2id hashing in auth/passwords.py.

Registration checks run in a fixed order and stop at the first failure, so
the user sees one actionable message at a time. The uniqueness checks here
give a friendly message; the store's unique indexes are what actually
guarantee uniqueness under concurrent sign-ups (AccountConflictError is
translated into the same message).

Layer rule: no imports from api/ or directory/.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass

from auth.exceptions import AccountConflictError, RegistrationError
from auth.models import DEFAULT_ROLE, Account
from auth.passwords import PasswordCodec
from auth.store import CredentialStore

logger = logging.getLogger("adminconsole.auth.registration")

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,63}$")
HANDLE_LENGTH = (3, 50)
NAME_LENGTH = (2, 50)


@dataclass
class RegistrationForm:
    handle: str
    email: str
    password: str
    confirm_password: str
    first_name: str
    last_name: str
    accept_terms: bool = False


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email.strip()))


def _check_length(value: str, bounds: tuple[int, int], label: str) -> None:
    low, high = bounds
    if not low <= len(value) <= high:
        raise RegistrationError(f"{label} must be between {low} and {high} characters")


def register(store: CredentialStore, codec: PasswordCodec, form: RegistrationForm) -> Account:
    """Validate a registration form and create an active account with the user role.

    Raises RegistrationError with a user-facing message on any problem.
    StorageError from the store propagates.
    """
    handle = form.handle.strip()
    email = form.email.strip()
    first_name = form.first_name.strip()
    last_name = form.last_name.strip()

    if form.password != form.confirm_password:
        raise RegistrationError("Passwords do not match")
    if not form.accept_terms:
        raise RegistrationError("You must accept the terms and conditions")
    _check_length(handle, HANDLE_LENGTH, "Username")
    _check_length(first_name, NAME_LENGTH, "First name")
    _check_length(last_name, NAME_LENGTH, "Last name")
    if not is_valid_email(email):
        raise RegistrationError("Invalid email address")
    if not codec.is_strong(form.password):
        raise RegistrationError("Password does not meet strength requirements")
    if store.find_by_handle(handle) is not None:
        raise RegistrationError("Username already exists")
    if store.find_by_email(email) is not None:
        raise RegistrationError("Email already exists")

    account = _build_account(codec, handle, email, form.password, first_name, last_name, {DEFAULT_ROLE})
    try:
        store.save(account)
    except AccountConflictError as exc:
        raise RegistrationError("Username or email already exists") from exc
    logger.info("Registration completed for user: %s", handle)
    return account


def create_account(
    store: CredentialStore,
    codec: PasswordCodec,
    *,
    handle: str,
    email: str,
    password: str,
    first_name: str = "",
    last_name: str = "",
    roles: Iterable[str] = (DEFAULT_ROLE,),
    active: bool = True,
) -> Account:
    """Create an account on an administrator's behalf.

    Skips the terms / confirmation checks of register(), but still requires a
    strong password and a valid email. AccountConflictError propagates so the
    caller can answer 409.
    """
    if not is_valid_email(email):
        raise RegistrationError("Invalid email address")
    if not codec.is_strong(password):
        raise RegistrationError("Password does not meet strength requirements")
    account = _build_account(codec, handle.strip(), email.strip(), password, first_name, last_name, set(roles))
    account.active = active
    store.save(account)
    return account


def set_password(codec: PasswordCodec, account: Account, password: str) -> None:
    """Replace the account's password with a freshly salted hash (caller saves)."""
    if not codec.is_strong(password):
        raise RegistrationError("Password does not meet strength requirements")
    account.password_salt = codec.generate_salt()
    account.password_hash = codec.hash(password, account.password_salt)


def _build_account(
    codec: PasswordCodec,
    handle: str,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    roles: set[str],
) -> Account:
    salt = codec.generate_salt()
    return Account(
        handle=handle,
        email=email,
        password_hash=codec.hash(password, salt),
        password_salt=salt,
        first_name=first_name,
        last_name=last_name,
        roles=roles,
    )
