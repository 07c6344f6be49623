"""
auth/tokens.py -- JWT access tokens, opaque-token hashing, and cookie helpers.

Security design decisions:
  JWT: python-jose with HS256. The access token carries the opaque session id
       ("sid"), the account id and the handle. A valid signature is not enough
       on its own -- auth/dependencies.py also requires the session row to
       still exist, so logout really ends the session.

  Opaque tokens: session ids and remember-me values are random strings. The
       store only keeps HMAC-SHA256(SECRET_KEY, value): someone who reads the
       database cannot replay the rows as cookies. The hash is deterministic,
       so lookup is a single indexed equality match.

  Cookies: both cookies are httpOnly, path "/", and Secure whenever the
       request came over HTTPS or SECURE_COOKIES is set.

Layer rule: no imports from api/ or directory/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from core.config import get_settings

logger = logging.getLogger("adminconsole.auth")

_ALGORITHM = "HS256"

ACCESS_COOKIE = "access_token"
REMEMBER_COOKIE = "remember_me"
REMEMBER_ME_DAYS = 30
REMEMBER_ME_MAX_AGE = REMEMBER_ME_DAYS * 24 * 60 * 60  # 2592000 seconds


# ---------------------------------------------------------------------------
# Opaque token hashing
# ---------------------------------------------------------------------------


def hash_token(raw: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw) as a hex string."""
    return hmac.new(
        get_settings().secret_key.encode(),
        raw.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(session_id: str, account_id: int, handle: str, expires_at: datetime) -> str:
    """Encode a signed JWT for a server-side session.

    expires_at should be the session's own expiry so token and row lapse
    together.
    """
    payload = {
        "sub": handle,
        "sid": session_id,
        "user_id": account_id,
        "exp": expires_at,
    }
    return jwt.encode(payload, get_settings().secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, get_settings().secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "sid" not in payload or "user_id" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def cookie_secure(scheme: str) -> bool:
    """Secure flag for a response: HTTPS requests, or forced by SECURE_COOKIES."""
    return scheme == "https" or get_settings().secure_cookies


def remember_cookie_params(value: str, secure: bool) -> dict:
    """Cookie attributes for a remember-me token.

    Returned as set_cookie() keyword arguments so the wire format can be
    checked without a response object.
    """
    return {
        "key": REMEMBER_COOKIE,
        "value": value,
        "max_age": REMEMBER_ME_MAX_AGE,
        "path": "/",
        "httponly": True,
        "secure": secure,
        "samesite": "lax",
    }


def set_remember_cookie(response, value: str, secure: bool) -> None:
    response.set_cookie(**remember_cookie_params(value, secure))


def set_auth_cookie(response, token: str, expires_at: datetime, secure: bool) -> None:
    """Write the JWT access token as an httpOnly cookie on the response.

    samesite="lax": sent on same-site navigations, not on cross-site POST.
    max_age follows the session expiry so cookie and token lapse together.
    """
    max_age = max(0, int((expires_at - datetime.now(timezone.utc)).total_seconds()))
    response.set_cookie(
        ACCESS_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age,
        path="/",
    )


def clear_auth_cookies(response) -> None:
    response.delete_cookie(ACCESS_COOKIE, path="/")
    response.delete_cookie(REMEMBER_COOKIE, path="/")


def remember_expiry(issued_at: datetime) -> datetime:
    return issued_at + timedelta(days=REMEMBER_ME_DAYS)
