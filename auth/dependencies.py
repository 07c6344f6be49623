"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The access token is read from, in priority order:
  1. the "access_token" cookie -- set by POST /auth/login;
  2. an Authorization: Bearer <token> header -- API clients.

A token is only accepted when its signature verifies AND the server-side
session row it names is still live AND the account is still active. Logging
out deletes the row, so a copied token stops working immediately.

The remember-me cookie is never consulted here: it identifies a handle for
the login form, it does not authenticate.

try_get_current_principal() is the soft variant (returns None on failure).
get_current_principal() raises HTTP 401. require_admin() also raises 403 when
the account lacks the admin role.

Layer rule: may import fastapi (this module is part of the DI system); no
imports from api/ or directory/.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request

from auth.models import Account, Session
from auth.tokens import ACCESS_COOKIE, decode_access_token


@dataclass(frozen=True)
class Principal:
    """The authenticated caller: the live Session and its Account."""

    session: Session
    account: Account


def _read_token(request: Request) -> str | None:
    token = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def try_get_current_principal(request: Request) -> Principal | None:
    """Resolve the request's session and account. Never raises for bad tokens."""
    token = _read_token(request)
    if token is None:
        return None
    payload = decode_access_token(token)
    if payload is None:
        return None
    session = request.app.state.authenticator.get_session(payload["sid"])
    if session is None or session.account_id != payload["user_id"]:
        return None
    account = request.app.state.store.get_by_id(session.account_id)
    if account is None or not account.active:
        return None
    return Principal(session=session, account=account)


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...
    """
    principal = try_get_current_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return principal


def require_admin(request: Request) -> Principal:
    """Require the admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    principal = get_current_principal(request)
    if not principal.account.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return principal
