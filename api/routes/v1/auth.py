"""
api/routes/v1/auth.py -- Login, logout, remember-me and self-registration endpoints.

Routes:
  POST /api/v1/auth/login       -- password login; sets session + optional remember-me cookie
  POST /api/v1/auth/logout      -- ends the session, clears remember-me tokens and cookies
  GET  /api/v1/auth/me          -- current session info (requires auth)
  GET  /api/v1/auth/remembered  -- handle bound to the remember-me cookie, for form pre-fill
  POST /api/v1/auth/register    -- self-registration (403 when disabled)

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  [C1] SessionAuthenticator.authenticate() equalizes timing -- never inline lookup + verify.
  [M5] Cache-Control: no-store on login responses.
  Unknown handle and wrong password return the same 401 body.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    AccountResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    RegisterRequest,
    RememberedResponse,
)
from auth.dependencies import Principal, get_current_principal, try_get_current_principal
from auth.exceptions import RegistrationError
from auth.models import AuthError
from auth.registration import RegistrationForm, register
from auth.session import SessionAuthenticator
from auth.tokens import (
    REMEMBER_COOKIE,
    clear_auth_cookies,
    cookie_secure,
    create_access_token,
    set_auth_cookie,
    set_remember_cookie,
)
from core.config import get_settings

# Auth policy:
# - POST /api/v1/auth/login:       public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/logout:      public -- clears cookies; ends the session if one is live
# - GET  /api/v1/auth/remembered:  public -- the login form calls this before anyone is signed in
# - POST /api/v1/auth/register:    public, gated by SELF_REGISTRATION_ENABLED
# - GET  /api/v1/auth/me:          requires auth (get_current_principal)
router = APIRouter()

_LOGIN_ERRORS = {
    AuthError.INVALID_CREDENTIALS: (401, "bad_credentials", "Invalid username or password."),
    AuthError.LOCKED_OUT: (
        423,
        "locked_out",
        "This account is locked after too many failed attempts. Try again later or contact an administrator.",
    ),
}


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with handle and password; set the session cookie.

    With remember_me set, a 30-day remember-me cookie is issued as well. It
    only pre-fills the handle on the next visit and never logs anyone in.
    """
    authenticator: SessionAuthenticator = request.app.state.authenticator
    result = authenticator.authenticate(body.handle.strip(), body.password)
    if not result.ok:
        status, code, message = _LOGIN_ERRORS[result.error]
        return _no_store(JSONResponse(status_code=status, content={"error": {"code": code, "message": message}}))

    session = result.session
    account = request.app.state.store.get_by_id(session.account_id)
    token = create_access_token(session.session_id, session.account_id, session.handle, session.expires_at)
    secure = cookie_secure(request.url.scheme)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=int((session.expires_at - session.created_at).total_seconds()),
            handle=session.handle,
            roles=sorted(account.roles) if account else [],
            remembered=body.remember_me,
        ).model_dump(),
    )
    set_auth_cookie(resp, token, session.expires_at, secure)
    if body.remember_me:
        remember = authenticator.issue_remember_token(session)
        set_remember_cookie(resp, remember.value, secure)
    return _no_store(resp)


@router.post("/auth/logout")
async def logout(request: Request) -> JSONResponse:
    """End the current session (if any) and clear both cookies."""
    principal = try_get_current_principal(request)
    if principal is not None:
        request.app.state.authenticator.logout(principal.session)
    resp = JSONResponse(content={"message": "Logged out."})
    clear_auth_cookies(resp)
    return resp


@router.get("/auth/remembered", response_model=RememberedResponse)
async def remembered(request: Request) -> RememberedResponse:
    """Return the handle bound to the remember-me cookie, or null."""
    authenticator: SessionAuthenticator = request.app.state.authenticator
    return RememberedResponse(handle=authenticator.resolve_remember_token(request.cookies.get(REMEMBER_COOKIE)))


@router.post("/auth/register", response_model=AccountResponse, status_code=201)
def register_account(request: Request, body: RegisterRequest) -> AccountResponse:
    """Create a regular user account from the self-registration form."""
    if not get_settings().self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )
    form = RegistrationForm(**body.model_dump())
    try:
        account = register(request.app.state.store, request.app.state.authenticator.codec, form)
    except RegistrationError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "registration_failed", "message": str(exc)},
        ) from exc
    return AccountResponse.from_account(account)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(principal: Principal = Depends(get_current_principal)) -> MeResponse:
    """Return identity information for the current session."""
    return MeResponse(
        user_id=principal.account.id,
        handle=principal.account.handle,
        email=principal.account.email,
        roles=sorted(principal.account.roles),
        session_expires_at=principal.session.expires_at.isoformat(),
    )
