"""
api/routes/v1/users.py -- Administrator user-management grid endpoints.

Routes (all admin only):
  GET    /api/v1/users                 -- one page of accounts + filtered total
  POST   /api/v1/users                 -- create an account
  POST   /api/v1/users/bulk-delete     -- delete several accounts at once
  GET    /api/v1/users/{key}           -- one account by row key
  PATCH  /api/v1/users/{key}           -- edit profile, roles, active flag, password
  DELETE /api/v1/users/{key}           -- delete one account
  POST   /api/v1/users/{key}/lock      -- administrative lock
  POST   /api/v1/users/{key}/unlock    -- clear a lockout

Listing query string:
  offset, limit, sort, direction (asc|desc), and any number of
  filter.<column>=text pairs, e.g. ?filter.handle=al&sort=handle

Self-protection is enforced by DirectoryQueryEngine; this module only maps
its exceptions onto status codes:
  QueryValidationError -> 400 invalid_query
  SelfActionError      -> 400 self_action
  RegistrationError    -> 400 invalid_account
  AccountConflictError -> 409 conflict
  StaleAccountError    -> 409 stale_account
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from api.models import (
    AccountCreate,
    AccountPatch,
    AccountResponse,
    BulkDeleteRequest,
    BulkDeleteResponse,
    ListingResponse,
)
from auth.dependencies import Principal, require_admin
from auth.exceptions import AccountConflictError, RegistrationError, StaleAccountError
from auth.models import Account
from auth.registration import create_account
from directory.engine import DirectoryQueryEngine
from directory.exceptions import QueryValidationError, SelfActionError
from directory.models import ListingQuery
from directory.query import parse_sort

router = APIRouter()

_FILTER_PREFIX = "filter."


def _engine(request: Request) -> DirectoryQueryEngine:
    return request.app.state.directory


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "not_found", "message": "User not found."},
    )


def _bad_request(code: str, exc: Exception) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": code, "message": str(exc)})


def _conflict(code: str, message: str) -> HTTPException:
    return HTTPException(status_code=409, detail={"code": code, "message": message})


def _to_response(account: Account | None) -> AccountResponse:
    if account is None:
        raise _not_found()
    return AccountResponse.from_account(account)


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


@router.get("/users", response_model=ListingResponse)
def list_users(
    request: Request,
    offset: int = 0,
    limit: int = 10,
    sort: Optional[str] = None,
    direction: Optional[str] = None,
    q: Optional[str] = Query(default=None, max_length=100),
    principal: Principal = Depends(require_admin),
) -> ListingResponse:
    """Return one page of accounts. Page size is clamped to LISTING_MAX_PAGE_SIZE.

    q searches handle, email, first and last name at once; filter.<column>
    params narrow single columns. Both apply to the page and the total.
    """
    filters = {
        name[len(_FILTER_PREFIX) :]: value
        for name, value in request.query_params.items()
        if name.startswith(_FILTER_PREFIX)
    }
    query = ListingQuery(
        offset=offset,
        page_size=limit,
        sort=parse_sort(sort, direction),
        filters=filters,
        search=q,
    )
    try:
        result = _engine(request).list(query)
    except QueryValidationError as exc:
        raise _bad_request("invalid_query", exc) from exc
    return ListingResponse(
        rows=[AccountResponse.from_account(a) for a in result.rows],
        total=result.total,
        offset=result.offset,
        page_size=result.page_size,
        page=result.page,
        page_count=result.page_count,
    )


# ---------------------------------------------------------------------------
# Create / bulk
# ---------------------------------------------------------------------------


@router.post("/users", response_model=AccountResponse, status_code=201)
def create_user(
    request: Request,
    body: AccountCreate,
    principal: Principal = Depends(require_admin),
) -> AccountResponse:
    """Create an account on a user's behalf. Admin only."""
    engine = _engine(request)
    try:
        account = create_account(
            engine.store,
            engine.codec,
            handle=body.handle,
            email=body.email,
            password=body.password,
            first_name=body.first_name,
            last_name=body.last_name,
            roles=body.roles,
            active=body.active,
        )
    except RegistrationError as exc:
        raise _bad_request("invalid_account", exc) from exc
    except AccountConflictError as exc:
        raise _conflict("conflict", "A user with that username or email already exists.") from exc
    return AccountResponse.from_account(account)


@router.post("/users/bulk-delete", response_model=BulkDeleteResponse)
def bulk_delete_users(
    request: Request,
    body: BulkDeleteRequest,
    principal: Principal = Depends(require_admin),
) -> BulkDeleteResponse:
    """Delete every listed account. Nothing is deleted if the list includes the caller."""
    try:
        deleted = _engine(request).bulk_delete(principal.session, body.keys)
    except SelfActionError as exc:
        raise _bad_request("self_action", exc) from exc
    return BulkDeleteResponse(deleted=deleted)


# ---------------------------------------------------------------------------
# Single account
# ---------------------------------------------------------------------------


@router.get("/users/{key}", response_model=AccountResponse)
def get_user(
    request: Request,
    key: str,
    principal: Principal = Depends(require_admin),
) -> AccountResponse:
    return _to_response(_engine(request).resolve_row(key))


@router.patch("/users/{key}", response_model=AccountResponse)
def update_user(
    request: Request,
    key: str,
    body: AccountPatch,
    principal: Principal = Depends(require_admin),
) -> AccountResponse:
    """Apply an administrator's edits. Omitted fields are left unchanged."""
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    try:
        account = _engine(request).update_account(principal.session, key, **changes)
    except SelfActionError as exc:
        raise _bad_request("self_action", exc) from exc
    except RegistrationError as exc:
        raise _bad_request("invalid_account", exc) from exc
    except StaleAccountError as exc:
        raise _conflict("stale_account", "The account was changed by someone else. Reload and retry.") from exc
    except AccountConflictError as exc:
        raise _conflict("conflict", "A user with that email already exists.") from exc
    return _to_response(account)


@router.delete("/users/{key}", status_code=204)
def delete_user(
    request: Request,
    key: str,
    principal: Principal = Depends(require_admin),
) -> Response:
    try:
        deleted = _engine(request).delete(principal.session, key)
    except SelfActionError as exc:
        raise _bad_request("self_action", exc) from exc
    if not deleted:
        raise _not_found()
    return Response(status_code=204)


@router.post("/users/{key}/lock", response_model=AccountResponse)
def lock_user(
    request: Request,
    key: str,
    principal: Principal = Depends(require_admin),
) -> AccountResponse:
    """Lock an account until an administrator unlocks it."""
    engine = _engine(request)
    try:
        locked = engine.lock(principal.session, key)
    except SelfActionError as exc:
        raise _bad_request("self_action", exc) from exc
    if not locked:
        raise _not_found()
    return _to_response(engine.resolve_row(key))


@router.post("/users/{key}/unlock", response_model=AccountResponse)
def unlock_user(
    request: Request,
    key: str,
    principal: Principal = Depends(require_admin),
) -> AccountResponse:
    """Clear a lockout and reset the failed-attempt counter."""
    engine = _engine(request)
    if not engine.unlock(principal.session, key):
        raise _not_found()
    return _to_response(engine.resolve_row(key))
