"""
API request and response models for the admin console REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
directory/models.py, which own the internal domain representation. Route
handlers map between the two.

Password hashes and salts never appear in any response model.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Account

# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    handle: str = Field(min_length=1, max_length=50)
    password: str = Field(min_length=1, max_length=255)
    remember_me: bool = False


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Field-level limits here only bound input size; the user-facing rules
    (strength, email format, uniqueness) are enforced by auth/registration.py,
    which owns the messages shown to the user.
    """

    handle: str = Field(max_length=100)
    email: str = Field(max_length=255)
    password: str = Field(max_length=255)
    confirm_password: str = Field(max_length=255)
    first_name: str = Field(max_length=100)
    last_name: str = Field(max_length=100)
    accept_terms: bool = False


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    handle: str
    roles: list[str]
    remembered: bool = False


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    handle: str
    email: str
    roles: list[str]
    session_expires_at: str


class RememberedResponse(BaseModel):
    """Response for GET /api/v1/auth/remembered -- a login-form pre-fill, nothing more."""

    model_config = ConfigDict(frozen=True)

    handle: Optional[str] = None


# ---------------------------------------------------------------------------
# Users -- request models
# ---------------------------------------------------------------------------


class AccountCreate(BaseModel):
    """Request body for POST /api/v1/users (admin)."""

    handle: str = Field(min_length=3, max_length=50)
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=8, max_length=255)
    first_name: str = Field(default="", max_length=50)
    last_name: str = Field(default="", max_length=50)
    roles: list[str] = Field(default_factory=lambda: ["user"], max_length=20)
    active: bool = True


class AccountPatch(BaseModel):
    """Request body for PATCH /api/v1/users/{key} (admin). Omitted fields are unchanged."""

    email: Optional[str] = Field(default=None, max_length=255)
    first_name: Optional[str] = Field(default=None, max_length=50)
    last_name: Optional[str] = Field(default=None, max_length=50)
    active: Optional[bool] = None
    roles: Optional[list[str]] = Field(default=None, max_length=20)
    password: Optional[str] = Field(default=None, min_length=8, max_length=255)


class BulkDeleteRequest(BaseModel):
    keys: list[str] = Field(min_length=1, max_length=500)


# ---------------------------------------------------------------------------
# Users -- response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    handle: str
    email: str
    first_name: str
    last_name: str
    active: bool
    roles: list[str]
    account_locked: bool
    failed_attempts: int
    created_at: str
    last_login: Optional[str]
    version: int

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        """Factory Method: the domain-to-transport mapping lives next to the model."""
        return cls(
            key=str(account.id),
            handle=account.handle,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            active=account.active,
            roles=sorted(account.roles),
            account_locked=account.account_locked,
            failed_attempts=account.failed_attempts,
            created_at=account.created_at.isoformat() if account.created_at else "",
            last_login=account.last_login.isoformat() if account.last_login else None,
            version=account.version,
        )


class ListingResponse(BaseModel):
    """Response for GET /api/v1/users -- one page plus the filtered total."""

    model_config = ConfigDict(frozen=True)

    rows: list[AccountResponse]
    total: int
    offset: int
    page_size: int
    page: int
    page_count: int


class BulkDeleteResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    deleted: int


# ---------------------------------------------------------------------------
# Errors / health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
