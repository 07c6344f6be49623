"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the admin console happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a key with a warning,
      production mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and
       the HMAC over remember-me / session identifiers both rely on its entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or directory/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("adminconsole.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'adminconsole.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Sessions and lockout
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_expire_seconds: int = Field(default=3600, gt=0)
    max_failed_attempts: int = Field(default=5, ge=1)
    # 0 keeps a locked account locked until an administrator unlocks it.
    lockout_seconds: int = Field(default=900, ge=0)

    # ------------------------------------------------------------------
    # Directory listing
    # ------------------------------------------------------------------

    listing_max_page_size: int = Field(default=500, ge=1)

    # ------------------------------------------------------------------
    # Password hashing (Argon2id)
    # ------------------------------------------------------------------

    argon2_time_cost: int = Field(default=3, ge=1)
    argon2_memory_cost: int = Field(default=65536, ge=8)  # KiB
    argon2_parallelism: int = Field(default=4, ge=1)

    # ------------------------------------------------------------------
    # Rate limiting / registration
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    self_registration_enabled: bool = True

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions and remember-me cookies will not survive a restart.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
