"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in
api/routes/v1/auth.py (to apply the login limit with @limiter.limit()).

One shared instance means one in-memory counter store. A second Limiter in
another module would count separately and the login limit would never trip.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    """Limit string for POST /auth/login, read from LOGIN_RATE_LIMIT."""
    return get_settings().login_rate_limit
