"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in the route modules
(to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. This limiter is per client IP and guards the public auth
endpoints against credential stuffing and code guessing. Per-account
submission limits are a separate concern (core/rate_limiter.py).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def auth_rate_limit() -> str:
    """Per-IP limit for public auth routes, read from AUTH_RATE_LIMIT."""
    return get_settings().auth_rate_limit
