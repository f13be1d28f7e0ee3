"""Inbound rate limiter.

Kept in its own module so routers and the app can share one limiter
without importing each other.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from dansgaming.shared.config import get_settings

_settings = get_settings()

# Keyed by client IP; the default limit applies to every route through
# SlowAPIMiddleware.
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[_settings.rate_limit],
    enabled=_settings.rate_limit_enabled,
)
