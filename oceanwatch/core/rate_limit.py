"""
rate_limit.py — Global rate limiter instance.

Uses slowapi (a Starlette-compatible wrapper around the `limits` library).
Requests are keyed by client IP address.

Usage in routes:
    from fastapi import Request
    from oceanwatch.core.rate_limit import limiter

    @router.post("/login")
    @limiter.limit(settings.auth_rate_limit)
    async def login(request: Request, payload: LoginRequest):
        ...

The limiter is attached to app.state in oceanwatch.main together with the
RateLimitExceeded handler.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
