"""
FastAPI integration for the fixed-window rate limiter.
"""

from typing import List, Optional

from fastapi import Request, Response

from shared.auth import client_address, extract_subject
from shared.errors import RateLimitError
from shared.logging import get_logger
from .fixed_window import FixedWindowRateLimiter


def resolve_identity(request: Request, jwt_secret: Optional[str] = None,
                     algorithms: Optional[List[str]] = None, trust_unverified: bool = False) -> str:
    """Authenticated subject, or the caller address for anonymous traffic."""
    subject = extract_subject(request, jwt_secret, algorithms, trust_unverified)
    if subject:
        return subject
    return f"ip:{client_address(request)}"


def endpoint_name(request: Request) -> str:
    """Method and route template, e.g. ``GET:/me/entitlements``."""
    route = request.scope.get("route")
    path = getattr(route, "path", None) or request.url.path
    return f"{request.method}:{path}"


class RateLimitGuard:
    """Route dependency applying a rate limit before the handler runs.

    Allowed requests get ``X-RateLimit-*`` headers on the response; rejected
    ones raise ``RateLimitError`` carrying the same headers plus Retry-After.
    """

    def __init__(
        self,
        limiter: FixedWindowRateLimiter,
        tier: str = "free",
        limit: Optional[int] = None,
        window_ms: Optional[int] = None,
        jwt_secret: Optional[str] = None,
        jwt_algorithms: Optional[List[str]] = None,
        trust_unverified_jwt: bool = False
    ):
        self.limiter = limiter
        self.tier = tier
        self.limit = limit
        self.window_ms = window_ms
        self.jwt_secret = jwt_secret
        self.jwt_algorithms = jwt_algorithms
        self.trust_unverified_jwt = trust_unverified_jwt
        self.logger = get_logger("entitlements.rate_limiter.guard")

    async def __call__(self, request: Request, response: Response):
        identity = resolve_identity(request, self.jwt_secret, self.jwt_algorithms, self.trust_unverified_jwt)
        endpoint = endpoint_name(request)

        if self.limit is not None:
            result = await self.limiter.check(
                identity, endpoint, self.limit,
                self.window_ms or self.limiter.tier_limits(self.tier)["window_ms"]
            )
        else:
            result = await self.limiter.check_tier(identity, endpoint, self.tier)

        headers = result.headers()
        if not result.allowed:
            headers["Retry-After"] = str(result.retry_after_seconds(self.limiter.clock()))
            raise RateLimitError(
                "Too many requests",
                {"limit": result.limit, "reset_at": headers["X-RateLimit-Reset"]},
                headers=headers
            )

        response.headers.update(headers)
        return result
