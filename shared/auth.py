"""
Caller identity helpers.

Token issuance and verification belong to the identity provider. Requests
reach these services either with the subject already resolved by an
upstream authorizer (``request.state.user_id``) or with a Bearer JWT whose
``sub`` claim names the caller.
"""

from typing import Optional, List

import jwt
from fastapi import Request

from shared.errors import AuthenticationError


def extract_subject(
    request: Request,
    jwt_secret: Optional[str] = None,
    algorithms: Optional[List[str]] = None,
    trust_unverified: bool = False
) -> Optional[str]:
    """Return the authenticated subject for a request, if any.

    Without a ``jwt_secret`` a Bearer token is ignored unless
    ``trust_unverified`` is set.
    """
    subject = getattr(request.state, "user_id", None)
    if subject:
        return subject

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.lower().startswith("bearer "):
        return None

    if not jwt_secret and not trust_unverified:
        return None

    token = auth_header[7:].strip()
    try:
        if jwt_secret:
            claims = jwt.decode(token, jwt_secret, algorithms=algorithms or ["HS256"])
        else:
            claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        raise AuthenticationError("Invalid bearer token", {"reason": str(e)}) from e

    return claims.get("sub")


def client_address(request: Request) -> str:
    """Best-effort caller address behind proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return request.client.host if request.client else "unknown"
