"""Request dependencies shared by the auth routes.

``require_identity`` guards protected routes with the ``access_token``
cookie; ``optional_identity`` resolves it when present without rejecting.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Cookie, HTTPException, Request

from lawmakers_auth.service.runtime import get_runtime
from lawmakers_auth.service.tokens import AccessClaims

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def require_identity(
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> AccessClaims:
    if not access_token:
        raise _http_error("UNAUTHORIZED", "authentication required", status_code=401)
    claims = get_runtime().tokens.verify_access_token(access_token)
    if claims is None:
        raise _http_error("INVALID_TOKEN", "invalid or expired access token", status_code=401)
    return claims


async def optional_identity(
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> Optional[AccessClaims]:
    if not access_token:
        return None
    return get_runtime().tokens.verify_access_token(access_token)


def client_ip(request: Request) -> str:
    """Best guess at the caller's address, preferring CDN and proxy headers."""
    if get_runtime().settings.trust_proxy_headers:
        cf_ip = request.headers.get("cf-connecting-ip")
        if cf_ip and cf_ip.strip():
            return cf_ip.strip()
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("x-real-ip")
        if real_ip and real_ip.strip():
            return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"
