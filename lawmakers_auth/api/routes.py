from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Cookie, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse

from lawmakers_auth.api.deps import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    _http_error,
    client_ip,
    optional_identity,
    require_identity,
)
from lawmakers_auth.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    ResendRequest,
    SessionStatus,
    SessionUser,
    SignupRequest,
    SignupResponse,
    UserSummary,
)
from lawmakers_auth.config import Settings
from lawmakers_auth.logging import get_logger
from lawmakers_auth.service.auth import SessionTokens
from lawmakers_auth.service.errors import AuthenticationError, NotFoundError, RateLimitedError
from lawmakers_auth.service.runtime import Runtime, get_runtime
from lawmakers_auth.service.tokens import AccessClaims
from lawmakers_auth.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

_RESEND_MESSAGE = "If an account exists for this email, a verification link has been sent."


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        """Apply rate limit headers to response per IETF draft-polli-ratelimit-headers."""
        if self.limit <= 0:
            return
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime: Runtime,
    request: Request,
    action: str,
    *,
    email: Optional[str] = None,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Count this attempt against the IP and email buckets of ``action``.

    Raises:
        RateLimitedError: either bucket is already full
    """
    decision = await runtime.rate_limiter.hit(client_ip(request), action, email)
    if not decision.allowed:
        raise RateLimitedError(
            "too many attempts, please try again later", retry_after=decision.reset_in
        )
    info = RateLimitInfo(decision.limit, decision.remaining, decision.reset_in)
    if response is not None:
        info.apply_headers(response)
    return info


def _apply_session_cookies(response: Response, tokens: SessionTokens, settings: Settings) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=settings.access_token_ttl_seconds,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=settings.refresh_token_ttl_seconds,
        path="/",
    )


def _clear_session_cookies(response: Response) -> None:
    response.delete_cookie(ACCESS_COOKIE, path="/", secure=True, httponly=True, samesite="lax")
    response.delete_cookie(REFRESH_COOKIE, path="/", secure=True, httponly=True, samesite="lax")


def _summary(user: User) -> UserSummary:
    return UserSummary(id=user.id, email=user.email, verified=user.verified)


@router.post("/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request, response: Response):
    """Create an account and email a verification link.

    Signing up again with an address that is still unverified re-sends the
    link instead of failing. Rate limited per client IP and per email.

    Raises:
        400: INVALID_EMAIL, INVALID_PASSWORD or USER_EXISTS
        429: If rate limit exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "signup", email=body.email, response=response)
    outcome = await runtime.auth.signup(body.email, body.password)
    if outcome.status == "auto_verified":
        _apply_session_cookies(response, outcome.tokens, runtime.settings)
        return Envelope(
            status="ok",
            data=SignupResponse(
                message="Account created and verified (local development).",
                user=_summary(outcome.user),
            ),
        )
    if outcome.status == "resent":
        response.status_code = 200
        return Envelope(
            status="ok",
            data=SignupResponse(
                message="Account pending verification. A new verification email has been sent.",
                resend=True,
                email_sent=outcome.email_sent,
            ),
        )
    return Envelope(
        status="ok",
        data=SignupResponse(
            message="Account created. Check your email to verify your address.",
            email_sent=outcome.email_sent,
        ),
    )


@router.get("/verify", tags=["auth"])
async def verify(token: Optional[str] = Query(None)):
    """Consume an emailed verification link and sign the user in.

    Always answers with a redirect to the web app, carrying ``?error=`` when
    the link could not be used.

    Raises:
        400: MISSING_TOKEN when no token is supplied
    """
    if not token:
        raise _http_error("MISSING_TOKEN", "verification token is required", status_code=400)
    runtime = get_runtime()
    origin = runtime.settings.app_origin

    def _failure(reason: str) -> RedirectResponse:
        return RedirectResponse(f"{origin}/verify?{urlencode({'error': reason})}", status_code=302)

    try:
        user, tokens = await runtime.auth.verify_email(token)
    except AuthenticationError:
        return _failure("invalid_token")
    except NotFoundError:
        return _failure("user_not_found")
    except Exception as exc:
        logger.exception("verify_failed", error_type=type(exc).__name__)
        return _failure("server_error")
    redirect = RedirectResponse(origin, status_code=302)
    _apply_session_cookies(redirect, tokens, runtime.settings)
    return redirect


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(request: Request, response: Response, body: Optional[LoginRequest] = None):
    """Authenticate with email and password and set the session cookies.

    Raises:
        400: MISSING_CREDENTIALS
        401: INVALID_CREDENTIALS or NOT_VERIFIED
        429: If rate limit exceeded
    """
    if body is None or not body.email or not body.password:
        raise _http_error("MISSING_CREDENTIALS", "email and password are required", status_code=400)
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "login", email=body.email, response=response)
    user, tokens = await runtime.auth.login(body.email, body.password)
    _apply_session_cookies(response, tokens, runtime.settings)
    return Envelope(status="ok", data=LoginResponse(message="Logged in.", user=_summary(user)))


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    response: Response,
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Rotate the refresh token and issue a new access token.

    The access cookie may be expired; it only identifies the user.

    Raises:
        401: MISSING_REFRESH_TOKEN, UNAUTHORIZED, INVALID_TOKEN,
            INVALID_REFRESH_TOKEN or USER_NOT_FOUND
    """
    runtime = get_runtime()
    _, tokens = await runtime.auth.refresh(access_token, refresh_token)
    _apply_session_cookies(response, tokens, runtime.settings)
    return Envelope(status="ok", data=MessageResponse(message="Session refreshed."))


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    await runtime.auth.logout(access_token, refresh_token)
    _clear_session_cookies(response)
    return Envelope(status="ok", data=MessageResponse(message="Logged out."))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(identity: AccessClaims = Depends(require_identity)):
    """Return the signed-in user's profile.

    Raises:
        401: UNAUTHORIZED or INVALID_TOKEN
        404: USER_NOT_FOUND
    """
    user = await get_runtime().auth.current_user(identity.sub)
    data = MeResponse(
        id=user.id, email=user.email, verified=user.verified, created_at=user.created_at
    )
    return Envelope(status="ok", data=data.model_dump(mode="json", by_alias=True))


@router.get("/session", response_model=Envelope, tags=["auth"])
async def session_status(identity: Optional[AccessClaims] = Depends(optional_identity)):
    if identity is None:
        return Envelope(status="ok", data=SessionStatus(authenticated=False))
    return Envelope(
        status="ok",
        data=SessionStatus(
            authenticated=True,
            user=SessionUser(id=identity.sub, email=identity.email),
        ),
    )


@router.post("/resend", response_model=Envelope, tags=["auth"])
async def resend(body: ResendRequest, request: Request, response: Response):
    """Send a new verification link.

    Unknown addresses get the same answer as pending ones.

    Raises:
        400: INVALID_EMAIL or ALREADY_VERIFIED
        429: If rate limit exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "resend", email=body.email, response=response)
    await runtime.auth.resend_verification(body.email)
    return Envelope(status="ok", data=MessageResponse(message=_RESEND_MESSAGE))
