from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Optional, Protocol, Union

from lawmakers_auth.config import Settings
from lawmakers_auth.logging import get_logger

logger = get_logger(__name__)


class TokenStore(Protocol):
    async def put_verify_token(self, jti: str, payload: dict, ttl_seconds: int) -> None:
        ...

    async def pop_verify_token(self, jti: str) -> Optional[dict]:
        ...

    async def store_refresh_token(self, user_id: str, token_id: str, ttl_seconds: int) -> None:
        ...

    async def refresh_token_exists(self, user_id: str, token_id: str) -> bool:
        ...

    async def rotate_refresh_token(
        self, user_id: str, old_token_id: str, new_token_id: str, ttl_seconds: int
    ) -> bool:
        ...

    async def delete_refresh_token(self, user_id: str, token_id: str) -> bool:
        ...

    async def revoke_user_refresh_tokens(self, user_id: str) -> int:
        ...


@dataclass(frozen=True)
class AccessClaims:
    sub: str
    email: str
    iat: int
    exp: int
    aud: str
    purpose: Literal["access"] = "access"


@dataclass(frozen=True)
class VerifyClaims:
    sub: str
    email: str
    jti: str
    iat: int
    exp: int
    purpose: Literal["verify"] = "verify"


TokenClaims = Union[AccessClaims, VerifyClaims]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


def parse_claims(payload: dict[str, Any]) -> Optional[TokenClaims]:
    """Build the claims variant named by ``purpose``; None if any field is off."""
    purpose = payload.get("purpose")
    sub, email = payload.get("sub"), payload.get("email")
    iat, exp = payload.get("iat"), payload.get("exp")
    if not (_is_text(sub) and _is_text(email) and _is_int(iat) and _is_int(exp)):
        return None
    if purpose == "access":
        aud = payload.get("aud")
        if not _is_text(aud):
            return None
        return AccessClaims(sub=sub, email=email, iat=iat, exp=exp, aud=aud)
    if purpose == "verify":
        jti = payload.get("jti")
        if not _is_text(jti):
            return None
        return VerifyClaims(sub=sub, email=email, jti=jti, iat=iat, exp=exp)
    return None


def generate_token_id() -> str:
    """32 random bytes, base64url without padding."""
    return secrets.token_urlsafe(32)


class TokenService:
    """Signs access/verify JWTs and tracks verify and refresh tokens in the KV store."""

    def __init__(self, store: TokenStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=max(0, settings.jwt_leeway_seconds))

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # JWT plumbing
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Return the payload of a well-formed HS256 token with a valid signature."""
        # base64url segments are ASCII; anything else cannot carry a valid signature
        if not isinstance(token, str) or not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Only HS256 is accepted, whatever the header asks for
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        return payload

    def _expired(self, exp: int) -> bool:
        return exp <= self._now().timestamp() - self._clock_skew_leeway.total_seconds()

    # access tokens
    def issue_access_token(self, user_id: str, email: str) -> str:
        iat = int(self._now().timestamp())
        return self._encode_jwt(
            {
                "sub": user_id,
                "email": email,
                "purpose": "access",
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "iat": iat,
                "exp": iat + self.settings.access_token_ttl_seconds,
            }
        )

    def verify_access_token(
        self, token: Optional[str], *, allow_expired: bool = False
    ) -> Optional[AccessClaims]:
        """Return the access claims or None on any failure.

        ``allow_expired`` skips only the expiry check; signature, issuer,
        audience and purpose are always enforced.
        """
        if not token:
            return None
        payload = self._decode_jwt(token)
        if payload is None:
            return None
        claims = parse_claims(payload)
        if not isinstance(claims, AccessClaims):
            return None
        if claims.aud != self.settings.jwt_audience:
            return None
        if not allow_expired and self._expired(claims.exp):
            logger.info("access_token_expired", user_id=claims.sub)
            return None
        return claims

    # verify tokens
    async def issue_verify_token(self, user_id: str, email: str) -> str:
        jti = generate_token_id()
        iat = int(self._now().timestamp())
        ttl = self.settings.verify_token_ttl_seconds
        await self.store.put_verify_token(jti, {"user_id": user_id, "email": email}, ttl)
        return self._encode_jwt(
            {
                "sub": user_id,
                "email": email,
                "purpose": "verify",
                "jti": jti,
                "iss": self.settings.jwt_issuer,
                "iat": iat,
                "exp": iat + ttl,
            }
        )

    async def consume_verify_token(self, token: Optional[str]) -> Optional[VerifyClaims]:
        """Validate a verify token and burn its ``jti``; a second call returns None."""
        if not token:
            return None
        payload = self._decode_jwt(token)
        if payload is None:
            return None
        claims = parse_claims(payload)
        if not isinstance(claims, VerifyClaims) or self._expired(claims.exp):
            return None
        try:
            record = await self.store.pop_verify_token(claims.jti)
        except Exception as exc:
            logger.error("verify_token_store_failed", error=str(exc))
            return None
        if record is None:
            logger.warning("verify_token_unknown_or_used", user_id=claims.sub)
            return None
        if record.get("user_id") != claims.sub:
            logger.warning("verify_token_subject_mismatch", user_id=claims.sub)
            return None
        return claims

    # refresh tokens
    def generate_refresh_token(self) -> str:
        return generate_token_id()

    async def store_refresh_token(self, user_id: str, token_id: str) -> None:
        await self.store.store_refresh_token(user_id, token_id, self.settings.refresh_token_ttl_seconds)

    async def validate_refresh_token(self, user_id: str, token_id: Optional[str]) -> bool:
        if not token_id:
            return False
        return await self.store.refresh_token_exists(user_id, token_id)

    async def rotate_refresh_token(self, user_id: str, old_token_id: str) -> Optional[str]:
        """Swap ``old_token_id`` for a fresh id; None if the old one was already gone."""
        new_token_id = generate_token_id()
        rotated = await self.store.rotate_refresh_token(
            user_id, old_token_id, new_token_id, self.settings.refresh_token_ttl_seconds
        )
        return new_token_id if rotated else None

    async def delete_refresh_token(self, user_id: str, token_id: str) -> bool:
        return await self.store.delete_refresh_token(user_id, token_id)

    async def revoke_all_refresh_tokens(self, user_id: str) -> int:
        revoked = await self.store.revoke_user_refresh_tokens(user_id)
        logger.info("refresh_tokens_revoked", user_id=user_id, count=revoked)
        return revoked
