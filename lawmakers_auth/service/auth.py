from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Literal, Optional, Protocol, Tuple, TypeVar

from lawmakers_auth.config import Settings
from lawmakers_auth.logging import get_logger, redact_email
from lawmakers_auth.service.email import EmailService
from lawmakers_auth.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from lawmakers_auth.service.passwords import PasswordHasher
from lawmakers_auth.service.tokens import TokenService
from lawmakers_auth.storage.errors import ConstraintViolation
from lawmakers_auth.storage.models import User

logger = get_logger(__name__)

T = TypeVar("T")


class AuthStore(Protocol):
    def create_user(self, email: str, password_hash: str, *, verified: bool = False) -> User:
        ...

    def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def mark_verified(self, user_id: str) -> Optional[User]:
        ...

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        ...


@dataclass
class SessionTokens:
    access_token: str
    refresh_token: str


@dataclass
class SignupOutcome:
    status: Literal["created", "resent", "auto_verified"]
    user: User
    tokens: Optional[SessionTokens] = None
    email_sent: bool = False


def _invalid_credentials() -> AuthenticationError:
    # one shared message so unknown email and wrong password look the same
    return AuthenticationError("invalid email or password", error_code="INVALID_CREDENTIALS")


class AuthService:
    """Signup, verification, login and session rotation on top of the token service."""

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenService,
        passwords: PasswordHasher,
        email: EmailService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.passwords = passwords
        self.email = email
        self.settings = settings
        self.logger = logger
        self._dummy_record: Optional[str] = None

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking store or hashing call off the event loop."""
        return await asyncio.to_thread(fn, *args)

    async def _burn_password_check(self, password: str) -> None:
        """Spend the cost of a real verify when there is no account to check."""
        if self._dummy_record is None:
            self._dummy_record = await self._run(self.passwords.hash, "placeholder-Password-1")
        await self._run(self.passwords.verify, password, self._dummy_record)

    async def establish_session(self, user: User) -> SessionTokens:
        refresh_token = self.tokens.generate_refresh_token()
        await self.tokens.store_refresh_token(user.id, refresh_token)
        access_token = self.tokens.issue_access_token(user.id, user.email)
        return SessionTokens(access_token=access_token, refresh_token=refresh_token)

    async def send_verification(self, user: User) -> bool:
        token = await self.tokens.issue_verify_token(user.id, user.email)
        sent = await self.email.send_verification_email(user.email, token)
        if not sent:
            self.logger.warning("verification_email_not_sent", user_id=user.id)
        return sent

    async def _auto_verify(self, user: User) -> SignupOutcome:
        verified = await self._run(self.store.mark_verified, user.id) or user
        self.logger.warning("signup_auto_verified", user_id=user.id)
        return SignupOutcome("auto_verified", verified, tokens=await self.establish_session(verified))

    async def signup(self, email: str, password: str) -> SignupOutcome:
        """Create an account, or re-send the link for a pending one.

        Raises:
            ConflictError: a verified account already owns the address
        """
        existing = await self._run(self.store.get_user_by_email, email)
        if existing and existing.verified:
            self.logger.info("signup_existing_verified", user_id=existing.id)
            raise ConflictError("an account with this email already exists", error_code="USER_EXISTS")
        if existing:
            if self.settings.auto_verify_enabled:
                return await self._auto_verify(existing)
            sent = await self.send_verification(existing)
            self.logger.info("signup_resend", user_id=existing.id)
            return SignupOutcome("resent", existing, email_sent=sent)

        password_hash = await self._run(self.passwords.hash, password)
        try:
            user = await self._run(self.store.create_user, email, password_hash)
        except ConstraintViolation:
            # lost a race with a concurrent signup for the same address
            raise ConflictError("an account with this email already exists", error_code="USER_EXISTS")
        self.logger.info("signup", user_id=user.id, email=redact_email(user.email))
        if self.settings.auto_verify_enabled:
            return await self._auto_verify(user)
        sent = await self.send_verification(user)
        return SignupOutcome("created", user, email_sent=sent)

    async def verify_email(self, token: Optional[str]) -> Tuple[User, SessionTokens]:
        """Consume a verify token, mark the account verified and open a session.

        Raises:
            AuthenticationError: INVALID_TOKEN for bad, expired or used tokens
            NotFoundError: USER_NOT_FOUND when the account is gone
        """
        claims = await self.tokens.consume_verify_token(token)
        if claims is None:
            self.logger.warning("email_verification_invalid_token")
            raise AuthenticationError("invalid or expired verification link", error_code="INVALID_TOKEN")
        user = await self._run(self.store.get_user, claims.sub)
        if user is None:
            raise NotFoundError("user not found", error_code="USER_NOT_FOUND")
        if user.verified:
            self.logger.info("verify_already_verified", user_id=user.id)
        else:
            user = await self._run(self.store.mark_verified, user.id)
            if user is None:
                raise NotFoundError("user not found", error_code="USER_NOT_FOUND")
            self.logger.info("verify_success", user_id=user.id)
            await self.email.send_welcome_email(user.email)
        return user, await self.establish_session(user)

    async def login(self, email: str, password: str) -> Tuple[User, SessionTokens]:
        user = await self._run(self.store.get_user_by_email, email)
        if user is None:
            await self._burn_password_check(password)
            self.logger.info("login_failed", reason="unknown_email")
            raise _invalid_credentials()
        if not await self._run(self.passwords.verify, password, user.password_hash):
            self.logger.info("login_failed", user_id=user.id, reason="bad_password")
            raise _invalid_credentials()
        if not user.verified:
            self.logger.info("login_unverified", user_id=user.id)
            raise AuthenticationError("email address not verified", error_code="NOT_VERIFIED")
        if self.passwords.needs_rehash(user.password_hash):
            new_hash = await self._run(self.passwords.hash, password)
            user = await self._run(self.store.update_password, user.id, new_hash) or user
            self.logger.info("password_rehashed", user_id=user.id)
        tokens = await self.establish_session(user)
        self.logger.info("login", user_id=user.id)
        return user, tokens

    async def refresh(
        self, access_token: Optional[str], refresh_token: Optional[str]
    ) -> Tuple[User, SessionTokens]:
        """Rotate the refresh token and mint a new access token.

        The access token only names the subject here: its signature, issuer,
        audience and purpose are checked but an expired one is accepted.
        """
        if not refresh_token:
            raise AuthenticationError("missing refresh token", error_code="MISSING_REFRESH_TOKEN")
        if not access_token:
            raise AuthenticationError("authentication required", error_code="UNAUTHORIZED")
        claims = self.tokens.verify_access_token(access_token, allow_expired=True)
        if claims is None:
            raise AuthenticationError("invalid access token", error_code="INVALID_TOKEN")
        if not await self.tokens.validate_refresh_token(claims.sub, refresh_token):
            self.logger.warning("refresh_token_invalid", user_id=claims.sub)
            raise AuthenticationError("invalid refresh token", error_code="INVALID_REFRESH_TOKEN")
        user = await self._run(self.store.get_user, claims.sub)
        if user is None or not user.verified:
            raise AuthenticationError("user not found", error_code="USER_NOT_FOUND")
        new_refresh = await self.tokens.rotate_refresh_token(user.id, refresh_token)
        if new_refresh is None:
            self.logger.warning("refresh_token_reuse", user_id=user.id)
            raise AuthenticationError("invalid refresh token", error_code="INVALID_REFRESH_TOKEN")
        access = self.tokens.issue_access_token(user.id, user.email)
        self.logger.info("token_refresh", user_id=user.id)
        return user, SessionTokens(access_token=access, refresh_token=new_refresh)

    async def logout(self, access_token: Optional[str], refresh_token: Optional[str]) -> None:
        """Best-effort revocation of the presented refresh token."""
        claims = self.tokens.verify_access_token(access_token, allow_expired=True)
        if claims is None or not refresh_token:
            self.logger.info("logout", user_id=claims.sub if claims else None, revoked=False)
            return
        try:
            revoked = await self.tokens.delete_refresh_token(claims.sub, refresh_token)
        except Exception as exc:
            self.logger.warning("logout_revoke_failed", user_id=claims.sub, error=str(exc))
            revoked = False
        self.logger.info("logout", user_id=claims.sub, revoked=revoked)

    async def current_user(self, user_id: str) -> User:
        user = await self._run(self.store.get_user, user_id)
        if user is None:
            raise NotFoundError("user not found", error_code="USER_NOT_FOUND")
        return user

    async def resend_verification(self, email: str) -> bool:
        """Send a fresh link to a pending account.

        Unknown addresses return False silently so callers can answer with
        the same message either way.
        """
        user = await self._run(self.store.get_user_by_email, email)
        if user is None:
            self.logger.info("resend_unknown_email")
            return False
        if user.verified:
            raise ValidationError("email already verified", error_code="ALREADY_VERIFIED")
        sent = await self.send_verification(user)
        self.logger.info("resend_verification", user_id=user.id, email_sent=sent)
        return sent

    async def reset_password(self, email: str, new_password: str) -> int:
        """Set a new password and sign the account out everywhere.

        Returns the number of refresh tokens revoked.
        """
        problem = self.passwords.validate_strength(new_password)
        if problem:
            raise ValidationError(problem, error_code="INVALID_PASSWORD")
        user = await self._run(self.store.get_user_by_email, email)
        if user is None:
            raise NotFoundError("user not found", error_code="USER_NOT_FOUND")
        password_hash = await self._run(self.passwords.hash, new_password)
        await self._run(self.store.update_password, user.id, password_hash)
        revoked = await self.tokens.revoke_all_refresh_tokens(user.id)
        self.logger.info("password_reset", user_id=user.id, revoked=revoked)
        return revoked

    async def revoke_sessions(self, email: str) -> int:
        user = await self._run(self.store.get_user_by_email, email)
        if user is None:
            raise NotFoundError("user not found", error_code="USER_NOT_FOUND")
        return await self.tokens.revoke_all_refresh_tokens(user.id)
