from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from lawmakers_auth.logging import get_logger

logger = get_logger(__name__)

_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


class PasswordScheme(str, Enum):
    """Password hash record formats accepted by the hasher."""

    ARGON2ID = "argon2id"
    PBKDF2_SHA256 = "pbkdf2_sha256"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/lawmakers", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (sync Redis client, runtime resets).",
    )
    shared_fs_root: str = env_field("/srv/lawmakers", "SHARED_FS_ROOT")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("lawmakers-auth", "JWT_ISSUER")
    jwt_audience: str = env_field("lawmakers-app", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        30, "JWT_LEEWAY_SECONDS", description="Clock skew tolerated on exp checks"
    )
    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    verify_token_ttl_seconds: int = env_field(24 * 60 * 60, "VERIFY_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        30 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS"
    )

    app_origin: str = env_field("http://localhost:5173", "APP_ORIGIN")
    cors_allow_origins: list[str] = env_field(
        [],
        "CORS_ALLOW_ORIGINS",
        description="Extra comma-separated origins allowed to call the API with credentials",
    )
    dev_auto_verify: bool = env_field(
        False,
        "DEV_AUTO_VERIFY",
        description="Skip email verification on signup; honoured only for a localhost APP_ORIGIN",
    )
    trust_proxy_headers: bool = env_field(
        True,
        "TRUST_PROXY_HEADERS",
        description="Read the client address from CF-Connecting-IP / X-Forwarded-For / X-Real-IP",
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    password_scheme: PasswordScheme = env_field(PasswordScheme.ARGON2ID, "PASSWORD_SCHEME")
    pbkdf2_iterations: int = env_field(100_000, "PBKDF2_ITERATIONS")

    signup_rate_limit: int = env_field(3, "SIGNUP_RATE_LIMIT")
    signup_rate_window_seconds: int = env_field(60 * 60, "SIGNUP_RATE_WINDOW_SECONDS")
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(15 * 60, "LOGIN_RATE_WINDOW_SECONDS")
    resend_rate_limit: int = env_field(3, "RESEND_RATE_LIMIT")
    resend_rate_window_seconds: int = env_field(60 * 60, "RESEND_RATE_WINDOW_SECONDS")

    mail_api_key: str | None = env_field(
        None, "MAIL_API_KEY", description="Mail provider API key; unset logs mail instead of sending"
    )
    mail_api_url: str = env_field("https://api.resend.com/emails", "MAIL_API_URL")
    email_from_address: str = env_field("onboarding@resend.dev", "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Lawmakers", "EMAIL_FROM_NAME")
    mail_timeout_seconds: float = env_field(5.0, "MAIL_TIMEOUT_SECONDS")

    build_sha: str | None = env_field(None, "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def app_origin_is_local(self) -> bool:
        return (urlparse(self.app_origin).hostname or "") in _LOCAL_HOSTS

    @property
    def auto_verify_enabled(self) -> bool:
        """Dev bypass is live only when requested and the app runs on localhost."""
        return self.dev_auto_verify and self.app_origin_is_local

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip().rstrip("/") for item in value.split(",") if item.strip()]
        return value

    @field_validator("app_origin")
    @classmethod
    def _strip_origin(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("password_scheme")
    @classmethod
    def _validate_password_scheme(cls, value: PasswordScheme) -> PasswordScheme:
        return PasswordScheme(value)

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so sessions survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/lawmakers"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
