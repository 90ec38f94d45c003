"""Helpers shared by the memory and postgres user stores."""

from __future__ import annotations

import unicodedata
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from lawmakers_auth.storage.models import User


def normalize_email(email: str) -> str:
    """Canonical lookup key for an address: NFKC, trimmed, lowercased."""
    return unicodedata.normalize("NFKC", email or "").strip().lower()


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def _aware(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def row_to_user(row: Any) -> User:
    return User(
        id=str(safe_row_value(row, "id")),
        email=safe_row_value(row, "email"),
        email_normalized=safe_row_value(row, "email_normalized"),
        password_hash=safe_row_value(row, "password_hash"),
        verified=bool(safe_row_value(row, "verified", False)),
        created_at=_aware(safe_row_value(row, "created_at")),
        updated_at=_aware(safe_row_value(row, "updated_at")),
    )


def generate_uuid() -> str:
    return str(uuid.uuid4())
