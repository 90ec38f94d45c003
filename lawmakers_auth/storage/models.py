from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    email_normalized: str
    password_hash: str
    verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def touched(self, **changes) -> "User":
        """Return a copy with ``changes`` applied and ``updated_at`` bumped."""
        return replace(self, updated_at=utcnow(), **changes)
