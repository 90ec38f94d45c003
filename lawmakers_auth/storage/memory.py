from __future__ import annotations

import threading
from dataclasses import replace
from typing import Dict, Optional

from lawmakers_auth.logging import get_logger, redact_email
from lawmakers_auth.storage.common import generate_uuid, normalize_email
from lawmakers_auth.storage.errors import ConstraintViolation
from lawmakers_auth.storage.models import User, utcnow


class MemoryStore:
    """In-process user store for tests and local development.

    Mirrors the ``users`` table of :class:`PostgresStore`: the normalized
    email is unique and every mutation bumps ``updated_at``.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._by_email: Dict[str, str] = {}
        # RLock so helpers may re-enter while holding the lock
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def create_user(self, email: str, password_hash: str, *, verified: bool = False) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if normalized in self._by_email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=generate_uuid(),
                email=email.strip(),
                email_normalized=normalized,
                password_hash=password_hash,
                verified=verified,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._by_email[normalized] = user.id
        self.logger.info("user_created", user_id=user.id, email=redact_email(normalized))
        return replace(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._by_email.get(normalize_email(email))
            user = self.users.get(user_id) if user_id else None
            return replace(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def mark_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = user.touched(verified=True)
            self.users[user_id] = updated
            return replace(updated)

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = user.touched(password_hash=password_hash)
            self.users[user_id] = updated
            return replace(updated)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.pop(user_id, None)
            if not user:
                return False
            self._by_email.pop(user.email_normalized, None)
            return True
