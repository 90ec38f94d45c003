"""Fixed-window rate limiting keyed by client IP and by email.

Each guarded action keeps two counters, ``rate:ip:{ip}:{action}`` and
``rate:email:{hash}:{action}``. A request is refused as soon as either
counter has reached the action's limit. Counters expire with the window.
The limiter fails open: if the counter store is unreachable the request
goes through and a warning is logged.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

from lawmakers_auth.config import Settings
from lawmakers_auth.logging import get_logger, mask_ip
from lawmakers_auth.storage.common import normalize_email

logger = get_logger(__name__)


class CounterStore(Protocol):
    async def get_counters(self, keys: Sequence[str]) -> List[int]:
        ...

    async def increment_counters(self, keys: Sequence[str], window_seconds: int) -> List[int]:
        ...


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_in: int


RATE_LIMITS: Dict[str, RateLimitRule] = {
    "signup": RateLimitRule(limit=3, window_seconds=60 * 60),
    "login": RateLimitRule(limit=5, window_seconds=15 * 60),
    "resend": RateLimitRule(limit=3, window_seconds=60 * 60),
}


def hash_email(email: str) -> str:
    return hashlib.sha256(normalize_email(email).encode("utf-8")).hexdigest()[:16]


def rate_keys(ip: str, action: str, email: Optional[str] = None) -> List[str]:
    keys = [f"rate:ip:{ip or 'unknown'}:{action}"]
    if email:
        keys.append(f"rate:email:{hash_email(email)}:{action}")
    return keys


class RateLimiter:
    def __init__(self, store: CounterStore, rules: Optional[Dict[str, RateLimitRule]] = None) -> None:
        self.store = store
        self.rules = dict(RATE_LIMITS if rules is None else rules)

    @classmethod
    def from_settings(cls, store: CounterStore, settings: Settings) -> "RateLimiter":
        return cls(
            store,
            {
                "signup": RateLimitRule(settings.signup_rate_limit, settings.signup_rate_window_seconds),
                "login": RateLimitRule(settings.login_rate_limit, settings.login_rate_window_seconds),
                "resend": RateLimitRule(settings.resend_rate_limit, settings.resend_rate_window_seconds),
            },
        )

    def _rule(self, action: str) -> Optional[RateLimitRule]:
        rule = self.rules.get(action)
        if rule is None:
            logger.warning("rate_limit_unknown_action", action=action)
            return None
        if rule.window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", action=action, window_seconds=rule.window_seconds)
            return RateLimitRule(rule.limit, 60)
        return rule

    async def check(self, ip: str, action: str, email: Optional[str] = None) -> RateLimitDecision:
        """Read both counters without bumping them."""
        rule = self._rule(action)
        if rule is None or rule.limit <= 0:
            return RateLimitDecision(True, 0, 0, 0)
        try:
            counts = await self.store.get_counters(rate_keys(ip, action, email))
        except Exception as exc:
            logger.warning("rate_limit_store_unavailable", action=action, error=str(exc))
            return RateLimitDecision(True, rule.limit, rule.limit, rule.window_seconds)
        highest = max(counts, default=0)
        if highest >= rule.limit:
            logger.warning("rate_limited", action=action, ip=mask_ip(ip))
            return RateLimitDecision(False, rule.limit, 0, rule.window_seconds)
        return RateLimitDecision(
            True, rule.limit, max(0, rule.limit - highest - 1), rule.window_seconds
        )

    async def increment(self, ip: str, action: str, email: Optional[str] = None) -> None:
        rule = self._rule(action)
        if rule is None or rule.limit <= 0:
            return
        try:
            await self.store.increment_counters(rate_keys(ip, action, email), rule.window_seconds)
        except Exception as exc:
            logger.warning("rate_limit_store_unavailable", action=action, error=str(exc))

    async def hit(self, ip: str, action: str, email: Optional[str] = None) -> RateLimitDecision:
        """Check, and count the attempt only when it is allowed."""
        decision = await self.check(ip, action, email)
        if decision.allowed:
            await self.increment(ip, action, email)
        return decision
