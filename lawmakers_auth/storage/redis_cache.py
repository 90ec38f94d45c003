from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ResponseError


def verify_key(jti: str) -> str:
    return f"verify:{jti}"


def refresh_key(user_id: str, token_id: str) -> str:
    return f"refresh:{user_id}:{token_id}"


def refresh_prefix(user_id: str) -> str:
    return f"refresh:{user_id}:"


def _refresh_record() -> str:
    return json.dumps({"created_at": datetime.now(timezone.utc).isoformat()})


def _load_json(raw: Optional[str]) -> Optional[dict]:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


class RedisCache:
    """Redis-backed key-value store for verify tokens, refresh tokens and rate counters."""

    # Atomic check-and-replace: the old refresh record must exist to mint the new one
    _ROTATE_SCRIPT = """
if redis.call('DEL', KEYS[1]) == 1 then
  redis.call('SET', KEYS[2], ARGV[1], 'EX', tonumber(ARGV[2]))
  return 1
end
return 0
"""

    # Fixed window counters: the TTL is only set when the window opens
    _INCREMENT_SCRIPT = """
local window = tonumber(ARGV[1])
local counts = {}
for i, key in ipairs(KEYS) do
  local n = redis.call('INCR', key)
  if n == 1 or redis.call('TTL', key) < 0 then
    redis.call('EXPIRE', key, window)
  end
  counts[i] = n
end
return counts
"""

    _GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
  redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._rotate = self.client.register_script(self._ROTATE_SCRIPT)
        self._increment = self.client.register_script(self._INCREMENT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def put_verify_token(self, jti: str, payload: dict, ttl_seconds: int) -> None:
        await self.client.set(verify_key(jti), json.dumps(payload), ex=max(1, ttl_seconds))

    async def pop_verify_token(self, jti: str) -> Optional[dict]:
        """Atomically read and delete a verify-token record.

        Two concurrent consumers of the same token can never both see the
        record. Uses GETDEL (Redis 6.2+) with a Lua fallback.
        """
        key = verify_key(jti)
        try:
            cached = await self.client.getdel(key)
        except ResponseError:
            cached = await self.client.eval(self._GETDEL_SCRIPT, 1, key)
        return _load_json(cached)

    async def store_refresh_token(self, user_id: str, token_id: str, ttl_seconds: int) -> None:
        await self.client.set(
            refresh_key(user_id, token_id), _refresh_record(), ex=max(1, ttl_seconds)
        )

    async def refresh_token_exists(self, user_id: str, token_id: str) -> bool:
        return bool(await self.client.exists(refresh_key(user_id, token_id)))

    async def rotate_refresh_token(
        self, user_id: str, old_token_id: str, new_token_id: str, ttl_seconds: int
    ) -> bool:
        result = await self._rotate(
            keys=[refresh_key(user_id, old_token_id), refresh_key(user_id, new_token_id)],
            args=[_refresh_record(), max(1, ttl_seconds)],
        )
        return int(result or 0) == 1

    async def delete_refresh_token(self, user_id: str, token_id: str) -> bool:
        return bool(await self.client.delete(refresh_key(user_id, token_id)))

    async def revoke_user_refresh_tokens(self, user_id: str) -> int:
        """Delete every refresh record of ``user_id``; returns how many were removed."""
        keys = [key async for key in self.client.scan_iter(match=f"{refresh_prefix(user_id)}*", count=100)]
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def get_counters(self, keys: Sequence[str]) -> List[int]:
        values = await self.client.mget(list(keys))
        return [int(v) if v is not None else 0 for v in values]

    async def increment_counters(self, keys: Sequence[str], window_seconds: int) -> List[int]:
        result = await self._increment(keys=list(keys), args=[max(1, window_seconds)])
        return [int(v) for v in result or []]

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues under the test client, but exposes async methods so callers await
    it exactly like :class:`RedisCache`.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._rotate = self._sync_client.register_script(RedisCache._ROTATE_SCRIPT)
        self._increment = self._sync_client.register_script(RedisCache._INCREMENT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def put_verify_token(self, jti: str, payload: dict, ttl_seconds: int) -> None:
        self._sync_client.set(verify_key(jti), json.dumps(payload), ex=max(1, ttl_seconds))

    async def pop_verify_token(self, jti: str) -> Optional[dict]:
        key = verify_key(jti)
        try:
            cached = self._sync_client.getdel(key)
        except ResponseError:
            cached = self._sync_client.eval(RedisCache._GETDEL_SCRIPT, 1, key)
        return _load_json(cached)

    async def store_refresh_token(self, user_id: str, token_id: str, ttl_seconds: int) -> None:
        self._sync_client.set(
            refresh_key(user_id, token_id), _refresh_record(), ex=max(1, ttl_seconds)
        )

    async def refresh_token_exists(self, user_id: str, token_id: str) -> bool:
        return bool(self._sync_client.exists(refresh_key(user_id, token_id)))

    async def rotate_refresh_token(
        self, user_id: str, old_token_id: str, new_token_id: str, ttl_seconds: int
    ) -> bool:
        result = self._rotate(
            keys=[refresh_key(user_id, old_token_id), refresh_key(user_id, new_token_id)],
            args=[_refresh_record(), max(1, ttl_seconds)],
        )
        return int(result or 0) == 1

    async def delete_refresh_token(self, user_id: str, token_id: str) -> bool:
        return bool(self._sync_client.delete(refresh_key(user_id, token_id)))

    async def revoke_user_refresh_tokens(self, user_id: str) -> int:
        keys = list(self._sync_client.scan_iter(match=f"{refresh_prefix(user_id)}*", count=100))
        if not keys:
            return 0
        return int(self._sync_client.delete(*keys))

    async def get_counters(self, keys: Sequence[str]) -> List[int]:
        values = self._sync_client.mget(list(keys))
        return [int(v) if v is not None else 0 for v in values]

    async def increment_counters(self, keys: Sequence[str], window_seconds: int) -> List[int]:
        result = self._increment(keys=list(keys), args=[max(1, window_seconds)])
        return [int(v) for v in result or []]

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()


class MemoryCache:
    """In-process stand-in for :class:`RedisCache` with per-key expiry.

    Only used when Redis is unavailable in tests or local development; the
    state lives in a single process so it offers no cross-worker guarantees.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    def _put(self, key: str, value: str, ttl_seconds: int) -> None:
        self._entries[key] = (value, self._clock() + max(1, ttl_seconds))

    async def put_verify_token(self, jti: str, payload: dict, ttl_seconds: int) -> None:
        with self._lock:
            self._put(verify_key(jti), json.dumps(payload), ttl_seconds)

    async def pop_verify_token(self, jti: str) -> Optional[dict]:
        with self._lock:
            cached = self._live(verify_key(jti))
            self._entries.pop(verify_key(jti), None)
        return _load_json(cached)

    async def store_refresh_token(self, user_id: str, token_id: str, ttl_seconds: int) -> None:
        with self._lock:
            self._put(refresh_key(user_id, token_id), _refresh_record(), ttl_seconds)

    async def refresh_token_exists(self, user_id: str, token_id: str) -> bool:
        with self._lock:
            return self._live(refresh_key(user_id, token_id)) is not None

    async def rotate_refresh_token(
        self, user_id: str, old_token_id: str, new_token_id: str, ttl_seconds: int
    ) -> bool:
        old_key = refresh_key(user_id, old_token_id)
        with self._lock:
            if self._live(old_key) is None:
                return False
            self._entries.pop(old_key, None)
            self._put(refresh_key(user_id, new_token_id), _refresh_record(), ttl_seconds)
            return True

    async def delete_refresh_token(self, user_id: str, token_id: str) -> bool:
        key = refresh_key(user_id, token_id)
        with self._lock:
            present = self._live(key) is not None
            self._entries.pop(key, None)
            return present

    async def revoke_user_refresh_tokens(self, user_id: str) -> int:
        prefix = refresh_prefix(user_id)
        with self._lock:
            keys = [k for k in list(self._entries) if k.startswith(prefix) and self._live(k) is not None]
            for key in keys:
                self._entries.pop(key, None)
            return len(keys)

    async def get_counters(self, keys: Sequence[str]) -> List[int]:
        with self._lock:
            return [int(self._live(key) or 0) for key in keys]

    async def increment_counters(self, keys: Sequence[str], window_seconds: int) -> List[int]:
        counts: List[int] = []
        with self._lock:
            for key in keys:
                entry = self._entries.get(key)
                if entry is None or entry[1] <= self._clock():
                    self._put(key, "1", window_seconds)
                    counts.append(1)
                    continue
                count = int(entry[0]) + 1
                self._entries[key] = (str(count), entry[1])
                counts.append(count)
        return counts

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
