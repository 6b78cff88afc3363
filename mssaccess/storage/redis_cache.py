from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis


def blacklist_key(token_hash: str) -> str:
    return f"blacklist:{token_hash}"


def access_token_key(token_hash: str) -> str:
    return f"access_token:{token_hash}"


def mfa_used_key(user_id: str, code_digest: str) -> str:
    return f"mfa_used:{user_id}:{code_digest}"


def reset_attempts_key(email_digest: str) -> str:
    return f"password_reset_attempts:{email_digest}"


def ttl_seconds(expires_at: datetime) -> int:
    """Seconds until ``expires_at``, clamped to at least 1 so Redis accepts it."""
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    else:
        expires_at = expires_at.astimezone(timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


class RedisCache:
    """Thin Redis wrapper for token revocation, fast-path lookups and one-shot claims."""

    # INCR and set the window expiry only on the first hit so the window is fixed
    _WINDOW_COUNTER_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window_counter = self.client.register_script(self._WINDOW_COUNTER_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def blacklist_token(self, token_hash: str, ttl: int) -> None:
        """Mark a token hash revoked for the rest of its natural lifetime."""
        if ttl > 0:
            await self.client.set(blacklist_key(token_hash), "1", ex=ttl)

    async def is_token_blacklisted(self, token_hash: str) -> bool:
        return bool(await self.client.exists(blacklist_key(token_hash)))

    async def cache_access_token(
        self, token_hash: str, user_id: str, session_id: str, expires_at: datetime
    ) -> None:
        payload = json.dumps(
            {"userId": user_id, "sessionId": session_id, "expiresAt": expires_at.isoformat()}
        )
        await self.client.set(
            access_token_key(token_hash), payload, ex=ttl_seconds(expires_at)
        )

    async def get_access_token(self, token_hash: str) -> Optional[Dict[str, Any]]:
        cached = await self.client.get(access_token_key(token_hash))
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def drop_access_token(self, token_hash: str) -> None:
        await self.client.delete(access_token_key(token_hash))

    async def claim_mfa_code(self, user_id: str, code_digest: str, ttl: int) -> bool:
        """Atomically claim a code; False means it was already spent."""
        claimed = await self.client.set(
            mfa_used_key(user_id, code_digest), "1", ex=ttl, nx=True
        )
        return bool(claimed)

    async def is_mfa_code_claimed(self, user_id: str, code_digest: str) -> bool:
        return bool(await self.client.exists(mfa_used_key(user_id, code_digest)))

    async def increment_window_counter(self, key: str, window_seconds: int) -> int:
        result = await self._window_counter(keys=[key], args=[window_seconds])
        return int(result)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, but exposes the same async methods as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window_counter = self._sync_client.register_script(
            RedisCache._WINDOW_COUNTER_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def blacklist_token(self, token_hash: str, ttl: int) -> None:
        if ttl > 0:
            self._sync_client.set(blacklist_key(token_hash), "1", ex=ttl)

    async def is_token_blacklisted(self, token_hash: str) -> bool:
        return bool(self._sync_client.exists(blacklist_key(token_hash)))

    async def cache_access_token(
        self, token_hash: str, user_id: str, session_id: str, expires_at: datetime
    ) -> None:
        payload = json.dumps(
            {"userId": user_id, "sessionId": session_id, "expiresAt": expires_at.isoformat()}
        )
        self._sync_client.set(
            access_token_key(token_hash), payload, ex=ttl_seconds(expires_at)
        )

    async def get_access_token(self, token_hash: str) -> Optional[Dict[str, Any]]:
        cached = self._sync_client.get(access_token_key(token_hash))
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def drop_access_token(self, token_hash: str) -> None:
        self._sync_client.delete(access_token_key(token_hash))

    async def claim_mfa_code(self, user_id: str, code_digest: str, ttl: int) -> bool:
        claimed = self._sync_client.set(
            mfa_used_key(user_id, code_digest), "1", ex=ttl, nx=True
        )
        return bool(claimed)

    async def is_mfa_code_claimed(self, user_id: str, code_digest: str) -> bool:
        return bool(self._sync_client.exists(mfa_used_key(user_id, code_digest)))

    async def increment_window_counter(self, key: str, window_seconds: int) -> int:
        return int(self._window_counter(keys=[key], args=[window_seconds]))

    async def close(self) -> None:
        self._sync_client.close()
