from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis wrapper for short-lived identity state.

    Holds OAuth ``state`` values and the MFA attempt counters. Durable
    identity records live in the store; everything here may be lost on
    restart without weakening any guarantee beyond a forced re-login.
    """

    # Check-and-increment with lockout trigger in one round trip
    _MFA_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end

local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])

local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end

return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """TTL from an absolute expiry, clamped to at least one second."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # A short-lived sync client keeps the async client off a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()

    # ------------------------------------------------------------------
    # OAuth state
    # ------------------------------------------------------------------

    async def set_oauth_state(
        self,
        state: str,
        provider: str,
        expires_at: datetime,
        redirect_uri: Optional[str] = None,
    ) -> None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        payload = {
            "provider": provider,
            "expires_at": expires_at.astimezone(timezone.utc).isoformat(),
            "redirect_uri": redirect_uri,
        }
        await self.client.set(
            f"auth:oauth:{state}", json.dumps(payload), ex=self._ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[Dict[str, Any]]:
        """Atomically read and delete an OAuth state so it is single-use.

        Returns the stored payload with ``expires_at`` parsed back into an
        aware datetime, or ``None`` when the state is unknown or corrupt.
        """

        cached = await self.client.getdel(f"auth:oauth:{state}")
        if cached is None:
            return None
        try:
            data = json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None
        try:
            data["expires_at"] = datetime.fromisoformat(data["expires_at"])
        except (KeyError, TypeError, ValueError):
            return None
        return data

    # ------------------------------------------------------------------
    # MFA attempt lockout
    # ------------------------------------------------------------------

    async def check_mfa_lockout(self, account_id: str) -> bool:
        return bool(await self.client.exists(f"mfa:lockout:{account_id}"))

    async def atomic_mfa_attempt(
        self, account_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        """Record a failed MFA attempt; returns ``(locked, attempts)``.

        ``attempts`` is -1 when the account was already locked out.
        """

        result = await self.client.eval(
            self._MFA_ATTEMPT_SCRIPT,
            2,
            f"mfa:lockout:{account_id}",
            f"mfa:attempts:{account_id}",
            max_attempts,
            lockout_seconds,
        )
        return (bool(int(result[0])), int(result[1]))

    async def clear_mfa_attempts(self, account_id: str) -> None:
        await self.client.delete(f"mfa:attempts:{account_id}")


class _SyncClientAdapter:
    """Exposes a sync Redis client through awaitable methods."""

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._sync.set(key, value, ex=ex)

    async def getdel(self, key: str) -> Optional[str]:
        return self._sync.getdel(key)

    async def delete(self, key: str) -> int:
        return self._sync.delete(key)

    async def exists(self, key: str) -> int:
        return self._sync.exists(key)

    async def eval(self, script: str, numkeys: int, *keys_and_args: Any):
        return self._sync.eval(script, numkeys, *keys_and_args)

    async def close(self) -> None:
        self._sync.close()


class SyncRedisCache(RedisCache):
    """RedisCache over a synchronous client.

    Used in test mode so the cache never binds to an event loop that
    ``asyncio.run`` tears down between tests.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def close(self) -> None:
        self._sync_client.close()
