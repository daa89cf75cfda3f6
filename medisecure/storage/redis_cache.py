from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

# Atomic check-and-increment for MFA failures; trips the lockout at max_attempts
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

_GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""


def _ttl_seconds(expires_at: datetime) -> int:
    """Seconds until ``expires_at``, clamped to at least one."""

    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    else:
        expires_at = expires_at.astimezone(timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


def _pending_key(ticket: str) -> str:
    return f"sso:pending:{ticket}"


def _oauth_key(state: str) -> str:
    return f"sso:oauth:{state}"


def _attempt_key(attempt_id: str) -> str:
    return f"mfa:attempt:{attempt_id}"


def _enrollment_key(user_id: str, method: str) -> str:
    return f"mfa:enroll:{user_id}:{method}"


def _lockout_keys(user_id: str) -> Tuple[str, str]:
    return f"mfa:lockout:{user_id}", f"mfa:attempts:{user_id}"


def _loads(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


def _oauth_payload(provider: str, expires_at: datetime) -> str:
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return json.dumps({"provider": provider, "expires_at": expires_at.isoformat()})


def _parse_oauth_state(raw: Optional[str]) -> Optional[tuple[str, datetime]]:
    data = _loads(raw)
    if data is None:
        return None
    expires_at = datetime.now(timezone.utc)
    expires_raw = data.get("expires_at")
    if isinstance(expires_raw, str):
        try:
            expires_at = datetime.fromisoformat(expires_raw)
        except ValueError:
            pass
    return data.get("provider"), expires_at


class RedisCache:
    """Redis-backed ephemeral auth state: SSO tickets, OAuth state, MFA attempts and lockouts.

    Every consume operation is a single GETDEL (or an equivalent Lua script),
    so concurrent requests can never both observe the same ticket or attempt.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    async def _getdel(self, key: str) -> Optional[str]:
        try:
            return await self.client.getdel(key)
        except AttributeError:
            return await self.client.eval(_GETDEL_SCRIPT, 1, key)

    async def set_pending_registration(
        self, ticket: str, payload: Dict[str, Any], expires_at: datetime
    ) -> None:
        await self.client.set(
            _pending_key(ticket), json.dumps(payload), ex=_ttl_seconds(expires_at)
        )

    async def get_pending_registration(self, ticket: str) -> Optional[Dict[str, Any]]:
        return _loads(await self.client.get(_pending_key(ticket)))

    async def pop_pending_registration(self, ticket: str) -> Optional[Dict[str, Any]]:
        return _loads(await self._getdel(_pending_key(ticket)))

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        await self.client.set(
            _oauth_key(state), _oauth_payload(provider, expires_at), ex=_ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        """Atomically consume an OAuth state token; returns (provider, expires_at)."""
        return _parse_oauth_state(await self._getdel(_oauth_key(state)))

    async def set_mfa_attempt(
        self, attempt_id: str, payload: Dict[str, Any], expires_at: datetime
    ) -> None:
        await self.client.set(
            _attempt_key(attempt_id), json.dumps(payload), ex=_ttl_seconds(expires_at)
        )

    async def get_mfa_attempt(self, attempt_id: str) -> Optional[Dict[str, Any]]:
        return _loads(await self.client.get(_attempt_key(attempt_id)))

    async def pop_mfa_attempt(self, attempt_id: str) -> Optional[Dict[str, Any]]:
        return _loads(await self._getdel(_attempt_key(attempt_id)))

    async def set_enrollment_challenge(
        self, user_id: str, method: str, payload: Dict[str, Any], expires_at: datetime
    ) -> None:
        await self.client.set(
            _enrollment_key(user_id, method), json.dumps(payload), ex=_ttl_seconds(expires_at)
        )

    async def pop_enrollment_challenge(
        self, user_id: str, method: str
    ) -> Optional[Dict[str, Any]]:
        return _loads(await self._getdel(_enrollment_key(user_id, method)))

    async def check_mfa_lockout(self, user_id: str) -> bool:
        lockout_key, _ = _lockout_keys(user_id)
        return bool(await self.client.exists(lockout_key))

    async def atomic_mfa_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        """Record a failed MFA attempt and trigger the lockout when the limit is hit.

        Returns:
            Tuple of (is_locked_out, current_attempts). ``current_attempts`` is
            -1 when the identity was already locked before this call.
        """
        lockout_key, attempts_key = _lockout_keys(user_id)
        result = await self.client.eval(
            _MFA_ATTEMPT_SCRIPT, 2, lockout_key, attempts_key, max_attempts, lockout_seconds
        )
        return bool(result[0]), int(result[1])

    async def clear_mfa_attempts(self, user_id: str) -> None:
        _, attempts_key = _lockout_keys(user_id)
        await self.client.delete(attempts_key)


class SyncRedisCache:
    """Synchronous Redis client behind the same awaitable interface as ``RedisCache``.

    Used under TEST_MODE so that pytest's per-test event loops never bind an
    async connection pool.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def close(self) -> None:
        self.client.close()

    def _getdel(self, key: str) -> Optional[str]:
        try:
            return self.client.getdel(key)
        except AttributeError:
            return self.client.eval(_GETDEL_SCRIPT, 1, key)

    async def set_pending_registration(
        self, ticket: str, payload: Dict[str, Any], expires_at: datetime
    ) -> None:
        self.client.set(_pending_key(ticket), json.dumps(payload), ex=_ttl_seconds(expires_at))

    async def get_pending_registration(self, ticket: str) -> Optional[Dict[str, Any]]:
        return _loads(self.client.get(_pending_key(ticket)))

    async def pop_pending_registration(self, ticket: str) -> Optional[Dict[str, Any]]:
        return _loads(self._getdel(_pending_key(ticket)))

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        self.client.set(
            _oauth_key(state), _oauth_payload(provider, expires_at), ex=_ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        return _parse_oauth_state(self._getdel(_oauth_key(state)))

    async def set_mfa_attempt(
        self, attempt_id: str, payload: Dict[str, Any], expires_at: datetime
    ) -> None:
        self.client.set(_attempt_key(attempt_id), json.dumps(payload), ex=_ttl_seconds(expires_at))

    async def get_mfa_attempt(self, attempt_id: str) -> Optional[Dict[str, Any]]:
        return _loads(self.client.get(_attempt_key(attempt_id)))

    async def pop_mfa_attempt(self, attempt_id: str) -> Optional[Dict[str, Any]]:
        return _loads(self._getdel(_attempt_key(attempt_id)))

    async def set_enrollment_challenge(
        self, user_id: str, method: str, payload: Dict[str, Any], expires_at: datetime
    ) -> None:
        self.client.set(
            _enrollment_key(user_id, method), json.dumps(payload), ex=_ttl_seconds(expires_at)
        )

    async def pop_enrollment_challenge(
        self, user_id: str, method: str
    ) -> Optional[Dict[str, Any]]:
        return _loads(self._getdel(_enrollment_key(user_id, method)))

    async def check_mfa_lockout(self, user_id: str) -> bool:
        lockout_key, _ = _lockout_keys(user_id)
        return bool(self.client.exists(lockout_key))

    async def atomic_mfa_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        lockout_key, attempts_key = _lockout_keys(user_id)
        result = self.client.eval(
            _MFA_ATTEMPT_SCRIPT, 2, lockout_key, attempts_key, max_attempts, lockout_seconds
        )
        return bool(result[0]), int(result[1])

    async def clear_mfa_attempts(self, user_id: str) -> None:
        _, attempts_key = _lockout_keys(user_id)
        self.client.delete(attempts_key)
