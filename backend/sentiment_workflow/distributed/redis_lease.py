"""Redis-backed workflow lease for distributed mode.

Value-based lease with TTL:
- acquire: SET key owner NX PX ttl, else refresh
- refresh: if GET==owner then PEXPIRE
- release: if GET==owner then DEL
"""

from __future__ import annotations

from dataclasses import dataclass

import redis.asyncio as redis_async

_REFRESH_LUA = (
    "if redis.call('GET', KEYS[1]) == ARGV[1] then "
    "  return redis.call('PEXPIRE', KEYS[1], ARGV[2]) "
    "else return 0 end"
)
_RELEASE_LUA = (
    "if redis.call('GET', KEYS[1]) == ARGV[1] then "
    "  return redis.call('DEL', KEYS[1]) "
    "else return 0 end"
)


@dataclass(frozen=True)
class RedisLeaseConfig:
    url: str
    owner_id: str
    ttl_seconds: int
    key_prefix: str = "lease:"


class RedisWorkflowLease:
    def __init__(self, config: RedisLeaseConfig):
        self._config = config
        self._client = None
        self._refresh_script = None
        self._release_script = None

    def _ttl_ms(self) -> int:
        return max(1, int(self._config.ttl_seconds * 1000))

    def _full_key(self, key: str) -> str:
        return f"{self._config.key_prefix}{key}"

    async def _get_client(self):
        if self._client is None:
            self._client = redis_async.from_url(self._config.url, decode_responses=True)
            self._refresh_script = self._client.register_script(_REFRESH_LUA)
            self._release_script = self._client.register_script(_RELEASE_LUA)
        return self._client

    async def acquire(self, key: str) -> bool:
        client = await self._get_client()
        full_key = self._full_key(key)
        result = await client.set(
            full_key,
            self._config.owner_id,
            nx=True,
            px=self._ttl_ms(),
        )
        if result:
            return True
        # Re-entrant acquire: the current owner just extends its TTL.
        return await self.refresh(key)

    async def refresh(self, key: str) -> bool:
        await self._get_client()
        assert self._refresh_script is not None
        result = await self._refresh_script(
            keys=[self._full_key(key)], args=[self._config.owner_id, self._ttl_ms()]
        )
        return int(result or 0) > 0

    async def release(self, key: str) -> None:
        await self._get_client()
        assert self._release_script is not None
        await self._release_script(keys=[self._full_key(key)], args=[self._config.owner_id])

    async def close(self) -> None:
        if self._client is None:
            return
        client = self._client
        self._client = None
        self._refresh_script = None
        self._release_script = None
        await client.aclose()
