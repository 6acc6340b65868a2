"""Redis-backed durable stores for distributed mode.

The history store keeps the same *synchronous* interface as the file store so
the engine is storage-agnostic; the key/value store is async like its
in-memory counterpart.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

import redis.asyncio as redis_async
from pydantic import ValidationError
from redis import Redis

from ..workflow.exceptions import HistoryConflictError
from ..workflow.models import HistoryEvent

logger = logging.getLogger(__name__)

# Append only if the list still has the length the writer last saw.
# Returns the new length, or -(current length + 1) on a conflict.
_COMPARE_AND_APPEND_LUA = """
local current = redis.call('LLEN', KEYS[1])
if ARGV[1] ~= '' and tonumber(ARGV[1]) ~= current then
  return -(current + 1)
end
redis.call('RPUSH', KEYS[1], ARGV[2])
redis.call('SADD', KEYS[2], ARGV[3])
return current + 1
"""


def _redis_from_url(url: str) -> Redis:
    return Redis.from_url(url, decode_responses=True)


@dataclass(frozen=True)
class RedisStoreConfig:
    url: str
    key_prefix: str = "sentiment:"

    def key(self, *parts: str) -> str:
        return self.key_prefix + ":".join(parts)


class RedisHistoryStore:
    """Workflow histories as Redis lists; list position is the sequence."""

    def __init__(self, config: RedisStoreConfig, client: Redis | None = None):
        self._config = config
        self._redis = client or _redis_from_url(config.url)
        self._append_script = self._redis.register_script(_COMPARE_AND_APPEND_LUA)

    def ensure_base_dir(self) -> None:
        return None

    def _events_key(self, workflow_id: str) -> str:
        return self._config.key("workflow", workflow_id, "history")

    def _index_key(self) -> str:
        return self._config.key("workflows")

    def append(
        self, event: HistoryEvent, *, expected_sequence: int | None = None
    ) -> HistoryEvent:
        payload = json.dumps(
            event.model_dump(mode="json", exclude={"sequence"}), separators=(",", ":")
        )
        result = int(
            self._append_script(
                keys=[self._events_key(event.workflow_id), self._index_key()],
                args=[
                    "" if expected_sequence is None else str(expected_sequence),
                    payload,
                    event.workflow_id,
                ],
            )
        )
        if result < 0:
            raise HistoryConflictError(
                event.workflow_id, expected_sequence or 0, -result - 1
            )
        return event.model_copy(update={"sequence": result})

    def read(self, workflow_id: str, after_sequence: int = 0) -> list[HistoryEvent]:
        raw = self._redis.lrange(self._events_key(workflow_id), max(after_sequence, 0), -1)
        events: list[HistoryEvent] = []
        for offset, line in enumerate(raw, start=max(after_sequence, 0) + 1):
            if not isinstance(line, str) or not line:
                continue
            try:
                data = json.loads(line)
                data["sequence"] = offset
                events.append(HistoryEvent.model_validate(data))
            except (json.JSONDecodeError, ValidationError):
                logger.warning(
                    "skipping malformed history entry sequence=%s",
                    offset,
                    extra={"workflow_id": workflow_id},
                )
        return events

    def last_sequence(self, workflow_id: str) -> int:
        return int(self._redis.llen(self._events_key(workflow_id)))

    def exists(self, workflow_id: str) -> bool:
        return self.last_sequence(workflow_id) > 0

    def list_workflow_ids(self) -> list[str]:
        return sorted(self._redis.smembers(self._index_key()))


class RedisKeyValueStore:
    """Async key/value store; keys are used verbatim so other clients can read them."""

    def __init__(self, url: str, *, key_prefix: str = ""):
        self._url = url
        self._key_prefix = key_prefix
        self._client = None

    async def _get_client(self):
        if self._client is None:
            self._client = redis_async.from_url(self._url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> str | None:
        client = await self._get_client()
        return await client.get(self._key_prefix + key)

    async def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        client = await self._get_client()
        px = max(1, int(ttl_seconds * 1000)) if ttl_seconds else None
        await client.set(self._key_prefix + key, value, px=px)

    async def close(self) -> None:
        if self._client is None:
            return
        client = self._client
        self._client = None
        await client.aclose()
