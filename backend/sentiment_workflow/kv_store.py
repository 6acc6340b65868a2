"""Key/value store boundary and the product repository built on it."""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Protocol


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None:
        """Return the stored value or None."""

    async def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        """Store a value; last writer wins."""

    async def close(self) -> None:
        """Release resources held by the store."""


class InMemoryKeyValueStore:
    """Process-local key/value store with optional per-key expiry."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._values: dict[str, tuple[str, float | None]] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        async with self._lock:
            entry = self._values.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= self._clock():
                self._values.pop(key, None)
                return None
            return value

    async def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        async with self._lock:
            self._values[key] = (str(value), expires_at)

    async def close(self) -> None:
        return None


class ProductRepository:
    """Owns the product key scheme.

    `{product_id}` holds the product name and `score:{product_id}` the
    average sentiment score as a decimal string.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    @staticmethod
    def score_key(product_id: str) -> str:
        return f"score:{product_id}"

    async def save_product(self, product_id: str, product_name: str) -> None:
        await self.store.set(product_id, product_name)

    async def get_product_name(self, product_id: str) -> str | None:
        return await self.store.get(product_id)

    async def save_score(self, product_id: str, score: float) -> None:
        await self.store.set(self.score_key(product_id), str(score))

    async def get_score(self, product_id: str) -> float | None:
        raw = await self.store.get(self.score_key(product_id))
        if raw is None:
            return None
        try:
            return float(raw)
        except ValueError:
            return None
