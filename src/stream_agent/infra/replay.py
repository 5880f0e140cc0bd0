"""Idempotent replay of completed responses keyed by a client token."""

from __future__ import annotations

import json
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from stream_agent.config import ReplayConfig

logger = logging.getLogger(__name__)


class ReplayStore(Protocol):
    """Key-value storage with TTL semantics."""

    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str, ttl_seconds: int) -> None: ...


class InMemoryReplayStore:
    """Process-local store with TTL expiry and LRU capacity eviction."""

    def __init__(self, *, capacity: int = 1024, clock: Callable[[], float] = time.monotonic) -> None:
        self._capacity = capacity
        self._clock = clock
        self._items: OrderedDict[str, tuple[str, float]] = OrderedDict()

    async def get(self, key: str) -> str | None:
        item = self._items.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at <= self._clock():
            del self._items[key]
            return None
        self._items.move_to_end(key)
        return value

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        self._items[key] = (value, self._clock() + ttl_seconds)
        self._items.move_to_end(key)
        while len(self._items) > self._capacity:
            evicted, _ = self._items.popitem(last=False)
            logger.debug("Evicted replay entry", extra={"replay_key": evicted})

    def __len__(self) -> int:
        return len(self._items)


@dataclass(slots=True)
class ReplayEntry:
    key: str
    status: int
    body: Any
    expires_at: float


class ReplayCache:
    """Check-then-act cache of final responses.

    Two concurrent requests with the same key can both miss and both run;
    callers that need to suppress that must hold their own per-key lock.
    Storage failures are logged and behave as a miss (lookup) or a no-op
    (store), so a broken store never fails the request it serves.
    """

    def __init__(
        self,
        store: ReplayStore,
        config: ReplayConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = store
        self.config = config or ReplayConfig()
        self._clock = clock

    async def lookup(self, key: str) -> ReplayEntry | None:
        if not key:
            return None
        try:
            raw = await self._backend.get(self._scoped(key))
        except Exception:
            logger.exception("Replay lookup failed", extra={"replay_key": key})
            return None
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return ReplayEntry(
                key=key,
                status=int(data["status"]),
                body=data["body"],
                expires_at=float(data.get("expires_at", 0.0)),
            )
        except (ValueError, KeyError, TypeError):
            logger.warning("Ignoring unreadable replay entry", extra={"replay_key": key})
            return None

    async def store(
        self,
        key: str,
        body: Any,
        *,
        status: int = 200,
        ttl_seconds: int | None = None,
    ) -> ReplayEntry | None:
        if not key:
            return None
        ttl = self.config.ttl_seconds if ttl_seconds is None else ttl_seconds
        entry = ReplayEntry(key=key, status=status, body=body, expires_at=self._clock() + ttl)
        payload = json.dumps({"status": entry.status, "body": entry.body, "expires_at": entry.expires_at})
        try:
            await self._backend.put(self._scoped(key), payload, ttl)
        except Exception:
            logger.exception("Replay store failed", extra={"replay_key": key})
            return None
        return entry

    def _scoped(self, key: str) -> str:
        return f"{self.config.scope}:{key}"
