"""
Delivery Guard.

Twilio delivers webhooks at least once. The guard gives the orchestrator a
per-call lock (so deliveries for one call run one at a time) and a
short-lived replay cache keyed by delivery identity, so a redelivered
request gets the response it already produced instead of a second turn.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis
from redis.exceptions import LockError, RedisError

from callpilot.config import Settings
from callpilot.errors import ServiceUnavailableError
from callpilot.logging_config import get_logger

logger = get_logger(__name__)

# Redis key prefixes
CALL_LOCK_KEY = "calls:lock:{}"
REPLAY_KEY = "calls:replay:{}"


def delivery_key(call_id: str, turn: int, speech: Optional[str]) -> str:
    """Identity of one voice webhook delivery."""
    raw = f"{call_id}\x1f{turn}\x1f{(speech or '').strip()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class DeliveryGuard(ABC):
    @abstractmethod
    def lock(self, call_id: str) -> AbstractAsyncContextManager[None]:
        """Async context manager serializing work for one call."""

    @abstractmethod
    async def recall(self, key: str) -> Optional[str]:
        """The response previously stored for this delivery, if still cached."""

    @abstractmethod
    async def remember(self, key: str, response: str) -> None: ...

    async def close(self) -> None:
        """Release connections."""


class InMemoryDeliveryGuard(DeliveryGuard):
    """Single-process guard for development and tests."""

    def __init__(self, lock_wait: float = 10.0, replay_window: float = 300.0) -> None:
        self._lock_wait = lock_wait
        self._replay_window = replay_window
        self._locks: dict[str, asyncio.Lock] = {}
        # holders plus waiters per call; the lock is dropped when this reaches zero
        self._lock_users: dict[str, int] = {}
        self._replays: dict[str, tuple[float, str]] = {}

    @asynccontextmanager
    async def lock(self, call_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(call_id, asyncio.Lock())
        self._lock_users[call_id] = self._lock_users.get(call_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self._lock_wait)
            except asyncio.TimeoutError as e:
                raise ServiceUnavailableError(f"Timed out waiting for call {call_id}") from e
            try:
                yield
            finally:
                lock.release()
        finally:
            self._lock_users[call_id] -= 1
            if not self._lock_users[call_id]:
                del self._lock_users[call_id]
                del self._locks[call_id]

    @property
    def active_locks(self) -> int:
        return len(self._locks)

    async def recall(self, key: str) -> Optional[str]:
        self._prune()
        entry = self._replays.get(key)
        return entry[1] if entry else None

    async def remember(self, key: str, response: str) -> None:
        self._replays[key] = (time.monotonic() + self._replay_window, response)

    def _prune(self) -> None:
        now = time.monotonic()
        expired = [k for k, (deadline, _) in self._replays.items() if deadline <= now]
        for k in expired:
            del self._replays[k]


class RedisDeliveryGuard(DeliveryGuard):
    """Guard shared across API workers through Redis."""

    def __init__(
        self,
        redis: aioredis.Redis,
        lock_lease: float = 30.0,
        lock_wait: float = 10.0,
        replay_window: int = 300,
    ) -> None:
        self._redis = redis
        self._lock_lease = lock_lease
        self._lock_wait = lock_wait
        self._replay_window = replay_window

    @classmethod
    def from_settings(cls, settings: Settings) -> RedisDeliveryGuard:
        client = aioredis.from_url(settings.redis_url, decode_responses=True)
        logger.info("delivery_guard_initialized", backend="redis")
        return cls(
            client,
            lock_lease=settings.call_lock_lease_seconds,
            lock_wait=settings.call_lock_wait_seconds,
            replay_window=settings.delivery_replay_window_seconds,
        )

    @asynccontextmanager
    async def lock(self, call_id: str) -> AsyncIterator[None]:
        lock = self._redis.lock(
            CALL_LOCK_KEY.format(call_id),
            timeout=self._lock_lease,
            blocking_timeout=self._lock_wait,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            raise ServiceUnavailableError(f"Redis lock unavailable: {e}") from e
        if not acquired:
            raise ServiceUnavailableError(f"Timed out waiting for call {call_id}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Lease expired while we held it; the work itself already finished.
                logger.warning("call_lock_expired", call_id=call_id)

    async def recall(self, key: str) -> Optional[str]:
        try:
            return await self._redis.get(REPLAY_KEY.format(key))
        except RedisError as e:
            raise ServiceUnavailableError(f"Redis unavailable: {e}") from e

    async def remember(self, key: str, response: str) -> None:
        try:
            await self._redis.set(REPLAY_KEY.format(key), response, ex=self._replay_window)
        except RedisError as e:
            raise ServiceUnavailableError(f"Redis unavailable: {e}") from e

    async def close(self) -> None:
        await self._redis.close()
