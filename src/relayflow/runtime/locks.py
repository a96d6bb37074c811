"""Distributed lock service.

Exclusive, renewable leases keyed by string (``pipeline:{code}``,
``message-consumer:{code}:{trigger}``...). Leases live in a
:class:`CoordinationStore`, anything that offers atomic set-if-absent,
compare-and-delete and compare-and-expire with TTLs. A Redis-like
client can implement the protocol directly.
:class:`MemoryCoordinationStore` is the single-process fallback.

Acquisition never queues: it either succeeds, fails immediately, or
polls for a bounded time.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from relayflow.config import LockSettings
from relayflow.errors import LockContentionError

logger = logging.getLogger(__name__)


def pipeline_lock_key(pipeline_code: str) -> str:
    return f"pipeline:{pipeline_code}"


def consumer_lock_key(pipeline_code: str, trigger_key: str) -> str:
    return f"message-consumer:{pipeline_code}:{trigger_key}"


@dataclass(frozen=True)
class LockEntry:
    """A live lease."""

    key: str
    token: str
    expires_at: float


@dataclass(frozen=True)
class LockResult:
    """Outcome of an acquisition attempt."""

    acquired: bool
    key: str
    token: str | None = None
    expires_at: float | None = None
    current_owner: str | None = None


class CoordinationStore(Protocol):
    """Atomic compare-and-set primitives with TTL."""

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool: ...

    async def compare_and_delete(self, key: str, value: str) -> bool: ...

    async def compare_and_expire(self, key: str, value: str, ttl_ms: int) -> bool: ...

    async def get(self, key: str) -> LockEntry | None: ...


class MemoryCoordinationStore:
    """In-process :class:`CoordinationStore` bounded to ``max_entries`` leases.

    Expired leases are removed lazily on access and by :meth:`sweep`.
    """

    def __init__(
        self, max_entries: int = 1000, clock: Callable[[], float] = time.time
    ) -> None:
        self._max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, LockEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _live(self, key: str) -> LockEntry | None:
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        if self._live(key) is not None:
            return False
        if len(self._entries) >= self._max_entries:
            self.sweep()
            if len(self._entries) >= self._max_entries:
                logger.warning(
                    "In-memory lock store is full (%d entries); refusing '%s'",
                    len(self._entries),
                    key,
                )
                return False
        self._entries[key] = LockEntry(key, value, self._clock() + ttl_ms / 1000.0)
        return True

    async def compare_and_delete(self, key: str, value: str) -> bool:
        entry = self._live(key)
        if entry is None or entry.token != value:
            return False
        del self._entries[key]
        return True

    async def compare_and_expire(self, key: str, value: str, ttl_ms: int) -> bool:
        entry = self._live(key)
        if entry is None or entry.token != value:
            return False
        self._entries[key] = LockEntry(key, value, self._clock() + ttl_ms / 1000.0)
        return True

    async def get(self, key: str) -> LockEntry | None:
        return self._live(key)

    def sweep(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def entries(self) -> list[LockEntry]:
        self.sweep()
        return list(self._entries.values())


class DistributedLockService:
    """Acquire, renew and release leases on a :class:`CoordinationStore`.

    Args:
        store: Backend; defaults to an in-memory store sized by settings.
        settings: TTLs, wait timeout and polling cadence.
        instance_id: Prefix for issued tokens; identifies this process.
    """

    def __init__(
        self,
        store: CoordinationStore | None = None,
        settings: LockSettings | None = None,
        instance_id: str | None = None,
    ) -> None:
        self._settings = settings or LockSettings()
        self._store: CoordinationStore = store or MemoryCoordinationStore(
            max_entries=self._settings.max_memory_locks
        )
        self._instance_id = instance_id or f"{socket.gethostname()}-{os.getpid()}"
        self._sweeper: asyncio.Task[None] | None = None

    @property
    def settings(self) -> LockSettings:
        return self._settings

    @settings.setter
    def settings(self, settings: LockSettings) -> None:
        self._settings = settings

    @property
    def store(self) -> CoordinationStore:
        return self._store

    def _new_token(self) -> str:
        return f"instance-{self._instance_id}-{uuid.uuid4().hex[:12]}"

    async def acquire(
        self,
        key: str,
        ttl_ms: int | None = None,
        *,
        wait: bool = False,
        wait_timeout_ms: int | None = None,
        retry_interval_ms: int | None = None,
    ) -> LockResult:
        """Try to take the lease for *key*.

        Args:
            key: Lock key.
            ttl_ms: Lease duration; defaults to ``default_ttl_ms``.
            wait: Poll until ``wait_timeout_ms`` instead of failing at once.
            wait_timeout_ms: Upper bound on polling time.
            retry_interval_ms: Delay between polls.

        Returns:
            A :class:`LockResult`; on failure ``current_owner`` holds the
            token of the lease that blocked acquisition.
        """
        ttl = ttl_ms or self._settings.default_ttl_ms
        timeout = (
            wait_timeout_ms if wait_timeout_ms is not None else self._settings.wait_timeout_ms
        )
        interval = retry_interval_ms or self._settings.retry_interval_ms
        token = self._new_token()
        deadline = time.monotonic() + timeout / 1000.0

        while True:
            if await self._store.set_if_absent(key, token, ttl):
                logger.debug("Acquired lock '%s' (ttl=%dms)", key, ttl)
                return LockResult(
                    acquired=True,
                    key=key,
                    token=token,
                    expires_at=time.time() + ttl / 1000.0,
                )
            if not wait or time.monotonic() >= deadline:
                holder = await self._store.get(key)
                logger.info(
                    "Lock '%s' unavailable (held by %s)",
                    key,
                    holder.token if holder else "unknown",
                )
                return LockResult(
                    acquired=False,
                    key=key,
                    current_owner=holder.token if holder else None,
                )
            await asyncio.sleep(interval / 1000.0)

    async def release(self, key: str, token: str) -> bool:
        released = await self._store.compare_and_delete(key, token)
        if not released:
            logger.warning("Release of '%s' ignored: token no longer owns the lock", key)
        return released

    async def extend(self, key: str, token: str, ttl_ms: int | None = None) -> bool:
        return await self._store.compare_and_expire(
            key, token, ttl_ms or self._settings.default_ttl_ms
        )

    async def is_locked(self, key: str) -> bool:
        return await self._store.get(key) is not None

    async def holder(self, key: str) -> LockEntry | None:
        return await self._store.get(key)

    @contextlib.asynccontextmanager
    async def hold(
        self, key: str, ttl_ms: int | None = None, *, wait: bool = False
    ) -> AsyncIterator[LockResult]:
        """Hold *key* for the duration of the ``async with`` block.

        Raises:
            LockContentionError: If the lock cannot be acquired.
        """
        result = await self.acquire(key, ttl_ms, wait=wait)
        if not result.acquired or result.token is None:
            raise LockContentionError(key, result.current_owner)
        try:
            yield result
        finally:
            await self.release(key, result.token)

    def heartbeat(
        self,
        key: str,
        token: str,
        ttl_ms: int,
        interval_ms: int,
        on_lost: Callable[[], Awaitable[None]] | None = None,
    ) -> asyncio.Task[None]:
        """Start a task that renews the lease every *interval_ms*.

        The task stops on its own once renewal fails (the lease was lost),
        awaiting *on_lost* first. Otherwise the owner cancels it on release.
        """

        async def _renew() -> None:
            while True:
                await asyncio.sleep(interval_ms / 1000.0)
                if not await self.extend(key, token, ttl_ms):
                    logger.error("Lost lock '%s' during heartbeat renewal", key)
                    if on_lost is not None:
                        await on_lost()
                    return
                logger.debug("Renewed lock '%s'", key)

        return asyncio.create_task(_renew(), name=f"lock-heartbeat:{key}")

    def cleanup(self) -> int:
        """Sweep expired in-memory leases. Returns the number removed."""
        sweep = getattr(self._store, "sweep", None)
        return sweep() if callable(sweep) else 0

    def start_sweeper(self) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return

        async def _loop() -> None:
            while True:
                await asyncio.sleep(self._settings.cleanup_interval_ms / 1000.0)
                removed = self.cleanup()
                if removed:
                    logger.debug("Swept %d expired lock(s)", removed)

        self._sweeper = asyncio.create_task(_loop(), name="lock-sweeper")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
