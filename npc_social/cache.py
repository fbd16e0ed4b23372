"""Client-held, time-boxed cache of page payloads.

Each key is in exactly one state when read:

    FRESH     now <= fetched_at + freshness     → served, loader not called
    STALE     now <= expires_at                 → served, one background refresh
    EXPIRED   past expires_at, or absent        → loaded synchronously

A key with a loader task running is additionally REFRESH_IN_FLIGHT. There is
at most one such task per key and epoch; any caller that needs the loader
while one is running awaits that task instead of starting another.

If a background refresh fails, the stale entry keeps being served until its
expires_at and no longer; after that the next read loads synchronously and
the loader's error reaches the caller.

invalidate(prefix) drops matching entries and fences off refreshes already
running for them. A refresh started before a write can never reinstall the
pre-write payload, and the next read starts a new load instead of joining it.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Awaitable, Callable

from npc_social.models import CacheEntry, CacheKey

logger = logging.getLogger(__name__)

Loader = Callable[[CacheKey], Awaitable[dict]]


class KeyState(enum.Enum):
    FRESH = "fresh"
    STALE = "stale"
    EXPIRED = "expired"
    REFRESH_IN_FLIGHT = "refresh_in_flight"


def _report_failure(task: asyncio.Task) -> None:
    # Marks the exception as retrieved; foreground waiters still receive it
    if not task.cancelled() and task.exception() is not None:
        logger.warning("cache load failed: %s", task.exception())


class TTLCache:
    def __init__(
        self,
        ttl_seconds: float,
        freshness_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if freshness_seconds > ttl_seconds:
            raise ValueError("freshness window cannot outlive the entry")
        self._ttl = ttl_seconds
        self._freshness = freshness_seconds
        self._clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._inflight: dict[CacheKey, tuple[asyncio.Task, int]] = {}  # task, epoch at start
        self._epochs: dict[CacheKey, int] = {}
        self._pending: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def state(self, key: CacheKey) -> KeyState:
        if key in self._inflight:
            return KeyState.REFRESH_IN_FLIGHT
        return self._entry_state(self._entries.get(key), self._clock())

    def _entry_state(self, entry: CacheEntry | None, now: float) -> KeyState:
        if entry is None or now > entry.expires_at:
            return KeyState.EXPIRED
        if now <= entry.fetched_at + self._freshness:
            return KeyState.FRESH
        return KeyState.STALE

    async def get(self, key: CacheKey, loader: Loader) -> dict:
        now = self._clock()
        entry = self._entries.get(key)
        state = self._entry_state(entry, now)

        if state is KeyState.FRESH:
            logger.debug("cache hot key=%s", key)
            return entry.payload

        if state is KeyState.STALE:
            logger.debug("cache stale key=%s, revalidating", key)
            self._start_load(key, loader)
            return entry.payload

        if entry is not None:
            del self._entries[key]
        logger.debug("cache miss key=%s", key)
        task = self._start_load(key, loader)
        return await asyncio.shield(task)

    def _start_load(self, key: CacheKey, loader: Loader) -> asyncio.Task:
        epoch = self._epochs.get(key, 0)
        running = self._inflight.get(key)
        # A load started before the last invalidation may return pre-write data
        if running is not None and running[1] == epoch:
            return running[0]
        task = asyncio.get_running_loop().create_task(self._load(key, loader, epoch))
        task.add_done_callback(_report_failure)
        task.add_done_callback(self._pending.discard)
        self._pending.add(task)
        self._inflight[key] = (task, epoch)
        return task

    async def _load(self, key: CacheKey, loader: Loader, epoch: int) -> dict:
        try:
            payload = await loader(key)
        finally:
            running = self._inflight.get(key)
            if running is not None and running[0] is asyncio.current_task():
                del self._inflight[key]

        if self._epochs.get(key, 0) == epoch:
            now = self._clock()
            self._entries[key] = CacheEntry.model_construct(
                key=key, payload=payload, fetched_at=now, expires_at=now + self._ttl
            )
        else:
            logger.debug("discarding load for invalidated key=%s", key)
        return payload

    # ------------------------------------------------------------------
    # Invalidation and housekeeping
    # ------------------------------------------------------------------

    def invalidate(self, prefix: tuple[str, ...]) -> int:
        """Drop every entry whose key starts with prefix. Returns how many were dropped."""
        n = len(prefix)
        matching = [k for k in self._entries if k[:n] == prefix]
        for key in matching:
            del self._entries[key]
        for key in {*matching, *(k for k in self._inflight if k[:n] == prefix)}:
            self._epochs[key] = self._epochs.get(key, 0) + 1
        if matching:
            logger.debug("invalidated %d entries under %s", len(matching), prefix)
        return len(matching)

    def clear(self) -> None:
        self._entries.clear()
        for key in list(self._inflight):
            self._epochs[key] = self._epochs.get(key, 0) + 1

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now > e.expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def drain(self) -> None:
        """Wait for every in-flight load to settle."""
        while self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Persistence across restarts
    # ------------------------------------------------------------------

    def export_entries(self) -> list[CacheEntry]:
        now = self._clock()
        return [e for e in self._entries.values() if now <= e.expires_at]

    def import_entries(self, entries: list[CacheEntry]) -> None:
        now = self._clock()
        for entry in entries:
            if now <= entry.expires_at:
                self._entries[tuple(entry.key)] = entry
