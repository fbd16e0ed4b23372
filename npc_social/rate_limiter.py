"""Per-user sliding-window cap on AI-triggering actions.

The window lives in storage, not in process memory: every send is an
independent invocation, so the counter has to survive between them and be
updated with compare-and-set when two sends race.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from npc_social.errors import PersistenceConflict
from npc_social.models import Allowed, Denied, RateLimitWindow
from npc_social.storage import Storage

logger = logging.getLogger(__name__)

_MAX_CAS_ATTEMPTS = 8


class RateLimiter:
    """N requests per rolling window of W seconds, one window per user.

    A Denied result never consumes capacity and never writes to storage.
    """

    def __init__(
        self,
        storage: Storage,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self._max = max_requests
        self._window = window_seconds
        self._clock = clock

    def try_acquire(self, user_id: str) -> Allowed | Denied:
        for _ in range(_MAX_CAS_ATTEMPTS):
            now = self._clock()
            current = self._storage.get_rate_window(user_id)

            if current is None or now - current.window_start_at >= self._window:
                fresh = RateLimitWindow(user_id=user_id, window_start_at=now, count=1)
                expected = None if current is None else current.version
                if self._storage.put_rate_window(fresh, expected) is not None:
                    return Allowed()
                continue

            if current.count < self._max:
                bumped = current.model_copy(update={"count": current.count + 1})
                if self._storage.put_rate_window(bumped, current.version) is not None:
                    return Allowed()
                continue

            retry_after = current.window_start_at + self._window - now
            logger.info("rate limited user=%s retry_after=%.1fs", user_id, retry_after)
            return Denied(retry_after=retry_after)

        raise PersistenceConflict(f"Rate-limit window for {user_id} kept changing under us")
