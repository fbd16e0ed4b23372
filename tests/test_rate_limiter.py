"""Tests for npc_social.rate_limiter."""

from unittest.mock import MagicMock

import pytest

from npc_social.errors import PersistenceConflict
from npc_social.models import Allowed, Denied
from npc_social.rate_limiter import RateLimiter
from npc_social.storage import Storage


@pytest.fixture
def limiter(storage, clock) -> RateLimiter:
    return RateLimiter(storage, max_requests=10, window_seconds=60, clock=clock)


class TestRateLimiter:
    def test_first_call_opens_window(self, limiter, storage, clock) -> None:
        assert isinstance(limiter.try_acquire("u1"), Allowed)
        window = storage.get_rate_window("u1")
        assert window.count == 1
        assert window.window_start_at == clock.now

    def test_eleventh_call_in_window_is_denied(self, limiter, clock) -> None:
        for _ in range(10):
            assert isinstance(limiter.try_acquire("u1"), Allowed)
            clock.advance(1)
        decision = limiter.try_acquire("u1")
        assert isinstance(decision, Denied)
        assert decision.retry_after > 0

    def test_retry_after_counts_down_to_window_end(self, limiter, clock) -> None:
        for _ in range(10):
            limiter.try_acquire("u1")
        clock.advance(45)
        decision = limiter.try_acquire("u1")
        assert decision.retry_after == pytest.approx(15)

    def test_denied_call_does_not_write(self, limiter, storage) -> None:
        for _ in range(10):
            limiter.try_acquire("u1")
        before = storage.get_rate_window("u1")
        limiter.try_acquire("u1")
        assert storage.get_rate_window("u1") == before

    def test_window_resets_after_it_elapses(self, limiter, storage, clock) -> None:
        for _ in range(10):
            limiter.try_acquire("u1")
        clock.advance(60)
        assert isinstance(limiter.try_acquire("u1"), Allowed)
        window = storage.get_rate_window("u1")
        assert window.count == 1
        assert window.window_start_at == clock.now

    def test_users_have_independent_windows(self, limiter) -> None:
        for _ in range(10):
            limiter.try_acquire("u1")
        assert isinstance(limiter.try_acquire("u1"), Denied)
        assert isinstance(limiter.try_acquire("u2"), Allowed)

    def test_window_survives_new_limiter_instance(self, storage, clock) -> None:
        for _ in range(10):
            RateLimiter(storage, 10, 60, clock).try_acquire("u1")
        assert isinstance(RateLimiter(storage, 10, 60, clock).try_acquire("u1"), Denied)

    def test_persistent_conflict_raises(self, clock) -> None:
        storage = MagicMock(spec=Storage)
        storage.get_rate_window.return_value = None
        storage.put_rate_window.return_value = None
        with pytest.raises(PersistenceConflict):
            RateLimiter(storage, 10, 60, clock).try_acquire("u1")
