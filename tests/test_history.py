"""Tests for npc_social.history: HistoryTrimmer context bounds."""

from datetime import datetime, timedelta, timezone

import pytest

from npc_social.history import MIN_TURN_SIZE, HistoryTrimmer, turns_from_messages
from npc_social.models import DMMessage, Turn

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _history(n: int, content: str = "hi") -> list[DMMessage]:
    return [
        DMMessage(
            id=f"m{i:03d}",
            conversation_id="npc",
            sender_id="p1" if i % 2 == 0 else "npc",
            role="user" if i % 2 == 0 else "assistant",
            content=f"{content} {i}",
            created_at=T0 + timedelta(seconds=i),
        )
        for i in range(n)
    ]


class TestTurnsFromMessages:
    def test_orders_chronologically(self) -> None:
        history = _history(3)
        turns = turns_from_messages(list(reversed(history)))
        assert [t.content for t in turns] == ["hi 0", "hi 1", "hi 2"]

    def test_same_timestamp_orders_by_id(self) -> None:
        a, b = _history(2)
        b = b.model_copy(update={"created_at": a.created_at, "id": "m000a"})
        a = a.model_copy(update={"id": "m000b"})
        assert [t.content for t in turns_from_messages([a, b])] == ["hi 1", "hi 0"]


class TestHistoryTrimmer:
    def test_short_history_kept_whole(self) -> None:
        ctx = HistoryTrimmer(20, 50_000).build_context(_history(4), Turn(role="user", content="new"))
        assert len(ctx.turns) == 5
        assert ctx.turns[-1].content == "new"

    def test_turn_count_bound(self) -> None:
        ctx = HistoryTrimmer(20, 50_000).build_context(_history(30), Turn(role="user", content="new"))
        assert len(ctx.turns) == 20
        assert ctx.turns[0].content == "hi 11"
        assert ctx.turns[-1].content == "new"

    def test_size_bound_drops_oldest(self) -> None:
        trimmer = HistoryTrimmer(20, 300)
        ctx = trimmer.build_context(_history(10, "x" * 50), Turn(role="user", content="new"))
        assert ctx.size <= 300
        assert ctx.turns[-1].content == "new"
        assert ctx.turns[-2].content == "x" * 50 + " 9"

    def test_oversized_last_turn_is_truncated_not_dropped(self) -> None:
        trimmer = HistoryTrimmer(20, 50)
        new = Turn(role="user", content="y" * 200)
        ctx = trimmer.build_context(_history(5), new)
        assert len(ctx.turns) == 1
        assert ctx.size <= 50
        assert ctx.turns[0].content
        assert new.content.startswith(ctx.turns[0].content)

    def test_without_new_turn_last_history_turn_is_kept(self) -> None:
        ctx = HistoryTrimmer(3, 50_000).build_context(_history(10))
        assert [t.content for t in ctx.turns] == ["hi 7", "hi 8", "hi 9"]

    def test_empty(self) -> None:
        assert HistoryTrimmer(20, 50_000).build_context([]).turns == []

    @pytest.mark.parametrize("max_turns,max_size", [(1, 50_000), (5, 120), (20, 1_000)])
    def test_bounds_hold(self, max_turns: int, max_size: int) -> None:
        new = Turn(role="user", content="latest")
        ctx = HistoryTrimmer(max_turns, max_size).build_context(_history(40), new)
        assert len(ctx.turns) <= max_turns
        assert ctx.size <= max_size
        assert ctx.turns[-1] == new

    def test_rejects_zero_turns(self) -> None:
        with pytest.raises(ValueError):
            HistoryTrimmer(0, 100)

    def test_rejects_size_below_an_empty_turn(self) -> None:
        with pytest.raises(ValueError):
            HistoryTrimmer(20, MIN_TURN_SIZE - 1)

    def test_smallest_size_still_holds(self) -> None:
        new = Turn(role="assistant", content="z" * 100)
        ctx = HistoryTrimmer(20, MIN_TURN_SIZE).build_context(_history(3), new)
        assert ctx.size <= MIN_TURN_SIZE
        assert ctx.turns == [Turn(role="assistant", content="")]
