"""Bounded conversation context for the model collaborator.

Two independent ceilings apply: a maximum number of turns and a maximum
serialized size (characters of the JSON form of each turn). Turns are dropped
from the oldest end, one at a time, until both hold. The newest turn is never
dropped; if it alone is over the size ceiling its content is cut instead.
"""

from __future__ import annotations

from collections.abc import Sequence

from npc_social.models import ConversationContext, DMMessage, Turn


def turns_from_messages(messages: Sequence[DMMessage]) -> list[Turn]:
    ordered = sorted(messages, key=DMMessage.sort_key)
    return [Turn(role=m.role, content=m.content) for m in ordered]


def _truncate_to_fit(turn: Turn, max_size: int) -> Turn:
    content = turn.content
    while content and Turn(role=turn.role, content=content).serialized_size() > max_size:
        excess = Turn(role=turn.role, content=content).serialized_size() - max_size
        content = content[: len(content) - max(1, excess)]
    return Turn(role=turn.role, content=content)


# Smallest size any single turn can be cut down to
MIN_TURN_SIZE = max(Turn(role=r, content="").serialized_size() for r in ("user", "assistant"))


class HistoryTrimmer:
    def __init__(self, max_turns: int, max_size: int) -> None:
        if max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        if max_size < MIN_TURN_SIZE:
            raise ValueError(f"max_size must be at least {MIN_TURN_SIZE}")
        self.max_turns = max_turns
        self.max_size = max_size

    def build_context(
        self, history: Sequence[DMMessage], new_turn: Turn | None = None
    ) -> ConversationContext:
        """Return the trimmed, chronological context.

        `history` is the relationship's in-scope messages (any order). When
        `new_turn` is given it becomes the most recent turn, so the model is
        guaranteed to see the player's latest utterance.
        """
        turns = turns_from_messages(history)
        if new_turn is not None:
            turns.append(new_turn)
        if not turns:
            return ConversationContext()

        sizes = [t.serialized_size() for t in turns]
        total = sum(sizes)
        start = 0
        while start < len(turns) - 1 and (
            len(turns) - start > self.max_turns or total > self.max_size
        ):
            total -= sizes[start]
            start += 1

        kept = turns[start:]
        if total > self.max_size:
            kept[-1] = _truncate_to_fit(kept[-1], self.max_size)
        return ConversationContext(turns=kept)
