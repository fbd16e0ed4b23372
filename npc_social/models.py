"""Core domain models.

Every store, cache and orchestration step operates on these types.
Pydantic is used for validation and serialisation at every data boundary:
storage documents, model collaborator payloads, and HTTP responses.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Generic, Literal, TypeVar

from pydantic import AwareDatetime, BaseModel, Field

AccountKind = Literal["player", "npc"]
Role = Literal["user", "assistant"]
ResourceType = Literal["timeline", "dm"]


# ---------------------------------------------------------------------------
# Social graph
# ---------------------------------------------------------------------------

class Account(BaseModel):
    """A player or NPC profile on the simulated network."""

    id: str
    display_name: str
    avatar_ref: str = ""
    kind: AccountKind
    prompt_kind: str | None = None  # NPCs only; selects the system prompt
    owner_id: str | None = None  # player-created accounts only
    is_active: bool = False
    created_at: datetime | None = None


class Post(BaseModel):
    """A timeline entry. Immutable once created."""

    id: str
    author_id: str
    content: str
    created_at: datetime
    like_count: int = 0
    reply_to: str | None = None  # parent post id; threads are rebuilt by lookup


class Contact(BaseModel):
    """A conversation channel between the player and an account."""

    player_id: str
    account_id: str
    discovered_at: datetime


class DMMessage(BaseModel):
    """A single entry in a conversation's append-only message log."""

    id: str
    conversation_id: str
    sender_id: str
    role: Role
    content: str
    created_at: datetime

    def sort_key(self) -> tuple[datetime, str]:
        return (self.created_at, self.id)


# ---------------------------------------------------------------------------
# Mutable per-user state (versioned for compare-and-set)
# ---------------------------------------------------------------------------

class RetryState(BaseModel):
    """Bookkeeping for the send currently in flight on a conversation."""

    request_id: str
    started_at: datetime
    attempts: int = 0


class Relationship(BaseModel):
    """Conversational state for one (player, NPC) pair."""

    player_id: str
    npc_id: str
    history_ref: list[str] = Field(default_factory=list)  # DMMessage ids in scope
    last_interaction_at: datetime | None = None
    retry_state: RetryState | None = None
    version: int = 0


class RateLimitWindow(BaseModel):
    """Sliding request counter for one user."""

    user_id: str
    window_start_at: float
    count: int = 0
    version: int = 0


# ---------------------------------------------------------------------------
# Cache and pagination
# ---------------------------------------------------------------------------

CacheKey = tuple[str, str, str]  # (resource_type, resource_id, page_cursor)


class CacheEntry(BaseModel):
    key: CacheKey
    payload: dict
    fetched_at: float
    expires_at: float


class PageCursor(BaseModel):
    """Decoded pagination anchor. Callers only ever see the encoded token."""

    last_seen_created_at: AwareDatetime  # keys are compared against UTC item timestamps
    last_seen_id: str


T = TypeVar("T")


class ThreadEntry(BaseModel):
    """A post placed in its reply thread."""

    post: Post
    depth: int


class Page(BaseModel, Generic[T]):
    items: list[T]
    next_cursor: str | None = None
    has_more: bool = False


# ---------------------------------------------------------------------------
# Model collaborator payloads
# ---------------------------------------------------------------------------

class Turn(BaseModel):
    """One prior utterance handed to the model."""

    role: Role
    content: str

    def serialized_size(self) -> int:
        return len(json.dumps(self.model_dump(), ensure_ascii=False))


class ConversationContext(BaseModel):
    """Trimmed, chronological turns ending with the newest one."""

    turns: list[Turn] = Field(default_factory=list)

    @property
    def size(self) -> int:
        return sum(t.serialized_size() for t in self.turns)


class ModelRequest(BaseModel):
    system_prompt: str
    context_turns: list[Turn]
    new_user_turn: Turn


class ModelReply(BaseModel):
    """The structured object the model must return: {"responseText": ...}."""

    response_text: str = Field(alias="responseText")


# ---------------------------------------------------------------------------
# Send outcomes (what the presentation layer receives)
# ---------------------------------------------------------------------------

class Allowed(BaseModel):
    status: Literal["allowed"] = "allowed"


class Denied(BaseModel):
    status: Literal["denied"] = "denied"
    retry_after: float


class AIResponse(BaseModel):
    """A finalized exchange: the player's turn and the NPC's reply, both persisted."""

    status: Literal["sent"] = "sent"
    user_message: DMMessage
    reply: DMMessage
    fallback: bool = False
    attempts: int


FailureKind = Literal["rate_limited", "validation_error", "model_unavailable", "superseded"]


class Failure(BaseModel):
    status: Literal["failed"] = "failed"
    kind: FailureKind
    detail: str = ""
    retry_after: float | None = None  # rate_limited only
