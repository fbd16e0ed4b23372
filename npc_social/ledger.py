"""Durable record of player/NPC conversation state.

A Relationship is created lazily on first access and only ever changes
through compare-and-set. append() writes the user+assistant pair and the
updated history reference in one storage step, so two sends on the same pair
serialize instead of interleaving. Lost races are retried here and surface as
PersistenceConflict only after repeated losses.
"""

from __future__ import annotations

import logging
from datetime import datetime

from npc_social.errors import PersistenceConflict, RequestSuperseded
from npc_social.models import DMMessage, Relationship, RetryState
from npc_social.storage import Storage

logger = logging.getLogger(__name__)

# Upper bound on how many message ids a relationship keeps in scope
HISTORY_REF_LIMIT = 1000
_MAX_CAS_ATTEMPTS = 5


class RelationshipLedger:
    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    def get(self, player_id: str, npc_id: str) -> Relationship:
        """Return the relationship, creating an empty one on first access."""
        existing = self._storage.get_relationship(player_id, npc_id)
        if existing is not None:
            return existing
        created = self._storage.create_relationship(
            Relationship(player_id=player_id, npc_id=npc_id)
        )
        if created is not None:
            return created
        # Someone else created it between our read and write
        return self._storage.get_relationship(player_id, npc_id)

    def history(self, relationship: Relationship) -> list[DMMessage]:
        """The DMMessages currently in scope, chronological."""
        wanted = set(relationship.history_ref)
        messages = self._storage.get_messages(relationship.player_id, relationship.npc_id)
        return sorted((m for m in messages if m.id in wanted), key=DMMessage.sort_key)

    def begin_request(self, player_id: str, npc_id: str, request_id: str, now: datetime) -> Relationship:
        """Mark request_id as the conversation's current send, superseding any older one."""
        for _ in range(_MAX_CAS_ATTEMPTS):
            rel = self.get(player_id, npc_id)
            if rel.retry_state is not None:
                logger.info(
                    "request %s supersedes %s on %s/%s",
                    request_id, rel.retry_state.request_id, player_id, npc_id,
                )
            claimed = rel.model_copy(
                update={"retry_state": RetryState(request_id=request_id, started_at=now)}
            )
            stored = self._storage.update_relationship(claimed)
            if stored is not None:
                return stored
        raise PersistenceConflict(f"Could not claim {player_id}/{npc_id} for request {request_id}")

    def is_current(self, player_id: str, npc_id: str, request_id: str) -> bool:
        rel = self._storage.get_relationship(player_id, npc_id)
        return rel is not None and rel.retry_state is not None and rel.retry_state.request_id == request_id

    def record_attempt(self, player_id: str, npc_id: str, request_id: str) -> None:
        """Bump the attempt counter for the in-flight request."""
        for _ in range(_MAX_CAS_ATTEMPTS):
            rel = self._storage.get_relationship(player_id, npc_id)
            if rel is None or rel.retry_state is None or rel.retry_state.request_id != request_id:
                raise RequestSuperseded(request_id)
            state = rel.retry_state.model_copy(update={"attempts": rel.retry_state.attempts + 1})
            if self._storage.update_relationship(rel.model_copy(update={"retry_state": state})):
                return
        raise PersistenceConflict(f"Could not record attempt for request {request_id}")

    def append(
        self,
        relationship: Relationship,
        messages: list[DMMessage],
        request_id: str | None = None,
    ) -> Relationship:
        """Atomically append a turn pair and move the relationship forward.

        With request_id, the append only succeeds while that request is still
        the conversation's current one; otherwise RequestSuperseded is raised
        and nothing is written.
        """
        player_id, npc_id = relationship.player_id, relationship.npc_id
        for _ in range(_MAX_CAS_ATTEMPTS):
            current = self.get(player_id, npc_id)
            if request_id is not None and (
                current.retry_state is None or current.retry_state.request_id != request_id
            ):
                raise RequestSuperseded(request_id)
            history_ref = [*current.history_ref, *(m.id for m in messages)][-HISTORY_REF_LIMIT:]
            updated = current.model_copy(update={
                "history_ref": history_ref,
                "last_interaction_at": max(m.created_at for m in messages),
                "retry_state": None,
            })
            stored = self._storage.append_exchange(updated, messages)
            if stored is not None:
                return stored
            logger.warning("append conflict on %s/%s, retrying", player_id, npc_id)
        raise PersistenceConflict(f"Could not append to {player_id}/{npc_id}")

    def reset(self, player_id: str) -> None:
        """Clear every relationship, contact, thread, timeline and rate window for the player."""
        self._storage.reset_player(player_id)
