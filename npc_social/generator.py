"""Response generator: runs one player send end-to-end.

Send flow:
  1. Validate the player's text (stripped, non-empty, within the length cap).
  2. Resolve the NPC's system prompt and fallback line. An unmapped
     prompt kind raises ConfigurationError before any state is touched.
  3. Rate check. Denied → RateLimited outcome; nothing else is touched.
  4. Claim the conversation for this request id (supersedes any older send).
  5. Build the context: trimmed history + the new user turn.
  6. Call the model with bounded, sequential retries. The same context is
     reused for every attempt. Before each attempt the claim is re-checked;
     a superseded request stops here.
  7. Success → the model's reply. Exhausted → the NPC's fixed fallback line.
  8. Commit once: append the user turn and the reply to the ledger,
     record the contact, invalidate the conversation's cached pages.

Model failures never escape this module. The only outcomes the caller sees
are sent (possibly with the fallback reply), rate_limited, validation_error,
superseded and model_unavailable (the exchange could not be recorded).
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from npc_social.cache import TTLCache
from npc_social.errors import (
    ModelTransportFailure,
    ModelValidationFailure,
    PersistenceConflict,
    RequestSuperseded,
)
from npc_social.history import HistoryTrimmer
from npc_social.ledger import RelationshipLedger
from npc_social.llm import ChatModel
from npc_social.models import (
    Account,
    AIResponse,
    Contact,
    Denied,
    DMMessage,
    Failure,
    ModelReply,
    ModelRequest,
    Turn,
)
from npc_social.prompts import PromptBook
from npc_social.rate_limiter import RateLimiter
from npc_social.retry import Backoff, with_retry_async
from npc_social.storage import Storage

logger = logging.getLogger(__name__)


class ResponseGenerator:
    def __init__(
        self,
        *,
        storage: Storage,
        rate_limiter: RateLimiter,
        trimmer: HistoryTrimmer,
        ledger: RelationshipLedger,
        prompts: PromptBook,
        model: ChatModel,
        max_attempts: int,
        backoff: Backoff,
        max_message_length: int = 500,
        max_reply_length: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self._rate_limiter = rate_limiter
        self._trimmer = trimmer
        self._ledger = ledger
        self._prompts = prompts
        self._model = model
        self._max_attempts = max_attempts
        self._backoff = backoff
        self._max_message_length = max_message_length
        self._max_reply_length = max_reply_length
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def generate(
        self,
        user_id: str,
        npc: Account,
        user_message: str,
        *,
        request_id: str | None = None,
        cache: TTLCache | None = None,
    ) -> AIResponse | Failure:
        """Send user_message to npc and return the finalized exchange or a typed failure."""

        # 1. Validate
        text = user_message.strip()
        if not text:
            return Failure(kind="validation_error", detail="Message is empty")
        if len(text) > self._max_message_length:
            return Failure(
                kind="validation_error",
                detail=f"Message exceeds {self._max_message_length} characters",
            )

        # 2. Prompt
        player = self._storage.get_account(user_id)
        system_prompt = self._prompts.system_prompt(npc, player)
        fallback_line = self._prompts.fallback_message(npc)

        # 3. Rate check
        decision = self._rate_limiter.try_acquire(user_id)
        if isinstance(decision, Denied):
            return Failure(kind="rate_limited", retry_after=decision.retry_after)

        # 4. Claim
        request_id = request_id or uuid.uuid4().hex
        sent_at = self._now()
        try:
            relationship = self._ledger.begin_request(user_id, npc.id, request_id, sent_at)
        except PersistenceConflict as e:
            logger.warning("could not claim conversation %s/%s: %s", user_id, npc.id, e)
            return Failure(kind="model_unavailable", detail="Conversation is busy")

        # 5. Context
        context = self._trimmer.build_context(
            self._ledger.history(relationship), Turn(role="user", content=text)
        )
        request = ModelRequest(
            system_prompt=system_prompt,
            context_turns=context.turns[:-1],
            new_user_turn=context.turns[-1],
        )

        # 6. Model call with retries
        async def attempt(n: int) -> ModelReply:
            self._ledger.record_attempt(user_id, npc.id, request_id)
            reply = await self._model(request)
            if not reply.response_text.strip():
                raise ModelValidationFailure("Model returned an empty responseText")
            return reply

        try:
            result = await with_retry_async(
                attempt,
                self._max_attempts,
                self._backoff,
                retry_on=(ModelTransportFailure,),
            )
        except RequestSuperseded:
            logger.warning("request %s on %s/%s superseded mid-retry", request_id, user_id, npc.id)
            return Failure(kind="superseded", detail="A newer message replaced this one")
        except PersistenceConflict as e:
            logger.warning("lost retry bookkeeping for %s/%s: %s", user_id, npc.id, e)
            return Failure(kind="model_unavailable", detail="Conversation is busy")

        # 7. Outcome
        fallback = not result.ok
        if result.ok:
            reply_text = result.value.response_text.strip()[: self._max_reply_length]
        else:
            logger.info(
                "model exhausted after %d attempts for %s/%s: %s",
                result.attempts, user_id, npc.id, result.last_error,
            )
            reply_text = fallback_line

        # 8. Commit
        replied_at = max(self._now(), sent_at + timedelta(microseconds=1))
        messages = [
            DMMessage(
                id=uuid.uuid4().hex, conversation_id=npc.id, sender_id=user_id,
                role="user", content=text, created_at=sent_at,
            ),
            DMMessage(
                id=uuid.uuid4().hex, conversation_id=npc.id, sender_id=npc.id,
                role="assistant", content=reply_text, created_at=replied_at,
            ),
        ]
        try:
            self._ledger.append(relationship, messages, request_id=request_id)
        except RequestSuperseded:
            logger.warning("discarding superseded reply for %s/%s request=%s", user_id, npc.id, request_id)
            return Failure(kind="superseded", detail="A newer message replaced this one")
        except PersistenceConflict as e:
            logger.warning("could not record exchange for %s/%s: %s", user_id, npc.id, e)
            return Failure(kind="model_unavailable", detail="Could not record the conversation")

        self._storage.add_contact(
            Contact(player_id=user_id, account_id=npc.id, discovered_at=sent_at)
        )
        if cache is not None:
            cache.invalidate(("dm", npc.id))
        return AIResponse(
            user_message=messages[0],
            reply=messages[1],
            fallback=fallback,
            attempts=result.attempts,
        )
