"""Presentation-facing facade over the conversation core.

Every operation takes an already-verified user id. Reads go through the
caller's TTLCache; writes invalidate the pages they affect. Chat sends
return typed outcomes instead of raising. Post and contact operations raise
InputValidationError for bad input, which the HTTP layer maps to 422.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

from npc_social.cache import TTLCache
from npc_social.config import Settings
from npc_social.errors import AccountLimitReached, ConfigurationError, InputValidationError
from npc_social.generator import ResponseGenerator
from npc_social.history import HistoryTrimmer
from npc_social.ledger import RelationshipLedger
from npc_social.llm import ChatModel, EchoChatModel, HttpChatModel
from npc_social.models import (
    Account,
    AIResponse,
    CacheKey,
    Contact,
    DMMessage,
    Failure,
    Page,
    Post,
    ThreadEntry,
)
from npc_social.pagination import Paginator, decode_cursor
from npc_social.prompts import PromptBook
from npc_social.rate_limiter import RateLimiter
from npc_social.retry import linear_backoff
from npc_social.storage import Storage

logger = logging.getLogger(__name__)


def build_model(settings: Settings) -> ChatModel:
    """Instantiate the model collaborator named by settings.model_provider."""
    if settings.model_provider == "echo":
        return EchoChatModel()
    if not settings.model_url:
        raise ConfigurationError(f"model_url is required for provider {settings.model_provider!r}")
    return HttpChatModel(
        provider_url=settings.model_url,
        api_key=settings.model_api_key,
        provider_format=settings.model_provider,
        model=settings.model_name,
        timeout=settings.model_timeout,
        max_output_tokens=settings.max_reply_length,
    )


def _display_name(value: str) -> str:
    name = value.strip()
    if not name:
        raise InputValidationError("Display name is empty")
    return name


class SocialService:
    def __init__(
        self,
        storage: Storage,
        settings: Settings,
        model: ChatModel | None = None,
        prompts: PromptBook | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.prompts = prompts or PromptBook()
        self.ledger = RelationshipLedger(storage)
        self._clock = clock
        self._model_override = model
        self._caches: dict[str, TTLCache] = {}
        self._timeline = Paginator("timeline", storage.get_timeline)
        self.configure(settings)

    def configure(self, settings: Settings) -> None:
        """Apply new settings. Cached pages are dropped since page sizes may change."""
        model = self._model_override if self._model_override is not None else build_model(settings)
        storage = self.storage
        clock = self._clock
        generator = ResponseGenerator(
            storage=storage,
            rate_limiter=RateLimiter(
                storage, settings.rate_limit_max_requests, settings.rate_limit_window_seconds, clock
            ),
            trimmer=HistoryTrimmer(settings.history_max_turns, settings.history_max_chars),
            ledger=self.ledger,
            prompts=self.prompts,
            model=model,
            max_attempts=settings.model_max_attempts,
            backoff=linear_backoff(settings.retry_backoff_seconds),
            max_message_length=settings.max_message_length,
            max_reply_length=settings.max_reply_length,
            clock=clock,
        )
        self.settings = settings
        self.generator = generator
        self._caches.clear()

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def cache_for(self, user_id: str) -> TTLCache:
        cache = self._caches.get(user_id)
        if cache is None:
            cache = TTLCache(
                self.settings.cache_ttl_seconds, self.settings.cache_freshness_seconds, self._clock
            )
            self._caches[user_id] = cache
        return cache

    def validate(self) -> None:
        """Raise ConfigurationError if any seeded NPC cannot be prompted."""
        self.prompts.validate(self.storage.list_accounts())

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    async def fetch_timeline_page(self, user_id: str, cursor: str | None = None) -> Page[Post]:
        if cursor is not None:
            decode_cursor(cursor)
        key: CacheKey = ("timeline", user_id, cursor or "")

        async def load(key: CacheKey) -> dict:
            page = self._timeline.page(user_id, cursor, self.settings.posts_per_page)
            return page.model_dump(mode="json")

        payload = await self.cache_for(user_id).get(key, load)
        return Page[Post].model_validate(payload)

    async def fetch_dm_page(
        self, user_id: str, conversation_id: str, cursor: str | None = None
    ) -> Page[DMMessage]:
        if cursor is not None:
            decode_cursor(cursor)
        key: CacheKey = ("dm", conversation_id, cursor or "")
        paginator = Paginator("dm", lambda npc_id: self.storage.get_messages(user_id, npc_id))

        async def load(key: CacheKey) -> dict:
            page = paginator.page(conversation_id, cursor, self.settings.messages_per_page)
            return page.model_dump(mode="json")

        payload = await self.cache_for(user_id).get(key, load)
        return Page[DMMessage].model_validate(payload)

    # ------------------------------------------------------------------
    # Messenger
    # ------------------------------------------------------------------

    async def send_message(
        self, user_id: str, npc_id: str, text: str, request_id: str | None = None
    ) -> AIResponse | Failure:
        npc = self.storage.get_account(npc_id)
        if npc is None or npc.kind != "npc":
            return Failure(kind="validation_error", detail=f"Unknown NPC {npc_id!r}")
        return await self.generator.generate(
            user_id, npc, text, request_id=request_id, cache=self.cache_for(user_id)
        )

    def relationship_history(self, user_id: str, npc_id: str) -> list[DMMessage]:
        relationship = self.storage.get_relationship(user_id, npc_id)
        if relationship is None:
            return []
        return self.ledger.history(relationship)

    # ------------------------------------------------------------------
    # Directory and contacts
    # ------------------------------------------------------------------

    def list_npcs(self) -> list[Account]:
        return [a for a in self.storage.list_accounts() if a.kind == "npc"]

    def get_account(self, account_id: str) -> Account | None:
        return self.storage.get_account(account_id)

    def list_contacts(self, user_id: str) -> list[Contact]:
        return sorted(
            self.storage.get_contacts(user_id), key=lambda c: (c.discovered_at, c.account_id)
        )

    def add_contact(self, user_id: str, account_id: str) -> Contact:
        if self.storage.get_account(account_id) is None:
            raise InputValidationError(f"Unknown account {account_id!r}")
        return self.storage.add_contact(
            Contact(player_id=user_id, account_id=account_id, discovered_at=self._now())
        )

    # ------------------------------------------------------------------
    # Player accounts
    # ------------------------------------------------------------------

    def list_player_accounts(self, user_id: str) -> list[Account]:
        """Accounts the user created, oldest first."""
        owned = [a for a in self.storage.list_accounts() if a.owner_id == user_id]
        return sorted(owned, key=lambda a: (a.created_at, a.id))

    def active_account(self, user_id: str) -> Account | None:
        return next((a for a in self.list_player_accounts(user_id) if a.is_active), None)

    def create_player_account(self, user_id: str, display_name: str, avatar_ref: str = "") -> Account:
        account = Account(
            id=uuid.uuid4().hex,
            display_name=_display_name(display_name),
            avatar_ref=avatar_ref,
            kind="player",
            owner_id=user_id,
            created_at=self._now(),
        )
        limit = self.settings.max_accounts_per_player
        created = self.storage.create_owned_account(account, limit)
        if created is None:
            raise AccountLimitReached(f"A player may own at most {limit} accounts")
        logger.info("account %s created for %s", created.id, user_id)
        return created

    def update_account(
        self,
        user_id: str,
        account_id: str,
        display_name: str | None = None,
        avatar_ref: str | None = None,
    ) -> Account:
        """Change the profile of an account the user controls. id and kind never change."""
        account = self.storage.get_account(account_id)
        if account is None or user_id not in (account.id, account.owner_id):
            raise InputValidationError(f"Unknown account {account_id!r}")
        changes: dict[str, str] = {}
        if display_name is not None:
            changes["display_name"] = _display_name(display_name)
        if avatar_ref is not None:
            changes["avatar_ref"] = avatar_ref
        updated = account.model_copy(update=changes)
        self.storage.save_account(updated)
        return updated

    def delete_player_account(self, user_id: str, account_id: str) -> Account:
        removed = self.storage.delete_owned_account(user_id, account_id)
        if removed is None:
            raise InputValidationError(f"Unknown account {account_id!r}")
        logger.info("account %s deleted for %s", account_id, user_id)
        return removed

    def switch_active_account(self, user_id: str, account_id: str) -> Account:
        active = self.storage.activate_account(user_id, account_id)
        if active is None:
            raise InputValidationError(f"Unknown account {account_id!r}")
        return active

    # ------------------------------------------------------------------
    # Posts
    # ------------------------------------------------------------------

    def create_post(self, user_id: str, content: str, reply_to: str | None = None) -> Post:
        text = content.strip()
        if not text:
            raise InputValidationError("Post is empty")
        if len(text) > self.settings.max_post_length:
            raise InputValidationError(
                f"Post exceeds {self.settings.max_post_length} characters"
            )
        if reply_to is not None and reply_to not in {p.id for p in self.storage.get_timeline(user_id)}:
            raise InputValidationError(f"Unknown post {reply_to!r}")

        active = self.active_account(user_id)
        post = Post(
            id=uuid.uuid4().hex, author_id=active.id if active else user_id, content=text,
            created_at=self._now(), reply_to=reply_to,
        )
        self.storage.add_timeline_posts(user_id, [post])
        self.cache_for(user_id).invalidate(("timeline", user_id))
        logger.info("post %s created by %s", post.id, user_id)
        return post

    def initialize_timeline(self, user_id: str) -> int:
        """Copy seeded NPC posts onto the user's timeline. Returns how many were added."""
        added = self.storage.add_timeline_posts(user_id, self.storage.get_npc_posts())
        if added:
            self.cache_for(user_id).invalidate(("timeline", user_id))
        return len(added)

    def post_thread(self, user_id: str, post_id: str) -> list[ThreadEntry]:
        """The post and every reply beneath it, depth-first, each level chronological."""
        posts = {p.id: p for p in self.storage.get_timeline(user_id)}
        if post_id not in posts:
            raise InputValidationError(f"Unknown post {post_id!r}")

        children: dict[str, list[Post]] = {}
        for post in posts.values():
            if post.reply_to is not None:
                children.setdefault(post.reply_to, []).append(post)

        thread: list[ThreadEntry] = []
        stack = [(posts[post_id], 0)]
        while stack:
            post, depth = stack.pop()
            thread.append(ThreadEntry(post=post, depth=depth))
            replies = sorted(children.get(post.id, []), key=lambda p: (p.created_at, p.id))
            stack.extend((reply, depth + 1) for reply in reversed(replies))
        return thread

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    def reset_game(self, user_id: str) -> None:
        """Drop every relationship, contact, thread and cached page for the user."""
        self.ledger.reset(user_id)
        cache = self._caches.pop(user_id, None)
        if cache is not None:
            cache.clear()
        logger.info("game reset for %s", user_id)
