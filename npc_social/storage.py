"""JSON file storage: the persistence collaborator.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM. Reads and writes go through plain helper methods
that load and dump JSON; writes land in a temp file first and are moved into
place with os.replace so a reader never sees a half-written document.

Versioned documents (relationships, rate-limit windows) are updated with
compare_and_set(): the write only happens when the stored version still
equals the version the caller read. Each document path has its own lock, so
unrelated conversations never wait on each other. The lock is a thread lock
plus an flock on a sidecar `{name}.lock` file, so separate processes sharing
the base directory are ordered too.

Directory layout:

    {base}/
      accounts.json                 ← list of Account objects (players + NPCs)
      npc_posts.json                ← seeded NPC posts, copied into timelines
      users/
        {player_id}/
          timeline.json             ← list of Post objects
          contacts.json             ← list of Contact objects
          rate_limit.json           ← RateLimitWindow
          relationships/{npc_id}.json
          conversations/{npc_id}.json  ← append-only DMMessage log
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import shutil
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from npc_social.models import (
    Account,
    Contact,
    DMMessage,
    Post,
    RateLimitWindow,
    Relationship,
)

logger = logging.getLogger(__name__)


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._users_root = base_path / "users"
        self._users_root.mkdir(parents=True, exist_ok=True)
        self._locks: dict[Path, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        # Open sidecar lock files and how deeply the owning thread holds each
        self._flocks: dict[Path, tuple[int, int]] = {}

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _user_dir(self, player_id: str) -> Path:
        return self._users_root / player_id

    def _relationship_file(self, player_id: str, npc_id: str) -> Path:
        return self._user_dir(player_id) / "relationships" / f"{npc_id}.json"

    def _conversation_file(self, player_id: str, npc_id: str) -> Path:
        return self._user_dir(player_id) / "conversations" / f"{npc_id}.json"

    def _read_json(self, path: Path, default: Any = None) -> Any:
        if not path.is_file():
            return default
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False))
        os.replace(tmp, path)

    @contextmanager
    def _locked(self, path: Path) -> Iterator[None]:
        """Hold path's thread lock and an flock on its sidecar `.lock` file.

        The thread lock orders threads of this process; the flock orders
        processes (or other Storage instances) sharing the directory.
        """
        with self._locks_guard:
            lock = self._locks.setdefault(path, threading.RLock())
        with lock:
            fd, depth = self._flocks.get(path, (-1, 0))
            if depth == 0:
                lock_path = path.with_name(path.name + ".lock")
                lock_path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o644)
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX)
                except OSError:
                    os.close(fd)
                    raise
            self._flocks[path] = (fd, depth + 1)
            try:
                yield
            finally:
                if depth == 0:
                    del self._flocks[path]
                    fcntl.flock(fd, fcntl.LOCK_UN)
                    os.close(fd)
                else:
                    self._flocks[path] = (fd, depth)

    def _compare_and_set(self, path: Path, expected_version: int | None, data: dict) -> dict | None:
        """Write data with version+1 if the stored version matches.

        expected_version=None means "the document must not exist yet".
        Returns the written document, or None when the caller lost the race.
        """
        with self._locked(path):
            current = self._read_json(path)
            current_version = None if current is None else current.get("version", 0)
            if current_version != expected_version:
                logger.debug(
                    "cas miss path=%s expected=%s found=%s", path, expected_version, current_version
                )
                return None
            written = dict(data, version=0 if current is None else current_version + 1)
            self._write_json(path, written)
            return written

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def list_accounts(self) -> list[Account]:
        return [Account.model_validate(a) for a in self._read_json(self._base / "accounts.json", [])]

    def get_account(self, account_id: str) -> Account | None:
        for account in self.list_accounts():
            if account.id == account_id:
                return account
        return None

    def save_account(self, account: Account) -> None:
        """Upsert an account by id."""
        path = self._base / "accounts.json"
        with self._locked(path):
            accounts = self.list_accounts()
            for i, a in enumerate(accounts):
                if a.id == account.id:
                    accounts[i] = account
                    break
            else:
                accounts.append(account)
            self._write_json(path, [a.model_dump(mode="json") for a in accounts])

    def create_owned_account(self, account: Account, limit: int) -> Account | None:
        """Add a player-created account unless its owner already has `limit`.

        The owner's first account becomes the active one. Returns None when
        the limit is reached.
        """
        path = self._base / "accounts.json"
        with self._locked(path):
            accounts = self.list_accounts()
            owned = [a for a in accounts if a.owner_id == account.owner_id]
            if len(owned) >= limit:
                return None
            account = account.model_copy(update={"is_active": not owned})
            accounts.append(account)
            self._write_json(path, [a.model_dump(mode="json") for a in accounts])
            return account

    def delete_owned_account(self, owner_id: str, account_id: str) -> Account | None:
        """Remove an owner's account. If it was active, the oldest remaining one takes over."""
        path = self._base / "accounts.json"
        with self._locked(path):
            accounts = self.list_accounts()
            removed = next(
                (a for a in accounts if a.id == account_id and a.owner_id == owner_id), None
            )
            if removed is None:
                return None
            accounts = [a for a in accounts if a is not removed]
            if removed.is_active:
                owned = [a for a in accounts if a.owner_id == owner_id]
                if owned:
                    oldest = min(owned, key=lambda a: (a.created_at, a.id))
                    oldest.is_active = True
            self._write_json(path, [a.model_dump(mode="json") for a in accounts])
            return removed

    def activate_account(self, owner_id: str, account_id: str) -> Account | None:
        """Make account_id the owner's only active account. None if they don't own it."""
        path = self._base / "accounts.json"
        with self._locked(path):
            accounts = self.list_accounts()
            owned = [a for a in accounts if a.owner_id == owner_id]
            if not any(a.id == account_id for a in owned):
                return None
            for a in owned:
                a.is_active = a.id == account_id
            self._write_json(path, [a.model_dump(mode="json") for a in accounts])
            return next(a for a in owned if a.id == account_id)

    # ------------------------------------------------------------------
    # Posts
    # ------------------------------------------------------------------

    def get_npc_posts(self) -> list[Post]:
        return [Post.model_validate(p) for p in self._read_json(self._base / "npc_posts.json", [])]

    def save_npc_posts(self, posts: list[Post]) -> None:
        self._write_json(self._base / "npc_posts.json", [p.model_dump(mode="json") for p in posts])

    def get_timeline(self, player_id: str) -> list[Post]:
        path = self._user_dir(player_id) / "timeline.json"
        return [Post.model_validate(p) for p in self._read_json(path, [])]

    def add_timeline_posts(self, player_id: str, posts: list[Post]) -> list[Post]:
        """Append posts whose id is not already on the timeline. Returns those added."""
        path = self._user_dir(player_id) / "timeline.json"
        with self._locked(path):
            existing = self.get_timeline(player_id)
            seen = {p.id for p in existing}
            added = [p for p in posts if p.id not in seen]
            if added:
                existing.extend(added)
                self._write_json(path, [p.model_dump(mode="json") for p in existing])
            return added

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def get_contacts(self, player_id: str) -> list[Contact]:
        path = self._user_dir(player_id) / "contacts.json"
        return [Contact.model_validate(c) for c in self._read_json(path, [])]

    def add_contact(self, contact: Contact) -> Contact:
        """Insert a contact unless one exists for the account. Returns the stored one."""
        path = self._user_dir(contact.player_id) / "contacts.json"
        with self._locked(path):
            contacts = self.get_contacts(contact.player_id)
            for c in contacts:
                if c.account_id == contact.account_id:
                    return c
            contacts.append(contact)
            self._write_json(path, [c.model_dump(mode="json") for c in contacts])
            return contact

    # ------------------------------------------------------------------
    # Conversations (append-only)
    # ------------------------------------------------------------------

    def get_messages(self, player_id: str, npc_id: str) -> list[DMMessage]:
        path = self._conversation_file(player_id, npc_id)
        return [DMMessage.model_validate(m) for m in self._read_json(path, [])]

    def conversation_ids(self, player_id: str) -> list[str]:
        folder = self._user_dir(player_id) / "conversations"
        if not folder.is_dir():
            return []
        return sorted(p.stem for p in folder.glob("*.json"))

    # ------------------------------------------------------------------
    # Relationships (versioned)
    # ------------------------------------------------------------------

    def get_relationship(self, player_id: str, npc_id: str) -> Relationship | None:
        data = self._read_json(self._relationship_file(player_id, npc_id))
        return None if data is None else Relationship.model_validate(data)

    def create_relationship(self, relationship: Relationship) -> Relationship | None:
        """Create the document if absent. Returns None if someone else created it first."""
        path = self._relationship_file(relationship.player_id, relationship.npc_id)
        written = self._compare_and_set(path, None, relationship.model_dump(mode="json"))
        return None if written is None else Relationship.model_validate(written)

    def update_relationship(self, relationship: Relationship) -> Relationship | None:
        """CAS against relationship.version. Returns the stored copy or None on conflict."""
        path = self._relationship_file(relationship.player_id, relationship.npc_id)
        written = self._compare_and_set(
            path, relationship.version, relationship.model_dump(mode="json")
        )
        return None if written is None else Relationship.model_validate(written)

    def append_exchange(
        self, relationship: Relationship, messages: list[DMMessage]
    ) -> Relationship | None:
        """Append messages to the conversation log and store the relationship, atomically.

        Both writes happen under the relationship's lock and only if its
        version still matches, so two exchanges on one pair never interleave.
        """
        rel_path = self._relationship_file(relationship.player_id, relationship.npc_id)
        log_path = self._conversation_file(relationship.player_id, relationship.npc_id)
        with self._locked(rel_path):
            current = self._read_json(rel_path)
            if current is None or current.get("version", 0) != relationship.version:
                return None
            log = self._read_json(log_path, [])
            log.extend(m.model_dump(mode="json") for m in messages)
            self._write_json(log_path, log)
            written = dict(relationship.model_dump(mode="json"), version=relationship.version + 1)
            self._write_json(rel_path, written)
            return Relationship.model_validate(written)

    def list_relationships(self, player_id: str) -> list[Relationship]:
        folder = self._user_dir(player_id) / "relationships"
        if not folder.is_dir():
            return []
        return [
            Relationship.model_validate(self._read_json(p))
            for p in sorted(folder.glob("*.json"))
        ]

    # ------------------------------------------------------------------
    # Rate-limit windows (versioned)
    # ------------------------------------------------------------------

    def get_rate_window(self, user_id: str) -> RateLimitWindow | None:
        data = self._read_json(self._user_dir(user_id) / "rate_limit.json")
        return None if data is None else RateLimitWindow.model_validate(data)

    def put_rate_window(
        self, window: RateLimitWindow, expected_version: int | None
    ) -> RateLimitWindow | None:
        path = self._user_dir(window.user_id) / "rate_limit.json"
        written = self._compare_and_set(path, expected_version, window.model_dump(mode="json"))
        return None if written is None else RateLimitWindow.model_validate(written)

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    def reset_player(self, player_id: str) -> None:
        """Delete every per-player document in one step."""
        user_dir = self._user_dir(player_id)
        with self._locked(user_dir):
            if user_dir.is_dir():
                # Move aside first so readers see either the full tree or nothing
                trash = user_dir.with_name(f".{player_id}.{uuid.uuid4().hex}.deleting")
                os.replace(user_dir, trash)
                shutil.rmtree(trash)
        logger.info("reset storage for player=%s", player_id)
