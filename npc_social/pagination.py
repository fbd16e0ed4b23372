"""Cursor-based pages over ordered posts and DM messages.

Order is a property of the resource type: timelines are newest-first, DM
threads are chronological. Items are keyed by (created_at, id), which is
total, so a cursor anchored just past the last returned key stays valid when
new items arrive between page fetches: nothing already returned is repeated
and nothing older is skipped.

Cursors are opaque url-safe tokens. They are produced here and only here.
"""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Generic, Protocol, TypeVar

from pydantic import ValidationError

from npc_social.errors import InvalidCursor
from npc_social.models import Page, PageCursor, ResourceType


class Ordered(Protocol):
    id: str
    created_at: datetime


ItemT = TypeVar("ItemT", bound=Ordered)

NEWEST_FIRST: dict[ResourceType, bool] = {
    "timeline": True,
    "dm": False,
}


def encode_cursor(item: Ordered) -> str:
    cursor = PageCursor(last_seen_created_at=item.created_at, last_seen_id=item.id)
    raw = json.dumps(cursor.model_dump(mode="json"), separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_cursor(token: str) -> PageCursor:
    try:
        raw = base64.urlsafe_b64decode(token + "=" * (-len(token) % 4))
        return PageCursor.model_validate(json.loads(raw))
    except (binascii.Error, UnicodeDecodeError, ValueError, ValidationError) as e:
        raise InvalidCursor("Malformed page cursor") from e


def _key(item: Ordered) -> tuple[datetime, str]:
    return (item.created_at, item.id)


class Paginator(Generic[ItemT]):
    """Pages over one resource type.

    `fetch(resource_id)` returns every item of the resource in any order;
    the paginator sorts, anchors and slices.
    """

    def __init__(self, resource_type: ResourceType, fetch: Callable[[str], Sequence[ItemT]]) -> None:
        self.resource_type = resource_type
        self._newest_first = NEWEST_FIRST[resource_type]
        self._fetch = fetch

    def page(self, resource_id: str, cursor: str | None, page_size: int) -> Page[ItemT]:
        if page_size < 1:
            raise ValueError("page_size must be positive")

        items = sorted(self._fetch(resource_id), key=_key, reverse=self._newest_first)
        if cursor is not None:
            anchor = decode_cursor(cursor)
            anchor_key = (anchor.last_seen_created_at, anchor.last_seen_id)
            if self._newest_first:
                items = [i for i in items if _key(i) < anchor_key]
            else:
                items = [i for i in items if _key(i) > anchor_key]

        # One extra look-ahead item tells a full last page apart from a partial one
        window = items[: page_size + 1]
        has_more = len(window) > page_size
        returned = window[:page_size]
        next_cursor = encode_cursor(returned[-1]) if has_more else None
        return Page(items=returned, next_cursor=next_cursor, has_more=has_more)
