"""Create demo accounts and NPC posts for development/testing."""

import shutil
from datetime import datetime, timedelta, timezone

from npc_social.models import Account, Post
from npc_social.storage import Storage

DEMO_PLAYER = Account(id="player", display_name="Player", kind="player")

DEMO_NPCS = [
    Account(
        id="dark_organization",
        display_name="Shadow Network",
        avatar_ref="avatars/dark_organization.png",
        kind="npc",
        prompt_kind="dark_organization",
    ),
    Account(
        id="tanaka",
        display_name="Tanaka Yuki",
        avatar_ref="avatars/tanaka.png",
        kind="npc",
        prompt_kind="default",
    ),
]

DEMO_POSTS = [
    ("dark_organization", "情報は常に足跡を残す。見る目を持つ者だけがそれに気づく。"),
    ("dark_organization", "次の課題はもう始まっている。写真の背景をよく見ろ。"),
    ("tanaka", "今日のランチは駅前の新しいカフェ。ラテアートがかわいかった!"),
    ("tanaka", "週末は高校の同窓会。懐かしい顔ぶれに会えるのが楽しみ。"),
]


def create_demo_data(storage: Storage) -> None:
    """Wipe existing player data and seed fresh demo accounts and posts."""
    users_root = storage.base_path / "users"
    if users_root.exists():
        shutil.rmtree(users_root)
    users_root.mkdir(parents=True, exist_ok=True)

    for account in [DEMO_PLAYER, *DEMO_NPCS]:
        storage.save_account(account)

    start = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)
    storage.save_npc_posts([
        Post(
            id=f"npc-post-{i}",
            author_id=author,
            content=content,
            created_at=start + timedelta(hours=i),
            like_count=3 * i,
        )
        for i, (author, content) in enumerate(DEMO_POSTS)
    ])
