from backend.demo import DEMO_NPCS, DEMO_PLAYER, create_demo_data
from npc_social.models import Post
from npc_social.prompts import PromptBook


def test_demo_seeds_accounts_and_posts(storage):
    create_demo_data(storage)
    ids = {a.id for a in storage.list_accounts()}
    assert ids == {DEMO_PLAYER.id, *(n.id for n in DEMO_NPCS)}
    assert "dark_organization" in ids
    assert len(storage.get_npc_posts()) > 0
    PromptBook().validate(storage.list_accounts())


def test_demo_wipes_player_data(storage, clock):
    storage.add_timeline_posts("player", [Post(id="x", author_id="player", content="x", created_at=clock.datetime())])
    create_demo_data(storage)
    assert storage.get_timeline("player") == []


def test_demo_is_repeatable(storage):
    create_demo_data(storage)
    create_demo_data(storage)
    assert len(storage.list_accounts()) == 1 + len(DEMO_NPCS)
