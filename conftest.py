from datetime import datetime, timezone

import pytest

from npc_social.models import Account
from npc_social.storage import Storage

# 2025-01-01T00:00:00Z
EPOCH = 1735689600.0


class FakeClock:
    """Manually advanced clock. Call it to read the time."""

    def __init__(self, start: float = EPOCH) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def datetime(self) -> datetime:
        return datetime.fromtimestamp(self.now, tz=timezone.utc)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage(tmp_path) -> Storage:
    """Empty storage under a per-test temp directory."""
    return Storage(tmp_path / "data")


@pytest.fixture
def dark_org() -> Account:
    return Account(
        id="dark_organization", display_name="Shadow Network",
        kind="npc", prompt_kind="dark_organization",
    )


@pytest.fixture
def player() -> Account:
    return Account(id="player-1", display_name="Aki", kind="player")


@pytest.fixture
def seeded(storage: Storage, dark_org: Account, player: Account) -> Storage:
    """Storage with one player and the dark_organization NPC."""
    storage.save_account(player)
    storage.save_account(dark_org)
    return storage
