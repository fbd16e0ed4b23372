"""Tests for Handlebars prompt rendering and the per-NPC prompt book."""

import pytest

from npc_social.errors import ConfigurationError
from npc_social.models import Account
from npc_social.prompts import FALLBACK_MESSAGES, PromptBook, PromptError, render_prompt


# ── render_prompt ────────────────────────────────────────────


def test_render_nested_variable():
    assert render_prompt("Hi {{npc.name}}", {"npc": {"name": "Kai"}}) == "Hi Kai"


def test_render_missing_variable():
    assert render_prompt("Hello {{name}}!", {}) == "Hello !"


def test_render_invalid_template():
    with pytest.raises(PromptError):
        render_prompt("{{> missing_partial}}", {})


def test_prompt_error_is_configuration_error():
    assert issubclass(PromptError, ConfigurationError)


# ── PromptBook ───────────────────────────────────────────────


def test_system_prompt_names_npc_and_player(dark_org, player):
    prompt = PromptBook().system_prompt(dark_org, player)
    assert '"Shadow Network"' in prompt
    assert "Aki" in prompt
    assert '{"responseText"' in prompt


def test_display_names_are_not_html_escaped(player):
    npc = Account(id="n", display_name="Tom & Jerry's", kind="npc")
    assert "Tom & Jerry's" in PromptBook().system_prompt(npc, player)


def test_missing_player_uses_generic_name(dark_org):
    assert "the player" in PromptBook().system_prompt(dark_org)


def test_npc_without_kind_uses_default_prompt():
    npc = Account(id="n", display_name="Neighbour", kind="npc")
    book = PromptBook()
    assert "small social network" in book.system_prompt(npc)
    assert book.fallback_message(npc) == FALLBACK_MESSAGES["default"]


def test_fallback_is_per_kind(dark_org):
    assert PromptBook().fallback_message(dark_org) == FALLBACK_MESSAGES["dark_organization"]


def test_unknown_kind_is_configuration_error():
    npc = Account(id="n", display_name="?", kind="npc", prompt_kind="pirate")
    with pytest.raises(ConfigurationError):
        PromptBook().system_prompt(npc)
    with pytest.raises(ConfigurationError):
        PromptBook().fallback_message(npc)


def test_kind_without_fallback_is_configuration_error():
    book = PromptBook(system_prompts={"pirate": "Arr"}, fallbacks={})
    npc = Account(id="n", display_name="?", kind="npc", prompt_kind="pirate")
    with pytest.raises(ConfigurationError):
        book.system_prompt(npc)


def test_validate_checks_only_npcs(player, dark_org):
    PromptBook().validate([player, dark_org])
    broken = Account(id="n", display_name="?", kind="npc", prompt_kind="pirate")
    with pytest.raises(ConfigurationError):
        PromptBook().validate([player, broken])
