"""System prompts and fallback replies, keyed by NPC prompt kind.

System prompts are Handlebars templates rendered with pybars against
{npc, player}. Every kind must also have a fallback reply: the fixed line the
NPC sends when the model cannot produce one, so a conversation never
dead-ends.
"""

from collections.abc import Callable
from typing import Any

import pybars

from npc_social.errors import ConfigurationError
from npc_social.models import Account

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(ConfigurationError):
    """Raised when a Handlebars template fails to compile or render."""


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


_REPLY_FORMAT = """\
## Reply format
Always answer with a single JSON object: {"responseText": "<your reply>"}
responseText is your message to {{{player.display_name}}}, in natural Japanese.
Return only the JSON object, no other text."""

SYSTEM_PROMPTS: dict[str, str] = {
    "dark_organization": """\
You are "{{{npc.display_name}}}", a secretive organization and a non-player character in an OSINT investigation game.

## Character
- Mysterious and knowledgeable; sometimes cryptic
- Goal: sharpen the player's open-source intelligence skills
- Tone: polite but distant

## Conversation style
- Friendly at first contact, then reveal information step by step
- Offer hints matched to the player's skill; avoid handing over direct answers
- Make the player think

## Never
- Reveal real people's personal data
- Instruct illegal acts or describe concrete attacks
- Step outside the game's fiction

""" + _REPLY_FORMAT,
    "default": """\
You are "{{{npc.display_name}}}", a user of a small social network inside a game.
Stay in character, keep replies short and conversational, and never break the fiction.

""" + _REPLY_FORMAT,
}

FALLBACK_MESSAGES: dict[str, str] = {
    "dark_organization": "通信が混雑している...少し時間を置いてから再度連絡してくれ。",
    "default": "ごめんなさい、今ちょっと返信できません。また後で連絡しますね。",
}


class PromptBook:
    """Resolves an NPC account to its system prompt and fallback reply."""

    def __init__(
        self,
        system_prompts: dict[str, str] | None = None,
        fallbacks: dict[str, str] | None = None,
    ) -> None:
        self._prompts = dict(SYSTEM_PROMPTS if system_prompts is None else system_prompts)
        self._fallbacks = dict(FALLBACK_MESSAGES if fallbacks is None else fallbacks)

    def _kind(self, npc: Account) -> str:
        kind = npc.prompt_kind or "default"
        if kind not in self._prompts or kind not in self._fallbacks:
            raise ConfigurationError(f"No prompt configured for NPC kind {kind!r} ({npc.id})")
        return kind

    def system_prompt(self, npc: Account, player: Account | None = None) -> str:
        context = {
            "npc": npc.model_dump(),
            "player": player.model_dump() if player else {"display_name": "the player"},
        }
        return render_prompt(self._prompts[self._kind(npc)], context)

    def fallback_message(self, npc: Account) -> str:
        return self._fallbacks[self._kind(npc)]

    def validate(self, accounts: list[Account]) -> None:
        """Fail fast at startup if any NPC has no prompt wiring."""
        for account in accounts:
            if account.kind == "npc":
                self.system_prompt(account)
