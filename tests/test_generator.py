"""Tests for npc_social.generator: the send flow end to end, with a mocked model."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from npc_social.cache import KeyState, TTLCache
from npc_social.errors import ConfigurationError, ModelTransportFailure, ModelValidationFailure
from npc_social.generator import ResponseGenerator
from npc_social.history import HistoryTrimmer
from npc_social.ledger import RelationshipLedger
from npc_social.llm import HttpChatModel
from npc_social.models import Account, AIResponse, Failure, ModelReply
from npc_social.prompts import FALLBACK_MESSAGES, PromptBook
from npc_social.rate_limiter import RateLimiter
from npc_social.retry import no_backoff
from npc_social.storage import Storage

USER = "player-1"
NPC = "dark_organization"


def _reply(text: str) -> ModelReply:
    return ModelReply(responseText=text)


@pytest.fixture
def model() -> AsyncMock:
    return AsyncMock(return_value=_reply("こんにちは"))


@pytest.fixture
def ledger(seeded) -> RelationshipLedger:
    return RelationshipLedger(seeded)


@pytest.fixture
def generator(seeded, ledger, clock, model) -> ResponseGenerator:
    return ResponseGenerator(
        storage=seeded,
        rate_limiter=RateLimiter(seeded, 10, 60, clock),
        trimmer=HistoryTrimmer(20, 50_000),
        ledger=ledger,
        prompts=PromptBook(),
        model=model,
        max_attempts=3,
        backoff=no_backoff,
        clock=clock,
    )


def _history(storage: Storage) -> list[tuple[str, str]]:
    rel = storage.get_relationship(USER, NPC)
    if rel is None:
        return []
    return [(m.role, m.content) for m in RelationshipLedger(storage).history(rel)]


# ---------------------------------------------------------------------------
# Successful exchange
# ---------------------------------------------------------------------------

class TestSuccess:
    async def test_hello_scenario(self, generator, seeded, dark_org, clock, model) -> None:
        cache = TTLCache(86400, 300, clock)

        async def loader(key):
            return {"page": list(key)}

        await cache.get(("dm", NPC, ""), loader)
        await cache.get(("dm", NPC, "older-page"), loader)
        await cache.get(("dm", "someone_else", ""), loader)

        outcome = await generator.generate(USER, dark_org, "hello", cache=cache)

        assert isinstance(outcome, AIResponse)
        assert outcome.reply.content == "こんにちは"
        assert not outcome.fallback
        assert outcome.attempts == 1
        assert _history(seeded) == [("user", "hello"), ("assistant", "こんにちは")]
        assert cache.state(("dm", NPC, "")) is KeyState.EXPIRED
        assert cache.state(("dm", NPC, "older-page")) is KeyState.EXPIRED
        assert cache.state(("dm", "someone_else", "")) is KeyState.FRESH
        assert model.await_count == 1

    async def test_model_request_shape(self, generator, dark_org, model) -> None:
        await generator.generate(USER, dark_org, "hello")
        request = model.await_args.args[0]
        assert request.context_turns == []
        assert request.new_user_turn.role == "user"
        assert request.new_user_turn.content == "hello"
        assert "Shadow Network" in request.system_prompt
        assert "Aki" in request.system_prompt

    async def test_second_send_sees_first_exchange(self, generator, dark_org, model) -> None:
        await generator.generate(USER, dark_org, "hello")
        model.return_value = _reply("また会ったな")
        await generator.generate(USER, dark_org, "again")
        request = model.await_args.args[0]
        assert [(t.role, t.content) for t in request.context_turns] == [
            ("user", "hello"), ("assistant", "こんにちは"),
        ]
        assert request.new_user_turn.content == "again"

    async def test_reply_sorts_after_user_turn(self, generator, dark_org) -> None:
        outcome = await generator.generate(USER, dark_org, "hello")
        assert outcome.reply.sort_key() > outcome.user_message.sort_key()
        assert outcome.user_message.sender_id == USER
        assert outcome.reply.sender_id == NPC

    async def test_input_is_stripped(self, generator, seeded, dark_org) -> None:
        await generator.generate(USER, dark_org, "  hello \n")
        assert _history(seeded)[0] == ("user", "hello")

    async def test_long_reply_truncated(self, generator, dark_org, model) -> None:
        model.return_value = _reply("あ" * 1500)
        outcome = await generator.generate(USER, dark_org, "hello")
        assert len(outcome.reply.content) == 1000

    async def test_contact_recorded(self, generator, seeded, dark_org) -> None:
        await generator.generate(USER, dark_org, "hello")
        await generator.generate(USER, dark_org, "again")
        assert [c.account_id for c in seeded.get_contacts(USER)] == [NPC]

    async def test_retry_state_cleared(self, generator, seeded, dark_org) -> None:
        await generator.generate(USER, dark_org, "hello")
        assert seeded.get_relationship(USER, NPC).retry_state is None


# ---------------------------------------------------------------------------
# Retries and fallback
# ---------------------------------------------------------------------------

class TestRetries:
    async def test_always_failing_model_gets_exactly_r_calls(
        self, generator, seeded, dark_org, model
    ) -> None:
        model.side_effect = ModelTransportFailure("down")
        outcome = await generator.generate(USER, dark_org, "hello")

        assert model.await_count == 3
        assert isinstance(outcome, AIResponse)
        assert outcome.fallback
        assert outcome.attempts == 3
        assert outcome.reply.content == FALLBACK_MESSAGES["dark_organization"]
        assert _history(seeded) == [
            ("user", "hello"), ("assistant", FALLBACK_MESSAGES["dark_organization"]),
        ]

    async def test_http_read_error_falls_back(self, seeded, ledger, clock, dark_org) -> None:
        generator = ResponseGenerator(
            storage=seeded, rate_limiter=RateLimiter(seeded, 10, 60, clock),
            trimmer=HistoryTrimmer(20, 50_000), ledger=ledger, prompts=PromptBook(),
            model=HttpChatModel(provider_url="https://gemini.test"),
            max_attempts=3, backoff=no_backoff, clock=clock,
        )
        mock_post = AsyncMock(side_effect=httpx.ReadError("connection reset"))
        with patch("httpx.AsyncClient.post", mock_post):
            outcome = await generator.generate(USER, dark_org, "hello")

        assert mock_post.await_count == 3
        assert isinstance(outcome, AIResponse)
        assert outcome.fallback
        assert outcome.reply.content == FALLBACK_MESSAGES["dark_organization"]

    async def test_malformed_reply_is_retried(self, generator, dark_org, model) -> None:
        model.side_effect = [ModelValidationFailure("bad json"), _reply("ok")]
        outcome = await generator.generate(USER, dark_org, "hello")
        assert outcome.reply.content == "ok"
        assert outcome.attempts == 2
        assert not outcome.fallback

    async def test_blank_reply_is_retried(self, generator, dark_org, model) -> None:
        model.side_effect = [_reply("   "), _reply(""), _reply("やっと")]
        outcome = await generator.generate(USER, dark_org, "hello")
        assert outcome.reply.content == "やっと"
        assert outcome.attempts == 3

    async def test_backoff_between_attempts(self, seeded, ledger, clock, dark_org, model) -> None:
        model.side_effect = ModelTransportFailure("down")
        backoff = MagicMock(return_value=0)
        generator = ResponseGenerator(
            storage=seeded, rate_limiter=RateLimiter(seeded, 10, 60, clock),
            trimmer=HistoryTrimmer(20, 50_000), ledger=ledger, prompts=PromptBook(),
            model=model, max_attempts=3, backoff=backoff, clock=clock,
        )
        await generator.generate(USER, dark_org, "hello")
        assert [c.args[0] for c in backoff.call_args_list] == [1, 2]

    async def test_attempts_recorded_on_relationship(self, generator, seeded, dark_org, model) -> None:
        seen: list[int] = []

        async def flaky(request):
            seen.append(seeded.get_relationship(USER, NPC).retry_state.attempts)
            if len(seen) < 2:
                raise ModelTransportFailure("down")
            return _reply("ok")

        model.side_effect = flaky
        await generator.generate(USER, dark_org, "hello")
        assert seen == [1, 2]


# ---------------------------------------------------------------------------
# Typed failures
# ---------------------------------------------------------------------------

class TestFailures:
    @pytest.mark.parametrize("text", ["", "   ", "x" * 501])
    async def test_invalid_input(self, generator, seeded, dark_org, model, text) -> None:
        outcome = await generator.generate(USER, dark_org, text)
        assert isinstance(outcome, Failure)
        assert outcome.kind == "validation_error"
        assert seeded.get_rate_window(USER) is None
        model.assert_not_awaited()

    async def test_eleventh_send_is_rate_limited(self, generator, seeded, dark_org, model, clock) -> None:
        for i in range(10):
            assert isinstance(await generator.generate(USER, dark_org, f"m{i}"), AIResponse)
            clock.advance(1)
        before = seeded.get_relationship(USER, NPC)

        outcome = await generator.generate(USER, dark_org, "one too many")

        assert isinstance(outcome, Failure)
        assert outcome.kind == "rate_limited"
        assert outcome.retry_after > 0
        assert seeded.get_relationship(USER, NPC) == before
        assert model.await_count == 10

    async def test_superseded_between_attempts(self, generator, seeded, ledger, dark_org, clock, model) -> None:
        async def replaced(request):
            ledger.begin_request(USER, NPC, "newer", clock.datetime())
            raise ModelTransportFailure("down")

        model.side_effect = replaced
        outcome = await generator.generate(USER, dark_org, "hello", request_id="older")

        assert isinstance(outcome, Failure)
        assert outcome.kind == "superseded"
        assert model.await_count == 1
        assert seeded.get_messages(USER, NPC) == []

    async def test_superseded_result_is_discarded(self, generator, seeded, ledger, dark_org, clock, model) -> None:
        async def replaced(request):
            ledger.begin_request(USER, NPC, "newer", clock.datetime())
            return _reply("too late")

        model.side_effect = replaced
        outcome = await generator.generate(USER, dark_org, "hello", request_id="older")

        assert outcome.kind == "superseded"
        assert seeded.get_messages(USER, NPC) == []
        assert ledger.is_current(USER, NPC, "newer")

    async def test_unrecordable_exchange_is_model_unavailable(self, generator, seeded, dark_org) -> None:
        with patch.object(Storage, "append_exchange", return_value=None):
            outcome = await generator.generate(USER, dark_org, "hello")
        assert isinstance(outcome, Failure)
        assert outcome.kind == "model_unavailable"
        assert seeded.get_messages(USER, NPC) == []

    async def test_unmapped_prompt_kind_touches_nothing(self, generator, seeded, model) -> None:
        stranger = Account(
            id="stranger", display_name="Stranger", kind="npc", prompt_kind="unmapped"
        )
        seeded.save_account(stranger)

        with pytest.raises(ConfigurationError):
            await generator.generate(USER, stranger, "hello")

        assert seeded.get_rate_window(USER) is None
        assert seeded.get_relationship(USER, "stranger") is None
        model.assert_not_awaited()
