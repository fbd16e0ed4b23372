"""Model client: HTTP connection to a chat-completion backend.

The response generator injects a model callable matching the protocol:

    async def __call__(self, request: ModelRequest) -> ModelReply: ...

The request carries the NPC's system prompt, the trimmed prior turns and the
player's new turn. The model is instructed to answer with a JSON object
{"responseText": "..."}; anything else is a ModelValidationFailure.

Two implementations are provided:

    HttpChatModel  - real HTTP client, supports Gemini generateContent and
                     OpenAI-compatible chat/completions. Selected by
                     provider_format.
    EchoChatModel  - replies with the player's own words. Useful for
                     smoke-testing the send flow without a running model.

Tests use AsyncMock stand-ins instead.
"""

from __future__ import annotations

import json
import logging
from typing import Literal, Protocol

import httpx
from pydantic import ValidationError

from npc_social.errors import ModelTransportFailure, ModelValidationFailure
from npc_social.models import ModelReply, ModelRequest, Turn

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol: every model implementation must match this signature
# ---------------------------------------------------------------------------

class ChatModel(Protocol):
    async def __call__(self, request: ModelRequest) -> ModelReply: ...


def parse_reply(text: str) -> ModelReply:
    """Validate the model's raw text as {"responseText": str}."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ModelValidationFailure(f"Model reply is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise ModelValidationFailure(f"Model reply must be a JSON object, got {type(data).__name__}")
    try:
        return ModelReply.model_validate(data, strict=True)
    except ValidationError as e:
        raise ModelValidationFailure("Model reply is missing a string responseText") from e


# ---------------------------------------------------------------------------
# HttpChatModel: connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["gemini", "openai"]


class HttpChatModel:
    """Async HTTP client for chat backends.

    Supported formats:
      "gemini"  - POST /v1beta/models/{model}:generateContent
                  Response: {"candidates": [{"content": {"parts": [{"text": "..."}]}}]}
      "openai"  - POST /v1/chat/completions  {"model": ..., "messages": [...]}
                  Response: {"choices": [{"message": {"content": "..."}}]}

    Args:
        provider_url:    Base URL of the backend.
        api_key:         API key, or empty string if not required.
        provider_format: Wire format to use. Defaults to "gemini".
        model:           Model identifier.
        timeout:         HTTP timeout in seconds.
        max_output_tokens, temperature: generation settings sent with each call.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "gemini",
        model: str = "gemini-2.5-flash-lite",
        timeout: float = 60.0,
        max_output_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout
        self._max_output_tokens = max_output_tokens
        self._temperature = temperature

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            if self._format == "gemini":
                headers["x-goog-api-key"] = self._api_key
            else:
                headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, request: ModelRequest) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        turns = [*request.context_turns, request.new_user_turn]

        if self._format == "openai":
            url = f"{self._base_url}/v1/chat/completions"
            messages = [{"role": "system", "content": request.system_prompt}]
            messages.extend({"role": t.role, "content": t.content} for t in turns)
            body: dict = {
                "model": self._model,
                "messages": messages,
                "max_tokens": self._max_output_tokens,
                "temperature": self._temperature,
                "response_format": {"type": "json_object"},
            }
            return url, body

        # gemini (default)
        url = f"{self._base_url}/v1beta/models/{self._model}:generateContent"
        body = {
            "systemInstruction": {"parts": [{"text": request.system_prompt}]},
            "contents": [_gemini_content(t) for t in turns],
            "generationConfig": {
                "responseMimeType": "application/json",
                "maxOutputTokens": self._max_output_tokens,
                "temperature": self._temperature,
            },
        }
        return url, body

    def _extract_text(self, data: dict) -> str:
        """Pull the completion text out of the response body."""
        try:
            if self._format == "openai":
                text = data["choices"][0]["message"]["content"]
            else:
                text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise ModelValidationFailure(
                f"Unexpected response format from {self._format} backend"
            ) from e
        if not isinstance(text, str):
            raise ModelValidationFailure(f"Unexpected response format from {self._format} backend")
        return text

    async def __call__(self, request: ModelRequest) -> ModelReply:
        url, body = self._build_request(request)
        logger.debug(
            "model call url=%s turns=%d prompt_len=%d",
            url, len(request.context_turns) + 1, len(request.system_prompt),
        )

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise ModelTransportFailure(f"Cannot connect to model backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise ModelTransportFailure(
                f"Model backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise ModelTransportFailure(f"Model backend timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise ModelTransportFailure(f"Model backend request failed: {e!r}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise ModelValidationFailure("Model backend returned a non-JSON body") from e

        reply = parse_reply(self._extract_text(data))
        logger.debug("model response len=%d", len(reply.response_text))
        return reply


def _gemini_content(turn: Turn) -> dict:
    role = "user" if turn.role == "user" else "model"
    return {"role": role, "parts": [{"text": turn.content}]}


# ---------------------------------------------------------------------------
# EchoChatModel: no network; useful for send-flow smoke tests
# ---------------------------------------------------------------------------

class EchoChatModel:
    """Replies with the player's new turn. No network calls.

    Lets you verify that the send flow (rate check, context build, ledger
    writes, cache invalidation) works end-to-end without a running model.
    """

    async def __call__(self, request: ModelRequest) -> ModelReply:
        logger.debug("EchoChatModel turns=%d", len(request.context_turns) + 1)
        return ModelReply(responseText=request.new_user_turn.content)
