"""Runtime settings: rate limits, context bounds, retry, cache, model wiring.

Resolution order: built-in defaults <- {data_dir}/config.json <- environment.
The environment is read after `.env` has been loaded by the app launcher.

update_settings() applies partial updates and persists them, the same way the
settings endpoint does. Unknown keys are ignored.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

ProviderName = Literal["gemini", "openai", "echo"]

_ENV_KEYS: dict[str, str] = {
    "MODEL_PROVIDER": "model_provider",
    "MODEL_URL": "model_url",
    "MODEL_API_KEY": "model_api_key",
    "MODEL_NAME": "model_name",
    "MODEL_TIMEOUT": "model_timeout",
}


class Settings(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    # Rate limiting: N requests per rolling W seconds
    rate_limit_max_requests: int = 10
    rate_limit_window_seconds: float = 60.0

    # Conversation context ceilings
    history_max_turns: int = 20
    history_max_chars: int = 50_000

    # Model calls
    model_max_attempts: int = 3
    retry_backoff_seconds: float = 0.5

    # Client-held page cache
    cache_ttl_seconds: float = 24 * 60 * 60
    cache_freshness_seconds: float = 5 * 60

    # Pagination
    posts_per_page: int = 15
    messages_per_page: int = 20

    # Length caps
    max_message_length: int = 500
    max_reply_length: int = 1000
    max_post_length: int = 280

    # Social accounts a player may create
    max_accounts_per_player: int = 5

    # Model collaborator
    model_provider: ProviderName = "gemini"
    model_url: str = "https://generativelanguage.googleapis.com"
    model_api_key: str = ""
    model_name: str = "gemini-2.5-flash-lite"
    model_timeout: float = 60.0

    def public_dump(self) -> dict[str, Any]:
        """Settings as returned to clients; the API key never leaves the server."""
        data = self.model_dump()
        data["model_api_key"] = "***" if self.model_api_key else ""
        return data


def _config_path(data_dir: Path) -> Path:
    return data_dir / "config.json"


def _read_stored(data_dir: Path) -> dict[str, Any]:
    path = _config_path(data_dir)
    if not path.is_file():
        return {}
    return json.loads(path.read_text())


def _resolve(stored: dict[str, Any], env: dict[str, str] | None) -> Settings:
    values = dict(stored)
    environ = os.environ if env is None else env
    for env_key, field in _ENV_KEYS.items():
        if environ.get(env_key):
            values[field] = environ[env_key]
    known = {k: v for k, v in values.items() if k in Settings.model_fields}
    return Settings.model_validate(known)


def load_settings(data_dir: Path | None = None, env: dict[str, str] | None = None) -> Settings:
    """Return defaults merged with stored config and environment overrides."""
    return _resolve(_read_stored(data_dir) if data_dir is not None else {}, env)


def _merge(data_dir: Path, fields: dict[str, Any]) -> dict[str, Any]:
    stored = _read_stored(data_dir)
    for key, value in fields.items():
        if key in Settings.model_fields:
            stored[key] = value
        else:
            logger.debug("ignoring unknown setting %r", key)
    return stored


def preview_settings(
    data_dir: Path, fields: dict[str, Any], env: dict[str, str] | None = None
) -> Settings:
    """The settings update_settings(data_dir, fields) would produce, without writing."""
    return _resolve(_merge(data_dir, fields), env)


def update_settings(data_dir: Path, fields: dict[str, Any]) -> Settings:
    """Merge fields into config.json and persist. Returns the full settings."""
    stored = _merge(data_dir, fields)
    # Validate before writing so a bad PATCH never corrupts the file
    Settings.model_validate(stored)
    data_dir.mkdir(parents=True, exist_ok=True)
    _config_path(data_dir).write_text(json.dumps(stored, indent=2))
    return load_settings(data_dir)
