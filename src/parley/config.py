"""Model registry and provider settings.

Reads model entries from `models.json` in the user config dir and secrets from
`.env` files. The active entry decides which provider a session talks to and
which request settings (reasoning effort, temperature) it starts with.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from dotenv import find_dotenv, load_dotenv

from parley.log_utils import log_event
from parley.paths import config_dir

logger = logging.getLogger(__name__)

DEFAULT_OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_OPENROUTER_REFERRER = "http://localhost"
DEFAULT_OPENROUTER_TITLE = "parley"

HIDDEN_MODELS = {"test"}
DEFAULT_CONFIG: Dict[str, Any] = {
    "current": "test",
    "models": {
        "test": {
            "provider": "pydantic-ai",
            "model": "test",
            "description": "Deterministic local model for offline/testing",
        },
        "openai-gpt-4.1-mini": {
            "provider": "openai",
            "model": "gpt-4.1-mini",
            "description": "OpenAI GPT-4.1 mini",
        },
        "openrouter-auto": {
            "provider": "openrouter",
            "model": "openrouter/auto",
            "description": "OpenRouter automatic routing",
        },
        "openrouter-claude-sonnet": {
            "provider": "openrouter",
            "model": "anthropic/claude-sonnet-4",
            "description": "Claude Sonnet 4 via OpenRouter",
            "reasoning_effort": "medium",
        },
    },
}


class ConfigError(RuntimeError):
    """Raised for unknown model ids and missing provider credentials."""


def env_file() -> Path:
    return config_dir() / ".env"


def models_file() -> Path:
    return config_dir() / "models.json"


def load_env() -> None:
    """Load the user-level `.env` then one in the working directory.

    Variables already present in the process environment win.
    """

    path = env_file()
    if path.exists():
        load_dotenv(path, override=False)
    load_dotenv(find_dotenv(usecwd=True), override=False)


def _default_config() -> Dict[str, Any]:
    return json.loads(json.dumps(DEFAULT_CONFIG))


def load_models_config() -> Dict[str, Any]:
    path = models_file()
    if not path.exists():
        config = _default_config()
        save_models_config(config)
        return config
    try:
        config = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        log_event(logger, "config.models.unreadable", level=logging.WARNING, path=str(path), error=str(exc))
        return _default_config()
    if not isinstance(config, dict):
        return _default_config()

    dirty = False
    models = config.setdefault("models", {})
    for key, value in DEFAULT_CONFIG["models"].items():
        if key not in models:
            models[key] = dict(value)
            dirty = True
    if config.get("current") not in models:
        config["current"] = DEFAULT_CONFIG["current"]
        dirty = True
    if dirty:
        save_models_config(config)
    return config


def save_models_config(config: Dict[str, Any]) -> None:
    models_file().write_text(json.dumps(config, indent=2), encoding="utf-8")


def list_models() -> Dict[str, Any]:
    return load_models_config().get("models", {})


def list_user_models() -> Dict[str, Any]:
    """Models shown to end users; internal test entries are hidden."""
    return {mid: meta for mid, meta in list_models().items() if mid not in HIDDEN_MODELS}


def current_model_id() -> str:
    return str(load_models_config().get("current") or DEFAULT_CONFIG["current"])


def set_current_model(model_id: str) -> str:
    config = load_models_config()
    if model_id not in config.get("models", {}):
        raise ConfigError(f"Unknown model id: {model_id}")
    config["current"] = model_id
    save_models_config(config)
    return model_id


def update_model_settings(model_id: str, **settings: Any) -> Dict[str, Any]:
    """Persist per-model request settings; `None` values remove the key."""

    config = load_models_config()
    entry = config.get("models", {}).get(model_id)
    if entry is None:
        raise ConfigError(f"Unknown model id: {model_id}")
    for key, value in settings.items():
        if value is None:
            entry.pop(key, None)
        else:
            entry[key] = value
    save_models_config(config)
    return entry


@dataclass(frozen=True)
class ModelEntry:
    id: str
    provider: str
    model: str
    description: str = ""
    reasoning_effort: str | None = None
    temperature: float | None = None

    def settings(self) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        if self.reasoning_effort:
            values["reasoning_effort"] = self.reasoning_effort
        if self.temperature is not None:
            values["temperature"] = self.temperature
        return values


def resolve_model(model_id: str | None = None) -> ModelEntry:
    config = load_models_config()
    model_id = model_id or str(config.get("current"))
    entry = config.get("models", {}).get(model_id)
    if not isinstance(entry, dict):
        raise ConfigError(f"Unknown model id: {model_id}")
    temperature = entry.get("temperature")
    return ModelEntry(
        id=model_id,
        provider=str(entry.get("provider") or "openai").lower(),
        model=str(entry.get("model") or model_id),
        description=str(entry.get("description") or ""),
        reasoning_effort=entry.get("reasoning_effort"),
        temperature=float(temperature) if temperature is not None else None,
    )


@dataclass(frozen=True)
class OpenRouterSettings:
    api_key: str
    base_url: str = DEFAULT_OPENROUTER_BASE_URL
    referrer: str = DEFAULT_OPENROUTER_REFERRER
    title: str = DEFAULT_OPENROUTER_TITLE


def openrouter_settings() -> OpenRouterSettings:
    load_env()
    api_key = os.getenv("OPENROUTER_API_KEY")
    if not api_key:
        raise ConfigError(
            "OpenRouter API key is not configured. Set OPENROUTER_API_KEY "
            "(keys are issued at https://openrouter.ai/keys)."
        )
    return OpenRouterSettings(
        api_key=api_key,
        base_url=(os.getenv("OPENROUTER_BASE_URL") or DEFAULT_OPENROUTER_BASE_URL).rstrip("/"),
        referrer=os.getenv("OPENROUTER_REFERRER") or DEFAULT_OPENROUTER_REFERRER,
        title=os.getenv("OPENROUTER_TITLE") or DEFAULT_OPENROUTER_TITLE,
    )


def provider_api_key(provider: str) -> str:
    load_env()
    name = f"{provider.upper().replace('-', '_')}_API_KEY"
    key = os.getenv(name)
    if not key:
        raise ConfigError(f"{name} is required for {provider} models")
    return key


__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG",
    "ModelEntry",
    "OpenRouterSettings",
    "current_model_id",
    "list_models",
    "list_user_models",
    "load_env",
    "load_models_config",
    "openrouter_settings",
    "provider_api_key",
    "resolve_model",
    "save_models_config",
    "set_current_model",
    "update_model_settings",
]
