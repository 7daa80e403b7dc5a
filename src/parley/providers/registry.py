"""Registry of model providers and their capability flags."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict

from parley.log_utils import log_event

logger = logging.getLogger(__name__)


class ProviderRegistrationError(ValueError):
    """Raised when a provider id is registered twice without override."""


@dataclass(frozen=True)
class ProviderCapabilities:
    supports_conversation_chaining: bool = False
    supports_tracing_control: bool = False


@dataclass(frozen=True)
class ProviderDefinition:
    """Static description of a provider backend."""

    id: str
    label: str
    capabilities: ProviderCapabilities = field(default_factory=ProviderCapabilities)
    clear_conversations: Callable[[], None] | None = None


_PROVIDERS: Dict[str, ProviderDefinition] = {}


def register_provider(definition: ProviderDefinition, *, allow_override: bool = False) -> None:
    if definition.id in _PROVIDERS and not allow_override:
        raise ProviderRegistrationError(f"Provider already registered: {definition.id}")
    _PROVIDERS[definition.id] = definition
    log_event(logger, "provider.registered", level=logging.DEBUG, provider=definition.id)


def upsert_provider(definition: ProviderDefinition) -> None:
    register_provider(definition, allow_override=True)


def get_provider(provider_id: str) -> ProviderDefinition | None:
    return _PROVIDERS.get(provider_id)


def get_all_providers() -> list[ProviderDefinition]:
    return list(_PROVIDERS.values())


def get_provider_ids() -> list[str]:
    return list(_PROVIDERS)


def supports_conversation_chaining(provider_id: str) -> bool:
    """Unknown providers are treated as needing the full history."""

    definition = _PROVIDERS.get(provider_id)
    return bool(definition and definition.capabilities.supports_conversation_chaining)


def _register_builtins() -> None:
    upsert_provider(
        ProviderDefinition(
            id="openai",
            label="OpenAI",
            capabilities=ProviderCapabilities(supports_conversation_chaining=True, supports_tracing_control=True),
        )
    )
    upsert_provider(ProviderDefinition(id="openrouter", label="OpenRouter"))
    upsert_provider(
        ProviderDefinition(
            id="pydantic-ai",
            label="pydantic-ai agent",
            capabilities=ProviderCapabilities(supports_conversation_chaining=True),
        )
    )


_register_builtins()


__all__ = [
    "ProviderCapabilities",
    "ProviderDefinition",
    "ProviderRegistrationError",
    "get_all_providers",
    "get_provider",
    "get_provider_ids",
    "register_provider",
    "supports_conversation_chaining",
    "upsert_provider",
]
