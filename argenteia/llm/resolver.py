"""Model key classification, credential resolution and transport construction."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from argenteia.config import Settings
from argenteia.errors import NoCredentials
from argenteia.llm.anthropic import AnthropicProvider
from argenteia.llm.base import LLMProvider
from argenteia.llm.openai_compat import OPENROUTER_HEADERS, OpenAICompatibleProvider
from argenteia.models import ModelEntry

if TYPE_CHECKING:
    from argenteia.db import Database

LOGGER = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
ANTHROPIC_BASE_URL = "https://api.anthropic.com"
LOCAL_BASE_URL = "http://localhost:11434/v1"
LOCAL_PLACEHOLDER_KEY = "local"

_LOCAL_PREFIXES = ("local/", "ollama/", "lmstudio/")


class Provider(str, Enum):
    OPENAI = "openai"
    OPENROUTER = "openrouter"
    LOCAL = "local"
    ANTHROPIC = "anthropic"

    @property
    def protocol(self) -> str:
        return "anthropic" if self is Provider.ANTHROPIC else "openai"


@dataclass(slots=True)
class Credentials:
    api_key: str
    base_url: str
    # Key the credentials were found under, e.g. the default-provider-prefixed form.
    model_key: str = ""


def detect_provider(model_key: str) -> Provider:
    """Classify a model key by its routing prefix."""

    if model_key.startswith("anthropic/"):
        return Provider.ANTHROPIC
    if model_key.startswith("openrouter/"):
        return Provider.OPENROUTER
    if model_key.startswith(_LOCAL_PREFIXES):
        return Provider.LOCAL
    return Provider.OPENAI


def model_name(model_key: str) -> str:
    """Strip the routing prefix, e.g. ``openrouter/meta-llama/llama-3`` → ``meta-llama/llama-3``."""

    parts = model_key.split("/")
    if model_key.startswith(("openrouter/", *_LOCAL_PREFIXES)):
        return "/".join(parts[1:])
    if len(parts) == 2:
        return parts[1]
    return model_key


class ModelResolver:
    """Resolves credentials with runtime store entries taking precedence over static config."""

    def __init__(self, settings: Settings, db: Database | None = None) -> None:
        self._settings = settings
        self._db = db

    def configured_models(self) -> list[str]:
        return list(self._settings.models)

    def resolve_credentials(self, model_key: str) -> Credentials:
        provider = detect_provider(model_key)
        entries = self._entries()

        for entry in (self._runtime_entry(model_key), self._static_entry(model_key)):
            if entry is None:
                continue
            family = detect_provider(entry.name)
            api_key = entry.api_key or (LOCAL_PLACEHOLDER_KEY if family is Provider.LOCAL else "")
            if api_key:
                return Credentials(api_key, entry.base_url or _default_base_url(family), entry.name)

        if provider is Provider.OPENROUTER:
            for other in entries:
                if other.name != model_key and detect_provider(other.name) is Provider.OPENROUTER and other.api_key:
                    LOGGER.info("Borrowing OpenRouter credentials from %s for %s", other.name, model_key)
                    return Credentials(other.api_key, other.base_url or OPENROUTER_BASE_URL, model_key)

        if provider is Provider.LOCAL:
            for other in entries:
                if other.name != model_key and detect_provider(other.name) is Provider.LOCAL and other.base_url:
                    LOGGER.info("Borrowing local endpoint from %s for %s", other.name, model_key)
                    return Credentials(LOCAL_PLACEHOLDER_KEY, other.base_url, model_key)
            return Credentials(LOCAL_PLACEHOLDER_KEY, LOCAL_BASE_URL, model_key)

        raise NoCredentials(model_key)

    def create_client(self, model_key: str) -> LLMProvider:
        """Build a transport for ``model_key``; no connection is opened here."""

        credentials = self.resolve_credentials(model_key)
        provider = detect_provider(credentials.model_key or model_key)
        timeout = self._settings.request_timeout_seconds
        name = model_name(credentials.model_key or model_key)
        if provider is Provider.ANTHROPIC:
            return AnthropicProvider(
                model=name, api_key=credentials.api_key, base_url=credentials.base_url, timeout_seconds=timeout
            )
        return OpenAICompatibleProvider(
            model=name,
            base_url=credentials.base_url,
            api_key=credentials.api_key,
            timeout_seconds=timeout,
            extra_headers=OPENROUTER_HEADERS if provider is Provider.OPENROUTER else None,
        )

    def seed_models_from_config(self) -> int:
        """Copy static models into the runtime store when it is still empty."""

        if self._db is None or self._db.list_models():
            return 0
        for name, cfg in self._settings.models.items():
            self._db.upsert_model(ModelEntry(name=name, api_key=cfg.api_key, base_url=cfg.base_url))
        return len(self._settings.models)

    def _runtime_entry(self, model_key: str) -> ModelEntry | None:
        if self._db is None:
            return None
        return self._db.get_model(model_key)

    def _static_entry(self, model_key: str) -> ModelEntry | None:
        models = self._settings.models
        prefixed = f"{self._settings.agent.default_provider}/{model_key}"
        for key in (model_key, prefixed):
            cfg = models.get(key)
            if cfg is not None:
                return ModelEntry(name=key, api_key=cfg.api_key, base_url=cfg.base_url)
        return None

    def _entries(self) -> list[ModelEntry]:
        runtime = self._db.list_models() if self._db is not None else []
        static = [
            ModelEntry(name=name, api_key=cfg.api_key, base_url=cfg.base_url)
            for name, cfg in self._settings.models.items()
        ]
        return [*runtime, *static]


def _default_base_url(provider: Provider) -> str:
    return {
        Provider.OPENAI: OPENAI_BASE_URL,
        Provider.OPENROUTER: OPENROUTER_BASE_URL,
        Provider.ANTHROPIC: ANTHROPIC_BASE_URL,
        Provider.LOCAL: LOCAL_BASE_URL,
    }[provider]
