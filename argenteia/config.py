"""Application configuration."""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

DEFAULT_SYSTEM_PROMPT = "Eres un asistente personal útil."


class ModelConfig(BaseModel):
    """Static credentials for one model key."""

    api_key: str | None = None
    base_url: str | None = None


class AgentSettings(BaseModel):
    model: str = "openrouter/openai/gpt-4o-mini"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_tokens: int = Field(default=4096, gt=0)
    max_context_messages: int = Field(default=40, gt=0)
    max_rounds: int = Field(default=6, gt=0)
    temperature: float = 0.7
    rate_limit_retries: int = Field(default=3, ge=0)
    rate_limit_backoff_seconds: float = 2.0
    # Prefix tried when a bare model key is not found in the static table.
    default_provider: str = "openrouter"


class GatewaySettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(default=18000, ge=1024, le=65535)


class SignalSettings(BaseModel):
    enabled: bool = False
    cli_path: str = "signal-cli"
    account: str = ""
    owner_number: str = ""
    # Comma-separated E.164 numbers allowed to talk to the bot (defaults to owner only).
    allowed_senders: str = ""
    poll_interval_seconds: float = 2.0


class ToolSettings(BaseModel):
    web_search: bool = False
    read_url: bool = False
    jina_api_key: str = ""


class Settings(BaseSettings):
    """Environment and config.json driven settings validated at startup."""

    model_config = SettingsConfigDict(
        env_prefix="ARGENTEIA_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        json_file="config.json",
        json_file_encoding="utf-8",
        extra="ignore",
    )

    agent: AgentSettings = Field(default_factory=AgentSettings)
    models: dict[str, ModelConfig] = Field(default_factory=dict)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    signal: SignalSettings = Field(default_factory=SignalSettings)
    tools: ToolSettings = Field(default_factory=ToolSettings)
    database_path: Path = Path("argenteia.db")
    request_timeout_seconds: float = 60.0
    skills_dir: Path = Path("skills")
    default_timezone: str = "America/Argentina/Buenos_Aires"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


def load_settings(config_path: Path | None = None) -> Settings:
    """Load and validate settings.

    An explicit ``config_path`` is read as JSON and takes precedence over the
    environment; otherwise ``config.json`` in the working directory is used
    as the lowest-priority source.
    """

    if config_path is None:
        return Settings()
    data = json.loads(config_path.read_text(encoding="utf-8"))
    return Settings(**data)


def allowed_senders(settings: Settings) -> frozenset[str]:
    """Return the set of E.164 numbers permitted to message the bot.

    Always includes the owner. Additional numbers can be added via
    ``signal.allowed_senders`` as a comma-separated list.
    """
    extra = {n.strip() for n in settings.signal.allowed_senders.split(",") if n.strip()}
    owner = {settings.signal.owner_number} if settings.signal.owner_number else set()
    return frozenset(owner | extra)
