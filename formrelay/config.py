"""Relay configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
Complex fields (``RELAY_SOURCES``, hint lists) are given as JSON.
"""

from __future__ import annotations

from typing import Any

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings

from .models import DestinationMapping, Source


class FormsAPIConfig(BaseSettings):
    """Google Forms API access."""

    model_config = {"env_prefix": "FORMS_"}

    credentials_path: str = Field(
        default="credentials.json",
        description="Path to the service-account JSON key",
    )
    base_url: str = Field(
        default="https://forms.googleapis.com/v1",
        description="Forms API base URL",
    )
    scopes: list[str] = Field(
        default=[
            "https://www.googleapis.com/auth/forms.responses.readonly",
            "https://www.googleapis.com/auth/forms.body.readonly",
        ],
        description="OAuth scopes requested for the service account",
    )
    timeout_seconds: float = Field(default=30.0, description="HTTP request timeout")


class DiscordConfig(BaseSettings):
    """Discord bot credentials and REST settings."""

    model_config = {"env_prefix": "DISCORD_"}

    bot_token: SecretStr = Field(description="Bot token used for the REST API")
    guild_id: str = Field(description="Guild the destination forums live in")
    admin_role: str | None = Field(
        default=None,
        description="Role id or name mentioned on every new thread",
    )
    api_base_url: str = Field(
        default="https://discord.com/api/v10",
        description="Discord REST API base URL",
    )
    timeout_seconds: float = Field(default=30.0, description="HTTP request timeout")


class LedgerConfig(BaseSettings):
    """Delivery ledger persistence."""

    model_config = {"env_prefix": "LEDGER_"}

    path: str = Field(default="responses.json", description="Path of the JSON ledger file")


class RetryConfig(BaseSettings):
    """Retry / backoff settings for outbound API calls, driven by Tenacity."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=3, description="Maximum attempts per API call")
    initial_wait_seconds: float = Field(
        default=1.0,
        description="Initial backoff wait in seconds",
    )
    max_wait_seconds: float = Field(
        default=60.0,
        description="Maximum backoff wait in seconds",
    )
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class ComposerConfig(BaseSettings):
    """Message composition rules."""

    model_config = {"env_prefix": "COMPOSER_"}

    project_name_keys: list[str] = Field(
        default=["name of your project"],
        description="Label fragments identifying the project name field",
    )
    cost_keys: list[str] = Field(
        default=["total cost", "budget", "funding amount", "requested amount"],
        description="Label fragments identifying the cost field",
    )
    audit_keys: list[str] = Field(
        default=["audit", "auditor"],
        description="Label fragments marking an audit form (cost is omitted)",
    )
    message_limit: int = Field(default=2000, description="Maximum characters per message")
    title_limit: int = Field(default=100, description="Maximum characters per thread title")
    explorer_url: str = Field(
        default="https://polkadot.subscan.io/account/",
        description="Account explorer prefix used to link addresses",
    )


class RelayConfig(BaseSettings):
    """Root configuration for a relay instance.

    Nested configs are populated from their own env-var prefixes.
    """

    model_config = {"env_prefix": "RELAY_"}

    name: str = Field(default="formrelay", description="Instance name used in logs and health")
    health_host: str = Field(default="0.0.0.0", description="Bind address of the ops server")
    health_port: int = Field(default=8080, description="Port of the ops server")
    check_interval_seconds: float = Field(
        default=86400.0,
        description="Seconds between scheduled reconciliation passes",
    )
    require_reference_url: bool = Field(
        default=True,
        description="Refuse to deliver records of sources without an external reference URL",
    )
    sources: dict[str, DestinationMapping] = Field(
        default_factory=dict,
        description="Form id -> destination mapping",
    )
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=True, description="Emit JSON log lines")
    log_file: str | None = Field(default=None, description="Optional file that receives every log line")
    log_error_file: str | None = Field(
        default=None,
        description="Optional file that receives ERROR and above only",
    )

    forms: FormsAPIConfig = Field(default_factory=FormsAPIConfig)
    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    composer: ComposerConfig = Field(default_factory=ComposerConfig)

    @field_validator("sources", mode="before")
    @classmethod
    def _expand_compact_mappings(cls, value: Any) -> Any:
        """Accept ``"channel"`` and ``[channel, name, url]`` shorthand entries.

        In the list form the display name doubles as the forum tag.
        """
        if not isinstance(value, dict):
            return value
        expanded: dict[str, Any] = {}
        for source_id, mapping in value.items():
            if isinstance(mapping, str):
                expanded[source_id] = {"channel_id": mapping}
            elif isinstance(mapping, (list, tuple)):
                parts = list(mapping) + [None] * (3 - len(mapping))
                channel_id, display_name, reference_url = parts[:3]
                expanded[source_id] = {
                    "channel_id": channel_id,
                    "display_name": display_name,
                    "tag": display_name,
                    "external_reference_url": reference_url,
                }
            else:
                expanded[source_id] = mapping
        return expanded

    @property
    def source_list(self) -> list[Source]:
        """Configured sources, in configuration order."""
        return [
            Source(source_id=source_id, destination=destination)
            for source_id, destination in self.sources.items()
        ]
