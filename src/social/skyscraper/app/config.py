"""
Configuration Module for Skyscraper

This module defines the configuration for the Skyscraper authentication
subsystem using Pydantic settings.

Values are loaded, in order of precedence, from:
1. Keyword arguments (used by the CLI and tests)
2. Environment variables prefixed with ``SKYSCRAPER_``
3. ``config.toml`` in the configuration directory
4. The defaults below

The configuration directory defaults to ``~/.config/skyscraper`` and can be
moved with the ``SKYSCRAPER_CONFIG_DIR`` environment variable. It holds both
``config.toml`` and the stored session.
"""

import os
from pathlib import Path
from typing import Optional, Tuple, Type

from aiohttp import ClientTimeout
from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

CONFIG_FILE_NAME = "config.toml"


def default_config_dir() -> Path:
    configured = os.getenv("SKYSCRAPER_CONFIG_DIR", "")
    if len(configured) > 0:
        return Path(configured).expanduser()
    return Path.home() / ".config" / "skyscraper"


class Settings(BaseSettings):
    """
    Application settings for the Skyscraper authentication subsystem.

    Settings are organized into the following categories:
    - Environment and debugging
    - AT Protocol service endpoints
    - OAuth client and loopback callback
    - Local storage
    - Error reporting
    """

    model_config = SettingsConfigDict(env_prefix="SKYSCRAPER_", extra="ignore")

    # Environment and debugging settings
    debug: bool = False
    """
    Enable debug logging.
    Set with SKYSCRAPER_DEBUG=true environment variable.
    """

    # AT Protocol service endpoints
    service: str = "https://bsky.social"
    """
    Entryway service used for handle resolution, app password login and as the
    fallback authorization server.
    """

    plc_directory: str = "https://plc.directory"
    """
    PLC directory used for resolving did:plc DID documents.
    """

    # OAuth client settings
    client_id: Optional[str] = None
    """
    OAuth client id. When unset, the AT Protocol loopback client id is derived
    from the callback redirect URI and scope.
    """

    scope: str = "atproto transition:generic"
    """OAuth scope requested during authorization."""

    callback_host: str = "127.0.0.1"
    """Loopback address the authorization redirect listener binds to."""

    callback_port: int = Field(default=0, ge=0, le=65535)
    """
    Port for the redirect listener. 0 lets the operating system pick a free
    port for every attempt.
    """

    callback_path: str = "/callback"
    """Path of the redirect URI."""

    callback_timeout: float = Field(default=120.0, gt=0)
    """Seconds to wait for the authorization redirect."""

    http_timeout: float = Field(default=30.0, gt=0)
    """Total timeout in seconds for each HTTP request."""

    dpop_nonce_attempts: int = Field(default=3, ge=1)
    """Maximum requests per PAR or token call when the server asks for a DPoP nonce."""

    open_browser: bool = True
    """Open the authorization URL in the default browser."""

    # Local storage and preferences
    config_dir: Path = Field(default_factory=default_config_dir)
    """Directory holding config.toml and the stored session."""

    default_handle: Optional[str] = None
    """Handle used when none is given on the command line."""

    prefer_app_password: bool = False
    """Use app password login instead of OAuth by default."""

    # Error reporting
    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SKYSCRAPER_SENTRY_DSN environment variable.
    """

    @field_validator("callback_path")
    @classmethod
    def validate_callback_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("callback_path must start with /")
        return v

    @field_validator("config_dir", mode="after")
    @classmethod
    def expand_config_dir(cls, v: Path) -> Path:
        return v.expanduser()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            TomlConfigSettingsSource(
                settings_cls, toml_file=default_config_dir() / CONFIG_FILE_NAME
            ),
        )

    def client_timeout(self) -> ClientTimeout:
        return ClientTimeout(total=self.http_timeout)
