"""Settings and configuration management for mcpbridge.

Process-wide defaults come from environment variables (``MCPBRIDGE_*``),
an optional ``.env`` file and optional YAML/JSON configuration files.
Per-provider configuration lives in ``MCPClientSettings``; anything left
unset there falls back to the values defined here.
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from mcpbridge.providers.mcp.client.provider import MCPClientSettings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_DOCKER_HOST = "unix:///var/run/docker.sock"


class BridgeSettings(BaseSettings):
    """Process-wide settings with environment variable support."""

    log_level: str = Field(default="INFO", validation_alias=AliasChoices("MCPBRIDGE_LOG_LEVEL", "log_level"))
    docker_host: str = Field(
        default=DEFAULT_DOCKER_HOST,
        validation_alias=AliasChoices("MCPBRIDGE_DOCKER_HOST", "DOCKER_HOST", "docker_host"),
    )
    start_timeout: float = Field(default=30.0, validation_alias=AliasChoices("MCPBRIDGE_START_TIMEOUT", "start_timeout"))
    request_timeout: float = Field(default=60.0, validation_alias=AliasChoices("MCPBRIDGE_REQUEST_TIMEOUT", "request_timeout"))
    notification_grace: float = Field(
        default=0.1, validation_alias=AliasChoices("MCPBRIDGE_NOTIFICATION_GRACE", "notification_grace")
    )
    log_events: bool = Field(default=False, validation_alias=AliasChoices("MCPBRIDGE_LOG_EVENTS", "log_events"))

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("start_timeout", "request_timeout")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Validate positive timeout fields."""
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @classmethod
    def from_file(cls, config_file: Path | str) -> "BridgeSettings":
        """Load settings from a YAML or JSON file, overlaid on the environment.

        Args:
            config_file: Path to a ``.yml``/``.yaml`` or ``.json`` file. A
                top-level ``bridge`` section is used when present.

        Returns:
            Settings instance
        """
        data = _read_config_file(Path(config_file))
        section = data.get("bridge", data)
        if not isinstance(section, dict):
            raise ValueError(f"Configuration file {config_file} must contain a mapping")
        return cls(**{k: v for k, v in section.items() if k != "providers"})


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        if path.suffix.lower() in [".yml", ".yaml"]:
            config_data = yaml.safe_load(f)
        else:
            config_data = json.load(f)

    if config_data is None:
        return {}
    if not isinstance(config_data, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping, got {type(config_data).__name__}")
    return config_data


def load_provider_configs(config_file: Path | str) -> dict[str, "MCPClientSettings"]:
    """Load named MCP client configurations from a YAML or JSON file.

    The file holds a ``providers`` mapping of provider name to the plain
    key/value settings accepted by ``MCPClientSettings``.

    Args:
        config_file: Path to the configuration file

    Returns:
        Mapping of provider name to validated settings
    """
    from mcpbridge.providers.mcp.client.provider import MCPClientSettings

    path = Path(config_file)
    providers = _read_config_file(path).get("providers", {})
    if not isinstance(providers, dict):
        raise ValueError(f"'providers' in {path} must be a mapping")

    configs = {name: MCPClientSettings(**(values or {})) for name, values in providers.items()}
    logger.info(f"Loaded {len(configs)} MCP provider configuration(s) from {path}")
    return configs


@lru_cache(maxsize=1)
def get_settings() -> BridgeSettings:
    """Get the process-wide settings instance."""
    return BridgeSettings()


def reload_settings() -> BridgeSettings:
    """Drop the cached settings and read them again."""
    get_settings.cache_clear()
    return get_settings()


def setup_logging(level: str | None = None, settings: BridgeSettings | None = None) -> None:
    """Configure root logging for applications embedding the bridge.

    Args:
        level: Explicit level name, overrides settings
        settings: Settings to read ``log_level`` from, defaults to the global ones
    """
    level_name = (level or (settings or get_settings()).log_level).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)
    logger.debug(f"Logging configured at {level_name}")
