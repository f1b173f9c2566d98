"""
Configuration management for echonotes stores.

The configuration is stored as a TOML file in the store directory.
It specifies the enrichment provider and app-level defaults.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import tomli_w


CONFIG_FILENAME = "echo.toml"
CONFIG_VERSION = 1

DEFAULT_STORE_DIRNAME = ".echo-notes"
DEFAULT_LOCALE = "en"
DEFAULT_POLL_INTERVAL = 2.0


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class EchoConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    locale: str = DEFAULT_LOCALE
    poll_interval: float = DEFAULT_POLL_INTERVAL

    enrichment: ProviderConfig = field(default_factory=lambda: ProviderConfig("none"))

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_default_store_path() -> Path:
    """Store directory: ECHO_STORE_PATH if set, else ~/.echo-notes."""
    env_path = os.environ.get("ECHO_STORE_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path.home() / DEFAULT_STORE_DIRNAME


def detect_default_enrichment() -> ProviderConfig:
    """
    Pick the enrichment provider for a new store.

    An HTTP endpoint in ECHO_ENRICHMENT_URL selects the http provider.
    The API key is never written to the config file; the provider reads
    ECHO_API_KEY at runtime.
    """
    api_url = os.environ.get("ECHO_ENRICHMENT_URL")
    if api_url:
        return ProviderConfig("http", {"api_url": api_url})
    return ProviderConfig("none")


def create_default_config(store_path: Path) -> EchoConfig:
    """Create a new config with auto-detected defaults."""
    return EchoConfig(
        path=store_path,
        enrichment=detect_default_enrichment(),
    )


def load_config(store_path: Path) -> EchoConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    section = data.get("enrichment", {"name": "none"})
    enrichment = ProviderConfig(
        name=section.get("name", "none"),
        params={k: v for k, v in section.items() if k != "name"},
    )

    try:
        poll_interval = float(store.get("poll_interval", DEFAULT_POLL_INTERVAL))
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid poll_interval in {config_path}: {e}") from e
    if poll_interval <= 0:
        raise ValueError(f"poll_interval must be positive, got {poll_interval}")

    return EchoConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        locale=store.get("locale", DEFAULT_LOCALE),
        poll_interval=poll_interval,
        enrichment=enrichment,
    )


def save_config(config: EchoConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    enrichment = {"name": config.enrichment.name}
    enrichment.update(config.enrichment.params)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
            "locale": config.locale,
            "poll_interval": config.poll_interval,
        },
        "enrichment": enrichment,
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> EchoConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = create_default_config(store_path)
    save_config(config)
    return config
