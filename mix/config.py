"""
Configuration for the package manager

Settings are read from the environment (``MIX_*``), an optional YAML file
and explicit overrides, in increasing order of precedence. The resulting
object is immutable and handed to the Manager once.
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from mix import __version__
from mix.errors import ConfigError

log = logging.getLogger("mix.config")

DEFAULT_CONFIG_PATH = Path("/etc/mix/mix.yaml")


class Settings(BaseSettings):
    """Settings for the package manager"""

    model_config = SettingsConfigDict(env_prefix="MIX_", frozen=True)

    # Catalog and ledger
    database_path: Path = Path("/var/lib/mix/packages.db")

    # Package repository serving index.json and *.mixpkg files
    repo_url: str = "https://repo.mixos-go.org/packages"

    # Downloaded archives, named name-version.mixpkg
    cache_dir: Path = Path("/var/cache/mix")

    # Filesystem root packages are installed into
    root_dir: Path = Path("/")

    # Seconds
    http_timeout: float = 30.0

    # Interpreter for lifecycle scripts
    shell: str = "/bin/sh"

    service_name: str = "mix"
    service_version: str = __version__


def load_settings(config_path: Optional[Path] = None, **overrides: Any) -> Settings:
    """Build settings from an optional YAML file plus explicit overrides.

    Args:
        config_path: YAML file to read. Defaults to ``$MIX_CONFIG`` or
            /etc/mix/mix.yaml; a missing default file is not an error.
        **overrides: Values taking precedence over the file and the
            environment. ``None`` values are ignored.

    Returns:
        Frozen Settings instance
    """
    explicit = config_path is not None or "MIX_CONFIG" in os.environ
    if config_path is None:
        config_path = Path(os.environ.get("MIX_CONFIG", DEFAULT_CONFIG_PATH))

    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"failed to read config {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"config {config_path} must contain a mapping")
        log.debug(f"Loaded configuration from {config_path}")
    elif explicit:
        raise ConfigError(f"config file not found: {config_path}")

    data.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return Settings(**data)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}") from e
