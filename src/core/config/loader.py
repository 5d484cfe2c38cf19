"""
Configuration loader — reads deploy.yml into an EngineConfig.

The file is optional: a client with no config runs on the reference
defaults. When present, it is YAML validated against the Pydantic
schema. ``PDE_APP_DIR`` overrides the install root.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml

from src.core.config.schema import EngineConfig

logger = logging.getLogger(__name__)

# Default config filename
CONFIG_FILE = "deploy.yml"

APP_DIR_ENV = "PDE_APP_DIR"


class ConfigError(Exception):
    """Raised when engine configuration is invalid."""


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for deploy.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to deploy.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def load_config(path: Path | None = None, *, search: bool = True) -> EngineConfig:
    """Load and validate engine configuration.

    Args:
        path: Explicit path to deploy.yml. If None, searches upward
            (unless ``search`` is False) and falls back to defaults.

    Returns:
        Validated EngineConfig.

    Raises:
        ConfigError: If an explicit file is missing, or any file is invalid.
    """
    if path is not None and not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    if path is None and search:
        path = find_config_file()

    data: dict = {}
    if path is not None:
        logger.debug("Loading engine config from %s", path)
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}") from e

        try:
            loaded = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Expected a YAML mapping in {path}, got {type(loaded).__name__}")

        # The YAML may wrap everything under a "deploy" key or be flat
        data = loaded.get("deploy", loaded) if "deploy" in loaded else loaded
    else:
        logger.debug("No %s found — using defaults", CONFIG_FILE)

    env_app_dir = os.environ.get(APP_DIR_ENV)
    if env_app_dir:
        data = {**data, "app_dir": env_app_dir}

    try:
        config = EngineConfig.model_validate(data)
    except Exception as e:
        raise ConfigError(f"Invalid engine configuration: {e}") from e

    return config
