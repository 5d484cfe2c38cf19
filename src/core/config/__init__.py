"""Engine configuration — schema, loader and on-disk layout."""

from src.core.config.loader import ConfigError, find_config_file, load_config
from src.core.config.paths import AppPaths, current_arch, current_os
from src.core.config.schema import EngineConfig

__all__ = [
    "AppPaths",
    "ConfigError",
    "EngineConfig",
    "current_arch",
    "current_os",
    "find_config_file",
    "load_config",
]
