"""
Configuration loading and management.

Seeds defaults from GlobalSettings (KVR_* variables and .env), layers a
JSON config file and environment variable overrides on top and validates
the result into a StoreConfig.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union
import logging

from core.models.config import GlobalSettings, StoreConfig
from .defaults import CONFIG_FILENAME, ENV_VAR_MAPPING, get_default_config

logger = logging.getLogger(__name__)


class ConfigurationLoader:
    """Load and cache store configurations"""

    def __init__(self, global_settings: Optional[GlobalSettings] = None):
        self.global_settings = global_settings or GlobalSettings()
        self.config_cache: Dict[str, StoreConfig] = {}

    def load_config(self, config_path: Optional[Union[str, Path]] = None) -> StoreConfig:
        """
        Load configuration from a JSON file with environment overrides.

        Args:
            config_path: Explicit config file. Defaults to kv-relations.json
                in the current working directory; a missing file yields defaults.

        Returns:
            Validated StoreConfig
        """
        config_file = Path(config_path) if config_path else Path.cwd() / CONFIG_FILENAME
        config_file = config_file.resolve()

        cache_key = str(config_file)
        if cache_key in self.config_cache:
            return self.config_cache[cache_key]

        seeded = self.global_settings.to_store_config().to_dict()
        config_data = self._merge(get_default_config(), seeded)
        if config_file.exists():
            config_data = self._merge(config_data, self._read_file(config_file))
        elif config_path:
            raise FileNotFoundError(f"Config file does not exist: {config_file}")
        else:
            logger.debug(f"No config file at {config_file}, using defaults")

        config_data = self._apply_env_overrides(config_data)
        config = StoreConfig(**config_data)

        self.config_cache[cache_key] = config
        return config

    def _read_file(self, config_file: Path) -> Dict[str, Any]:
        """Read a config file, raising ValueError on malformed JSON"""
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to load config from {config_file}: {e}")
            raise ValueError(f"Invalid JSON in {config_file}: {e}") from e

        if not isinstance(data, dict):
            raise ValueError(f"Config file {config_file} must contain a JSON object")
        return data

    def _merge(self, base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge overrides into base"""
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(base.get(key), dict):
                base[key] = self._merge(base[key], value)
            else:
                base[key] = value
        return base

    def _apply_env_overrides(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration"""
        for env_var, config_path in ENV_VAR_MAPPING.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                self._set_nested_value(config_data, config_path, env_value)

        return config_data

    def _set_nested_value(self, data: Dict[str, Any], path: str, value: str) -> None:
        """Set nested dictionary value using dot notation path"""
        keys = path.split('.')
        current = data

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = self._convert_env_value(value)

    def _convert_env_value(self, value: str) -> Any:
        """Convert environment variable string to appropriate type"""
        if value.lower() in ('none', 'null', ''):
            return None
        if value.lower() in ('true', 'yes', 'on'):
            return True
        elif value.lower() in ('false', 'no', 'off'):
            return False

        try:
            if '.' in value:
                return float(value)
            else:
                return int(value)
        except ValueError:
            pass

        return value

    def save_config(self, config: StoreConfig, config_path: Union[str, Path]) -> Path:
        """Write configuration to disk and refresh the cache"""
        config_file = Path(config_path).resolve()
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w', encoding='utf-8') as f:
            json.dump(config.to_dict(), f, indent=2, ensure_ascii=False)

        logger.info(f"Saved configuration to {config_file}")
        self.config_cache[str(config_file)] = config
        return config_file

    def clear_cache(self) -> None:
        """Clear configuration cache"""
        self.config_cache.clear()
        logger.info("Configuration cache cleared")
