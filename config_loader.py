"""
Regrain configuration

Values come from three layers, later layers winning:
1. DEFAULTS below
2. regrain.conf (TOML), path from REGRAIN_CONFIG_FILE
3. Environment variables listed in ENV_OVERRIDES
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import toml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "regrain.conf"

DEFAULTS: Dict[str, Dict[str, Any]] = {
    "server": {
        "host": "0.0.0.0",
        "port": 8000,
    },
    "migration": {
        # Dropdown value meaning "no namespace chosen"
        "namespace_placeholder": "select",
        # Interval an "auto" grain aims for
        "auto_grain_target": "1m",
        "apply_defaults": True,
        "persist_on_load": False,
    },
    "store": {
        "db_path": "./data/regrain.db",
    },
    "logging": {
        "level": "INFO",
        "format": "structured",
        "include_trace": False,
    },
}


def _to_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# env var -> (section, key, converter); applied in order, so later entries win
ENV_OVERRIDES: Tuple[Tuple[str, str, str, Optional[Callable[[str], Any]]], ...] = (
    ("REGRAIN_HOST", "server", "host", None),
    ("REGRAIN_PORT", "server", "port", int),
    ("REGRAIN_NAMESPACE_PLACEHOLDER", "migration", "namespace_placeholder", None),
    ("REGRAIN_AUTO_GRAIN_TARGET", "migration", "auto_grain_target", None),
    ("REGRAIN_APPLY_DEFAULTS", "migration", "apply_defaults", _to_bool),
    ("REGRAIN_PERSIST_ON_LOAD", "migration", "persist_on_load", _to_bool),
    ("DB_PATH", "store", "db_path", None),
    ("REGRAIN_DB_PATH", "store", "db_path", None),
    ("LOG_LEVEL", "logging", "level", None),
    ("LOG_FORMAT", "logging", "format", None),
    ("LOG_INCLUDE_TRACE", "logging", "include_trace", _to_bool),
)


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge override into base in place; nested tables merge key by key"""
    for key, value in override.items():
        if isinstance(base.get(key), dict) and isinstance(value, dict):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


class RegrainConfig:
    """Layered configuration for the API, the store and the CLI"""

    def __init__(self, config_file: str = None):
        self.config_file = config_file or os.getenv("REGRAIN_CONFIG_FILE", DEFAULT_CONFIG_FILE)
        self.config = copy.deepcopy(DEFAULTS)
        self._merge_file()
        self._merge_env()

    def _merge_file(self):
        path = Path(self.config_file)
        if not path.is_file():
            logger.info(f"No config file at {path}, using defaults")
            return

        try:
            deep_merge(self.config, toml.load(path))
        except Exception as e:
            # A broken file must not keep the service from starting
            logger.error(f"Ignoring unreadable config file {path}: {e}")
            return
        logger.info(f"Loaded configuration from {path}")

    def _merge_env(self):
        for env_var, section, key, converter in ENV_OVERRIDES:
            raw = os.getenv(env_var)
            if raw is None:
                continue
            try:
                value = converter(raw) if converter else raw
            except ValueError as e:
                logger.warning(f"Ignoring {env_var}={raw!r}: {e}")
                continue
            self.config.setdefault(section, {})[key] = value
            logger.debug(f"{env_var} overrides {section}.{key}")

    def get(self, *path, default=None) -> Any:
        """Value at a key path, e.g. get("store", "db_path")"""
        node = self.config
        for key in path:
            if not isinstance(node, dict) or key not in node:
                return default
            node = node[key]
        return node

    def section(self, name: str) -> Dict[str, Any]:
        return self.config.get(name, {})

    def get_server_config(self) -> Dict[str, Any]:
        return self.section("server")

    def get_migration_config(self) -> Dict[str, Any]:
        return self.section("migration")

    def get_store_config(self) -> Dict[str, Any]:
        return self.section("store")

    def get_logging_config(self) -> Dict[str, Any]:
        return self.section("logging")

    def dump(self) -> Dict[str, Any]:
        """Copy of the effective configuration"""
        return copy.deepcopy(self.config)


_config: Optional[RegrainConfig] = None


def load_config(config_file: str = None) -> RegrainConfig:
    """(Re)load the process-wide configuration"""
    global _config
    _config = RegrainConfig(config_file=config_file)
    return _config


def get_config() -> RegrainConfig:
    """Process-wide configuration, loaded on first use"""
    global _config
    if _config is None:
        _config = RegrainConfig()
    return _config
