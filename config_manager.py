"""
Configuration management module for the finance ledger.

This module handles loading and saving configuration values from
config.yaml, merging user settings over the built-in defaults.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from exceptions import ConfigError

logger = logging.getLogger(__name__)

# Default configuration values
DEFAULT_CONFIG: Dict[str, Any] = {
    'currency': 'EUR',
    'database': {
        'connection_string': None,
        'data_dir': 'data',
        'path': 'ledger.db',
    },
    'logging': {
        'level': 'INFO',
        'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        'file': None,
    },
    'budgets': {
        'default_alert_threshold': 80,
        'history_limit': 10,
        'auto_renew_default': True,
    },
    'dashboard': {
        'trend_months': 6,
        'epoch_floor': '2020-01-01',
    },
}

CONFIG_FILE = 'config.yaml'
CONFIG_ENV_VAR = 'FINANCE_LEDGER_CONFIG'


def _resolve_config_path(config_path: Optional[Union[str, Path]] = None) -> Path:
    if config_path is not None:
        return Path(config_path)
    return Path(os.environ.get(CONFIG_ENV_VAR, CONFIG_FILE))


def _merge_defaults(config: Dict[str, Any], defaults: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively fill missing keys of ``config`` from ``defaults``."""
    merged = copy.deepcopy(defaults)
    for key, value in config.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_defaults(value, merged[key])
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Optional explicit path. Falls back to the
            FINANCE_LEDGER_CONFIG environment variable, then config.yaml.

    Returns:
        Configuration dictionary with defaults for missing values

    Raises:
        ConfigError: If the file exists but is not valid YAML or not a mapping
    """
    path = _resolve_config_path(config_path)
    if not path.exists():
        logger.debug("Config file %s not found; using defaults", path)
        return copy.deepcopy(DEFAULT_CONFIG)

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Invalid YAML in config file: {path}",
            details={"path": str(path)},
            original_error=e
        ) from e

    if not isinstance(config, dict):
        raise ConfigError(
            "Config file must contain a mapping at the top level",
            details={"path": str(path), "type": type(config).__name__}
        )

    logger.info("Configuration loaded from %s", path)
    return _merge_defaults(config, DEFAULT_CONFIG)


def save_config(config: Dict[str, Any], config_path: Optional[Union[str, Path]] = None) -> bool:
    """
    Save configuration to a YAML file, preserving keys already on disk.

    Args:
        config: Configuration dictionary to save
        config_path: Optional explicit path

    Returns:
        True if successful, False otherwise
    """
    path = _resolve_config_path(config_path)
    try:
        existing_config: Dict[str, Any] = {}
        if path.exists():
            with open(path, 'r') as f:
                existing_config = yaml.safe_load(f) or {}

        existing_config.update(config)

        with open(path, 'w') as f:
            yaml.dump(existing_config, f, default_flow_style=False)

        logger.info("Configuration saved to %s", path)
        return True

    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error saving configuration: {e}", exc_info=True)
        return False


def get_setting(config: Dict[str, Any], section: str, key: str) -> Any:
    """
    Read ``config[section][key]`` falling back to the built-in default.

    Args:
        config: Loaded configuration dictionary
        section: Top-level section name (e.g. 'budgets')
        key: Key inside the section

    Returns:
        Configured value or the default
    """
    section_values = config.get(section) or {}
    if key in section_values and section_values[key] is not None:
        return section_values[key]
    return DEFAULT_CONFIG.get(section, {}).get(key)
