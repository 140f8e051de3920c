"""Configuration module for loading and managing application settings"""
from typing import Dict, Any
from .lib.load_settings_conf import (
    load_settings_conf,
    validate_settings,
    SettingsError,
    DEFAULTS
)
import os

__all__ = ['settings_conf', 'SettingsError', 'DEFAULTS']

# Directory holding settings.conf
SETTINGS_PATH = os.environ.get('MARKET_SETTINGS_PATH', '.')

try:
    settings_conf: Dict[str, Any] = validate_settings(load_settings_conf(SETTINGS_PATH))

except SettingsError as e:
    # Re-raise the error but provide more context
    raise SettingsError(
        f"Configuration Error\n"
        "=================\n\n"
        f"{str(e)}\n\n"
        "Please ensure settings.conf is properly configured.\n"
        "Run `python -m config` to write an example file."
    )
