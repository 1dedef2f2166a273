"""Configuration module for loading and managing application settings"""
from typing import Dict, Any
from .lib.load_settings_conf import load_settings_conf, validate_settings, SettingsError, DEFAULTS
import os

__all__ = ['settings_conf', 'load_settings_conf', 'validate_settings', 'SettingsError', 'DEFAULTS']

SETTINGS_DIR_ENV = 'DEALROOM_SETTINGS_DIR'

try:
    settings_conf: Dict[str, Any] = load_settings_conf(os.environ.get(SETTINGS_DIR_ENV, '.'))

except SettingsError as e:
    # Re-raise the error but provide more context
    raise SettingsError(
        f"Configuration Error\n"
        "=================\n\n"
        f"{str(e)}\n\n"
        "Please ensure settings.conf is properly configured.\n"
        "See examples/settings.conf.example for the available settings."
    )
