"""Configuration module for logmask."""

from logmask.config.settings import (
    MaskingSettings,
    get_settings,
    load_settings,
    load_settings_from_yaml,
    load_settings_from_yaml_safe,
    reset_settings,
)

__all__ = [
    "MaskingSettings",
    "get_settings",
    "load_settings",
    "load_settings_from_yaml",
    "load_settings_from_yaml_safe",
    "reset_settings",
]
