"""Configuration management.

This module handles configuration loading and validation.
"""

from __future__ import annotations

from bitpiece.config.config import (
    ConfigManager,
    get_config,
    init_config,
    reload_config,
    set_config,
)
from bitpiece.models import Config

__all__ = [
    "Config",
    "ConfigManager",
    "get_config",
    "init_config",
    "reload_config",
    "set_config",
]
