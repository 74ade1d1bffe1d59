"""
Configuration module for the scoring engine

Provides unified configuration loading from:
1. config/config.yaml (master configuration)
2. .env file (environment overrides)
3. Environment variables (override)
"""

from .loader import load_config, Config
from .settings_lookup import ConfigSettingsLookup

__all__ = ["load_config", "Config", "ConfigSettingsLookup"]
