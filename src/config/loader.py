"""
Configuration Loader for the scoring engine

Loads configuration from YAML file with environment variable interpolation.
Follows Fast Fail principle - crashes immediately if config is invalid.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel

from src.scorer.settings import ALL_SETTING_KEYS


class Config(BaseModel):
    """
    Master configuration model

    Extra keys from YAML are kept as-is and read with dot notation.
    """

    # Raw config data (loaded from YAML)
    _raw_config: Dict[str, Any] = {}

    class Config:
        """Pydantic config"""
        arbitrary_types_allowed = True
        extra = "allow"  # Allow extra fields from YAML

    def __init__(self, **data):
        """Initialize with raw config data"""
        super().__init__(**data)
        self._raw_config = data

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get nested config value using dot notation

        Example:
            config.get('logging.level')  # Returns 'INFO'
            config.get('scoring.settings')  # Returns {'PARAM_SCORE_MIN_TRADES': 20, ...}

        Args:
            key_path: Dot-separated path to config key
            default: Default value if key not found

        Returns:
            Config value or default
        """
        keys = key_path.split('.')
        value = self._raw_config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def get_required(self, key_path: str) -> Any:
        """
        Get required config value - raises error if missing

        Raises:
            ValueError: If key not found
        """
        value = self.get(key_path)
        if value is None:
            raise ValueError(f"Required config key not found: {key_path}")
        return value


def _interpolate_env_vars(config_str: str) -> str:
    """
    Replace ${VAR_NAME} placeholders with environment variables

    Supports:
    - ${VAR_NAME} - Required, crashes if missing
    - ${VAR_NAME:-} - Optional, empty string if missing
    - ${VAR_NAME:-default} - Optional, uses default if missing

    Raises:
        ValueError: If required env var is missing
    """
    # Pattern matches: ${VAR} or ${VAR:-} or ${VAR:-default}
    pattern = re.compile(r'\$\{(\w+)(:-([^}]*))?\}')

    def replacer(match):
        var_name = match.group(1)
        has_default = match.group(2) is not None
        default_value = match.group(3) if match.group(3) else ""

        value = os.getenv(var_name)

        if value is None:
            if has_default:
                return default_value
            else:
                raise ValueError(
                    f"Environment variable '{var_name}' is required but not set. "
                    f"Check your .env file or environment."
                )

        return value

    return pattern.sub(replacer, config_str)


# Global config cache to avoid duplicate loads
_cached_config: Config | None = None


def load_config(config_path: str | Path = "config/config.yaml") -> Config:
    """
    Load configuration from YAML file (cached)

    Process:
    1. Return cached config if available
    2. Load .env file (if exists)
    3. Read YAML config
    4. Interpolate environment variables (${VAR})
    5. Parse and validate YAML
    6. Cache and return Config object

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config is invalid or env vars missing
        yaml.YAMLError: If YAML parsing fails

    Example:
        >>> from src.config import load_config
        >>> config = load_config()
        >>> config.get('scoring.settings.PARAM_SCORE_MIN_TRADES')
        20
    """
    global _cached_config

    if _cached_config is not None:
        return _cached_config

    # 1. Load .env file (if exists)
    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)

    # 2. Read YAML config
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}\n"
            f"Expected location: {config_path.absolute()}"
        )

    with open(config_path, 'r') as f:
        config_str = f.read()

    # 3. Interpolate environment variables
    try:
        config_str = _interpolate_env_vars(config_str)
    except ValueError as e:
        raise ValueError(
            f"Failed to interpolate environment variables in {config_path}: {e}"
        ) from e

    # 4. Parse YAML
    try:
        config_dict = yaml.safe_load(config_str)
    except yaml.YAMLError as e:
        raise yaml.YAMLError(
            f"Failed to parse YAML config {config_path}: {e}"
        ) from e

    if not isinstance(config_dict, dict):
        raise ValueError(
            f"Config file {config_path} must contain a YAML dictionary, "
            f"got {type(config_dict)}"
        )

    # 5. Create Config object
    config = Config(**config_dict)

    # 6. Validate critical settings (Fast Fail)
    _validate_config(config)

    # 7. Cache for future calls
    _cached_config = config

    return config


def _validate_config(config: Config) -> None:
    """
    Validate critical configuration settings

    Raises:
        ValueError: If validation fails
    """
    log_level = config.get('logging.level')
    valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
    if log_level is not None and str(log_level).upper() not in valid_levels:
        raise ValueError(
            f"Invalid logging.level '{log_level}'. Valid options: {valid_levels}"
        )

    settings = config.get('scoring.settings')
    if settings is None:
        return
    if not isinstance(settings, dict):
        raise ValueError(
            f"scoring.settings must be a mapping of setting key to value, got {type(settings)}"
        )

    unknown = sorted(key for key in settings if key not in ALL_SETTING_KEYS)
    if unknown:
        raise ValueError(
            f"Unknown keys in scoring.settings: {unknown}. "
            f"Valid options: {ALL_SETTING_KEYS}"
        )
