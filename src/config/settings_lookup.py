"""
Settings lookup backed by the loaded configuration

Plays the role of the external key/value settings store: scorers ask for a
list of keys and receive raw string values (or None when a key is unset).
"""

from typing import Dict, Optional, Sequence

from src.config.loader import Config
from src.utils.logger import get_logger

logger = get_logger(__name__)


class ConfigSettingsLookup:
    """Async settings lookup reading `scoring.settings` from a Config."""

    def __init__(self, config: Config, section: str = 'scoring.settings'):
        self.config = config
        self.section = section

    async def __call__(self, setting_keys: Sequence[str]) -> Dict[str, Optional[str]]:
        values = self.config.get(self.section) or {}
        result: Dict[str, Optional[str]] = {}
        for key in setting_keys:
            raw = values.get(key)
            result[key] = None if raw is None else str(raw)
        logger.debug(
            f"Settings lookup: {sum(v is not None for v in result.values())}/{len(result)} keys set"
        )
        return result
