"""
Scoring Settings - shared helpers for numeric scoring knobs

Both scorers resolve their settings through the same chain:

    defaults  <-  settings lookup (external key/value store)  <-  caller overrides

The merged values are normalized exactly once, after the last merge.
Invalid values (non-finite, out of domain, non-integral where an integer is
required) fall back to the compiled-in default for that field.
"""

import math
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from src.utils.logger import get_logger

logger = get_logger(__name__)


# Async callable: list of setting keys -> {key: raw string value or None}
SettingsLookup = Callable[[Sequence[str]], Awaitable[Mapping[str, Optional[str]]]]

# (setting key, settings dataclass field)
SettingMapping = Sequence[Tuple[str, str]]


# =============================================================================
# SETTING KEYS
# =============================================================================

PARAM_SCORE_MIN_TRADES = 'PARAM_SCORE_MIN_TRADES'
PARAM_SCORE_DRAWDOWN_LAMBDA = 'PARAM_SCORE_DRAWDOWN_LAMBDA'
PARAM_SCORE_NEIGHBOR_THRESHOLD = 'PARAM_SCORE_NEIGHBOR_THRESHOLD'
PARAM_SCORE_CORE_SCORE_QUANTILE = 'PARAM_SCORE_CORE_SCORE_QUANTILE'
PARAM_SCORE_PAIRWISE_NEIGHBOR_LIMIT = 'PARAM_SCORE_PAIRWISE_NEIGHBOR_LIMIT'

TEMPLATE_SCORE_RETURN_SCALE = 'TEMPLATE_SCORE_RETURN_SCALE'
TEMPLATE_SCORE_VALIDATION_NEGATIVE_PENALTY_STRENGTH = 'TEMPLATE_SCORE_VALIDATION_NEGATIVE_PENALTY_STRENGTH'
TEMPLATE_SCORE_DRAWDOWN_LAMBDA = 'TEMPLATE_SCORE_DRAWDOWN_LAMBDA'
TEMPLATE_SCORE_TRADE_TARGET = 'TEMPLATE_SCORE_TRADE_TARGET'
TEMPLATE_SCORE_TRADE_WEIGHT = 'TEMPLATE_SCORE_TRADE_WEIGHT'
TEMPLATE_SCORE_RECENCY_HALF_LIFE_DAYS = 'TEMPLATE_SCORE_RECENCY_HALF_LIFE_DAYS'
TEMPLATE_SCORE_VERIFY_SHARPE_SCALE = 'TEMPLATE_SCORE_VERIFY_SHARPE_SCALE'
TEMPLATE_SCORE_VERIFY_CALMAR_SCALE = 'TEMPLATE_SCORE_VERIFY_CALMAR_SCALE'
TEMPLATE_SCORE_VERIFY_CAGR_SCALE = 'TEMPLATE_SCORE_VERIFY_CAGR_SCALE'
TEMPLATE_SCORE_VERIFY_CAGR_NEG_SCALE = 'TEMPLATE_SCORE_VERIFY_CAGR_NEG_SCALE'
TEMPLATE_SCORE_VERIFY_DRAWDOWN_LAMBDA = 'TEMPLATE_SCORE_VERIFY_DRAWDOWN_LAMBDA'
TEMPLATE_SCORE_VERIFY_MIN_MULTIPLIER = 'TEMPLATE_SCORE_VERIFY_MIN_MULTIPLIER'
TEMPLATE_SCORE_VERIFY_MAX_MULTIPLIER = 'TEMPLATE_SCORE_VERIFY_MAX_MULTIPLIER'

PARAM_SCORE_SETTING_MAPPING: SettingMapping = (
    (PARAM_SCORE_MIN_TRADES, 'min_trades'),
    (PARAM_SCORE_DRAWDOWN_LAMBDA, 'drawdown_lambda'),
    (PARAM_SCORE_NEIGHBOR_THRESHOLD, 'neighbor_threshold'),
    (PARAM_SCORE_CORE_SCORE_QUANTILE, 'core_score_quantile'),
    (PARAM_SCORE_PAIRWISE_NEIGHBOR_LIMIT, 'pairwise_neighbor_limit'),
)

TEMPLATE_SCORE_SETTING_MAPPING: SettingMapping = (
    (TEMPLATE_SCORE_RETURN_SCALE, 'return_scale'),
    (TEMPLATE_SCORE_VALIDATION_NEGATIVE_PENALTY_STRENGTH, 'validation_negative_penalty_strength'),
    (TEMPLATE_SCORE_DRAWDOWN_LAMBDA, 'drawdown_lambda'),
    (TEMPLATE_SCORE_TRADE_TARGET, 'trade_target'),
    (TEMPLATE_SCORE_TRADE_WEIGHT, 'trade_weight'),
    (TEMPLATE_SCORE_RECENCY_HALF_LIFE_DAYS, 'recency_half_life_days'),
    (TEMPLATE_SCORE_VERIFY_SHARPE_SCALE, 'verify_sharpe_scale'),
    (TEMPLATE_SCORE_VERIFY_CALMAR_SCALE, 'verify_calmar_scale'),
    (TEMPLATE_SCORE_VERIFY_CAGR_SCALE, 'verify_cagr_scale'),
    (TEMPLATE_SCORE_VERIFY_CAGR_NEG_SCALE, 'verify_cagr_neg_scale'),
    (TEMPLATE_SCORE_VERIFY_DRAWDOWN_LAMBDA, 'verify_drawdown_lambda'),
    (TEMPLATE_SCORE_VERIFY_MIN_MULTIPLIER, 'verify_min_multiplier'),
    (TEMPLATE_SCORE_VERIFY_MAX_MULTIPLIER, 'verify_max_multiplier'),
)

ALL_SETTING_KEYS: List[str] = [
    key for key, _ in (*PARAM_SCORE_SETTING_MAPPING, *TEMPLATE_SCORE_SETTING_MAPPING)
]


# =============================================================================
# PARSING / NORMALIZATION
# =============================================================================

def is_finite_number(value: Any) -> bool:
    """True for int/float values that are finite. Booleans are not numbers."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        # int too large for a float
        return False


def parse_number_string(raw_value: str) -> Optional[float]:
    """Finite float from a numeric string, or None. Digit-group underscores are rejected."""
    trimmed = raw_value.strip()
    if not trimmed or '_' in trimmed:
        return None
    try:
        parsed = float(trimmed)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def parse_optional_number_setting(raw_value: Optional[str]) -> Optional[float]:
    """
    Parse a raw setting string into a number.

    Returns None for non-strings, blank strings and anything that does not
    parse to a finite number.
    """
    if not isinstance(raw_value, str):
        return None
    return parse_number_string(raw_value)


def build_number_setting_overrides(
    settings_map: Mapping[str, Optional[str]],
    mapping: SettingMapping
) -> Dict[str, float]:
    """Build {field: value} overrides from raw settings, skipping unparseable values."""
    overrides: Dict[str, float] = {}
    for setting_key, field in mapping:
        parsed = parse_optional_number_setting(settings_map.get(setting_key))
        if parsed is None:
            continue
        overrides[field] = parsed
    return overrides


def normalize_number(
    value: Any,
    fallback: float,
    min_value: Optional[float] = None,
    max_value: Optional[float] = None,
    integer: bool = False
) -> float:
    """
    Validate a numeric setting against its domain.

    Args:
        value: Candidate value (any type)
        fallback: Default used when the value is invalid
        min_value: Inclusive lower bound
        max_value: Inclusive upper bound
        integer: Require an integral value (returned as int)

    Returns:
        The value if valid, otherwise fallback
    """
    if not is_finite_number(value):
        return fallback
    if integer:
        if not float(value).is_integer():
            return fallback
        value = int(value)
    if min_value is not None and value < min_value:
        return fallback
    if max_value is not None and value > max_value:
        return fallback
    return value


async def load_number_setting_overrides(
    settings_lookup: Optional[SettingsLookup],
    setting_keys: Sequence[str],
    mapping: SettingMapping
) -> Dict[str, float]:
    """
    Fetch raw settings once and convert them into field overrides.

    Errors raised by the lookup propagate to the caller.
    """
    if settings_lookup is None:
        return {}
    settings_map = await settings_lookup(list(setting_keys))
    overrides = build_number_setting_overrides(settings_map or {}, mapping)
    logger.debug(f"Loaded {len(overrides)}/{len(setting_keys)} setting overrides")
    return overrides


# =============================================================================
# SCORE HELPERS
# =============================================================================

def clamp_number(value: float, min_value: float, max_value: float) -> float:
    """Clamp to [min_value, max_value]; non-finite values map to min_value."""
    if not is_finite_number(value):
        return min_value
    return min(max(value, min_value), max_value)


def clamp01(value: float) -> float:
    return clamp_number(value, 0.0, 1.0)


def to_display_score(score01: float) -> int:
    """Map a 0-1 score to an integer 0-100 (half rounds up)."""
    return int(math.floor(clamp01(score01) * 100 + 0.5))
