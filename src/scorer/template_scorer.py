"""
Template Scorer - rank templates across backtest periods

For each (strategy, period_months) with both a training and a validation
snapshot:

    return_score      = 0 if v_cagr < 0 else 1 - exp(-v_cagr / return_scale)
    consistency_score = 1 - clamp01(max(0, t_cagr - v_cagr) / (|t_cagr| + |v_cagr|))
    risk_score        = exp(-dd_lambda * v_dd_ratio)
    liquidity_score   = (1 - w) + w * (1 - exp(-trades_per_year / trade_target))
    period_score      = clamp01(return * consistency * risk * liquidity * neg_penalty)

    neg_penalty       = exp(-strength * |v_cagr|) if v_cagr < 0 else 1

Losing validation periods are penalized twice (return_score = 0 and
neg_penalty < 1).

Period weight = sqrt(max(1, months)) * (0.6 + 0.4 * exp(-ln2 * age_days / half_life)).
A strategy scores the weighted mean of its periods; a template scores its
best strategy. An optional verification multiplier in
[verify_min_multiplier, verify_max_multiplier] is applied last.
"""

import math
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from src.scorer.settings import (
    TEMPLATE_SCORE_SETTING_MAPPING,
    SettingsLookup,
    clamp01,
    clamp_number,
    is_finite_number,
    load_number_setting_overrides,
    normalize_number,
    to_display_score,
)
from src.utils.logger import get_logger

logger = get_logger(__name__)

TRAINING = 'training'
VALIDATION = 'validation'
TICKER_SCOPES = (TRAINING, VALIDATION)

CONSISTENCY_EPSILON = 1e-6
SCALE_FLOOR = 1e-6
DAYS_PER_YEAR = 365.25
RECENCY_FLOOR = 0.6
RECENCY_SPAN = 0.4


# =============================================================================
# SETTINGS
# =============================================================================

@dataclass(frozen=True)
class TemplateScoreSettings:
    """Resolved template scoring knobs (immutable for one scoring call)."""
    return_scale: float = 0.20
    validation_negative_penalty_strength: float = 2.0
    drawdown_lambda: float = 2.5
    trade_target: float = 200.0
    trade_weight: float = 0.25
    recency_half_life_days: float = 365.0
    verify_sharpe_scale: float = 2.0
    verify_calmar_scale: float = 2.0
    verify_cagr_scale: float = 0.25
    verify_cagr_neg_scale: float = 0.10
    verify_drawdown_lambda: float = 2.5
    verify_min_multiplier: float = 0.8
    verify_max_multiplier: float = 1.2

    @classmethod
    def resolve(cls, overrides: Optional[Mapping[str, Any]] = None) -> 'TemplateScoreSettings':
        """Merge overrides onto defaults and normalize every field once."""
        defaults = cls()
        merged = {f.name: getattr(defaults, f.name) for f in fields(cls)}
        merged.update({k: v for k, v in (overrides or {}).items() if k in merged})

        def positive(name: str) -> float:
            return normalize_number(merged[name], getattr(defaults, name), min_value=SCALE_FLOOR)

        def non_negative(name: str) -> float:
            return normalize_number(merged[name], getattr(defaults, name), min_value=0)

        verify_min = non_negative('verify_min_multiplier')
        verify_max = max(verify_min, non_negative('verify_max_multiplier'))

        return cls(
            return_scale=positive('return_scale'),
            validation_negative_penalty_strength=non_negative('validation_negative_penalty_strength'),
            drawdown_lambda=non_negative('drawdown_lambda'),
            trade_target=positive('trade_target'),
            trade_weight=normalize_number(
                merged['trade_weight'], defaults.trade_weight, min_value=0, max_value=1
            ),
            recency_half_life_days=positive('recency_half_life_days'),
            verify_sharpe_scale=positive('verify_sharpe_scale'),
            verify_calmar_scale=positive('verify_calmar_scale'),
            verify_cagr_scale=positive('verify_cagr_scale'),
            verify_cagr_neg_scale=positive('verify_cagr_neg_scale'),
            verify_drawdown_lambda=non_negative('verify_drawdown_lambda'),
            verify_min_multiplier=verify_min,
            verify_max_multiplier=verify_max,
        )


async def resolve_template_score_settings(
    settings_lookup: Optional[SettingsLookup] = None,
    overrides: Optional[Mapping[str, Any]] = None
) -> TemplateScoreSettings:
    """defaults <- settings lookup <- caller overrides, normalized once."""
    keys = [key for key, _ in TEMPLATE_SCORE_SETTING_MAPPING]
    merged: Dict[str, Any] = dict(
        await load_number_setting_overrides(settings_lookup, keys, TEMPLATE_SCORE_SETTING_MAPPING)
    )
    merged.update(overrides or {})
    return TemplateScoreSettings.resolve(merged)


# =============================================================================
# INPUT / OUTPUT TYPES
# =============================================================================

@dataclass(frozen=True)
class StrategyPerformance:
    """Backtest performance of one strategy run (only scored fields are required)."""
    cagr: Optional[float]
    max_drawdown_percent: Optional[float]
    total_trades: Optional[int]
    total_return: Optional[float] = None
    sharpe_ratio: Optional[float] = None
    calmar_ratio: Optional[float] = None
    win_rate: Optional[float] = None


@dataclass(frozen=True)
class TemplateScoreSnapshot:
    """Stored performance of a strategy for one period and ticker scope."""
    template_id: str
    strategy_id: str
    period_months: int
    ticker_scope: str
    performance: Optional[StrategyPerformance]
    period_days: Optional[int] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if self.ticker_scope not in TICKER_SCOPES:
            raise ValueError(
                f"Invalid ticker_scope '{self.ticker_scope}' for strategy {self.strategy_id}. "
                f"Valid options: {list(TICKER_SCOPES)}"
            )


@dataclass(frozen=True)
class TemplateVerificationMetrics:
    """Out-of-sample re-run metrics of a template's best parameter set."""
    verify_sharpe_ratio: Optional[float] = None
    verify_calmar_ratio: Optional[float] = None
    verify_cagr: Optional[float] = None
    verify_max_drawdown_ratio: Optional[float] = None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> Optional['TemplateVerificationMetrics']:
        if data is None:
            return None
        return cls(**{f.name: data.get(f.name) for f in fields(cls)})


@dataclass(frozen=True)
class PeriodBreakdown:
    period_months: int
    period_days: Optional[int]
    created_at: Optional[datetime]
    training_cagr: float
    validation_cagr: float
    validation_drawdown: float
    trades_per_year: float
    return_score: float
    consistency_score: float
    risk_score: float
    liquidity_score: float
    period_score01: float
    length_weight: float
    recency_weight: float
    weight: float


@dataclass(frozen=True)
class ComponentAverages:
    return_score: float
    consistency_score: float
    risk_score: float
    liquidity_score: float


@dataclass(frozen=True)
class WeightSummary:
    total_weight: float
    period_count: int
    length_weight_avg: float
    recency_weight_avg: float


@dataclass
class TemplateScoreBreakdown:
    """Score detail of a template's best strategy."""
    template_id: str
    strategy_id: str
    base_score01: float
    final_score01: float
    base_score100: int
    final_score100: int
    component_averages: ComponentAverages
    weights: WeightSummary
    periods: List[PeriodBreakdown] = field(default_factory=list)
    verification_multiplier: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for period in data['periods']:
            if period['created_at'] is not None:
                period['created_at'] = period['created_at'].isoformat()
        return data


@dataclass
class TemplateScoreResults:
    scores: Dict[str, float] = field(default_factory=dict)
    breakdowns: Dict[str, TemplateScoreBreakdown] = field(default_factory=dict)


# =============================================================================
# COMPONENT SCORES
# =============================================================================

def _finite_or_none(value: Any) -> Optional[float]:
    return float(value) if is_finite_number(value) else None


def compute_consistency_score(training_cagr: float, validation_cagr: float) -> float:
    """Penalize validation falling short of training (never the reverse)."""
    denominator = abs(training_cagr) + abs(validation_cagr)
    if denominator <= CONSISTENCY_EPSILON:
        return 1.0
    shortfall = max(0.0, training_cagr - validation_cagr)
    return clamp01(1 - clamp_number(shortfall / denominator, 0.0, 1.0))


def compute_trades_per_year(
    total_trades: Optional[float],
    period_months: int,
    period_days: Optional[int]
) -> Optional[float]:
    if not is_finite_number(total_trades) or total_trades <= 0:
        return None
    years = period_months / 12 if period_months and period_months > 0 else None
    if years is None:
        days = _finite_or_none(period_days)
        years = days / DAYS_PER_YEAR if days and days > 0 else None
    if years is None or years <= 0:
        return None
    return total_trades / years


def _as_utc(moment: datetime) -> datetime:
    return moment.replace(tzinfo=UTC) if moment.tzinfo is None else moment


def compute_recency_weight(
    created_at: Optional[datetime],
    settings: TemplateScoreSettings,
    now: datetime
) -> float:
    if not isinstance(created_at, datetime):
        return 1.0
    age_days = max(0.0, (_as_utc(now) - _as_utc(created_at)).total_seconds() / 86400)
    half_life = max(SCALE_FLOOR, settings.recency_half_life_days)
    decay = math.exp(-math.log(2) * age_days / half_life)
    return RECENCY_FLOOR + RECENCY_SPAN * decay


def score_return(validation_cagr: float, settings: TemplateScoreSettings) -> float:
    if not is_finite_number(validation_cagr) or validation_cagr < 0:
        return 0.0
    return 1 - math.exp(-validation_cagr / max(settings.return_scale, SCALE_FLOOR))


def score_risk(validation_drawdown: float, settings: TemplateScoreSettings) -> float:
    return math.exp(-settings.drawdown_lambda * max(0.0, validation_drawdown))


def score_liquidity(trades_per_year: float, settings: TemplateScoreSettings) -> float:
    target = max(SCALE_FLOOR, settings.trade_target)
    confidence = 1 - math.exp(-trades_per_year / target)
    return (1 - settings.trade_weight) + settings.trade_weight * confidence


def negative_validation_penalty(validation_cagr: float, settings: TemplateScoreSettings) -> float:
    if not is_finite_number(validation_cagr) or validation_cagr >= 0:
        return 1.0
    return math.exp(-settings.validation_negative_penalty_strength * abs(validation_cagr))


def score_positive_metric(value: Optional[float], scale: float) -> Optional[float]:
    if not is_finite_number(value):
        return None
    if value <= 0:
        return 0.0
    return 1 - math.exp(-value / max(scale, SCALE_FLOOR))


def score_signed_metric(value: Optional[float], pos_scale: float, neg_scale: float) -> Optional[float]:
    """Map a signed metric to 0-1 with 0.5 at zero; losses decay on their own scale."""
    if not is_finite_number(value):
        return None
    if value >= 0:
        return 0.5 + 0.5 * (1 - math.exp(-value / max(pos_scale, SCALE_FLOOR)))
    return 0.5 - 0.5 * (1 - math.exp(-abs(value) / max(neg_scale, SCALE_FLOOR)))


def compute_verification_multiplier(
    metrics: Optional[TemplateVerificationMetrics],
    settings: TemplateScoreSettings
) -> Optional[float]:
    """
    Multiplier in [verify_min_multiplier, verify_max_multiplier].

    Geometric mean of the available verification components (Sharpe, Calmar,
    signed CAGR, drawdown) mapped linearly into the multiplier range.

    Returns:
        Multiplier, or None when no component can be computed
    """
    if metrics is None:
        return None

    components: List[float] = []
    sharpe_score = score_positive_metric(metrics.verify_sharpe_ratio, settings.verify_sharpe_scale)
    if sharpe_score is not None:
        components.append(sharpe_score)

    calmar_score = score_positive_metric(metrics.verify_calmar_ratio, settings.verify_calmar_scale)
    if calmar_score is not None:
        components.append(calmar_score)

    cagr_score = score_signed_metric(metrics.verify_cagr, settings.verify_cagr_scale, settings.verify_cagr_neg_scale)
    if cagr_score is not None:
        components.append(cagr_score)

    if is_finite_number(metrics.verify_max_drawdown_ratio):
        components.append(
            math.exp(-settings.verify_drawdown_lambda * max(0.0, metrics.verify_max_drawdown_ratio))
        )

    if not components:
        return None

    product = 1.0
    for value in components:
        product *= max(0.0, value)
    verification_score = product ** (1 / len(components))
    if not math.isfinite(verification_score):
        return None

    span = settings.verify_max_multiplier - settings.verify_min_multiplier
    return settings.verify_min_multiplier + span * verification_score


# =============================================================================
# AGGREGATION
# =============================================================================

@dataclass
class _PeriodEntry:
    period_days: Optional[int] = None
    training: Optional[TemplateScoreSnapshot] = None
    validation: Optional[TemplateScoreSnapshot] = None


@dataclass
class _StrategyEntry:
    template_id: str
    periods: Dict[int, _PeriodEntry] = field(default_factory=dict)


def _group_snapshots(snapshots: Sequence[TemplateScoreSnapshot]) -> Dict[str, _StrategyEntry]:
    strategies: Dict[str, _StrategyEntry] = {}
    for snapshot in snapshots:
        if snapshot.performance is None or snapshot.period_months <= 0:
            continue
        entry = strategies.setdefault(snapshot.strategy_id, _StrategyEntry(template_id=snapshot.template_id))
        period = entry.periods.setdefault(snapshot.period_months, _PeriodEntry(period_days=snapshot.period_days))
        if snapshot.ticker_scope == VALIDATION:
            period.validation = snapshot
        else:
            period.training = snapshot
        if not period.period_days and snapshot.period_days:
            period.period_days = snapshot.period_days
    return strategies


def score_period(
    period_months: int,
    period: _PeriodEntry,
    settings: TemplateScoreSettings,
    now: datetime
) -> Optional[PeriodBreakdown]:
    """Score one (strategy, period) pair, or None if it cannot contribute."""
    if period.training is None or period.validation is None:
        return None
    training = period.training.performance
    validation = period.validation.performance
    if training is None or validation is None:
        return None

    training_cagr = _finite_or_none(training.cagr)
    validation_cagr = _finite_or_none(validation.cagr)
    if training_cagr is None or validation_cagr is None:
        return None

    drawdown_percent = _finite_or_none(validation.max_drawdown_percent)
    if drawdown_percent is None:
        return None
    validation_drawdown = drawdown_percent / 100

    trades_per_year = compute_trades_per_year(validation.total_trades, period_months, period.period_days)
    if trades_per_year is None:
        return None

    return_score = score_return(validation_cagr, settings)
    consistency_score = compute_consistency_score(training_cagr, validation_cagr)
    risk_score = score_risk(validation_drawdown, settings)
    liquidity_score = score_liquidity(trades_per_year, settings)
    period_score = return_score * consistency_score * risk_score * liquidity_score
    period_score *= negative_validation_penalty(validation_cagr, settings)
    if not math.isfinite(period_score):
        return None

    created_at = period.validation.created_at
    length_weight = math.sqrt(max(1, period_months))
    recency_weight = compute_recency_weight(created_at, settings, now)
    return PeriodBreakdown(
        period_months=period_months,
        period_days=period.period_days,
        created_at=created_at,
        training_cagr=training_cagr,
        validation_cagr=validation_cagr,
        validation_drawdown=validation_drawdown,
        trades_per_year=trades_per_year,
        return_score=return_score,
        consistency_score=consistency_score,
        risk_score=risk_score,
        liquidity_score=liquidity_score,
        period_score01=clamp01(period_score),
        length_weight=length_weight,
        recency_weight=recency_weight,
        weight=length_weight * recency_weight,
    )


def _build_breakdown(
    template_id: str,
    strategy_id: str,
    periods: List[PeriodBreakdown],
    total_weight: float,
    base_score01: float
) -> TemplateScoreBreakdown:
    def weighted_average(attribute: str) -> float:
        return sum(getattr(p, attribute) * p.weight for p in periods) / total_weight

    return TemplateScoreBreakdown(
        template_id=template_id,
        strategy_id=strategy_id,
        base_score01=base_score01,
        final_score01=base_score01,
        base_score100=to_display_score(base_score01),
        final_score100=to_display_score(base_score01),
        component_averages=ComponentAverages(
            return_score=weighted_average('return_score'),
            consistency_score=weighted_average('consistency_score'),
            risk_score=weighted_average('risk_score'),
            liquidity_score=weighted_average('liquidity_score'),
        ),
        weights=WeightSummary(
            total_weight=total_weight,
            period_count=len(periods),
            length_weight_avg=weighted_average('length_weight'),
            recency_weight_avg=weighted_average('recency_weight'),
        ),
        periods=list(periods),
    )


def score_snapshots(
    snapshots: Sequence[TemplateScoreSnapshot],
    settings: Optional[TemplateScoreSettings] = None,
    verification_by_template: Optional[Mapping[str, Any]] = None,
    now: Optional[datetime] = None
) -> TemplateScoreResults:
    """
    Score templates with already-resolved settings.

    Args:
        snapshots: Training/validation snapshots across templates, strategies, periods
        settings: Resolved settings (defaults when None)
        verification_by_template: Optional verification metrics per template id
            (TemplateVerificationMetrics or a plain mapping of the same fields)
        now: Reference instant for recency weighting (defaults to current UTC time)

    Returns:
        TemplateScoreResults with a 0-1 score and a breakdown per template
    """
    settings = settings or TemplateScoreSettings()
    now = now or datetime.now(UTC)
    results = TemplateScoreResults()

    for strategy_id, strategy in _group_snapshots(snapshots).items():
        periods = [
            breakdown for breakdown in (
                score_period(months, period, settings, now) for months, period in strategy.periods.items()
            )
            if breakdown is not None
        ]
        if not periods:
            continue

        total_weight = sum(p.weight for p in periods)
        if not math.isfinite(total_weight) or total_weight <= 0:
            continue
        base_score01 = clamp01(sum(p.period_score01 * p.weight for p in periods) / total_weight)

        existing = results.scores.get(strategy.template_id)
        if existing is None or base_score01 > existing:
            results.scores[strategy.template_id] = base_score01
            results.breakdowns[strategy.template_id] = _build_breakdown(
                strategy.template_id, strategy_id, periods, total_weight, base_score01
            )

    if verification_by_template:
        _apply_verification(results, verification_by_template, settings)

    logger.debug(f"Scored {len(results.scores)} templates from {len(snapshots)} snapshots")
    return results


def _apply_verification(
    results: TemplateScoreResults,
    verification_by_template: Mapping[str, Any],
    settings: TemplateScoreSettings
) -> None:
    for template_id, base_score in list(results.scores.items()):
        metrics = verification_by_template.get(template_id)
        if isinstance(metrics, Mapping):
            metrics = TemplateVerificationMetrics.from_mapping(metrics)
        multiplier = compute_verification_multiplier(metrics, settings)
        if multiplier is None:
            continue
        final_score01 = clamp01(base_score * multiplier)
        results.scores[template_id] = final_score01
        breakdown = results.breakdowns[template_id]
        breakdown.verification_multiplier = multiplier
        breakdown.final_score01 = final_score01
        breakdown.final_score100 = to_display_score(final_score01)


class TemplateScorer:
    """
    Scores templates from their training/validation backtest snapshots.

    Settings are fetched once per call from the optional settings lookup,
    then caller overrides are applied on top.
    """

    def __init__(
        self,
        settings_lookup: Optional[SettingsLookup] = None,
        overrides: Optional[Mapping[str, Any]] = None
    ):
        self.settings_lookup = settings_lookup
        self.overrides = dict(overrides or {})

    async def resolve_settings(self, overrides: Optional[Mapping[str, Any]] = None) -> TemplateScoreSettings:
        merged = {**self.overrides, **(overrides or {})}
        return await resolve_template_score_settings(self.settings_lookup, merged)

    async def score(
        self,
        snapshots: Sequence[TemplateScoreSnapshot],
        verification_by_template: Optional[Mapping[str, Any]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> TemplateScoreResults:
        settings = await self.resolve_settings(overrides)
        return score_snapshots(snapshots, settings, verification_by_template, now)

    async def scores(
        self,
        snapshots: Sequence[TemplateScoreSnapshot],
        verification_by_template: Optional[Mapping[str, Any]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, float]:
        """Template id -> final 0-1 score, without breakdowns."""
        results = await self.score(snapshots, verification_by_template, overrides, now)
        return results.scores
