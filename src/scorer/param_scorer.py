"""
Parameter Scorer - rank backtested parameter sets of one template

Score Formula (per candidate):
    core_train   = cbrt((P_sharpe + e) * (P_calmar + e) * (P_return + e))
    core_verify  = same over verify percentiles (only if all three exist)
    core_score   = sqrt(core_train * core_verify)  or  core_train
    dd_penalty   = exp(-lambda * max(0, dd_ratio))   (sqrt-blended with verify dd)
    final_score  = core_score * dd_penalty * stability ** gamma

core_score and final_score are clamped to [0, 1].

P_* are average-rank percentiles (0-1) within the population. Verify
percentiles are ranked only among candidates that carry the verify metric.

Records that cannot be scored are never dropped silently: every input record
gets an availability verdict (eligible, or a reason code and message).
"""

import json
import math
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np

from src.scorer.settings import (
    PARAM_SCORE_SETTING_MAPPING,
    SettingsLookup,
    clamp01,
    is_finite_number,
    load_number_setting_overrides,
    normalize_number,
    parse_number_string,
)
from src.scorer.stability import compute_stability_scores
from src.utils.logger import get_logger

logger = get_logger(__name__)

PERCENTILE_TOLERANCE = 1e-12
CORE_SCORE_EPSILON = 1e-9

MISSING_METRICS = 'missing_metrics'
MISSING_PARAMETERS = 'missing_parameters'
MISSING_TRADES = 'missing_trades'
INSUFFICIENT_TRADES = 'insufficient_trades'


# =============================================================================
# SETTINGS
# =============================================================================

@dataclass(frozen=True)
class ParamScoreSettings:
    """Resolved parameter scoring knobs (immutable for one scoring call)."""
    min_trades: int = 20
    drawdown_lambda: float = 3.5
    neighbor_threshold: float = 0.15
    core_score_quantile: float = 0.6
    pairwise_neighbor_limit: int = 1500
    stability_gamma: float = 2.0

    @classmethod
    def resolve(cls, overrides: Optional[Mapping[str, Any]] = None) -> 'ParamScoreSettings':
        """Merge overrides onto defaults and normalize every field once."""
        defaults = cls()
        merged = {f.name: getattr(defaults, f.name) for f in fields(cls)}
        merged.update({k: v for k, v in (overrides or {}).items() if k in merged})

        return cls(
            min_trades=normalize_number(merged['min_trades'], defaults.min_trades, min_value=0, integer=True),
            drawdown_lambda=normalize_number(merged['drawdown_lambda'], defaults.drawdown_lambda, min_value=0),
            neighbor_threshold=normalize_number(merged['neighbor_threshold'], defaults.neighbor_threshold, min_value=0),
            core_score_quantile=normalize_number(
                merged['core_score_quantile'], defaults.core_score_quantile, min_value=0, max_value=1
            ),
            pairwise_neighbor_limit=normalize_number(
                merged['pairwise_neighbor_limit'], defaults.pairwise_neighbor_limit, min_value=1, integer=True
            ),
            stability_gamma=normalize_number(merged['stability_gamma'], defaults.stability_gamma, min_value=0),
        )


async def resolve_param_score_settings(
    settings_lookup: Optional[SettingsLookup] = None,
    overrides: Optional[Mapping[str, Any]] = None
) -> ParamScoreSettings:
    """defaults <- settings lookup <- caller overrides, normalized once."""
    keys = [key for key, _ in PARAM_SCORE_SETTING_MAPPING]
    merged: Dict[str, Any] = dict(
        await load_number_setting_overrides(settings_lookup, keys, PARAM_SCORE_SETTING_MAPPING)
    )
    merged.update(overrides or {})
    return ParamScoreSettings.resolve(merged)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class ScoreAvailability:
    """Whether a record could be scored, and why not."""
    eligible: bool
    reason_code: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.eligible:
            return {'eligible': True}
        return {'eligible': False, 'reason_code': self.reason_code, 'reason': self.reason}


ELIGIBLE = ScoreAvailability(eligible=True)


@dataclass
class Candidate:
    """Normalized record plus the scores computed during one pass."""
    record_index: int
    source_record: Mapping[str, Any]
    parameters: Dict[str, Any]
    sharpe_ratio: float
    calmar_ratio: float
    total_return: float
    cagr: float
    max_drawdown: Optional[float]
    max_drawdown_ratio: Optional[float]
    win_rate: Optional[float]
    total_trades: int
    verify_sharpe_ratio: Optional[float] = None
    verify_calmar_ratio: Optional[float] = None
    verify_total_return: Optional[float] = None
    verify_cagr: Optional[float] = None
    verify_max_drawdown_ratio: Optional[float] = None
    core_score: float = 0.0
    dd_penalty: float = 0.0
    stability_score: float = 0.0
    final_score: float = 0.0

    @property
    def verify_return_like(self) -> Optional[float]:
        if self.verify_total_return is not None:
            return self.verify_total_return
        return self.verify_cagr

    @property
    def quality(self) -> float:
        return self.core_score * self.dd_penalty


@dataclass(frozen=True)
class ScoredParams:
    """One ranked parameter set."""
    record_index: int
    parameters: Dict[str, Any]
    sharpe_ratio: float
    calmar_ratio: float
    total_return: float
    cagr: float
    max_drawdown: Optional[float]
    max_drawdown_ratio: Optional[float]
    win_rate: Optional[float]
    total_trades: int
    core_score: float
    dd_penalty: float
    stability_score: float
    final_score: float
    source_record: Mapping[str, Any] = field(repr=False, compare=False)

    @property
    def record_id(self) -> Optional[str]:
        return get_record_id(self.source_record)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'record_index': self.record_index,
            'id': self.record_id,
            'parameters': self.parameters,
            'sharpe_ratio': self.sharpe_ratio,
            'calmar_ratio': self.calmar_ratio,
            'total_return': self.total_return,
            'cagr': self.cagr,
            'max_drawdown': self.max_drawdown,
            'max_drawdown_ratio': self.max_drawdown_ratio,
            'win_rate': self.win_rate,
            'total_trades': self.total_trades,
            'core_score': self.core_score,
            'dd_penalty': self.dd_penalty,
            'stability_score': self.stability_score,
            'final_score': self.final_score,
        }


@dataclass
class ParamScoreSummary:
    """
    Output of one scoring pass.

    scored: ranked results, best first
    availability_by_id: verdict per non-blank record id
    availability_by_record: verdict per input position (every record)
    """
    scored: List[ScoredParams] = field(default_factory=list)
    availability_by_id: Dict[str, ScoreAvailability] = field(default_factory=dict)
    availability_by_record: Dict[int, ScoreAvailability] = field(default_factory=dict)

    def availability_for(
        self,
        index: Optional[int] = None,
        record_id: Optional[str] = None
    ) -> Optional[ScoreAvailability]:
        if index is not None and index in self.availability_by_record:
            return self.availability_by_record[index]
        if record_id is not None:
            return self.availability_by_id.get(record_id)
        return None

    @property
    def best(self) -> Optional[ScoredParams]:
        return self.scored[0] if self.scored else None


# =============================================================================
# RECORD PARSING
# =============================================================================

def parse_nullable_number(value: Any) -> Optional[float]:
    """Number or numeric string -> float; anything else (incl. non-finite) -> None."""
    if value is None:
        return None
    if is_finite_number(value):
        return float(value)
    if isinstance(value, str):
        return parse_number_string(value)
    return None


def parse_parameters(raw: Any) -> Optional[Dict[str, Any]]:
    """Parameter mapping from a dict or a JSON object string."""
    if raw is None:
        return None
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            return None
        return dict(parsed) if isinstance(parsed, dict) else None
    if isinstance(raw, Mapping):
        return dict(raw)
    return None


def get_record_id(record: Mapping[str, Any]) -> Optional[str]:
    record_id = record.get('id')
    return record_id if isinstance(record_id, str) and record_id.strip() else None


def evaluate_record(
    index: int,
    record: Mapping[str, Any],
    settings: ParamScoreSettings
) -> tuple:
    """
    Check one record for eligibility.

    Returns:
        (candidate or None, ScoreAvailability)
    """
    def fail(reason_code: str, reason: str):
        return None, ScoreAvailability(eligible=False, reason_code=reason_code, reason=reason)

    sharpe = parse_nullable_number(record.get('sharpe_ratio'))
    calmar = parse_nullable_number(record.get('calmar_ratio'))
    total_return = parse_nullable_number(record.get('total_return'))
    if sharpe is None or calmar is None or total_return is None:
        return fail(MISSING_METRICS, 'Missing Sharpe, Calmar, or total return metrics.')

    cagr = parse_nullable_number(record.get('cagr'))
    parameters = parse_parameters(record.get('parameters'))
    if not parameters:
        return fail(MISSING_PARAMETERS, 'Parameter set is empty or invalid.')

    trades_value = parse_nullable_number(record.get('total_trades'))
    if trades_value is None:
        return fail(MISSING_TRADES, 'Total trade count is missing.')

    total_trades = max(0, int(math.floor(trades_value + 0.5)))
    if settings.min_trades > 0 and total_trades < settings.min_trades:
        return fail(
            INSUFFICIENT_TRADES,
            f"Requires at least {settings.min_trades} trades (only {total_trades} recorded)."
        )

    candidate = Candidate(
        record_index=index,
        source_record=record,
        parameters=parameters,
        sharpe_ratio=sharpe,
        calmar_ratio=calmar,
        total_return=total_return,
        cagr=cagr if cagr is not None else 0.0,
        max_drawdown=parse_nullable_number(record.get('max_drawdown')),
        max_drawdown_ratio=parse_nullable_number(record.get('max_drawdown_ratio')),
        win_rate=parse_nullable_number(record.get('win_rate')),
        total_trades=total_trades,
        verify_sharpe_ratio=parse_nullable_number(record.get('verify_sharpe_ratio')),
        verify_calmar_ratio=parse_nullable_number(record.get('verify_calmar_ratio')),
        verify_total_return=parse_nullable_number(record.get('verify_total_return')),
        verify_cagr=parse_nullable_number(record.get('verify_cagr')),
        verify_max_drawdown_ratio=parse_nullable_number(record.get('verify_max_drawdown_ratio')),
    )
    return candidate, ELIGIBLE


# =============================================================================
# PERCENTILES
# =============================================================================

def compute_percentile_ranks(values: Sequence[float]) -> List[float]:
    """
    Average-rank percentile of each value, in input order.

    Values within 1e-12 of the first value of a run share the mean rank of
    that run. Ranks are divided by n - 1; a single value gets 1.
    """
    count = len(values)
    if count == 0:
        return []
    if count == 1:
        return [1.0]

    array = np.asarray(values, dtype=float)
    order = np.argsort(array, kind='stable')
    percentiles = np.zeros(count, dtype=float)
    denominator = count - 1

    i = 0
    while i < count:
        j = i + 1
        while j < count and abs(array[order[j]] - array[order[i]]) <= PERCENTILE_TOLERANCE:
            j += 1
        average_rank = (i + j - 1) / 2
        percentiles[order[i:j]] = average_rank / denominator
        i = j

    return percentiles.tolist()


def compute_aligned_percentiles(values: Sequence[Optional[float]]) -> List[Optional[float]]:
    """Percentiles ranked over the non-null subset; null entries stay None."""
    present = [(index, value) for index, value in enumerate(values) if value is not None]
    aligned: List[Optional[float]] = [None] * len(values)
    if not present:
        return aligned
    ranks = compute_percentile_ranks([value for _, value in present])
    for (index, _), rank in zip(present, ranks):
        aligned[index] = rank
    return aligned


def geometric_core(p1: float, p2: float, p3: float) -> float:
    product = (p1 + CORE_SCORE_EPSILON) * (p2 + CORE_SCORE_EPSILON) * (p3 + CORE_SCORE_EPSILON)
    return float(np.cbrt(product))


def drawdown_penalty(drawdown_ratio: Optional[float], drawdown_lambda: float) -> float:
    ratio = drawdown_ratio if drawdown_ratio is not None else 0.0
    return math.exp(-drawdown_lambda * max(0.0, ratio))


# =============================================================================
# SCORING
# =============================================================================

def score_records(
    records: Sequence[Mapping[str, Any]],
    settings: Optional[ParamScoreSettings] = None
) -> ParamScoreSummary:
    """
    Score and rank records with already-resolved settings.

    Args:
        records: Backtest cache rows of one template (input order = arena index)
        settings: Resolved settings (defaults when None)

    Returns:
        ParamScoreSummary with ranked results and a verdict for every record
    """
    settings = settings or ParamScoreSettings()
    summary = ParamScoreSummary()
    candidates: List[Candidate] = []

    for index, record in enumerate(records):
        candidate, availability = evaluate_record(index, record, settings)
        summary.availability_by_record[index] = availability
        record_id = get_record_id(record)
        if record_id:
            summary.availability_by_id[record_id] = availability
        if candidate is not None:
            candidates.append(candidate)

    excluded = len(records) - len(candidates)
    if excluded:
        reasons: Dict[str, int] = {}
        for availability in summary.availability_by_record.values():
            if not availability.eligible:
                reasons[availability.reason_code] = reasons.get(availability.reason_code, 0) + 1
        logger.debug(f"Excluded {excluded}/{len(records)} records: {reasons}")

    if not candidates:
        return summary

    _apply_core_scores(candidates, settings)

    stability = compute_stability_scores(
        [candidate.parameters for candidate in candidates],
        [candidate.quality for candidate in candidates],
        settings.neighbor_threshold,
        settings.pairwise_neighbor_limit,
    )
    for candidate, stability_score in zip(candidates, stability):
        candidate.stability_score = stability_score
        stability_factor = clamp01(stability_score) ** settings.stability_gamma
        candidate.final_score = clamp01(candidate.core_score * candidate.dd_penalty * stability_factor)

    ranked = sorted(candidates, key=lambda c: c.final_score, reverse=True)
    summary.scored = [_to_result(candidate) for candidate in ranked]

    logger.debug(
        f"Scored {len(candidates)} candidates "
        f"(best final_score={summary.scored[0].final_score:.4f})"
    )
    return summary


def _apply_core_scores(candidates: List[Candidate], settings: ParamScoreSettings) -> None:
    sharpe = compute_percentile_ranks([c.sharpe_ratio for c in candidates])
    calmar = compute_percentile_ranks([c.calmar_ratio for c in candidates])
    returns = compute_percentile_ranks([c.total_return for c in candidates])

    verify_sharpe = compute_aligned_percentiles([c.verify_sharpe_ratio for c in candidates])
    verify_calmar = compute_aligned_percentiles([c.verify_calmar_ratio for c in candidates])
    verify_return = compute_aligned_percentiles([c.verify_return_like for c in candidates])

    for i, candidate in enumerate(candidates):
        core_train = geometric_core(sharpe[i], calmar[i], returns[i])
        core_score = core_train
        if verify_sharpe[i] is not None and verify_calmar[i] is not None and verify_return[i] is not None:
            core_verify = geometric_core(verify_sharpe[i], verify_calmar[i], verify_return[i])
            core_score = math.sqrt(core_train * core_verify)

        dd_train = drawdown_penalty(candidate.max_drawdown_ratio, settings.drawdown_lambda)
        dd_penalty = dd_train
        if candidate.verify_max_drawdown_ratio is not None:
            dd_verify = drawdown_penalty(candidate.verify_max_drawdown_ratio, settings.drawdown_lambda)
            dd_penalty = math.sqrt(dd_train * dd_verify)

        candidate.core_score = clamp01(core_score)
        candidate.dd_penalty = dd_penalty


def _to_result(candidate: Candidate) -> ScoredParams:
    return ScoredParams(
        record_index=candidate.record_index,
        parameters=candidate.parameters,
        sharpe_ratio=candidate.sharpe_ratio,
        calmar_ratio=candidate.calmar_ratio,
        total_return=candidate.total_return,
        cagr=candidate.cagr,
        max_drawdown=candidate.max_drawdown,
        max_drawdown_ratio=candidate.max_drawdown_ratio,
        win_rate=candidate.win_rate,
        total_trades=candidate.total_trades,
        core_score=candidate.core_score,
        dd_penalty=candidate.dd_penalty,
        stability_score=candidate.stability_score,
        final_score=candidate.final_score,
        source_record=candidate.source_record,
    )


def verification_metrics_from_result(result: Optional[ScoredParams]) -> Optional[Dict[str, Optional[float]]]:
    """Verification metrics for the template scorer, taken from a result's source record."""
    if result is None:
        return None
    record = result.source_record
    return {
        'verify_sharpe_ratio': parse_nullable_number(record.get('verify_sharpe_ratio')),
        'verify_calmar_ratio': parse_nullable_number(record.get('verify_calmar_ratio')),
        'verify_cagr': parse_nullable_number(record.get('verify_cagr')),
        'verify_max_drawdown_ratio': parse_nullable_number(record.get('verify_max_drawdown_ratio')),
    }


class ParameterScorer:
    """
    Ranks the cached parameter sets of a template.

    Settings are fetched once per call from the optional settings lookup,
    then caller overrides are applied on top.
    """

    def __init__(
        self,
        settings_lookup: Optional[SettingsLookup] = None,
        overrides: Optional[Mapping[str, Any]] = None
    ):
        """
        Args:
            settings_lookup: Async key/value settings source (optional)
            overrides: Field overrides applied after the lookup (e.g. {'min_trades': 50})
        """
        self.settings_lookup = settings_lookup
        self.overrides = dict(overrides or {})

    async def resolve_settings(self, overrides: Optional[Mapping[str, Any]] = None) -> ParamScoreSettings:
        merged = {**self.overrides, **(overrides or {})}
        return await resolve_param_score_settings(self.settings_lookup, merged)

    async def score(
        self,
        records: Sequence[Mapping[str, Any]],
        overrides: Optional[Mapping[str, Any]] = None
    ) -> ParamScoreSummary:
        settings = await self.resolve_settings(overrides)
        return score_records(records, settings)

    async def best(
        self,
        records: Sequence[Mapping[str, Any]],
        overrides: Optional[Mapping[str, Any]] = None
    ) -> Optional[ScoredParams]:
        """Top-ranked parameter set, or None if nothing is eligible."""
        if not records:
            return None
        summary = await self.score(records, overrides)
        return summary.best

    async def best_by_template(
        self,
        records: Sequence[Mapping[str, Any]],
        overrides: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, ScoredParams]:
        """
        Best parameter set per template.

        Records are grouped by 'template_id' and each group is scored on its
        own. Templates without any eligible record are omitted.
        """
        settings = await self.resolve_settings(overrides)
        grouped: Dict[str, List[Mapping[str, Any]]] = {}
        for record in records:
            template_id = record.get('template_id')
            if template_id is None:
                continue
            grouped.setdefault(str(template_id), []).append(record)

        results: Dict[str, ScoredParams] = {}
        for template_id, template_records in grouped.items():
            best = score_records(template_records, settings).best
            if best is not None:
                results[template_id] = best
        logger.debug(f"Best params resolved for {len(results)}/{len(grouped)} templates")
        return results
