"""
SCORER Module - Parameter and Template Scoring Engine

Single Responsibility: Rank backtest results from in-memory records

Components:
- ParameterScorer: Rank parameter sets of one template
  (percentile core score x drawdown penalty x neighborhood stability)
- TemplateScorer: Rank templates across training/validation periods
  (weighted period scores of the best strategy x verification multiplier)

Both are pure computations; settings come from defaults, an optional async
settings lookup and caller overrides, in that order.
"""

from src.scorer.param_scorer import (
    ParameterScorer,
    ParamScoreSettings,
    ParamScoreSummary,
    ScoreAvailability,
    ScoredParams,
    score_records,
    verification_metrics_from_result,
)
from src.scorer.template_scorer import (
    StrategyPerformance,
    TemplateScoreBreakdown,
    TemplateScorer,
    TemplateScoreResults,
    TemplateScoreSettings,
    TemplateScoreSnapshot,
    TemplateVerificationMetrics,
    score_snapshots,
)

__all__ = [
    'ParameterScorer',
    'ParamScoreSettings',
    'ParamScoreSummary',
    'ScoreAvailability',
    'ScoredParams',
    'score_records',
    'verification_metrics_from_result',
    'StrategyPerformance',
    'TemplateScoreBreakdown',
    'TemplateScorer',
    'TemplateScoreResults',
    'TemplateScoreSettings',
    'TemplateScoreSnapshot',
    'TemplateVerificationMetrics',
    'score_snapshots',
]
