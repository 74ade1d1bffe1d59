"""
Unit Tests for Template Scorer

Tests cover:
- Component scores (return, consistency, risk, liquidity, recency)
- Period aggregation and best-strategy selection
- Verification multiplier
- Bounds of 0-1 and 0-100 scores
"""

import math
from datetime import datetime, timedelta

import pytest

from src.scorer.param_scorer import score_records, verification_metrics_from_result
from src.scorer.template_scorer import (
    StrategyPerformance,
    TemplateScorer,
    TemplateScoreSettings,
    TemplateScoreSnapshot,
    TemplateVerificationMetrics,
    compute_consistency_score,
    compute_recency_weight,
    compute_trades_per_year,
    compute_verification_multiplier,
    negative_validation_penalty,
    score_liquidity,
    score_return,
    score_signed_metric,
    score_snapshots,
)

TEMPLATE_ID = 'tpl-1'


def _period(results):
    return results.breakdowns[TEMPLATE_ID].periods[0]


# =============================================================================
# COMPONENT SCORES
# =============================================================================

class TestComponentScores:
    """Test individual sub-scores"""

    def test_consistency_penalizes_shortfall_only(self):
        assert compute_consistency_score(0.2, 0.1) == pytest.approx(1 - 0.1 / 0.3)
        assert compute_consistency_score(0.1, 0.2) == 1.0

    def test_consistency_near_zero_denominator(self):
        assert compute_consistency_score(0.0, 0.0) == 1.0

    def test_consistency_sign_flip_is_zero(self):
        assert compute_consistency_score(0.2, -0.2) == 0.0

    def test_trades_per_year(self):
        assert compute_trades_per_year(100, 6, None) == pytest.approx(200.0)
        assert compute_trades_per_year(100, 0, 365.25) == pytest.approx(100.0)

    def test_trades_per_year_unavailable(self):
        assert compute_trades_per_year(0, 12, None) is None
        assert compute_trades_per_year(None, 12, None) is None
        assert compute_trades_per_year(100, 0, None) is None

    def test_return_score(self):
        settings = TemplateScoreSettings()

        assert score_return(0.2, settings) == pytest.approx(1 - math.exp(-1))
        assert score_return(-0.05, settings) == 0.0

    def test_liquidity_floor(self):
        """Zero trade confidence still keeps 1 - trade_weight"""
        assert score_liquidity(0.0, TemplateScoreSettings()) == pytest.approx(0.75)

    def test_negative_validation_penalty(self):
        settings = TemplateScoreSettings()

        assert negative_validation_penalty(0.1, settings) == 1.0
        assert negative_validation_penalty(-0.1, settings) == pytest.approx(math.exp(-0.2))

    def test_signed_metric_is_half_at_zero(self):
        assert score_signed_metric(0.0, 0.25, 0.1) == 0.5
        assert score_signed_metric(0.2, 0.25, 0.1) > 0.5
        assert score_signed_metric(-0.2, 0.25, 0.1) < 0.5
        assert score_signed_metric(None, 0.25, 0.1) is None


class TestRecencyWeight:
    """Test exponential recency decay"""

    def test_fresh_snapshot_full_weight(self, fixed_now):
        assert compute_recency_weight(fixed_now, TemplateScoreSettings(), fixed_now) == pytest.approx(1.0)

    def test_one_half_life(self, fixed_now):
        created_at = fixed_now - timedelta(days=365)

        assert compute_recency_weight(created_at, TemplateScoreSettings(), fixed_now) == pytest.approx(0.8)

    def test_naive_datetime_treated_as_utc(self, fixed_now):
        naive = datetime(2024, 6, 1)

        weight = compute_recency_weight(naive, TemplateScoreSettings(), fixed_now)
        assert weight == pytest.approx(0.8, abs=1e-3)

    def test_missing_created_at(self, fixed_now):
        assert compute_recency_weight(None, TemplateScoreSettings(), fixed_now) == 1.0

    def test_future_snapshot_not_boosted(self, fixed_now):
        created_at = fixed_now + timedelta(days=30)

        assert compute_recency_weight(created_at, TemplateScoreSettings(), fixed_now) == pytest.approx(1.0)


# =============================================================================
# AGGREGATION
# =============================================================================

class TestTemplateScoring:
    """Test period scoring and template aggregation"""

    def test_base_score_formula(self, make_period, fixed_now):
        """Single period: base score equals the period score"""
        snapshots = make_period(training_cagr=0.1, validation_cagr=0.1, created_at=fixed_now)
        results = score_snapshots(snapshots, now=fixed_now)

        expected = (
            (1 - math.exp(-0.5))
            * 1.0
            * math.exp(-0.25)
            * (0.75 + 0.25 * (1 - math.exp(-1)))
        )
        breakdown = results.breakdowns[TEMPLATE_ID]
        assert results.scores[TEMPLATE_ID] == pytest.approx(expected)
        assert breakdown.base_score01 == pytest.approx(expected)
        assert breakdown.base_score100 == round(expected * 100)
        assert breakdown.weights.period_count == 1
        assert breakdown.weights.length_weight_avg == pytest.approx(math.sqrt(12))

    def test_more_trades_higher_liquidity(self, make_period, fixed_now):
        low = score_snapshots(make_period(total_trades=25), now=fixed_now)
        high = score_snapshots(make_period(total_trades=200), now=fixed_now)

        assert _period(high).liquidity_score > _period(low).liquidity_score
        assert _period(high).period_score01 > _period(low).period_score01

    def test_larger_drawdown_lower_score(self, make_period, fixed_now):
        low = score_snapshots(make_period(max_drawdown_percent=5), now=fixed_now)
        high = score_snapshots(make_period(max_drawdown_percent=35), now=fixed_now)

        assert _period(low).risk_score > _period(high).risk_score
        assert _period(low).period_score01 > _period(high).period_score01

    def test_negative_validation_scores_zero(self, make_period, fixed_now):
        results = score_snapshots(make_period(training_cagr=0.2, validation_cagr=-0.1), now=fixed_now)

        assert results.scores[TEMPLATE_ID] == 0.0
        assert _period(results).return_score == 0.0

    def test_consistency_lowers_score(self, make_period, fixed_now):
        consistent = score_snapshots(make_period(training_cagr=0.2, validation_cagr=0.2), now=fixed_now)
        overfit = score_snapshots(make_period(training_cagr=0.8, validation_cagr=0.2), now=fixed_now)

        assert _period(overfit).consistency_score == pytest.approx(1 - 0.6 / 1.0)
        assert overfit.scores[TEMPLATE_ID] < consistent.scores[TEMPLATE_ID]

    def test_periods_weighted_by_length(self, make_period, fixed_now):
        snapshots = (
            make_period(period_months=12, validation_cagr=0.3, training_cagr=0.3)
            + make_period(period_months=3, validation_cagr=0.05, training_cagr=0.05)
        )
        results = score_snapshots(snapshots, now=fixed_now)

        breakdown = results.breakdowns[TEMPLATE_ID]
        scores = {p.period_months: p.period_score01 for p in breakdown.periods}
        expected = (scores[12] * math.sqrt(12) + scores[3] * math.sqrt(3)) / (math.sqrt(12) + math.sqrt(3))
        assert breakdown.base_score01 == pytest.approx(expected)
        assert breakdown.weights.total_weight == pytest.approx(math.sqrt(12) + math.sqrt(3))

    def test_template_takes_best_strategy(self, make_period, fixed_now):
        snapshots = (
            make_period(strategy_id='weak', training_cagr=0.05, validation_cagr=0.05)
            + make_period(strategy_id='strong', training_cagr=0.4, validation_cagr=0.4)
        )
        results = score_snapshots(snapshots, now=fixed_now)

        assert results.breakdowns[TEMPLATE_ID].strategy_id == 'strong'

    def test_templates_scored_independently(self, make_period, fixed_now):
        snapshots = make_period(template_id='a', strategy_id='s1') + make_period(template_id='b', strategy_id='s2')
        results = score_snapshots(snapshots, now=fixed_now)

        assert set(results.scores) == {'a', 'b'}

    def test_unpaired_and_invalid_snapshots_skipped(self, make_snapshot, fixed_now):
        """Periods without both scopes or with missing metrics do not contribute"""
        snapshots = [
            make_snapshot('training', strategy_id='only-training'),
            make_snapshot('training', strategy_id='no-dd'),
            make_snapshot('validation', strategy_id='no-dd', max_drawdown_percent=None),
            make_snapshot('training', strategy_id='no-trades'),
            make_snapshot('validation', strategy_id='no-trades', total_trades=0),
            make_snapshot('training', strategy_id='zero-months', period_months=0),
            make_snapshot('validation', strategy_id='zero-months', period_months=0),
            TemplateScoreSnapshot(
                template_id=TEMPLATE_ID, strategy_id='no-perf', period_months=12,
                ticker_scope='validation', performance=None,
            ),
        ]
        results = score_snapshots(snapshots, now=fixed_now)

        assert results.scores == {}
        assert results.breakdowns == {}

    def test_invalid_ticker_scope_raises(self):
        with pytest.raises(ValueError, match="Invalid ticker_scope"):
            TemplateScoreSnapshot(
                template_id=TEMPLATE_ID, strategy_id='s', period_months=12,
                ticker_scope='holdout', performance=StrategyPerformance(0.1, 10, 100),
            )

    def test_scores_within_bounds(self, make_period, fixed_now):
        results = score_snapshots(make_period(), now=fixed_now)
        breakdown = results.breakdowns[TEMPLATE_ID]

        components = breakdown.component_averages
        for value in (components.return_score, components.consistency_score,
                      components.risk_score, components.liquidity_score):
            assert 0.0 <= value <= 1.0

        assert 0.0 <= breakdown.base_score01 <= 1.0
        assert 0 <= breakdown.base_score100 <= 100
        assert 0 <= breakdown.final_score100 <= 100

    def test_to_dict_serializes_created_at(self, make_period, fixed_now):
        results = score_snapshots(make_period(created_at=fixed_now), now=fixed_now)

        data = results.breakdowns[TEMPLATE_ID].to_dict()
        assert data['periods'][0]['created_at'] == fixed_now.isoformat()
        assert data['component_averages']['risk_score'] == pytest.approx(math.exp(-0.25))


# =============================================================================
# VERIFICATION
# =============================================================================

class TestVerificationMultiplier:
    """Test the out-of-sample verification multiplier"""

    def test_no_verification_final_equals_base(self, make_period, fixed_now):
        results = score_snapshots(make_period(), now=fixed_now)
        breakdown = results.breakdowns[TEMPLATE_ID]

        assert breakdown.verification_multiplier is None
        assert breakdown.final_score01 == breakdown.base_score01
        assert breakdown.final_score100 == breakdown.base_score100

    def test_no_components_is_no_multiplier(self):
        assert compute_verification_multiplier(TemplateVerificationMetrics(), TemplateScoreSettings()) is None
        assert compute_verification_multiplier(None, TemplateScoreSettings()) is None

    def test_negative_verify_cagr_penalized(self, make_period, fixed_now):
        snapshots = make_period()
        negative = score_snapshots(
            snapshots, verification_by_template={TEMPLATE_ID: TemplateVerificationMetrics(verify_cagr=-0.2)},
            now=fixed_now,
        )
        neutral = score_snapshots(
            snapshots, verification_by_template={TEMPLATE_ID: TemplateVerificationMetrics(verify_cagr=0.0)},
            now=fixed_now,
        )

        negative_multiplier = negative.breakdowns[TEMPLATE_ID].verification_multiplier
        neutral_multiplier = neutral.breakdowns[TEMPLATE_ID].verification_multiplier

        assert neutral_multiplier == pytest.approx(1.0)
        assert negative_multiplier < 1.0
        assert negative_multiplier < neutral_multiplier
        assert abs(negative_multiplier - 0.8) < abs(neutral_multiplier - 0.8)

    def test_positive_verify_cagr_rewarded(self, make_period, fixed_now):
        snapshots = make_period()
        positive = score_snapshots(
            snapshots, verification_by_template={TEMPLATE_ID: TemplateVerificationMetrics(verify_cagr=0.2)},
            now=fixed_now,
        )
        neutral = score_snapshots(
            snapshots, verification_by_template={TEMPLATE_ID: TemplateVerificationMetrics(verify_cagr=0.0)},
            now=fixed_now,
        )

        assert (positive.breakdowns[TEMPLATE_ID].verification_multiplier
                > neutral.breakdowns[TEMPLATE_ID].verification_multiplier)
        assert positive.scores[TEMPLATE_ID] > neutral.scores[TEMPLATE_ID]

    def test_geometric_mean_of_components(self):
        metrics = TemplateVerificationMetrics(
            verify_sharpe_ratio=2.0,
            verify_calmar_ratio=2.0,
            verify_cagr=0.25,
            verify_max_drawdown_ratio=0.0,
        )
        positive = 1 - math.exp(-1)
        expected_score = (positive * positive * (0.5 + 0.5 * positive) * 1.0) ** 0.25

        multiplier = compute_verification_multiplier(metrics, TemplateScoreSettings())
        assert multiplier == pytest.approx(0.8 + 0.4 * expected_score)

    def test_non_positive_sharpe_is_zero_component(self):
        """A zero component drives the multiplier to its minimum"""
        metrics = TemplateVerificationMetrics(verify_sharpe_ratio=-1.0, verify_cagr=0.3)

        assert compute_verification_multiplier(metrics, TemplateScoreSettings()) == pytest.approx(0.8)

    def test_final_score_clamped(self, make_period, fixed_now):
        settings = TemplateScoreSettings.resolve({'verify_min_multiplier': 10, 'verify_max_multiplier': 10})
        results = score_snapshots(
            make_period(training_cagr=0.5, validation_cagr=0.5, max_drawdown_percent=1),
            settings,
            {TEMPLATE_ID: TemplateVerificationMetrics(verify_cagr=0.1)},
            now=fixed_now,
        )

        breakdown = results.breakdowns[TEMPLATE_ID]
        assert breakdown.final_score01 == 1.0
        assert breakdown.final_score100 == 100
        assert results.scores[TEMPLATE_ID] == 1.0

    def test_verification_for_unknown_template_ignored(self, make_period, fixed_now):
        results = score_snapshots(
            make_period(),
            verification_by_template={'other': TemplateVerificationMetrics(verify_cagr=0.2)},
            now=fixed_now,
        )

        assert results.breakdowns[TEMPLATE_ID].verification_multiplier is None

    def test_from_mapping(self):
        metrics = TemplateVerificationMetrics.from_mapping({'verify_cagr': 0.1, 'extra': 1})

        assert metrics == TemplateVerificationMetrics(verify_cagr=0.1)
        assert TemplateVerificationMetrics.from_mapping(None) is None

    def test_best_params_metrics_feed_template_scorer(self, make_record, make_period, fixed_now):
        """Metrics taken from the best parameter set apply as a plain mapping"""
        best = score_records([
            make_record(verify_sharpe_ratio=1.5, verify_calmar_ratio=1.2,
                        verify_cagr=0.18, verify_max_drawdown_ratio=0.1),
        ]).best
        metrics = verification_metrics_from_result(best)

        from_mapping = score_snapshots(
            make_period(), verification_by_template={TEMPLATE_ID: metrics}, now=fixed_now,
        )
        from_dataclass = score_snapshots(
            make_period(),
            verification_by_template={TEMPLATE_ID: TemplateVerificationMetrics.from_mapping(metrics)},
            now=fixed_now,
        )

        multiplier = from_mapping.breakdowns[TEMPLATE_ID].verification_multiplier
        assert multiplier is not None
        assert 0.8 <= multiplier <= 1.2
        assert multiplier == pytest.approx(from_dataclass.breakdowns[TEMPLATE_ID].verification_multiplier)
        assert from_mapping.scores[TEMPLATE_ID] == pytest.approx(from_dataclass.scores[TEMPLATE_ID])



# =============================================================================
# SETTINGS / ASYNC ENTRY POINT
# =============================================================================

class TestTemplateScoreSettings:
    """Test settings normalization and resolution"""

    def test_defaults(self):
        settings = TemplateScoreSettings.resolve()

        assert settings == TemplateScoreSettings()
        assert settings.verify_min_multiplier == 0.8
        assert settings.verify_max_multiplier == 1.2

    def test_max_multiplier_raised_to_min(self):
        settings = TemplateScoreSettings.resolve({'verify_min_multiplier': 1.1, 'verify_max_multiplier': 0.9})

        assert settings.verify_max_multiplier == 1.1

    def test_out_of_domain_falls_back(self):
        settings = TemplateScoreSettings.resolve({'trade_weight': 1.5, 'return_scale': 0, 'drawdown_lambda': -2})

        assert settings.trade_weight == 0.25
        assert settings.return_scale == 0.20
        assert settings.drawdown_lambda == 2.5

    @pytest.mark.asyncio
    async def test_scorer_uses_lookup(self, make_period, fixed_now):
        async def lookup(keys):
            return {key: ('0' if key == 'TEMPLATE_SCORE_TRADE_WEIGHT' else None) for key in keys}

        results = await TemplateScorer(lookup).score(make_period(total_trades=5), now=fixed_now)

        assert _period(results).liquidity_score == 1.0

    @pytest.mark.asyncio
    async def test_scores_returns_mapping(self, make_period, fixed_now):
        scores = await TemplateScorer(overrides={'return_scale': 0.5}).scores(make_period(), now=fixed_now)

        assert set(scores) == {TEMPLATE_ID}
        assert 0.0 <= scores[TEMPLATE_ID] <= 1.0

    @pytest.mark.asyncio
    async def test_lookup_error_propagates(self, make_period):
        async def failing_lookup(keys):
            raise ConnectionError("settings store down")

        with pytest.raises(ConnectionError):
            await TemplateScorer(failing_lookup).score(make_period())
