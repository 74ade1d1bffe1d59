"""
Global test fixtures for the scoring engine

Provides reusable record / snapshot builders for all test modules.
"""

import sys
from datetime import UTC, datetime
from pathlib import Path

import pytest

# Add repo root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import src.config.loader as config_loader
from src.scorer.template_scorer import StrategyPerformance, TemplateScoreSnapshot


FIXED_NOW = datetime(2025, 6, 1, tzinfo=UTC)


@pytest.fixture(autouse=True)
def clear_config_cache():
    """Clear config cache before each test to ensure isolation"""
    config_loader._cached_config = None
    yield
    config_loader._cached_config = None


@pytest.fixture
def fixed_now():
    """Reference instant for recency weighting"""
    return FIXED_NOW


@pytest.fixture
def make_record():
    """
    Build a backtest cache row with sane defaults

    Usage:
        record = make_record(parameters={'period': 10}, sharpe_ratio=1.5)
    """
    counter = {'n': 0}

    def _create(**overrides):
        counter['n'] += 1
        record = {
            'id': f"rec-{counter['n']}",
            'template_id': 'tpl-1',
            'parameters': {'period': 10},
            'sharpe_ratio': 1.0,
            'calmar_ratio': 1.0,
            'total_return': 0.2,
            'cagr': 0.15,
            'max_drawdown': 0.1,
            'max_drawdown_ratio': 0.1,
            'win_rate': 0.55,
            'total_trades': 50,
        }
        record.update(overrides)
        return record

    return _create


@pytest.fixture
def make_snapshot():
    """
    Build a template snapshot

    Usage:
        snap = make_snapshot('validation', cagr=0.2, max_drawdown_percent=10, total_trades=100)
    """
    def _create(
        ticker_scope,
        template_id='tpl-1',
        strategy_id='strat-1',
        period_months=12,
        cagr=0.2,
        max_drawdown_percent=10.0,
        total_trades=200,
        period_days=None,
        created_at=None,
    ):
        return TemplateScoreSnapshot(
            template_id=template_id,
            strategy_id=strategy_id,
            period_months=period_months,
            ticker_scope=ticker_scope,
            performance=StrategyPerformance(
                cagr=cagr,
                max_drawdown_percent=max_drawdown_percent,
                total_trades=total_trades,
            ),
            period_days=period_days,
            created_at=created_at,
        )

    return _create


@pytest.fixture
def make_period(make_snapshot):
    """Build a matching training + validation snapshot pair"""
    def _create(training_cagr=0.2, validation_cagr=0.2, **kwargs):
        return [
            make_snapshot('training', cagr=training_cagr, **kwargs),
            make_snapshot('validation', cagr=validation_cagr, **kwargs),
        ]

    return _create
