"""
Pydantic schemas for scoring input files (JSON / YAML)
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from src.scorer.template_scorer import (
    StrategyPerformance,
    TemplateScoreSnapshot,
    TemplateVerificationMetrics,
)


# =============================================================================
# PARAMETER SCORING
# =============================================================================

class BacktestCacheRecordIn(BaseModel):
    """
    One cached backtest row.

    Metrics stay loosely typed: the scorer decides what is missing or invalid
    and reports it per record instead of rejecting the whole file.
    """
    model_config = ConfigDict(extra="allow")

    id: Any = None
    template_id: Optional[str] = None
    parameters: Union[Dict[str, Any], str, None] = None
    sharpe_ratio: Any = None
    calmar_ratio: Any = None
    total_return: Any = None
    cagr: Any = None
    max_drawdown: Any = None
    max_drawdown_ratio: Any = None
    win_rate: Any = None
    total_trades: Any = None
    verify_sharpe_ratio: Any = None
    verify_calmar_ratio: Any = None
    verify_total_return: Any = None
    verify_cagr: Any = None
    verify_max_drawdown_ratio: Any = None

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump()


# =============================================================================
# TEMPLATE SCORING
# =============================================================================

class StrategyPerformanceIn(BaseModel):
    cagr: Optional[float] = None
    max_drawdown_percent: Optional[float] = None
    total_trades: Optional[int] = None
    total_return: Optional[float] = None
    sharpe_ratio: Optional[float] = None
    calmar_ratio: Optional[float] = None
    win_rate: Optional[float] = None


class TemplateScoreSnapshotIn(BaseModel):
    template_id: str
    strategy_id: str
    period_months: int
    period_days: Optional[int] = None
    ticker_scope: Literal['training', 'validation'] = Field(alias="scope")
    performance: Optional[StrategyPerformanceIn] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True)

    def to_snapshot(self) -> TemplateScoreSnapshot:
        performance = None
        if self.performance is not None:
            performance = StrategyPerformance(**self.performance.model_dump())
        return TemplateScoreSnapshot(
            template_id=self.template_id,
            strategy_id=self.strategy_id,
            period_months=self.period_months,
            period_days=self.period_days,
            ticker_scope=self.ticker_scope,
            performance=performance,
            created_at=self.created_at,
        )


class TemplateVerificationMetricsIn(BaseModel):
    verify_sharpe_ratio: Optional[float] = None
    verify_calmar_ratio: Optional[float] = None
    verify_cagr: Optional[float] = None
    verify_max_drawdown_ratio: Optional[float] = None

    def to_metrics(self) -> TemplateVerificationMetrics:
        return TemplateVerificationMetrics(**self.model_dump())


def parse_records(data: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Validate raw rows and return plain record mappings."""
    return [BacktestCacheRecordIn.model_validate(row).to_record() for row in data]


def parse_snapshots(data: List[Dict[str, Any]]) -> List[TemplateScoreSnapshot]:
    return [TemplateScoreSnapshotIn.model_validate(row).to_snapshot() for row in data]


def parse_verification(data: Dict[str, Dict[str, Any]]) -> Dict[str, TemplateVerificationMetrics]:
    return {
        template_id: TemplateVerificationMetricsIn.model_validate(metrics).to_metrics()
        for template_id, metrics in data.items()
    }
