#!/usr/bin/env python3
"""
Strategy Scoring - Parameter & Template Scoring Engine
Main CLI entry point
"""

import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path

# Add src/ to Python path
ROOT_DIR = Path(__file__).parent
sys.path.insert(0, str(ROOT_DIR))

import click
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from src.config import ConfigSettingsLookup, load_config
from src.scorer import ParameterScorer, TemplateScorer
from src.scorer.param_scorer import get_record_id
from src.scorer.schemas import parse_records, parse_snapshots, parse_verification
from src.utils import get_logger, setup_logging

console = Console()

VERSION = "1.0.0"


def _read_data_file(path: Path):
    """Load a JSON or YAML data file."""
    with open(path, 'r') as f:
        if path.suffix.lower() == '.json':
            return json.load(f)
        return yaml.safe_load(f)


def _fmt(value, digits: int = 3) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:.{digits}f}"
    return str(value)


@click.group()
@click.version_option(version=VERSION)
@click.option('--config', 'config_path', type=click.Path(path_type=Path),
              default=ROOT_DIR / 'config' / 'config.yaml', show_default=True,
              help='Path to config YAML')
@click.pass_context
def cli(ctx, config_path):
    """
    Strategy Scoring - rank parameter sets and templates

    \b
    Quick start:
        scoring score-params records.json            # Rank parameter sets of a template
        scoring score-templates snapshots.json       # Rank templates across periods
        scoring show-settings                        # Show resolved scoring settings
    """
    if ctx.obj is None:
        ctx.obj = {}

    try:
        ctx.obj['config'] = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Failed to load configuration:[/red] {escape(str(e))}")
        sys.exit(1)

    config = ctx.obj['config']
    setup_logging(
        log_file=config.get('logging.file', 'logs/scoring.log'),
        log_level=config.get('logging.level', 'INFO'),
        max_bytes=config.get('logging.max_bytes', 10485760),
        backup_count=config.get('logging.backup_count', 5),
        module_levels=config.get('logging.modules')
    )

    ctx.obj['logger'] = get_logger('scoring.cli')
    ctx.obj['settings_lookup'] = ConfigSettingsLookup(config)


# ==============================================================================
# PARAMETER SCORING
# ==============================================================================

@cli.command('score-params')
@click.argument('records_file', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--min-trades', type=int, default=None, help='Override minimum trade count')
@click.option('--threshold', type=float, default=None, help='Override neighbor distance threshold')
@click.option('--top', type=int, default=20, show_default=True, help='Rows to show')
@click.option('--json', 'as_json', is_flag=True, help='Print JSON instead of tables')
@click.pass_context
def score_params(ctx, records_file, min_trades, threshold, top, as_json):
    """Rank the cached parameter sets of one template"""
    logger = ctx.obj['logger']

    try:
        records = parse_records(_read_data_file(records_file) or [])
    except (ValidationError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid records file {records_file}:[/red] {escape(str(e))}")
        sys.exit(1)

    overrides = {}
    if min_trades is not None:
        overrides['min_trades'] = min_trades
    if threshold is not None:
        overrides['neighbor_threshold'] = threshold

    scorer = ParameterScorer(ctx.obj['settings_lookup'], overrides)
    summary = asyncio.run(scorer.score(records))
    logger.info(f"Scored {len(summary.scored)}/{len(records)} parameter sets from {records_file}")

    if as_json:
        click.echo(json.dumps({
            'scored': [result.to_dict() for result in summary.scored[:top]],
            'availability': {
                str(index): availability.to_dict()
                for index, availability in summary.availability_by_record.items()
            },
        }, indent=2, default=str))
        return

    table = Table(title=f"Parameter ranking ({len(summary.scored)} eligible / {len(records)} records)")
    table.add_column("#", justify="right")
    table.add_column("Record")
    table.add_column("Parameters")
    table.add_column("Sharpe", justify="right")
    table.add_column("Calmar", justify="right")
    table.add_column("Return", justify="right")
    table.add_column("Trades", justify="right")
    table.add_column("Core", justify="right")
    table.add_column("DD pen.", justify="right")
    table.add_column("Stability", justify="right")
    table.add_column("Final", justify="right", style="bold cyan")

    for rank, result in enumerate(summary.scored[:top], start=1):
        table.add_row(
            str(rank),
            result.record_id or f"[{result.record_index}]",
            json.dumps(result.parameters, sort_keys=True),
            _fmt(result.sharpe_ratio, 2),
            _fmt(result.calmar_ratio, 2),
            _fmt(result.total_return, 3),
            str(result.total_trades),
            _fmt(result.core_score),
            _fmt(result.dd_penalty),
            _fmt(result.stability_score),
            _fmt(result.final_score, 4),
        )
    console.print(table)

    excluded = [
        (index, availability)
        for index, availability in summary.availability_by_record.items()
        if not availability.eligible
    ]
    if excluded:
        skipped = Table(title=f"Excluded records ({len(excluded)})")
        skipped.add_column("Record")
        skipped.add_column("Reason code", style="yellow")
        skipped.add_column("Reason")
        for index, availability in excluded:
            record_id = get_record_id(records[index])
            skipped.add_row(record_id or f"[{index}]", availability.reason_code, availability.reason)
        console.print(skipped)


# ==============================================================================
# TEMPLATE SCORING
# ==============================================================================

@cli.command('score-templates')
@click.argument('snapshots_file', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--verification', 'verification_file', default=None,
              type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help='Verification metrics keyed by template id')
@click.option('--json', 'as_json', is_flag=True, help='Print JSON instead of tables')
@click.pass_context
def score_templates(ctx, snapshots_file, verification_file, as_json):
    """Rank templates from training/validation snapshots"""
    logger = ctx.obj['logger']

    try:
        snapshots = parse_snapshots(_read_data_file(snapshots_file) or [])
        verification = None
        if verification_file is not None:
            verification = parse_verification(_read_data_file(verification_file) or {})
    except (ValidationError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid input file:[/red] {escape(str(e))}")
        sys.exit(1)

    scorer = TemplateScorer(ctx.obj['settings_lookup'])
    results = asyncio.run(scorer.score(snapshots, verification))
    logger.info(f"Scored {len(results.scores)} templates from {len(snapshots)} snapshots")

    ranked = sorted(results.breakdowns.values(), key=lambda b: b.final_score01, reverse=True)

    if as_json:
        click.echo(json.dumps([breakdown.to_dict() for breakdown in ranked], indent=2, default=str))
        return

    table = Table(title=f"Template ranking ({len(ranked)} templates)")
    table.add_column("Template")
    table.add_column("Best strategy")
    table.add_column("Periods", justify="right")
    table.add_column("Return", justify="right")
    table.add_column("Consistency", justify="right")
    table.add_column("Risk", justify="right")
    table.add_column("Liquidity", justify="right")
    table.add_column("Verify x", justify="right")
    table.add_column("Base", justify="right")
    table.add_column("Score", justify="right", style="bold cyan")

    for breakdown in ranked:
        components = breakdown.component_averages
        table.add_row(
            breakdown.template_id,
            breakdown.strategy_id,
            str(breakdown.weights.period_count),
            _fmt(components.return_score),
            _fmt(components.consistency_score),
            _fmt(components.risk_score),
            _fmt(components.liquidity_score),
            _fmt(breakdown.verification_multiplier),
            str(breakdown.base_score100),
            str(breakdown.final_score100),
        )
    console.print(table)


# ==============================================================================
# SETTINGS
# ==============================================================================

@cli.command('show-settings')
@click.pass_context
def show_settings(ctx):
    """Show resolved scoring settings"""
    lookup = ctx.obj['settings_lookup']

    async def _resolve():
        return (
            await ParameterScorer(lookup).resolve_settings(),
            await TemplateScorer(lookup).resolve_settings(),
        )

    param_settings, template_settings = asyncio.run(_resolve())

    for title, settings in (("Parameter scoring", param_settings), ("Template scoring", template_settings)):
        table = Table(title=title)
        table.add_column("Setting")
        table.add_column("Value", justify="right")
        for name, value in asdict(settings).items():
            table.add_row(name, _fmt(value, 4))
        console.print(table)


if __name__ == '__main__':
    cli()
