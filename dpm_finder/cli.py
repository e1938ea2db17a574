"""
DPM Finder console.

Commands:
    dpm-finder rank [--source UID ...]
        Live table of series ranked by datapoints per minute.

    dpm-finder explain METRIC [--target cluster=X] [--show-config]
        Stream an explanation of what in the collector config drives the metric.

    dpm-finder breakdown METRIC --cluster X [--group-by job] [--aggregation sum|avg]
        Split a metric's DPM in one cluster by a label.

    dpm-finder overview [--source UID]
        Rolling scrape DPM for every cluster on a source.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import timedelta
from typing import List, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from dpm_finder import __version__
from dpm_finder.annotation.coordinator import (
    CoordinatorPhase,
    CoordinatorSnapshot,
    PipelineCoordinator,
)
from dpm_finder.config.base_config import DPMFinderConfig, load_config
from dpm_finder.errors import DPMFinderError
from dpm_finder.telemetry.models import LabelRate, RankedListSnapshot, Source
from dpm_finder.telemetry.query_executor import PrometheusQueryExecutor
from dpm_finder.telemetry.ranking import RankingAggregator
from dpm_finder.telemetry.rates import (
    BREAKDOWN_AGGREGATIONS,
    BREAKDOWN_LABELS,
    DEFAULT_BREAKDOWN_LABEL,
    RateEstimator,
)
from dpm_finder.telemetry.registry import SourceRegistry
from dpm_finder.utils.logging_config import LoggingConfig, setup_logging

logger = logging.getLogger(__name__)

console = Console()


# =============================================================================
# RENDERING
# =============================================================================

def render_ranking(snapshot: RankedListSnapshot, limit: Optional[int] = None) -> Table:
    """Table of the ranked list, highest DPM first."""
    status = "loading..." if snapshot.loading else f"{len(snapshot)} series"
    table = Table(title=f"Datapoints per minute ({status})")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Metric", style="cyan")
    table.add_column("Source")
    table.add_column("DPM", justify="right", style="bold")

    rows = snapshot.as_rows()
    if limit is not None:
        rows = rows[:limit]
    for position, (name, source_uid, dpm) in enumerate(rows, start=1):
        table.add_row(str(position), name, source_uid, f"{dpm:,.2f}")
    return table


def render_label_rates(title: str, rates: List[LabelRate]) -> Table:
    label = rates[0].label if rates else "value"
    table = Table(title=title)
    table.add_column(label, style="cyan")
    table.add_column("DPM", justify="right", style="bold")
    for rate in rates:
        table.add_row(rate.value or "(empty)", f"{rate.dpm:,.2f}")
    return table


def render_analysis(snapshot: CoordinatorSnapshot, show_config: bool = False):
    parts = []
    if show_config and snapshot.config_text:
        parts.append(Panel(
            Syntax(snapshot.config_text, "hcl", word_wrap=True),
            title=f"Collector config ({snapshot.collector_id or snapshot.target})",
        ))

    if snapshot.phase == CoordinatorPhase.RESOLVING_CONFIG:
        parts.append(f"[dim]Resolving collector for {snapshot.target}...[/dim]")
    elif snapshot.text:
        parts.append(Markdown(snapshot.text))
    elif snapshot.phase == CoordinatorPhase.STREAMING:
        parts.append("[dim]Waiting for the model...[/dim]")

    if snapshot.phase == CoordinatorPhase.ERRORED:
        if snapshot.config_text and not show_config:
            parts.append(f"[yellow]{snapshot.config_text}[/yellow]")
        parts.append(f"[red]{snapshot.message}[/red]")
    return Group(*parts)


# =============================================================================
# COMMANDS
# =============================================================================

def _sources(config: DPMFinderConfig, uids: Optional[List[str]]) -> List[Source]:
    registry = SourceRegistry.from_config(config.sources)
    sources = registry.select(uids or None)
    if not sources:
        raise DPMFinderError("No Prometheus sources configured")
    return sources


async def cmd_rank(args: argparse.Namespace, config: DPMFinderConfig) -> int:
    sources = _sources(config, args.source)
    aggregator = RankingAggregator.from_config(config.query)

    try:
        with Live(render_ranking(aggregator.snapshot(), args.limit), console=console) as live:
            aggregator.subscribe(lambda snap: live.update(render_ranking(snap, args.limit)))
            aggregator.rank(sources)
            final = await aggregator.wait_settled()
            live.update(render_ranking(final, args.limit))
    finally:
        await aggregator.aclose()
        await aggregator.executor.close()

    for failure in final.failures:
        where = f"{failure.source}/{failure.series}" if failure.series else failure.source
        console.print(f"[yellow]skipped {where}: {failure.message}[/yellow]")
    return 0


async def cmd_explain(args: argparse.Namespace, config: DPMFinderConfig) -> int:
    coordinator = PipelineCoordinator.from_config(config)

    try:
        with Live(console=console, refresh_per_second=8) as live:
            coordinator.subscribe(
                lambda snap: live.update(render_analysis(snap, args.show_config))
            )
            coordinator.select(args.metric, args.target)
            final = await coordinator.wait()
    finally:
        await coordinator.aclose()

    return 1 if final.phase == CoordinatorPhase.ERRORED else 0


async def cmd_breakdown(args: argparse.Namespace, config: DPMFinderConfig) -> int:
    source = _sources(config, [args.source] if args.source else None)[0]
    executor = PrometheusQueryExecutor(timeout=config.query.timeout_seconds)
    estimator = RateEstimator(executor, group_label=config.query.group_label)

    try:
        rates = await estimator.breakdown(
            source,
            args.metric,
            args.cluster,
            group_by=args.group_by,
            window=timedelta(minutes=args.window) if args.window else None,
            aggregation=args.aggregation,
        )
    finally:
        await executor.close()

    if not rates:
        console.print(f"[yellow]No data for {args.metric} in {args.cluster}[/yellow]")
        return 0
    title = f"{args.metric} in {args.cluster} ({args.aggregation} by {args.group_by})"
    console.print(render_label_rates(title, rates))
    return 0


async def cmd_overview(args: argparse.Namespace, config: DPMFinderConfig) -> int:
    source = _sources(config, [args.source] if args.source else None)[0]
    executor = PrometheusQueryExecutor(timeout=config.query.timeout_seconds)
    estimator = RateEstimator(executor, group_label=config.query.group_label)

    try:
        rates = await estimator.cluster_overview(
            source, window=timedelta(minutes=config.query.window_minutes)
        )
    finally:
        await executor.close()

    if not rates:
        console.print(f"[yellow]No scrape data on {source.uid}[/yellow]")
        return 0
    console.print(render_label_rates(f"Rolling DPM on {source.name or source.uid}", rates))
    console.print(f"[bold]Total:[/bold] {sum(r.dpm for r in rates):,.2f} DPM")
    return 0


COMMANDS = {
    "rank": cmd_rank,
    "explain": cmd_explain,
    "breakdown": cmd_breakdown,
    "overview": cmd_overview,
}


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dpm-finder",
        description="Find the metrics that drive ingestion volume",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  dpm-finder rank                                   # Rank across all sources
  dpm-finder rank --source prom1 --limit 20         # One source, top 20
  dpm-finder explain http_requests_total --target cluster=prod
  dpm-finder breakdown http_requests_total --cluster prod --group-by pod
  dpm-finder breakdown http_requests_total --cluster prod --aggregation avg
  dpm-finder overview --source prom1
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="Config file or directory")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--log-format", choices=["console", "json"])

    subparsers = parser.add_subparsers(dest="command", required=True)

    rank = subparsers.add_parser("rank", help="Rank series by DPM")
    rank.add_argument("--source", action="append", help="Source uid (repeatable)")
    rank.add_argument("--limit", type=int, help="Show only the top N series")

    explain = subparsers.add_parser("explain", help="Explain what drives a metric's DPM")
    explain.add_argument("metric", help="Metric name")
    explain.add_argument("--target", help="Collector target, e.g. cluster=prod")
    explain.add_argument("--show-config", action="store_true", help="Print the collector config")

    breakdown = subparsers.add_parser("breakdown", help="Split a metric's DPM by label")
    breakdown.add_argument("metric", help="Metric name")
    breakdown.add_argument("--cluster", required=True, help="Cluster to inspect")
    breakdown.add_argument(
        "--group-by", default=DEFAULT_BREAKDOWN_LABEL, choices=BREAKDOWN_LABELS
    )
    breakdown.add_argument(
        "--aggregation", default="sum", choices=BREAKDOWN_AGGREGATIONS,
        help="sum: total DPM over the window; avg: mean per-series DPM",
    )
    breakdown.add_argument(
        "--window", type=float, help="Counting window in minutes (5 for sum, 60 for avg)"
    )
    breakdown.add_argument("--source", help="Source uid (defaults to the first configured)")

    overview = subparsers.add_parser("overview", help="Rolling scrape DPM per cluster")
    overview.add_argument("--source", help="Source uid (defaults to the first configured)")

    return parser


async def run(args: argparse.Namespace) -> int:
    config = await load_config(args.config)
    return await COMMANDS[args.command](args, config)


def main(argv: Optional[List[str]] = None) -> int:
    """Console script entry point."""
    args = build_parser().parse_args(argv)

    logging_config = LoggingConfig()
    if args.log_level:
        logging_config.level = args.log_level
    if args.log_format:
        logging_config.format = args.log_format
    setup_logging(logging_config)

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130
    except (DPMFinderError, KeyError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
