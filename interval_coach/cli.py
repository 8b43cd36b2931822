"""Command-line interface for the interval coach."""

import json
import logging
from datetime import date
from pathlib import Path
from typing import Any, Dict, List

import click
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import config
from .analysis import (
    build_learning_narrative,
    compute_interval_metrics_from_streams,
    compute_learning_evidence,
    derive_context_key,
    evaluate_session,
    get_weekly_key_suggestion,
    select_weekly_plan,
)
from .analysis.interval_evaluation import DoseTarget
from .analysis.outcome_learning import GLOBAL_CONTEXT

console = Console()


def load_json(path: str) -> Any:
    """Read a JSON input file, reporting failures as CLI errors."""
    try:
        with Path(path).open(encoding="utf-8") as handle:
            return json.load(handle)
    except (OSError, json.JSONDecodeError) as e:
        raise click.ClickException(f"Cannot read {path}: {e}")


def _unwrap(data: Any, key: str) -> List[Dict[str, Any]]:
    """Accept either a bare list or an object holding the list under `key`."""
    if isinstance(data, dict):
        data = data.get(key, [])
    if not isinstance(data, list):
        raise click.ClickException(f"Expected a list of {key}")
    return data


def _fmt(value: Any, digits: int = 1) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:.{digits}f}"
    return str(value)


def _dump(data: Any):
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL from the environment")
def cli(log_level):
    """Interval session scoring, outcome learning and weekly key planning."""
    logging.basicConfig(
        level=(log_level or config.LOG_LEVEL).upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


@cli.command()
@click.argument("intervals_file", type=click.Path(dir_okay=False))
@click.option("--intent", default="unknown", help="Planned intent: racepace, threshold or vo2")
@click.option("--target-km", type=float, default=None, help="Planned quality volume in km")
@click.option("--target-min", type=float, default=None, help="Planned quality volume in minutes")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def evaluate(intervals_file, intent, target_km, target_min, as_json):
    """Score an interval session from intervals.icu segments."""
    intervals = _unwrap(load_json(intervals_file), "icu_intervals")
    target = DoseTarget(target_km=target_km, target_min=target_min) if (target_km or target_min) else None
    scores = evaluate_session(intervals, intent, target)

    if as_json:
        _dump(scores.to_dict())
        return

    table = Table(title="Interval Session", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Overall", f"[bold]{scores.overall}[/bold]")
    table.add_row("Execution", str(scores.execution))
    table.add_row("Dose", str(scores.dose))
    table.add_row("Strain", str(scores.strain))
    table.add_row("Intent match", str(scores.intent_match))
    table.add_row("Intent", scores.intent.value)
    table.add_row("Reps", str(scores.rep_count))
    table.add_row("Quality km", _fmt(scores.quality_km, 2))
    table.add_row("Pace CV", _fmt(scores.pace_cv, 3))
    table.add_row("Fade %", _fmt(scores.fade_pct, 3))
    console.print(table)

    for note in scores.notes:
        console.print(f"  • {note}")


@cli.command()
@click.argument("streams_file", type=click.Path(dir_okay=False))
@click.option("--type", "interval_type", type=click.Choice(["vo2", "threshold", "racepace"]), default=None)
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def hrr60(streams_file, interval_type, as_json):
    """Heart rate recovery (HRR60) from raw activity streams."""
    streams = load_json(streams_file)
    if not isinstance(streams, dict):
        raise click.ClickException("Expected an object with time/heartrate/velocity_smooth")

    metrics = compute_interval_metrics_from_streams(streams, interval_type=interval_type)

    if as_json:
        _dump(metrics)
        return

    table = Table(title="Heart Rate Recovery", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for key, value in metrics.items():
        table.add_row(key, _fmt(value))
    console.print(table)


@cli.command()
@click.argument("events_file", type=click.Path(dir_okay=False))
@click.option("--context-key", default=None, help="Context key to evaluate (default: all events)")
@click.option("--signals", "signals_file", type=click.Path(dir_okay=False), default=None,
              help="JSON file with today's signals; derives the context key")
@click.option("--as-of", default=None, help="Evaluation day (YYYY-MM-DD), default today")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def learn(events_file, context_key, signals_file, as_of, as_json):
    """Summarize learned strategy outcomes for a context."""
    events = _unwrap(load_json(events_file), "events")
    if signals_file:
        context_key = derive_context_key(load_json(signals_file))
    context_key = context_key or GLOBAL_CONTEXT
    as_of = as_of or date.today().isoformat()

    evidence = compute_learning_evidence(events, as_of, context_key)
    narrative = build_learning_narrative(evidence)

    if as_json:
        _dump({
            "context_key": evidence.context_key,
            "recommendation": vars(evidence.recommendation),
            "arms": {arm: vars(stats) for arm, stats in evidence.arms.items()},
            "sample_count": evidence.sample_count,
            "red_flag_count": evidence.red_flag_count,
            "narrative": narrative,
        })
        return

    table = Table(title=f"Strategy Outcomes ({evidence.context_key})", box=box.ROUNDED)
    table.add_column("Arm", style="cyan")
    table.add_column("n_eff", justify="right")
    table.add_column("Events", justify="right")
    table.add_column("P(GOOD)", justify="right", style="green")
    table.add_column("P(NEUTRAL)", justify="right")
    table.add_column("P(BAD)", justify="right", style="red")
    for arm, stats in evidence.arms.items():
        table.add_row(
            arm,
            _fmt(stats.n_eff),
            str(stats.n_events),
            _fmt(stats.good_posterior, 2),
            _fmt(stats.neutral_posterior, 2),
            _fmt(stats.bad_posterior, 2),
        )
    console.print(table)
    console.print(Panel(narrative, title="Learning", style="bold blue"))


@cli.command("weekly-key")
@click.argument("context_file", type=click.Path(dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def weekly_key(context_file, as_json):
    """Suggest this week's key workout."""
    suggestion = get_weekly_key_suggestion(load_json(context_file))

    if as_json:
        _dump(suggestion.to_dict())
        return

    style = "orange3" if suggestion.key_type is None else "bold green"
    console.print(Panel.fit(suggestion.key_label, title="Key Workout", style=style))
    table = Table(box=box.SIMPLE)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Template", _fmt(suggestion.template_id))
    table.add_row("Progression step", str(suggestion.progression_step))
    table.add_row("Reps", _fmt(suggestion.reps))
    table.add_row("Taper", "yes" if suggestion.taper_applied else "no")
    table.add_row("Scaling", str(suggestion.scaling_level))
    table.add_row("Reason", suggestion.reason)
    console.print(table)


@cli.command("weekly-plan")
@click.argument("context_file", type=click.Path(dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def weekly_plan(context_file, as_json):
    """Select the workouts for a training week."""
    result = select_weekly_plan(load_json(context_file))

    if as_json:
        _dump(result.to_dict())
        return

    table = Table(title="Weekly Plan", box=box.ROUNDED)
    table.add_column("Workout", style="cyan")
    table.add_column("Type")
    table.add_column("Key", justify="center")
    table.add_column("Source")
    table.add_column("Target load", justify="right")
    for workout in result.selected:
        table.add_row(
            workout.name,
            workout.type_key,
            "★" if workout.is_key else "",
            workout.source,
            _fmt(workout.target_workload),
        )
    console.print(table)

    flags = []
    if result.runfloor_blocked:
        flags.append("[orange3]run-floor block[/orange3]")
    if result.deload_applied:
        flags.append("[yellow]deload[/yellow]")
    if result.taper_applied:
        flags.append("[blue]taper[/blue]")
    if flags:
        console.print("Overlays: " + ", ".join(flags))
    for line in result.rationale:
        console.print(f"  • {line}")


def main():
    """Main entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[orange3]Operation cancelled by user.[/orange3]")


if __name__ == "__main__":
    main()
