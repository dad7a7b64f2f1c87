"""
CLI interface for AI Request Guard.

Inspects the usage ledger, validates configuration and examines replay logs.
"""

import logging
import sqlite3
import sys
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ai_request_guard.config.loader import load_config
from ai_request_guard.core.replay import ReplayLogger, compare_logs
from ai_request_guard.storage.db import DEFAULT_DB_PATH
from ai_request_guard.storage.repository import UsageRepository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def get_repository(db_path: str) -> UsageRepository:
    return UsageRepository(db_path)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """AI Request Guard CLI."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    if ctx.invoked_subcommand is None:
        console.print("AI Request Guard - Use --help to see available commands")


@app.command()
def init(
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the usage ledger"),
):
    """Initialize the usage ledger database."""
    try:
        get_repository(db).initialize_schema()
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def report(
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the usage ledger"),
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Only include the last N days"),
):
    """Show token usage and cost per model and per call type."""
    repository = get_repository(db)
    try:
        by_model = repository.get_usage_stats(group_by="model_name", days=days)
        by_call_type = repository.get_usage_stats(group_by="call_type", days=days)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            console.print("\n[bold yellow]No usage data found[/]")
            console.print("Run `ai-request-guard init` to initialize the database\n")
            sys.exit(EXIT_CODE_PASS)
        raise

    if not by_model:
        console.print("\n[bold yellow]No usage data found[/]\n")
        sys.exit(EXIT_CODE_PASS)

    console.print(_usage_table("Usage by model", "Model", by_model))
    console.print(_usage_table("Usage by call type", "Call type", by_call_type))
    total_cost = sum(stats["total_cost"] for stats in by_model.values())
    console.print(f"\n[bold]Total cost:[/bold] {_format_currency(total_cost)}")
    sys.exit(EXIT_CODE_PASS)


@app.command("check-config")
def check_config(path: str = typer.Argument(..., help="YAML configuration file")):
    """Validate a configuration file strictly."""
    try:
        config = load_config(path)
    except (FileNotFoundError, yaml.YAMLError, ValueError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not config.providers:
        console.print("[red]Invalid configuration:[/] No providers configured")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] {path} is valid")
    for provider in config.providers:
        console.print(f"  {provider.priority}. {provider.type.value} ({provider.model})")
    console.print(f"  Rate limit: {config.rate_limit.requests_per_minute:g} requests/minute")
    console.print(f"  Replay mode: {config.replay.mode.value}")
    sys.exit(EXIT_CODE_PASS)


@app.command("replay-stats")
def replay_stats(path: str = typer.Argument(..., help="Saved replay log")):
    """Summarize a saved replay log."""
    replay_log = _load_replay_log(path)
    stats = replay_log.get_statistics()

    table = Table(title=f"Replay log {path}")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for name, value in stats.items():
        table.add_row(name.replace("_", " "), str(value))
    console.print(table)

    by_call_type = {}
    for record in replay_log.calls:
        by_call_type[record.call_type.value] = by_call_type.get(record.call_type.value, 0) + 1
    for call_type, count in sorted(by_call_type.items()):
        console.print(f"  {call_type}: {count} calls")
    sys.exit(EXIT_CODE_PASS)


@app.command("replay-compare")
def replay_compare(
    first: str = typer.Argument(..., help="Recorded replay log"),
    second: str = typer.Argument(..., help="Replay log to compare against it"),
):
    """Report the first position where two replay logs differ."""
    divergence = compare_logs(_load_replay_log(first), _load_replay_log(second))
    if divergence is None:
        console.print("[green]✓[/] Replay logs are identical")
        sys.exit(EXIT_CODE_PASS)

    console.print(f"[red]✗[/] {divergence.describe()}")
    if divergence.expected or divergence.actual:
        console.print(f"  expected: {divergence.expected!r}")
        console.print(f"  actual:   {divergence.actual!r}")
    sys.exit(EXIT_CODE_FAIL)


def _load_replay_log(path: str) -> ReplayLogger:
    try:
        return ReplayLogger.load_from_file(path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _format_currency(amount: float) -> str:
    """Format currency to the cent, or finer for sub-cent totals."""
    if 0 < abs(amount) < 0.01:
        return f"${abs(amount):,.6f}"
    return f"${abs(amount):,.2f}"


def _usage_table(title: str, label: str, stats) -> Table:
    table = Table(title=title)
    table.add_column(label)
    table.add_column("Calls", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Input tokens", justify="right")
    table.add_column("Completion tokens", justify="right")
    table.add_column("Cost", justify="right")
    for name, row in stats.items():
        table.add_row(
            str(name),
            str(row["total_calls"]),
            str(row["total_calls"] - row["successful_calls"]),
            f"{row['input_tokens']:,}",
            f"{row['completion_tokens']:,}",
            _format_currency(row["total_cost"]),
        )
    return table


if __name__ == "__main__":
    app()
