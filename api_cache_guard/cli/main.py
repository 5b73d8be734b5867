"""
CLI interface for API Cache Guard.

Operator commands for the response cache, API quotas and the LLM log.
"""

import logging
import os
import sqlite3
import sys
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from api_cache_guard.config.cache_config import get_cache_config_info
from api_cache_guard.config.loader import QuotaFileConfig, apply_service_limits, load_quota_config
from api_cache_guard.core.cache_store import CacheStore
from api_cache_guard.core.exchange_log import ExchangeLog
from api_cache_guard.core.quota import GOOGLE_MAPS_SERVICE, QuotaTracker
from api_cache_guard.storage.db import DEFAULT_DB_PATH
from api_cache_guard.storage.repository import UsageRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_ENV_VAR = "API_CACHE_GUARD_DB"


def _db_path(db: Optional[str]) -> str:
    return db or os.environ.get(DB_ENV_VAR, DEFAULT_DB_PATH)


def _get_tracker(db: Optional[str]) -> QuotaTracker:
    return QuotaTracker(UsageRepository(_db_path(db)))


def _format_mb(size: int) -> str:
    return f"{size / (1024 * 1024):.2f} MB"


def _load_config(config: Optional[str]) -> Optional[QuotaFileConfig]:
    if config is None:
        return None
    try:
        return load_quota_config(config)
    except (FileNotFoundError, yaml.YAMLError, ValueError) as e:
        console.print(f"[red]Error loading config:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _get_cache_store(file_config: Optional[QuotaFileConfig]) -> CacheStore:
    if file_config is None:
        return CacheStore()
    return CacheStore(base_dir=file_config.cache.base_dir, config=file_config.cache.to_cache_config())


def _get_exchange_log(file_config: Optional[QuotaFileConfig]) -> ExchangeLog:
    return ExchangeLog(base_dir=file_config.cache.base_dir if file_config else None)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show cache and quota log records")
):
    """API Cache Guard CLI."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    if ctx.invoked_subcommand is None:
        console.print("API Cache Guard - Use --help to see available commands")


@app.command()
def init(
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="YAML file with service limits to apply")
):
    """Initialize the quota database."""
    file_config = _load_config(config)
    try:
        initialize_schema(_db_path(db))
        console.print("[green]✓[/] Database initialized successfully")
        if file_config is not None:
            apply_service_limits(_get_tracker(db), file_config)
            console.print(f"[green]✓[/] Applied limits for {len(file_config.services)} services")
        sys.exit(EXIT_CODE_PASS)
    except (sqlite3.Error, OSError) as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("cache-stats")
def cache_stats(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="YAML file with cache settings")
):
    """Clear expired entries, then show cache size and TTLs."""
    file_config = _load_config(config)
    store = _get_cache_store(file_config)
    removed = store.clear_expired_cache()
    stats = store.get_cache_stats()
    configuration = store.get_cache_configuration()

    table = Table(title="Response Cache")
    table.add_column("Partition")
    table.add_column("Files", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("TTL")
    table.add_column("Description")
    info = get_cache_config_info(store.config)
    for name, partition in stats.by_partition.items():
        table.add_row(
            name,
            str(partition.files),
            _format_mb(partition.size),
            info[name]["ttl"],
            info[name]["description"]
        )
    table.add_row("[bold]total[/]", str(stats.total_files), _format_mb(stats.total_size), "", "")
    console.print(table)

    if file_config is not None and file_config.cache.base_dir:
        source = "config file"
    elif configuration["is_custom_dir"]:
        source = "CACHE_BASE_DIR environment variable"
    else:
        source = "Default (.cache in working directory)"
    console.print(f"Directory: {configuration['base_dir']} ({source})")
    console.print(f"Expired entries removed: {removed}")


@app.command("clear-expired")
def clear_expired(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="YAML file with cache settings")
):
    """Delete expired cache entries."""
    removed = _get_cache_store(_load_config(config)).clear_expired_cache()
    console.print(f"[green]✓[/] Removed {removed} expired cache entries")


@app.command()
def usage(
    service: str = typer.Option(GOOGLE_MAPS_SERVICE, "--service", "-s", help="Service name"),
    days: int = typer.Option(7, "--days", "-d", help="Number of days to show"),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database path")
):
    """Show a service's quota and recent usage."""
    tracker = _get_tracker(db)
    stats = tracker.get_usage_stats(service, days)
    today = tracker.today()

    status = "enabled" if stats.config.enabled else "[red]disabled[/]"
    console.print(f"\n[bold]Service:[/bold] {service} ({status})")
    console.print(f"Daily limit: {stats.config.daily_limit}")
    console.print(
        f"Today ({today}): {stats.today_usage(today)} calls, "
        f"{stats.remaining(today)} remaining ({stats.percent_used(today)}% used)"
    )
    console.print(f"Total over {days} days: {stats.total_usage}")

    breakdown = stats.daily_breakdown()
    if not breakdown:
        console.print("\n[dim]No usage recorded for this period.[/]")
        return

    table = Table(title="Daily breakdown")
    table.add_column("Date")
    table.add_column("Endpoint")
    table.add_column("Calls", justify="right")
    for day in breakdown:
        for endpoint, count in sorted(day["endpoints"].items()):
            table.add_row(day["date"], endpoint, str(count))
    console.print(table)


@app.command("set-limit")
def set_limit(
    service: str = typer.Argument(..., help="Service name"),
    daily_limit: Optional[int] = typer.Option(None, "--daily-limit", "-l", help="Calls allowed per day"),
    enabled: Optional[bool] = typer.Option(None, "--enabled/--disabled", help="Enable or disable the service"),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database path")
):
    """Update a service's daily limit or kill-switch."""
    if daily_limit is not None and daily_limit < 0:
        console.print("[red]Error:[/] --daily-limit must be >= 0")
        sys.exit(EXIT_CODE_FAIL)
    if daily_limit is None and enabled is None:
        console.print("[red]Error:[/] No valid updates provided")
        sys.exit(EXIT_CODE_FAIL)

    try:
        config = _get_tracker(db).update_config(service, daily_limit=daily_limit, enabled=enabled)
    except sqlite3.Error as e:
        console.print(f"[red]Error updating API configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    state = "enabled" if config.enabled else "disabled"
    console.print(f"[green]✓[/] {service}: daily limit {config.daily_limit}, {state}")


@app.command("reset-usage")
def reset_usage(
    service: str = typer.Argument(..., help="Service name"),
    date: Optional[str] = typer.Option(None, "--date", help="Day to reset (YYYY-MM-DD), today by default"),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database path")
):
    """Delete a service's usage counters for one day."""
    tracker = _get_tracker(db)
    try:
        deleted = tracker.reset_daily_usage(service, date)
    except sqlite3.Error as e:
        console.print(f"[red]Error resetting API usage:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Daily usage reset for {service} on {date or tracker.today()} ({deleted} counters)")


@app.command("cleanup-usage")
def cleanup_usage(
    older_than_days: int = typer.Option(30, "--older-than-days", help="Age in days"),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database path")
):
    """Delete usage counters older than the given age."""
    deleted = _get_tracker(db).cleanup_old_records(older_than_days)
    console.print(f"[green]✓[/] Cleaned up {deleted} old records")


@app.command("llm-log-stats")
def llm_log_stats(
    itinerary: Optional[str] = typer.Option(None, "--itinerary", "-i", help="Restrict to one itinerary"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="YAML file with cache settings")
):
    """Show how many LLM exchanges are logged."""
    log = _get_exchange_log(_load_config(config))
    if itinerary is not None:
        try:
            stats = log.get_chatgpt_cache_stats(itinerary)
        except ValueError as e:
            console.print(f"[red]Error:[/] {str(e)}")
            sys.exit(EXIT_CODE_FAIL)
        console.print(f"\n[bold]Itinerary:[/bold] {itinerary}")
        console.print(f"Requests: {stats.request_count}")
        console.print(f"Responses: {stats.response_count}")
        console.print(f"Conversations: {stats.conversation_count}")
        console.print(f"Files: {stats.total_files}")
        return

    all_stats = log.get_all_chatgpt_cache_stats()
    table = Table(title="LLM exchange log")
    table.add_column("Itinerary")
    table.add_column("Requests", justify="right")
    table.add_column("Responses", justify="right")
    table.add_column("Files", justify="right")
    for trip_id, trip in all_stats.trip_stats.items():
        table.add_row(trip_id, str(trip.request_count), str(trip.response_count), str(trip.total_files))
    table.add_row(
        f"[bold]{all_stats.total_trips} trips[/]",
        str(all_stats.total_requests),
        str(all_stats.total_responses),
        str(all_stats.total_files)
    )
    console.print(table)


@app.command("llm-log-cleanup")
def llm_log_cleanup(
    older_than_days: int = typer.Option(30, "--older-than-days", help="Age in days"),
    itinerary: Optional[str] = typer.Option(None, "--itinerary", "-i", help="Restrict to one itinerary"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="YAML file with cache settings")
):
    """Delete LLM log files older than the given age."""
    log = _get_exchange_log(_load_config(config))
    result = log.cleanup_old_chatgpt_cache(older_than_days, itinerary)
    console.print(f"[green]✓[/] Deleted {result.deleted_files} old LLM log files")
    for error in result.errors:
        console.print(f"[yellow]![/] {error}")
    if result.errors:
        sys.exit(EXIT_CODE_FAIL)


if __name__ == "__main__":
    app()
