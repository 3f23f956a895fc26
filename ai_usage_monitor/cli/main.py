"""
CLI interface for AI Usage Monitor.

Provides command-line access to polling, usage snapshots, provider health
and alert management.
"""

import asyncio
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import httpx
import typer
import yaml
from rich.console import Console
from rich.table import Table

from ai_usage_monitor import __version__
from ai_usage_monitor.config.loader import MonitorConfig, MonitorSettings, load_monitor_config
from ai_usage_monitor.config.log import setup_logging
from ai_usage_monitor.core.evaluator import UsageEvaluator
from ai_usage_monitor.core.scheduler import PollingScheduler, TickReport
from ai_usage_monitor.credentials import CredentialResolver, EnvCredentialResolver
from ai_usage_monitor.errors import MonitorError
from ai_usage_monitor.providers import get_adapter
from ai_usage_monitor.storage.models import (
    Alert,
    Budget,
    CreditThreshold,
    ProjectedRunOut,
    Provider,
    ProviderHealth,
    ProviderUsage,
    SpendThreshold,
)
from ai_usage_monitor.storage.repository import MetricsStore, get_store

app = typer.Typer(help="Monitor AI provider usage, budgets and alerts.")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DEFAULT_CONFIG_PATH = "ai_usage_monitor.yaml"

HEALTH_STYLES = {
    ProviderHealth.UNKNOWN: "dim",
    ProviderHealth.OK: "green",
    ProviderHealth.DEGRADED: "yellow",
    ProviderHealth.NEEDS_ATTENTION: "red",
}


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help=f"Path to YAML configuration (defaults to ./{DEFAULT_CONFIG_PATH} when present)"
    ),
    db: Optional[str] = typer.Option(
        None,
        "--db",
        help="SQLite database path, overrides monitor.database"
    ),
):
    """AI Usage Monitor CLI."""
    ctx.obj = {"config": config, "db": db}
    if ctx.invoked_subcommand is None:
        console.print(f"AI Usage Monitor {__version__} - Use --help to see available commands")


def _load_config(config_path: Optional[str]) -> MonitorConfig:
    """Load the explicit config, the default file if present, or defaults."""
    if config_path:
        return load_monitor_config(config_path)
    if Path(DEFAULT_CONFIG_PATH).exists():
        return load_monitor_config(DEFAULT_CONFIG_PATH)
    return MonitorConfig()


def _setup(ctx: typer.Context) -> Tuple[MonitorConfig, MetricsStore]:
    """Resolve configuration and store for a command, exiting on bad config."""
    options = ctx.obj or {}
    try:
        config = _load_config(options.get("config"))
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    store = get_store(options.get("db") or config.settings.database)
    return config, store


def _build_credentials() -> CredentialResolver:
    return EnvCredentialResolver()


def _build_evaluator(store: MetricsStore, settings: MonitorSettings) -> UsageEvaluator:
    return UsageEvaluator(
        store,
        cooldown=timedelta(minutes=settings.alert_cooldown_minutes),
        burn_rate_window=timedelta(days=settings.burn_rate_window_days),
    )


def _build_scheduler(store: MetricsStore, settings: MonitorSettings, client: httpx.AsyncClient) -> PollingScheduler:
    return PollingScheduler(
        store,
        _build_credentials(),
        _build_evaluator(store, settings),
        client,
        interval=settings.poll_interval_seconds,
        request_timeout=settings.request_timeout_seconds,
        poll_immediately=settings.poll_immediately,
    )


@app.command()
def init(ctx: typer.Context):
    """Initialize the database and register configured providers, budgets and alerts."""
    config, store = _setup(ctx)
    try:
        counts = asyncio.run(_seed(store, config))
    except MonitorError as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Database initialized at {store.db_path}")
    console.print(
        f"  {counts['providers']} provider(s) added, {counts['budgets']} budget(s) saved, "
        f"{counts['alerts']} alert(s) added"
    )
    sys.exit(EXIT_CODE_PASS)


async def _seed(store: MetricsStore, config: MonitorConfig) -> Dict[str, int]:
    """Create the schema and register declared entities.

    Re-running is safe: existing providers keep their registration (only the
    enabled flag follows the config), budgets are upserted and identical
    alerts are not added twice.
    """
    await store.initialize_schema()
    counts = {"providers": 0, "budgets": 0, "alerts": 0}

    for entry in config.providers:
        existing = await store.get_provider(entry.id)
        if existing is None:
            await store.add_provider(Provider(
                id=entry.id,
                name=entry.name,
                kind=entry.kind,
                enabled=entry.enabled,
                api_key_ref=entry.api_key_ref,
            ))
            counts["providers"] += 1
        elif existing.enabled != entry.enabled:
            await store.set_provider_enabled(entry.id, entry.enabled)

    for entry in config.budgets:
        await store.save_budget(Budget(
            provider_id=entry.provider,
            period=entry.period,
            soft_limit=entry.soft_limit,
            hard_limit=entry.hard_limit,
            notes=entry.notes,
        ))
        counts["budgets"] += 1

    for entry in config.alerts:
        existing_rules = [a.rule.to_dict() for a in await store.list_alerts(entry.provider)]
        if entry.rule.to_dict() in existing_rules:
            continue
        await store.save_alert(Alert(provider_id=entry.provider, rule=entry.rule))
        counts["alerts"] += 1

    return counts


@app.command()
def poll(ctx: typer.Context):
    """Poll every enabled provider once and evaluate budgets and alerts."""
    config, store = _setup(ctx)
    settings = config.settings
    setup_logging(settings.log_level, settings.log_file)

    try:
        report = asyncio.run(_poll_once(store, settings))
    except MonitorError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_tick(report)
    sys.exit(EXIT_CODE_FAIL if report.failures else EXIT_CODE_PASS)


async def _poll_once(store: MetricsStore, settings: MonitorSettings) -> TickReport:
    async with httpx.AsyncClient(timeout=settings.request_timeout_seconds) as client:
        scheduler = _build_scheduler(store, settings, client)
        return await scheduler.tick()


@app.command()
def run(ctx: typer.Context):
    """Run the polling loop until interrupted."""
    config, store = _setup(ctx)
    settings = config.settings
    setup_logging(settings.log_level, settings.log_file)

    console.print(
        f"Polling every {settings.poll_interval_seconds:g}s "
        f"(database {store.db_path}). Press Ctrl+C to stop."
    )
    try:
        asyncio.run(_run_forever(store, settings))
    except KeyboardInterrupt:
        console.print("Stopped")
    except MonitorError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


async def _run_forever(store: MetricsStore, settings: MonitorSettings) -> None:
    await store.initialize_schema()
    async with httpx.AsyncClient(timeout=settings.request_timeout_seconds) as client:
        scheduler = _build_scheduler(store, settings, client)
        task = scheduler.start()
        try:
            await task
        finally:
            await scheduler.stop(timeout=settings.request_timeout_seconds)


@app.command()
def usage(
    ctx: typer.Context,
    live: bool = typer.Option(
        False,
        "--live",
        "-l",
        help="Query provider APIs directly instead of the local store"
    ),
):
    """Show today's and month-to-date usage per provider."""
    config, store = _setup(ctx)
    try:
        rows = asyncio.run(_collect_usage(store, config.settings, live))
    except MonitorError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not rows:
        console.print("\n[bold yellow]No providers registered[/]")
        console.print("\nRun `ai-usage-monitor init` with a configuration listing your providers.\n")
        sys.exit(EXIT_CODE_PASS)

    _display_usage(rows)
    failed = any(error for _, _, error, _ in rows)
    sys.exit(EXIT_CODE_FAIL if failed else EXIT_CODE_PASS)


async def _collect_usage(store: MetricsStore, settings: MonitorSettings, live: bool):
    """Return (provider, usage, error, health) rows.

    Stored snapshots carry the provider health so that usage zeroed by
    failing polls is not mistaken for idle usage. Live rows have no health.
    """
    providers = await store.list_providers()
    rows: List[Tuple[Provider, Optional[ProviderUsage], Optional[str], Optional[ProviderHealth]]] = []

    if not live:
        evaluator = _build_evaluator(store, settings)
        for provider in providers:
            snapshot = await evaluator.snapshot(provider)
            rows.append((provider, snapshot, None, await evaluator.provider_health(provider)))
        return rows

    credentials = _build_credentials()
    async with httpx.AsyncClient(timeout=settings.request_timeout_seconds) as client:
        for provider in providers:
            if not provider.enabled:
                continue
            try:
                adapter = get_adapter(provider, client)
                snapshot = await asyncio.wait_for(
                    adapter.get_current_usage(credentials.get(provider.credential_key)),
                    timeout=settings.request_timeout_seconds,
                )
            except asyncio.TimeoutError:
                rows.append((provider, None, "timed out", None))
                continue
            except MonitorError as e:
                rows.append((provider, None, str(e), None))
                continue
            rows.append((provider, snapshot, None, None))
    return rows


@app.command()
def status(ctx: typer.Context):
    """Show registered providers and their health."""
    config, store = _setup(ctx)
    try:
        rows = asyncio.run(_collect_status(store, config.settings))
    except MonitorError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not rows:
        console.print("[yellow]No providers registered[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Providers")
    table.add_column("Provider")
    table.add_column("Kind")
    table.add_column("Enabled")
    table.add_column("Health")
    table.add_column("Metrics", justify="right")
    for provider, health, metric_count in rows:
        style = HEALTH_STYLES[health]
        table.add_row(
            provider.id,
            provider.kind.value,
            "yes" if provider.enabled else "no",
            f"[{style}]{health.value}[/]",
            str(metric_count),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


async def _collect_status(store: MetricsStore, settings: MonitorSettings):
    evaluator = _build_evaluator(store, settings)
    rows = []
    for provider in await store.list_providers():
        health = await evaluator.provider_health(provider)
        rows.append((provider, health, await store.count_metrics(provider.id)))
    return rows


@app.command()
def alerts(ctx: typer.Context):
    """List configured alerts and their status."""
    _, store = _setup(ctx)
    try:
        all_alerts = asyncio.run(store.list_alerts())
    except MonitorError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not all_alerts:
        console.print("[yellow]No alerts configured[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Alerts")
    table.add_column("ID")
    table.add_column("Provider")
    table.add_column("Rule")
    table.add_column("Status")
    table.add_column("Last fired")
    for alert in all_alerts:
        table.add_row(
            alert.id,
            alert.provider_id,
            describe_rule(alert.rule),
            alert.status.value,
            _format_time(alert.last_fired_at),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def snooze(ctx: typer.Context, alert_id: str = typer.Argument(..., help="Alert ID")):
    """Snooze an alert until it is reactivated."""
    _change_alert(ctx, alert_id, "snooze")


@app.command()
def disable(ctx: typer.Context, alert_id: str = typer.Argument(..., help="Alert ID")):
    """Disable an alert."""
    _change_alert(ctx, alert_id, "disable")


@app.command()
def reactivate(ctx: typer.Context, alert_id: str = typer.Argument(..., help="Alert ID")):
    """Return a snoozed, disabled or triggered alert to active."""
    _change_alert(ctx, alert_id, "reactivate")


def _change_alert(ctx: typer.Context, alert_id: str, action: str) -> None:
    config, store = _setup(ctx)
    evaluator = _build_evaluator(store, config.settings)
    handler = {
        "snooze": evaluator.snooze_alert,
        "disable": evaluator.disable_alert,
        "reactivate": evaluator.reactivate_alert,
    }[action]

    try:
        alert = asyncio.run(handler(alert_id))
    except KeyError:
        console.print(f"[red]Alert not found:[/] {alert_id}")
        sys.exit(EXIT_CODE_FAIL)
    except (ValueError, MonitorError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Alert {alert.id} is now {alert.status.value}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def purge(
    ctx: typer.Context,
    days: Optional[int] = typer.Option(
        None,
        "--days",
        "-d",
        min=1,
        help="Delete metrics older than this many days (defaults to monitor.retention_days)"
    ),
):
    """Delete metrics older than the retention period."""
    config, store = _setup(ctx)
    retention = days or config.settings.retention_days
    try:
        deleted = asyncio.run(store.purge_older_than(timedelta(days=retention)))
    except MonitorError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Deleted {deleted} metric(s) older than {retention} day(s)")
    sys.exit(EXIT_CODE_PASS)


def describe_rule(rule) -> str:
    """Human-readable summary of an alert rule."""
    level = "soft" if getattr(rule, "is_soft", False) else "hard"
    if isinstance(rule, SpendThreshold):
        return f"{rule.period.value} spend >= {_format_currency(rule.amount)} ({level})"
    if isinstance(rule, CreditThreshold):
        return f"credits <= {rule.amount:,.2f} ({level})"
    if isinstance(rule, ProjectedRunOut):
        return f"run-out within {rule.days_before} day(s)"
    return repr(rule)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


def _format_optional(value: Optional[float], suffix: str = "") -> str:
    if value is None:
        return "-"
    return f"{value:,.2f}{suffix}"


def _format_time(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC") if value else "-"


def _format_health(health: Optional[ProviderHealth]) -> str:
    if health is None:
        return "live"
    return f"[{HEALTH_STYLES[health]}]{health.value}[/]"


def _display_usage(rows) -> None:
    table = Table(title="Usage")
    table.add_column("Provider")
    table.add_column("Today tokens", justify="right")
    table.add_column("Today cost", justify="right")
    table.add_column("MTD tokens", justify="right")
    table.add_column("MTD cost", justify="right")
    table.add_column("Balance", justify="right")
    table.add_column("Credits", justify="right")
    table.add_column("Budget used", justify="right")
    table.add_column("Health")

    for provider, snapshot, error, health in rows:
        if snapshot is None:
            table.add_row(provider.id, f"[red]{error}[/]", "", "", "", "", "", "", "")
            continue
        table.add_row(
            provider.id,
            f"{snapshot.today_tokens:,}",
            _format_currency(snapshot.today_cost),
            f"{snapshot.mtd_tokens:,}",
            _format_currency(snapshot.mtd_cost),
            _format_optional(snapshot.balance),
            _format_optional(snapshot.credits),
            _format_optional(snapshot.budget_used_percentage, "%"),
            _format_health(health),
        )
    console.print(table)

    attention = [provider.id for provider, _, _, health in rows if health == ProviderHealth.NEEDS_ATTENTION]
    if attention:
        console.print(
            f"[bold red]Needs attention:[/] {', '.join(attention)} "
            "(last poll failed, see `status`)"
        )


def _display_tick(report: TickReport) -> None:
    table = Table(title="Poll result")
    table.add_column("Provider")
    table.add_column("Result")
    table.add_column("Rows written", justify="right")
    table.add_column("Alerts fired", justify="right")

    for provider_id in report.polled:
        evaluation = report.evaluations.get(provider_id)
        fired = len(evaluation.fired) if evaluation else 0
        table.add_row(provider_id, "[green]ok[/]", str(report.inserted.get(provider_id, 0)), str(fired))
    for provider_id, message in report.failures.items():
        table.add_row(provider_id, f"[red]{message}[/]", "-", "-")

    if not report.polled and not report.failures:
        console.print("[yellow]No enabled providers to poll[/]")
        return
    console.print(table)

    for evaluation in report.evaluations.values():
        for status in evaluation.exceeded_budgets:
            console.print(
                f"[bold yellow]Budget {status.level.value}:[/] {evaluation.provider_id} "
                f"{status.period.value} spend {_format_currency(status.spent)}"
            )
        for transition in evaluation.fired:
            console.print(f"[bold red]Alert fired:[/] {transition.outcome.message}")


if __name__ == "__main__":
    app()
