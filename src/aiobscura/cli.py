"""
aiobscura CLI - observe AI coding assistants through their local logs.

Commands read configuration from ``$XDG_CONFIG_HOME/aiobscura/config.toml``
and the store at ``$XDG_DATA_HOME/aiobscura/data.db``.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from aiobscura import __version__
from aiobscura.config import Settings, get_config_path, load_settings
from aiobscura.db.connection import Database
from aiobscura.exceptions import AiobscuraError, ConfigError, LLMError, NetworkError
from aiobscura.logging_config import setup_logging
from aiobscura.utils.formatting import format_relative_time, format_tokens, shorten_path

app = typer.Typer(
    name="aiobscura",
    help="aiobscura - Observe AI coding assistants through their local logs",
    no_args_is_help=True,
)
collector_app = typer.Typer(
    help="Manage the remote collector integration",
    no_args_is_help=True,
)
app.add_typer(collector_app, name="collector")

console = Console()


def _settings() -> Settings:
    """Load settings and logging, exiting with code 1 on config errors."""
    try:
        settings = load_settings()
    except ConfigError as e:
        console.print(f"[bold red]Config error:[/bold red] {e}")
        raise typer.Exit(1)

    try:
        setup_logging(context="cli", config=settings.logging)
    except PermissionError:
        logging.basicConfig(level=logging.INFO)
    return settings


def _open_db(settings: Settings) -> Database:
    try:
        return Database.open(settings.database_path)
    except AiobscuraError as e:
        console.print(f"[bold red]Error:[/bold red] cannot open database: {e}")
        raise typer.Exit(1)


def _resolve_session_id(db: Database, session_id: str) -> str:
    """Accept a full session id or a unique prefix."""
    from aiobscura.db.repositories import SessionRepository

    with db.session() as session:
        repo = SessionRepository(session)
        if repo.get(session_id) is not None:
            return session_id
        matches = repo.find_by_prefix(session_id)
    if len(matches) == 1:
        return matches[0].id
    if not matches:
        console.print(f"[bold red]Error:[/bold red] Session not found: {session_id}")
    else:
        console.print(f"[bold red]Error:[/bold red] Ambiguous session prefix: {session_id}")
        for match in matches:
            console.print(f"  {match.id}")
    raise typer.Exit(1)


@app.callback(invoke_without_command=True)
def main(
    version: bool = typer.Option(False, "--version", help="Show version and exit"),
) -> None:
    if version:
        console.print(f"aiobscura {__version__}")
        raise typer.Exit(0)


# ----------------------------------------------------------------------
# sync
# ----------------------------------------------------------------------


def _print_sync_result(result, verbose: int) -> None:
    console.print(
        f"[green]✓[/green] Synced {result.files_processed} files "
        f"({result.files_skipped} unchanged): {result.messages_inserted} messages, "
        f"{result.sessions_created} new sessions, {result.sessions_updated} updated"
    )
    if verbose >= 1:
        for file_result in result.file_results:
            if file_result.new_messages > 0:
                console.print(
                    f"  {shorten_path(str(file_result.path))}: +{file_result.new_messages} messages"
                )
                if verbose >= 2:
                    for summary in file_result.message_summaries:
                        console.print(f"    [{summary.author_role}] {summary.preview}")
        for warning in result.warnings:
            console.print(f"  [yellow]⚠[/yellow] {warning}")
    for path, error in result.errors:
        console.print(f"  [red]✗[/red] {shorten_path(path)}: {error}")


def _publish_touched(publisher, result, batch_size: int) -> None:
    for session_id in result.touched_sessions():
        publisher.publish_all(session_id, batch_size)
    publisher.resume_incomplete(batch_size)
    publisher.complete_stale_sessions()


@app.command()
def sync(
    dry_run: bool = typer.Option(False, "--dry-run", help="Parse without writing to the store"),
    watch: bool = typer.Option(False, "--watch", help="Keep syncing as logs change"),
    poll: int = typer.Option(2000, "--poll", help="Watch poll interval in milliseconds"),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="-v per file, -vv per message"),
) -> None:
    """
    Ingest new assistant log content into the local store.

    Publishes to the collector when it is configured, and runs the
    analytics triggers after every pass.
    """
    from aiobscura.analytics.plugins import create_default_engine
    from aiobscura.assessment.assessor import SessionAssessor
    from aiobscura.collector.publisher import StatefulSyncPublisher
    from aiobscura.parsers import create_all_parsers
    from aiobscura.pipeline.coordinator import IngestCoordinator
    from aiobscura.pipeline.triggers import AnalyticsScheduler

    settings = _settings()
    db = Database.open_in_memory() if dry_run else _open_db(settings)
    coordinator = IngestCoordinator(db, create_all_parsers(settings.agents))

    installed = coordinator.installed_assistants()
    if not installed:
        console.print("[yellow]No supported assistants found on this machine[/yellow]")
        raise typer.Exit(0)
    console.print(
        "[bold blue]Assistants:[/bold blue] " + ", ".join(a.display_name for a in installed)
    )

    if dry_run:
        result = coordinator.sync_all(dry_run=True)
        _print_sync_result(result, verbose)
        console.print("[yellow]Dry run - nothing was written[/yellow]")
        return

    try:
        publisher = StatefulSyncPublisher.create(settings.collector, db)
        assessor = SessionAssessor(db, settings.llm) if settings.llm else None
    except ConfigError as e:
        console.print(f"[bold red]Config error:[/bold red] {e}")
        raise typer.Exit(1)
    scheduler = AnalyticsScheduler(
        db, create_default_engine(settings.analytics), settings.analytics, assessor
    )
    batch_size = settings.collector.batch_size

    if publisher is not None:
        console.print(f"[bold blue]Collector:[/bold blue] {settings.collector.server_url}")
        publisher.resume_incomplete(batch_size)
        publisher.complete_stale_sessions()

    try:
        if watch:
            from aiobscura.pipeline.watch import WatchLoop

            def tick() -> None:
                result = coordinator.sync_all()
                if publisher is not None:
                    _publish_touched(publisher, result, batch_size)
                scheduler.after_sync(result)
                if result.messages_inserted > 0:
                    console.print(f"[dim]{datetime.now():%H:%M:%S}[/dim] ", end="")
                    _print_sync_result(result, verbose)

            console.print(f"Watch mode active (poll every {poll}ms). Press Ctrl+C to stop.\n")
            WatchLoop([p.root_path for p in coordinator.parsers], tick, poll_ms=poll).run()
        else:
            with Progress(
                SpinnerColumn(),
                BarColumn(),
                TextColumn("{task.completed}/{task.total} {task.description}"),
                console=console,
                transient=True,
            ) as progress:
                task = progress.add_task("", total=None)

                def on_progress(index: int, total: int, path: Path) -> None:
                    progress.update(task, completed=index, total=total, description=path.name)

                result = coordinator.sync_all(on_progress=on_progress)

            if publisher is not None:
                _publish_touched(publisher, result, batch_size)
            report = scheduler.after_sync(result)
            _print_sync_result(result, verbose)
            if report.analyzed:
                console.print(
                    f"  Analytics: {report.analyzed} sessions, {report.plugin_runs} plugin runs, "
                    f"{report.assessments} assessments"
                )
    finally:
        if publisher is not None:
            if publisher.has_pending():
                console.print(f"Flushing {publisher.pending_count()} pending events...")
                publisher.flush_all()
            stats = publisher.stats
            if stats.api_calls > 0:
                console.print(
                    f"  Collector: {stats.events_sent} sent, {stats.events_rejected} rejected, "
                    f"{stats.api_failures} failed calls"
                )
            publisher.close()


# ----------------------------------------------------------------------
# analyze
# ----------------------------------------------------------------------


@app.command()
def analyze(
    session_id: Optional[str] = typer.Option(None, "--session", "-s", help="Session id or prefix"),
    plugin: Optional[str] = typer.Option(None, "--plugin", "-p", help="Run only this plugin"),
    list_plugins: bool = typer.Option(False, "--list-plugins", help="List registered plugins"),
    output_format: str = typer.Option("text", "--format", "-f", help="Output format: text or json"),
) -> None:
    """Run analytics plugins on one session or on every session."""
    from aiobscura.analytics.plugins import create_default_engine
    from aiobscura.db.repositories import AnalyticsRepository

    if output_format not in ("text", "json"):
        console.print(f"[bold red]Error:[/bold red] Unknown format: {output_format}")
        raise typer.Exit(1)

    settings = _settings()
    engine = create_default_engine(settings.analytics)

    if list_plugins:
        table = Table(title="Analytics Plugins")
        table.add_column("Plugin", style="cyan")
        table.add_column("Enabled")
        table.add_column("Timeout (ms)", justify="right")
        for name in engine.plugin_names():
            table.add_row(
                name, "yes" if engine.is_enabled(name) else "no", str(engine.timeout_for(name))
            )
        console.print(table)
        return

    db = _open_db(settings)

    if session_id is None:
        if plugin is not None and not engine.has_plugin(plugin):
            console.print(f"[bold red]Error:[/bold red] Unknown plugin: {plugin}")
            raise typer.Exit(1)
        total_runs, errors = engine.run_all_sessions(db)
        if output_format == "json":
            console.print_json(json.dumps({"runs": total_runs, "errors": errors}))
            return
        console.print(f"[green]✓[/green] {total_runs} plugin runs")
        for line in errors:
            console.print(f"  [red]✗[/red] {line}")
        return

    resolved = _resolve_session_id(db, session_id)
    try:
        results = engine.run_session(resolved, db, plugin_name=plugin)
    except ConfigError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    with db.session() as session:
        metrics = AnalyticsRepository(session).list_metrics(
            plugin_name=plugin, entity_type="session", entity_id=resolved
        )
        metric_rows = [(m.plugin_name, m.metric_name, m.metric_value) for m in metrics]

    if output_format == "json":
        payload = {
            "session_id": resolved,
            "runs": [
                {
                    "plugin": r.plugin_name,
                    "status": r.status.value,
                    "duration_ms": r.duration_ms,
                    "metrics_produced": r.metrics_produced,
                    "error": r.error_message,
                }
                for r in results
            ],
            "metrics": {
                f"{plugin_name}.{name}": value for plugin_name, name, value in metric_rows
            },
        }
        console.print_json(json.dumps(payload, default=str))
        return

    console.print(f"[bold]Session:[/bold] {resolved}\n")
    for r in results:
        color = "green" if r.succeeded else "red"
        line = f"[{color}]{r.status.value}[/{color}] {r.plugin_name} ({r.duration_ms}ms)"
        if r.error_message:
            line += f" - {r.error_message}"
        console.print(line)

    table = Table(title="Metrics")
    table.add_column("Plugin", style="cyan")
    table.add_column("Metric")
    table.add_column("Value", overflow="fold")
    for plugin_name, name, value in metric_rows:
        table.add_row(plugin_name, name, json.dumps(value) if not isinstance(value, str) else value)
    console.print(table)


# ----------------------------------------------------------------------
# wrapped
# ----------------------------------------------------------------------


@app.command()
def wrapped(
    year: Optional[int] = typer.Option(None, "--year", help="Year (default: current)"),
    month: Optional[int] = typer.Option(None, "--month", help="Month 1-12 for a monthly report"),
    no_fun: bool = typer.Option(False, "--no-fun", help="Plain report without personality"),
) -> None:
    """Print your year (or month) in review."""
    from aiobscura.analytics.wrapped import WrappedConfig, WrappedPeriod, generate_wrapped
    from aiobscura.utils.timestamps import utc_now

    settings = _settings()
    try:
        period = WrappedPeriod(year or utc_now().year, month)
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    db = _open_db(settings)
    config = WrappedConfig.serious() if no_fun else WrappedConfig()
    stats = generate_wrapped(db, period, config)
    totals = stats.totals

    console.print(Panel(f"[bold]aiobscura wrapped: {period.display_name}[/bold]", expand=False))

    if totals.sessions == 0:
        console.print("[yellow]No sessions in this period.[/yellow]")
        return

    summary = Table(show_header=False, box=None)
    summary.add_row("Sessions", str(totals.sessions))
    summary.add_row("Time", totals.duration_display())
    summary.add_row("Tokens", totals.tokens_display())
    summary.add_row("Tool calls", str(totals.tool_calls))
    summary.add_row("Files modified", str(totals.files_modified))
    summary.add_row("Agents spawned", str(totals.agents_spawned))
    summary.add_row("Projects", str(totals.unique_projects))
    console.print(summary)

    if stats.top_tools:
        tools = Table(title="Top Tools")
        tools.add_column("#", justify="right")
        tools.add_column("Tool", style="cyan")
        tools.add_column("Calls", justify="right")
        if config.fun_mode:
            tools.add_column("")
        for rank, tool in enumerate(stats.top_tools, start=1):
            row = [str(rank), tool.name, str(tool.count)]
            if config.fun_mode:
                row.append(tool.description or "")
            tools.add_row(*row)
        console.print(tools)

    patterns = stats.time_patterns
    console.print(
        f"Peak hour: {patterns.hour_display(patterns.peak_hour)}   "
        f"Busiest day: {patterns.day_name(patterns.busiest_day)}   "
        f"Quietest day: {patterns.day_name(patterns.quietest_day)}"
    )
    if patterns.marathon_session:
        marathon = patterns.marathon_session
        console.print(
            f"Marathon: {marathon.duration_display()} on {marathon.date_display()}"
            f" ({marathon.project_name or 'unknown project'})"
        )

    if stats.projects:
        projects = Table(title="Projects")
        projects.add_column("Project", style="cyan")
        projects.add_column("Sessions", justify="right")
        projects.add_column("Tokens", justify="right")
        for project in stats.projects:
            projects.add_row(project.name, str(project.sessions), format_tokens(project.tokens))
        console.print(projects)

    streaks = stats.streaks
    console.print(
        f"Streaks: current {streaks.current_streak_days}d, longest {streaks.longest_streak_days}d, "
        f"active {streaks.active_days}/{streaks.total_days} days "
        f"({streaks.activity_percentage:.0f}%)"
    )

    if stats.trends:
        from aiobscura.analytics.wrapped import format_delta

        trends = stats.trends
        console.print(
            f"vs {period.previous().display_name}: sessions {format_delta(trends.sessions_delta_pct)}, "
            f"tokens {format_delta(trends.tokens_delta_pct)}, "
            f"tools {format_delta(trends.tools_delta_pct)}"
        )

    if stats.personality:
        personality = stats.personality
        console.print(
            Panel(
                f"{personality.emoji} [bold]{personality.display_name}[/bold]\n{personality.tagline}",
                title="Your coding personality",
                expand=False,
            )
        )


# ----------------------------------------------------------------------
# assess
# ----------------------------------------------------------------------


@app.command()
def assess(
    session_id: str = typer.Argument(..., help="Session id or prefix"),
    force: bool = typer.Option(False, "--force", help="Re-assess even if unchanged"),
) -> None:
    """Run the LLM assessor on one session."""
    from aiobscura.assessment.assessor import SCORE_KEYS, SessionAssessor

    settings = _settings()
    if settings.llm is None:
        console.print("[bold red]Error:[/bold red] No \\[llm] section in config.toml")
        raise typer.Exit(1)

    db = _open_db(settings)
    resolved = _resolve_session_id(db, session_id)
    try:
        assessor = SessionAssessor(db, settings.llm)
        assessment = assessor.assess_and_store(resolved, force=force)
    except ConfigError as e:
        console.print(f"[bold red]Config error:[/bold red] {e}")
        raise typer.Exit(1)
    except (NetworkError, LLMError) as e:
        console.print(f"[bold red]Assessment failed:[/bold red] {e}")
        raise typer.Exit(1)

    if assessment is None:
        assessment = assessor.latest(resolved)
        if assessment is None:
            console.print("[yellow]Session has no messages to assess[/yellow]")
            return
        console.print("[dim]Transcript unchanged, showing previous assessment[/dim]")

    table = Table(title=f"Assessment ({assessment.model})")
    table.add_column("Score", style="cyan")
    table.add_column("Value", justify="right")
    for key in SCORE_KEYS:
        value = assessment.scores.get(key)
        table.add_row(key, f"{value:.2f}" if isinstance(value, (int, float)) else "-")
    console.print(table)
    summary = assessment.scores.get("summary")
    if summary:
        console.print(f"\n{summary}")


# ----------------------------------------------------------------------
# metrics
# ----------------------------------------------------------------------


@app.command()
def metrics(
    query: Optional[str] = typer.Argument(None, help="Search text"),
) -> None:
    """List the metrics plugins produce, or search them."""
    from aiobscura.analytics.metrics_registry import list_metrics, search_metrics

    table = Table(title="Metrics")
    table.add_column("Plugin", style="cyan")
    table.add_column("Metric")
    table.add_column("Type")
    table.add_column("Summary")

    if query:
        results = search_metrics(query)
        if not results:
            console.print(f"[yellow]No metrics match '{query}'[/yellow]")
            return
        descriptors = [r.metric for r in results]
    else:
        descriptors = list_metrics()

    for metric in descriptors:
        table.add_row(metric.plugin, metric.name, metric.value_type.value, metric.summary)
    console.print(table)


# ----------------------------------------------------------------------
# collector
# ----------------------------------------------------------------------


@collector_app.command("register")
def collector_register(
    server_url: str = typer.Option(..., "--server-url", help="Collector server URL"),
    workspace_id: str = typer.Option(..., "--workspace-id", help="Workspace to register with"),
    force: bool = typer.Option(False, "--force", help="Overwrite existing credentials"),
) -> None:
    """Register this machine and store the credentials in config.toml."""
    from aiobscura.collector.client import register_collector
    from aiobscura.collector.credentials import CredentialStore

    _settings()
    store = CredentialStore(get_config_path())
    if store.has_credentials() and not force:
        console.print(
            f"[bold red]Error:[/bold red] Credentials already exist in {store.config_path}. "
            "Use --force to overwrite."
        )
        raise typer.Exit(1)

    try:
        registered = register_collector(server_url, workspace_id)
    except NetworkError as e:
        console.print(f"[bold red]Registration failed:[/bold red] {e}")
        raise typer.Exit(1)

    try:
        store.store(
            server_url=server_url,
            collector_id=registered.collector_id,
            api_key=registered.api_key,
            workspace_id=workspace_id,
            force=True,
        )
    except ConfigError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    console.print(f"[green]✓ Registered collector {registered.collector_id}[/green]")
    console.print(f"  API key: {registered.api_key_prefix}...")
    console.print(f"  Credentials written to {store.config_path}")


@collector_app.command("status")
def collector_status() -> None:
    """Show collector configuration and publish state counts."""
    from aiobscura.db.repositories import PublishStateRepository

    settings = _settings()
    collector = settings.collector

    table = Table(show_header=False, box=None)
    table.add_row("Enabled", str(collector.enabled))
    table.add_row("Server URL", collector.server_url or "<not set>")
    table.add_row("Collector ID", collector.collector_id or "<not set>")
    table.add_row("API Key", "<set>" if collector.api_key else "<not set>")
    table.add_row("Batch Size", str(collector.batch_size))
    table.add_row("Flush Interval", f"{collector.flush_interval_secs}s")
    table.add_row("Timeout", f"{collector.timeout_secs}s")
    table.add_row("Max Retries", str(collector.max_retries))
    table.add_row("Stale After", f"{collector.stale_minutes}m")
    console.print(Panel(table, title="Collector Configuration", expand=False))

    if not collector.is_ready():
        console.print("Status: [yellow]Not ready[/yellow] (missing required configuration)")
        return
    console.print("Status: [green]Ready to publish[/green]")

    if not settings.database_path.exists():
        return
    db = _open_db(settings)
    with db.session() as session:
        repo = PublishStateRepository(session)
        active = len(repo.list_active())
        incomplete = len(repo.list_incomplete())
    console.print(f"Active sessions: {active}")
    if incomplete:
        console.print(f"Incomplete:      {incomplete} (run 'aiobscura collector resume')")


def _ready_publisher(settings: Settings):
    from aiobscura.collector.publisher import StatefulSyncPublisher

    if not settings.collector.is_ready():
        console.print("Collector is not configured. Run 'aiobscura collector status' for details.")
        raise typer.Exit(0)
    if not settings.database_path.exists():
        console.print(f"Database not found at {settings.database_path}")
        raise typer.Exit(0)
    return StatefulSyncPublisher(settings.collector, _open_db(settings))


@collector_app.command("resume")
def collector_resume(
    batch_size: Optional[int] = typer.Option(None, "--batch-size", "-b", help="Events per batch"),
) -> None:
    """Resume publishing for sessions with unpublished messages."""
    from aiobscura.db.repositories import PublishStateRepository

    settings = _settings()
    publisher = _ready_publisher(settings)
    try:
        with publisher.db.session() as session:
            incomplete = [
                (s.session_id, s.last_published_seq)
                for s in PublishStateRepository(session).list_incomplete()
            ]
        if not incomplete:
            console.print("No incomplete publishes found.")
            return

        console.print(f"Found {len(incomplete)} session(s) with unpublished messages")
        for session_id, last_seq in incomplete:
            console.print(f"  Session: {session_id[:8]} (last_seq: {last_seq})")

        sent = publisher.resume_incomplete(batch_size or settings.collector.batch_size)
        console.print(f"Published {sent} event(s)" if sent else "No events published")
        stats = publisher.stats
        if stats.api_calls:
            console.print(
                f"  API calls: {stats.api_calls}  Sent: {stats.events_sent}  "
                f"Rejected: {stats.events_rejected}  Failures: {stats.api_failures}"
            )
    finally:
        publisher.close()


@collector_app.command("flush")
def collector_flush() -> None:
    """Flush events buffered in memory."""
    settings = _settings()
    publisher = _ready_publisher(settings)
    try:
        if not publisher.has_pending():
            console.print("No pending events to flush.")
            return
        console.print(f"Flushing {publisher.pending_count()} pending event(s)...")
        sent = publisher.flush_all()
        console.print(f"Flushed {sent} event(s)" if sent else "No events flushed")
    finally:
        publisher.close()


@collector_app.command("sessions")
def collector_sessions(
    show_all: bool = typer.Option(False, "--all", "-a", help="Include completed sessions"),
) -> None:
    """Tabulate publish states."""
    from aiobscura.db.repositories import PublishStateRepository

    settings = _settings()
    if not settings.database_path.exists():
        console.print(f"Database not found at {settings.database_path}")
        return
    db = _open_db(settings)
    with db.session() as session:
        repo = PublishStateRepository(session)
        states = repo.list_all() if show_all else repo.list_active()
        incomplete = len(repo.list_incomplete())

    if not states:
        console.print("No publish states found.")
        if not settings.collector.is_ready():
            console.print("Note: Collector is not configured. Run 'aiobscura collector status'.")
        return

    table = Table(title="Session Publish States")
    table.add_column("Session ID", style="cyan")
    table.add_column("Last Seq", justify="right")
    table.add_column("Status")
    table.add_column("Last Published")
    table.add_column("Error", overflow="fold")
    for state in states:
        short = state.session_id if len(state.session_id) <= 18 else f"{state.session_id[:15]}..."
        table.add_row(
            short,
            str(state.last_published_seq),
            state.status.value,
            format_relative_time(state.last_published_at) if state.last_published_at else "never",
            state.error_message or "",
        )
    console.print(table)

    if incomplete:
        console.print(
            f"\n{incomplete} session(s) have unpublished messages. "
            "Run 'aiobscura collector resume' to publish."
        )


if __name__ == "__main__":
    app()
