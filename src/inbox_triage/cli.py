"""Command-line interface for the inbox triage engine.

Provides commands for configuration validation, database setup, users and
accounts, triage runs and the API server.

Usage:
    python -m inbox_triage validate-config
    python -m inbox_triage init-db
    python -m inbox_triage add-user alice alice@example.com --company-domain example.com
    python -m inbox_triage add-account alice maildir ~/Maildir --address alice@example.com
    python -m inbox_triage run alice
    python -m inbox_triage cron
    python -m inbox_triage status
    python -m inbox_triage serve
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.table import Table

from inbox_triage.config import validate_config_file
from inbox_triage.core.logging import configure_logging

if TYPE_CHECKING:
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.db.store import DatabaseStore
    from inbox_triage.engine.pipeline import PipelineResult

console = Console()


@dataclass(frozen=True, slots=True)
class CLIDeps:
    """Shared dependencies initialized by _init_cli_deps()."""

    config: AppConfig
    store: DatabaseStore


async def _init_cli_deps() -> CLIDeps:
    """Load config and open the database.

    Prints actionable error messages and calls sys.exit(1) on failure.
    """
    from inbox_triage.config import get_config
    from inbox_triage.core.errors import ConfigLoadError, ConfigValidationError, DatabaseError
    from inbox_triage.db.store import DatabaseStore

    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml and adjust it,\n"
            "or point TRIAGE_CONFIG_PATH at your config file."
        )
        sys.exit(1)

    db_path = Path(config.database.path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    try:
        await store.initialize()
    except DatabaseError as e:
        console.print(f"[red]Database error:[/red] {e}")
        sys.exit(1)

    return CLIDeps(config=config, store=store)


def _create_run_manager(deps: CLIDeps):
    import anthropic

    from inbox_triage.engine.runner import create_run_manager

    try:
        client = anthropic.AsyncAnthropic(max_retries=0)
    except anthropic.AnthropicError as e:
        console.print(f"[red]Anthropic client error:[/red] {e}\n\nSet ANTHROPIC_API_KEY (e.g. in .env).")
        sys.exit(1)
    return create_run_manager(deps.config, deps.store, client)


def _run_async(coro) -> None:
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """Inbox Triage - LLM email classification and priority scoring."""
    log_level = "DEBUG" if debug else "INFO"
    # Use human-readable output for CLI, JSON for server
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    if config_path:
        console.print(f"Validating config: [cyan]{config_path}[/cyan]")
    else:
        console.print("Validating config: [cyan]config/config.yaml[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("init-db")
def init_db() -> None:
    """Create the SQLite database and verify its schema."""

    async def _init() -> None:
        deps = await _init_cli_deps()
        console.print(f"[green]✓[/green] Database ready at [cyan]{deps.config.database.path}[/cyan]")

    _run_async(_init())


@cli.command("add-user")
@click.argument("user_id")
@click.argument("email")
@click.option("--name", "display_name", default=None, help="Display name")
@click.option("--company-domain", "company_domains", multiple=True, help="Company domain (repeatable)")
@click.option(
    "--auto-handle-priority",
    type=click.IntRange(1, 5),
    default=None,
    help="Auto-mark handled at this priority or less urgent",
)
@click.option("--auto-handle-category", "auto_categories", multiple=True, help="Auto-mark handled category")
def add_user(
    user_id: str,
    email: str,
    display_name: str | None,
    company_domains: tuple[str, ...],
    auto_handle_priority: int | None,
    auto_categories: tuple[str, ...],
) -> None:
    """Create or update a user."""
    from inbox_triage.classifier.categories import ALLOWED_CATEGORIES

    unknown = [c for c in auto_categories if c not in ALLOWED_CATEGORIES]
    if unknown:
        console.print(f"[red]Unknown categories:[/red] {', '.join(unknown)}")
        sys.exit(1)

    async def _add() -> None:
        deps = await _init_cli_deps()
        user = await deps.store.save_user(
            user_id,
            email,
            display_name=display_name,
            company_domains=list(company_domains),
            auto_handle_min_priority=auto_handle_priority,
            auto_handle_categories=list(auto_categories),
        )
        console.print(f"[green]✓[/green] User [cyan]{user.id}[/cyan] ({user.email}) saved")

    _run_async(_add())


@cli.command("add-account")
@click.argument("user_id")
@click.argument("provider", type=click.Choice(["maildir", "mbox"]))
@click.argument("source_path", type=click.Path(exists=True, path_type=Path))
@click.option("--address", required=True, help="Mailbox owner's address")
def add_account(user_id: str, provider: str, source_path: Path, address: str) -> None:
    """Attach a local mailbox to a user."""

    async def _add() -> None:
        deps = await _init_cli_deps()
        if await deps.store.get_user(user_id) is None:
            console.print(f"[red]Unknown user:[/red] {user_id}. Create it with add-user first.")
            sys.exit(1)
        account = await deps.store.create_account(user_id, provider, address, source_path=str(source_path))
        console.print(f"[green]✓[/green] Account [cyan]{account.id}[/cyan] added for {user_id}")

    _run_async(_add())


def _print_result(result: PipelineResult) -> None:
    color = "green" if result.status == "completed" else "red"
    console.print(f"\n[bold]Triage Run Summary[/bold] (run {result.run_id[:8]}...)")
    console.print(f"  Status:        [{color}]{result.status}[/{color}]")
    console.print(f"  Duration:      {result.duration_ms}ms")
    console.print(f"  Fetched:       {result.fetched}")
    console.print(f"  Loaded:        {result.loaded}")
    console.print(f"  User rules:    {result.rule_matched}")
    console.print(f"  LLM:           {result.llm_classified}")
    console.print(f"  Fallback:      {result.fallback}")
    console.print(f"  Stored:        {result.stored}")
    console.print(f"  Failed:        {result.failed}")
    if result.hot_threads:
        console.print(
            f"  Hot threads:   {result.hot_threads} "
            f"(re-classified {result.reclassified}, resolved {result.resolved})"
        )
    if result.auto_handled:
        console.print(f"  Auto-handled:  {result.auto_handled}")


@cli.command("run")
@click.argument("user_id")
def run(user_id: str) -> None:
    """Run one triage pass for a user and wait for it."""
    from inbox_triage.core.errors import TriageError

    async def _run() -> None:
        deps = await _init_cli_deps()
        manager = _create_run_manager(deps)
        try:
            result = await manager.run_now(user_id)
        except TriageError as e:
            console.print(f"\n[red]Run failed:[/red] {e}")
            sys.exit(1)
        _print_result(result)

    _run_async(_run())


@cli.command("cron")
def cron() -> None:
    """Run triage for every user, one after another."""

    async def _cron() -> None:
        deps = await _init_cli_deps()
        manager = _create_run_manager(deps)
        outcomes = await manager.run_cron()
        if not outcomes:
            console.print("[yellow]No users configured.[/yellow]")
            return
        failed = 0
        for user_id, outcome in outcomes.items():
            if isinstance(outcome, str):
                failed += 1
                console.print(f"[red]✗[/red] {user_id}: {outcome}")
            else:
                console.print(
                    f"[green]✓[/green] {user_id}: stored={outcome.stored} "
                    f"failed={outcome.failed} ({outcome.duration_ms}ms)"
                )
        if failed:
            sys.exit(1)

    _run_async(_cron())


@cli.command("status")
@click.option("--user", "user_id", default=None, help="Only this user's runs")
@click.option("--limit", default=10, type=int, help="Number of runs to show")
def status(user_id: str | None, limit: int) -> None:
    """Show recent runs."""

    async def _status() -> None:
        deps = await _init_cli_deps()
        runs = await deps.store.get_recent_runs(user_id, limit=limit)
        if not runs:
            console.print("[yellow]No runs yet.[/yellow]")
            return

        table = Table(title="Recent runs")
        table.add_column("Run", style="cyan")
        table.add_column("User")
        table.add_column("Trigger")
        table.add_column("Status")
        table.add_column("Fetched", justify="right")
        table.add_column("Classified", justify="right")
        table.add_column("Failed", justify="right")
        table.add_column("Started")
        table.add_column("Error")
        for agent_run in runs:
            color = {"completed": "green", "failed": "red"}.get(agent_run.status, "yellow")
            table.add_row(
                agent_run.id[:8],
                agent_run.user_id,
                agent_run.trigger,
                f"[{color}]{agent_run.status}[/{color}]",
                str(agent_run.emails_fetched),
                str(agent_run.emails_classified),
                str(agent_run.emails_failed),
                agent_run.started_at.strftime("%Y-%m-%d %H:%M") if agent_run.started_at else "",
                (agent_run.error_message or "")[:60],
            )
        console.print(table)

    _run_async(_status())


@cli.command("list")
@click.argument("user_id")
@click.option("--priority", "priorities", multiple=True, type=click.IntRange(1, 5), help="Effective priority")
@click.option("--limit", default=25, type=int)
def list_emails(user_id: str, priorities: tuple[int, ...], limit: int) -> None:
    """List classified emails with their effective priority."""
    from inbox_triage.engine.read_model import ClassificationReader

    async def _list() -> None:
        deps = await _init_cli_deps()
        reader = ClassificationReader(deps.store, deps.config)
        views = await reader.list_views(user_id, priorities=list(priorities), limit=limit)
        if not views:
            console.print("[yellow]Nothing to show.[/yellow]")
            return

        table = Table(title=f"Inbox of {user_id}")
        table.add_column("P", justify="right")
        table.add_column("Stored", justify="right", style="dim")
        table.add_column("Category")
        table.add_column("From")
        table.add_column("Subject")
        table.add_column("Why")
        for view in views:
            result = view.stored.result
            table.add_row(
                str(view.effective_priority),
                str(result.priority),
                result.category,
                view.email.from_address,
                (view.email.subject or "")[:50],
                "; ".join(view.escalation_reasons)[:60],
            )
        console.print(table)

    _run_async(_list())


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (default: localhost only for security)",
)
@click.option(
    "--port",
    default=8000,
    type=int,
    help="Port to bind to",
)
def serve(host: str, port: int) -> None:
    """Start the JSON API server."""
    import uvicorn

    from inbox_triage.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "This app has no authentication. Use 127.0.0.1 for local-only access."
        )

    from inbox_triage.config import get_config
    from inbox_triage.core.errors import ConfigLoadError, ConfigValidationError

    try:
        log_config = get_config().logging
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(f"[red]Config error:[/red] {e}")
        sys.exit(1)
    configure_logging(log_level=log_config.level, json_output=log_config.json_output)

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
