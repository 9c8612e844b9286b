"""Command-line interface for supamail."""

import asyncio
import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from supamail import __version__
from supamail.activity import ActivityLog
from supamail.config import Settings, load_settings
from supamail.errors import ForwardError, LogNotFoundError, UsernameTakenError
from supamail.models import ActivityEntry, LogStatus, RuleAction, RuleType, User
from supamail.processors.rules import SPECIFICITY, DispositionEngine
from supamail.store import RuleStore

app = typer.Typer(
    name="supamail",
    help="Inbound email gateway with masked addresses and allow/block rules.",
    no_args_is_help=True,
    add_completion=False,
)
console = Console()


def version_callback(value: bool) -> None:
    if value:
        console.print(f"supamail version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option("--version", "-v", callback=version_callback, is_eager=True),
    ] = False,
) -> None:
    """Inbound email gateway."""
    pass


def _error_with_help(ctx: typer.Context, message: str) -> None:
    """Print an error message followed by the command help, then exit."""
    console.print(f"[red]Error: {message}[/red]\n")
    console.print(ctx.get_help())
    raise typer.Exit(1)


def _get_store(settings: Settings) -> RuleStore:
    settings.ensure_dirs()
    return RuleStore(settings.get_db_path())


def _get_activity(settings: Settings) -> ActivityLog:
    settings.ensure_dirs()
    return ActivityLog(settings.get_db_path())


def _require_user(ctx: typer.Context, store: RuleStore, user_ref: str) -> User:
    """Find a user by ID or Supamail ID."""
    user = store.get_user(user_ref) or store.get_user_by_username(user_ref)
    if user is None:
        _error_with_help(ctx, f"User not found: {user_ref}")
    return user  # type: ignore[return-value]


# ─── Server ─────────────────────────────────────────────────────────────────


@app.command("serve")
def serve(
    host: Annotated[str | None, typer.Option(help="Bind address")] = None,
    port: Annotated[int | None, typer.Option(help="Port")] = None,
    log_level: Annotated[str | None, typer.Option(help="Log level")] = None,
) -> None:
    """Run the webhook and dashboard API."""
    import uvicorn

    from supamail.api import create_app

    settings = load_settings()
    level = (log_level or settings.server.log_level).upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )

    uvicorn.run(
        create_app(settings),
        host=host or settings.server.host,
        port=port or settings.server.port,
        log_level=level.lower(),
        log_config=None,
    )


# ─── User Commands ──────────────────────────────────────────────────────────


user_app = typer.Typer(help="Manage users and their Supamail IDs", no_args_is_help=True)
app.add_typer(user_app, name="user")


@user_app.command("add")
def user_add(
    ctx: typer.Context,
    email: Annotated[str, typer.Argument(help="Real mailbox to forward to")],
    username: Annotated[str | None, typer.Option(help="Supamail ID (local part of the masked address)")] = None,
) -> None:
    """Create a user."""
    settings = load_settings()
    store = _get_store(settings)
    try:
        user = store.create_user(email, username)
    except (UsernameTakenError, ValueError) as e:
        _error_with_help(ctx, str(e))

    console.print(f"[green]Created user {user.id}[/green]")
    if user.username:
        console.print(f"Masked address: {user.username}@{settings.mailgun.domain}")


@user_app.command("list")
def user_list() -> None:
    """List users."""
    settings = load_settings()
    users = _get_store(settings).list_users()
    if not users:
        console.print("[yellow]No users found.[/yellow]")
        return

    table = Table(title="Users")
    table.add_column("ID", style="dim")
    table.add_column("Email")
    table.add_column("Masked Address", style="cyan")
    for user in users:
        masked = f"{user.username}@{settings.mailgun.domain}" if user.username else "-"
        table.add_row(user.id, user.email, masked)
    console.print(table)


@user_app.command("set-username")
def user_set_username(
    ctx: typer.Context,
    user_ref: Annotated[str, typer.Argument(help="User ID or current Supamail ID")],
    username: Annotated[str, typer.Argument(help="New Supamail ID")],
) -> None:
    """Claim a new Supamail ID for a user."""
    settings = load_settings()
    store = _get_store(settings)
    user = _require_user(ctx, store, user_ref)
    try:
        user = store.set_username(user.id, username)
    except (UsernameTakenError, ValueError) as e:
        _error_with_help(ctx, str(e))
    console.print(f"[green]Masked address is now {user.username}@{settings.mailgun.domain}[/green]")


# ─── Rule Commands ──────────────────────────────────────────────────────────


rule_app = typer.Typer(help="Manage allow/block rules", no_args_is_help=True)
app.add_typer(rule_app, name="rule")


@rule_app.command("list")
def rule_list(
    ctx: typer.Context,
    user_ref: Annotated[str, typer.Argument(help="User ID or Supamail ID")],
) -> None:
    """List a user's rules, newest first."""
    settings = load_settings()
    store = _get_store(settings)
    user = _require_user(ctx, store, user_ref)
    rules = store.get_rules_for_user(user.id, newest_first=True)
    if not rules:
        console.print("[yellow]No rules.[/yellow]")
        return

    table = Table(title=f"Rules for {user.username or user.id}")
    table.add_column("ID", style="dim", width=8)
    table.add_column("Type", style="cyan")
    table.add_column("Pattern")
    table.add_column("Action")
    table.add_column("Created", width=19)
    for rule in rules:
        action = "[green]allow[/green]" if rule.action == RuleAction.ALLOW else "[red]block[/red]"
        table.add_row(
            rule.id[:8],
            rule.type.value,
            rule.pattern,
            action,
            rule.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@rule_app.command("add")
def rule_add(
    ctx: typer.Context,
    user_ref: Annotated[str, typer.Argument(help="User ID or Supamail ID")],
    pattern: Annotated[str, typer.Argument(help="Address, domain fragment or category")],
    rule_type: Annotated[RuleType, typer.Option("--type", "-t", help="Rule type")] = RuleType.DOMAIN,
    action: Annotated[RuleAction, typer.Option("--action", "-a", help="Rule action")] = RuleAction.BLOCK,
) -> None:
    """Add a rule."""
    settings = load_settings()
    store = _get_store(settings)
    user = _require_user(ctx, store, user_ref)
    try:
        rule = store.add_rule(user.id, pattern, rule_type, action)
    except ValueError as e:
        _error_with_help(ctx, str(e))
    console.print(f"[green]Added rule {rule.id[:8]}: {rule.action.value} {rule.type.value} '{rule.pattern}'[/green]")


@rule_app.command("delete")
def rule_delete(
    ctx: typer.Context,
    user_ref: Annotated[str, typer.Argument(help="User ID or Supamail ID")],
    rule_id: Annotated[str, typer.Argument(help="Rule ID (or prefix)")],
) -> None:
    """Delete a rule."""
    settings = load_settings()
    store = _get_store(settings)
    user = _require_user(ctx, store, user_ref)

    matches = [r for r in store.get_rules_for_user(user.id) if r.id.startswith(rule_id)]
    if len(matches) != 1:
        _error_with_help(ctx, f"Rule not found or ambiguous: {rule_id}")
    store.delete_rule(user.id, matches[0].id)
    console.print(f"[green]Deleted rule {matches[0].id[:8]}[/green]")


@app.command("decide")
def decide_command(
    ctx: typer.Context,
    user_ref: Annotated[str, typer.Argument(help="User ID or Supamail ID")],
    sender: Annotated[str, typer.Argument(help="Sender address")],
    category: Annotated[str | None, typer.Option(help="Message category")] = None,
) -> None:
    """Show how a message from SENDER would be handled, without sending anything."""
    settings = load_settings()
    store = _get_store(settings)
    user = _require_user(ctx, store, user_ref)
    category = category or settings.classifier.default_category

    engine = DispositionEngine()
    rules = store.get_rules_for_user(user.id)
    matches = engine.get_matching_rules(sender, category, rules)
    disposition = engine.decide(sender, category, rules)

    table = Table(title=f"Rule matches for {sender} ({category})")
    table.add_column("Type", style="cyan")
    table.add_column("Governing Rule")
    table.add_column("Action")
    for rule_type in SPECIFICITY:
        rule = matches.get(rule_type)
        table.add_row(
            rule_type.value,
            f"{rule.pattern} ({rule.id[:8]})" if rule else "-",
            rule.action.value if rule else "-",
        )
    console.print(table)

    color = "green" if disposition.action == RuleAction.ALLOW else "red"
    console.print(f"\nDecision: [{color}]{disposition.action.value}[/{color}] ({disposition.reason})")


# ─── Activity Log Commands ──────────────────────────────────────────────────


log_app = typer.Typer(help="View and act on the activity log", no_args_is_help=True)
app.add_typer(log_app, name="log")


def _find_entry(ctx: typer.Context, activity: ActivityLog, entry_id: str) -> ActivityEntry:
    entry = activity.get_entry(entry_id)
    if not entry:
        for e in activity.iter_all():
            if e.id.startswith(entry_id):
                entry = e
                break
    if not entry:
        _error_with_help(ctx, f"Activity entry not found: {entry_id}")
    return entry  # type: ignore[return-value]


@log_app.command("list")
def log_list(
    ctx: typer.Context,
    user_ref: Annotated[str | None, typer.Option("--user", "-u", help="User ID or Supamail ID")] = None,
    status: Annotated[LogStatus | None, typer.Option(help="Filter by status")] = None,
    search: Annotated[str | None, typer.Option("--search", "-s", help="Search sender, subject, category")] = None,
    limit: Annotated[int, typer.Option(help="Max entries to show")] = 20,
) -> None:
    """List recent activity."""
    settings = load_settings()
    user_id = _require_user(ctx, _get_store(settings), user_ref).id if user_ref else None
    entries = _get_activity(settings).get_history(user_id, status=status, search=search, limit=limit)

    if not entries:
        console.print("[yellow]No activity found.[/yellow]")
        return

    table = Table(title="Activity")
    table.add_column("ID", style="dim", width=8)
    table.add_column("Received", width=19)
    table.add_column("Sender", width=28)
    table.add_column("Subject", width=30)
    table.add_column("Category", style="cyan")
    table.add_column("Status")

    for entry in entries:
        subject = entry.subject[:28] + "..." if len(entry.subject) > 30 else entry.subject
        status_text = "[green]forwarded[/green]" if entry.status == LogStatus.FORWARDED else "[red]blocked[/red]"
        table.add_row(
            entry.id[:8],
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            entry.sender,
            subject,
            entry.category or "-",
            status_text,
        )
    console.print(table)


@log_app.command("show")
def log_show(
    ctx: typer.Context,
    entry_id: Annotated[str, typer.Argument(help="Activity entry ID (or prefix)")],
) -> None:
    """Show one activity entry."""
    settings = load_settings()
    entry = _find_entry(ctx, _get_activity(settings), entry_id)

    console.print(Panel(f"[bold]Activity Entry: {entry.id}[/bold]"))
    console.print(f"[bold]Received:[/bold] {entry.created_at}")
    console.print(f"[bold]Sender:[/bold] {entry.sender}")
    console.print(f"[bold]Subject:[/bold] {entry.subject}")
    console.print(f"[bold]Summary:[/bold] {entry.ai_summary or 'N/A'}")
    console.print(f"[bold]Category:[/bold] {entry.category or 'N/A'}")
    console.print(f"[bold]Status:[/bold] {entry.status.value}")
    console.print(f"[bold]Rule:[/bold] {entry.rule_id or 'default'}")
    console.print(f"[bold]Delivered:[/bold] {entry.delivered_at or 'No'}")
    if entry.body_plain:
        console.print(f"\n{entry.body_plain}")


@log_app.command("forward")
def log_forward(
    ctx: typer.Context,
    entry_id: Annotated[str, typer.Argument(help="Blocked activity entry ID (or prefix)")],
) -> None:
    """Forward a blocked message to its owner."""
    from supamail.service.pipeline import InboundPipeline

    settings = load_settings()
    pipeline = InboundPipeline.from_settings(settings)
    entry = _find_entry(ctx, pipeline.activity, entry_id)

    try:
        entry, forwarded = pipeline.reforward(entry.user_id, entry.id)
    except (LogNotFoundError, ForwardError) as e:
        console.print(f"[red]Forward failed: {e}[/red]")
        raise typer.Exit(1)

    if forwarded:
        console.print(f"[green]Forwarded {entry.id[:8]}[/green]")
    else:
        console.print("[yellow]Email already forwarded.[/yellow]")


@log_app.command("export")
def log_export(
    ctx: typer.Context,
    format: Annotated[str, typer.Option(help="Output format: json or csv")] = "json",
    output: Annotated[str | None, typer.Option(help="Output file (default: stdout)")] = None,
    user_ref: Annotated[str | None, typer.Option("--user", "-u", help="User ID or Supamail ID")] = None,
) -> None:
    """Export the activity log."""
    if format not in ("json", "csv"):
        _error_with_help(ctx, f"Unknown format: {format}. Use 'json' or 'csv'")

    settings = load_settings()
    user_id = _require_user(ctx, _get_store(settings), user_ref).id if user_ref else None
    exported = _get_activity(settings).export_log(format=format, user_id=user_id)  # type: ignore[arg-type]

    if output:
        Path(output).write_text(exported)
        console.print(f"[green]Exported to {output}[/green]")
    else:
        console.print(exported)


@log_app.command("stats")
def log_stats(
    ctx: typer.Context,
    user_ref: Annotated[str | None, typer.Option("--user", "-u", help="User ID or Supamail ID")] = None,
) -> None:
    """Show forwarded/blocked counts."""
    settings = load_settings()
    user_id = _require_user(ctx, _get_store(settings), user_ref).id if user_ref else None
    stats = _get_activity(settings).get_stats(user_id)
    console.print(f"Total: {stats['total']}")
    console.print(f"Forwarded: [green]{stats['forwarded']}[/green]")
    console.print(f"Blocked: [red]{stats['blocked']}[/red]")


# ─── Category / Config Commands ─────────────────────────────────────────────


@app.command("categories")
def category_list() -> None:
    """List the category vocabulary."""
    settings = load_settings()
    for name in _get_store(settings).list_categories(settings.classifier.categories):
        console.print(name)


@app.command("classify")
def classify_command(
    subject: Annotated[str, typer.Argument(help="Message subject")],
    body: Annotated[str, typer.Argument(help="Message body")] = "",
) -> None:
    """Run the classifier on a subject and body."""
    from supamail.processors.llm import Classifier, create_llm_client

    settings = load_settings()
    try:
        client = create_llm_client(settings.llm, settings.llm_api_key())
    except ValueError as e:
        console.print(f"[yellow]{e}; showing fallback classification[/yellow]")
        client = None

    classifier = Classifier(settings.llm, settings.classifier, client)
    result = asyncio.run(classifier.classify(subject, body))
    console.print(f"[bold]Summary:[/bold] {result.summary}")
    console.print(f"[bold]Category:[/bold] {result.category}")
    console.print(f"[bold]Subject:[/bold] {result.subject_line(subject)}")


@app.command("config")
def config_show() -> None:
    """Show current configuration (secrets hidden)."""
    settings = load_settings()
    data = settings.model_dump(mode="json")
    for key in ("openai_api_key", "anthropic_api_key"):
        if data.get(key):
            data[key] = "***"
    for key in ("api_key", "signing_key"):
        if data["mailgun"].get(key):
            data["mailgun"][key] = "***"

    import yaml

    console.print(Panel(yaml.safe_dump(data, sort_keys=False), title="supamail configuration"))
