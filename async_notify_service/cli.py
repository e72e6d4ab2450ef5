"""Command-line interface for the async notify service.

The CLI works directly on the SQLite database, without going through the
HTTP API, and shares the configuration loaded by :func:`load_settings`.

Usage:
    notify-service stats
    notify-service list --status failed
    notify-service retry-failed [IDS...]
    notify-service cleanup --days 30
    notify-service enqueue user@example.com "Subject" "<p>Body</p>" --priority urgent
    notify-service run-now
    notify-service add-template tpl-1 notification "Hi {{username}}" "<p>{{content}}</p>"
    notify-service add-user 42 alice alice@example.com
    notify-service issue-token 42 --username alice
    notify-service serve --port 8000
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from async_notify_service.auth import TokenVerifier
from async_notify_service.config import load_settings
from async_notify_service.dispatcher import QueueDispatcher
from async_notify_service.models import PRIORITY_LABELS
from async_notify_service.persistence import Persistence
from async_notify_service.server import run_server
from async_notify_service.smtp_pool import SmtpSettings
from async_notify_service.transport import SmtpMailTransport

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {"pending": "yellow", "processing": "blue", "sent": "green", "failed": "red"}


def get_persistence(db_path: str) -> Persistence:
    """Create a Persistence instance with the given database path."""
    return Persistence(db_path)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def build_dispatcher(settings: dict[str, Any]) -> QueueDispatcher:
    """Dispatcher bound to the configured database and relay, without background loops."""
    transport = SmtpMailTransport(
        SmtpSettings(
            host=str(settings.get("smtp_host") or "localhost"),
            port=int(settings.get("smtp_port") or 25),
            user=settings.get("smtp_user"),
            password=settings.get("smtp_password"),
            use_tls=settings.get("smtp_use_tls"),
        ),
        sender=str(settings.get("smtp_sender") or "no-reply@localhost"),
        timeout=float(settings.get("smtp_timeout") or 30.0),
    )
    return QueueDispatcher(
        get_persistence(str(settings["db_path"])),
        transport,
        batch_size=int(settings.get("batch_size") or 10),
        backoff_base_minutes=float(settings.get("backoff_base_minutes") or 5),
        default_max_retries=int(settings.get("default_max_retries") or 3),
        retention_days=int(settings.get("retention_days") or 30),
        test_mode=True,
    )


def _with_dispatcher(ctx: click.Context, action):
    """Run ``action(dispatcher)`` inside a fresh event loop and return its result."""
    dispatcher = build_dispatcher(ctx.obj["settings"])

    async def _run():
        await dispatcher.init()
        try:
            return await action(dispatcher)
        finally:
            await dispatcher.stop()
            await dispatcher.transport.cleanup()

    return run_async(_run())


@click.group()
@click.version_option(package_name="async-notify-service")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None, help="INI configuration file.")
@click.option("--db", "db_path", default=None, help="SQLite database path (overrides the configuration).")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], db_path: Optional[str]) -> None:
    """Inspect and operate the notification queue."""
    settings = load_settings(config_path)
    if db_path:
        settings["db_path"] = db_path
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@main.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stats(ctx: click.Context, as_json: bool) -> None:
    """Show how many messages are in each state."""
    counts = _with_dispatcher(ctx, lambda d: d.get_queue_stats())
    if as_json:
        print_json(counts)
        return
    table = Table(title="Queue")
    table.add_column("Status", style="cyan")
    table.add_column("Messages", justify="right")
    for key in ("pending", "processing", "sent", "failed", "total"):
        table.add_row(key, str(counts.get(key, 0)))
    console.print(table)


@main.command("list")
@click.option("--status", type=click.Choice(list(STATUS_STYLES)), default=None, help="Filter by status.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_messages(ctx: click.Context, status: Optional[str], as_json: bool) -> None:
    """List queued messages."""
    messages = _with_dispatcher(ctx, lambda d: d.list_messages(status))
    if as_json:
        print_json(messages)
        return
    if not messages:
        console.print("[dim]No messages found.[/dim]")
        return

    table = Table(title="Messages")
    table.add_column("ID", style="cyan")
    table.add_column("To")
    table.add_column("Subject")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Last error")
    for m in messages:
        style = STATUS_STYLES.get(m["status"], "white")
        table.add_row(
            m["id"],
            m["to"],
            m["subject"],
            m["priority"],
            f"[{style}]{m['status']}[/{style}]",
            f"{m['retry_count']}/{m['max_retries']}",
            m.get("last_error") or "-",
        )
    console.print(table)


@main.command("retry-failed")
@click.argument("ids", nargs=-1)
@click.pass_context
def retry_failed(ctx: click.Context, ids: tuple[str, ...]) -> None:
    """Return failed messages (all, or only IDS) to the queue."""
    count = _with_dispatcher(ctx, lambda d: d.retry_failed(list(ids) if ids else None))
    print_success(f"Re-queued {count} message(s)")


@main.command("cleanup")
@click.option("--days", type=int, default=None, help="Delete sent messages older than this many days.")
@click.pass_context
def cleanup(ctx: click.Context, days: Optional[int]) -> None:
    """Delete old sent messages."""
    if days is not None and days < 0:
        print_error("--days must be zero or positive")
        raise SystemExit(1)
    count = _with_dispatcher(ctx, lambda d: d.cleanup_sent(days))
    print_success(f"Removed {count} sent message(s)")


@main.command("enqueue")
@click.argument("to")
@click.argument("subject")
@click.argument("content")
@click.option("--priority", type=click.Choice(list(PRIORITY_LABELS.values())), default="normal")
@click.option("--max-retries", type=int, default=None)
@click.pass_context
def enqueue(ctx: click.Context, to: str, subject: str, content: str, priority: str, max_retries: Optional[int]) -> None:
    """Queue one mail."""
    msg_id = _with_dispatcher(
        ctx,
        lambda d: d.enqueue(to=to, subject=subject, content=content, priority=priority, max_retries=max_retries),
    )
    print_success(f"Queued message {msg_id}")


@main.command("run-now")
@click.pass_context
def run_now(ctx: click.Context) -> None:
    """Run one dispatch cycle against the configured relay."""
    processed = _with_dispatcher(ctx, lambda d: d.process_queue())
    print_success(f"Attempted {processed} message(s)")


@main.command("add-template")
@click.argument("template_id")
@click.argument("name")
@click.argument("subject")
@click.argument("body")
@click.option("--inactive", is_flag=True, help="Store the template disabled.")
@click.pass_context
def add_template(ctx: click.Context, template_id: str, name: str, subject: str, body: str, inactive: bool) -> None:
    """Register or replace a mail template."""
    persistence = get_persistence(str(ctx.obj["settings"]["db_path"]))

    async def _add():
        await persistence.init_db()
        await persistence.add_template(
            {"id": template_id, "name": name, "subject": subject, "body": body, "is_active": not inactive}
        )

    run_async(_add())
    print_success(f"Template '{template_id}' saved")


@main.command("add-user")
@click.argument("user_id")
@click.argument("username")
@click.argument("email", required=False)
@click.pass_context
def add_user(ctx: click.Context, user_id: str, username: str, email: Optional[str]) -> None:
    """Store a user's contact address for mail copies of urgent events."""
    persistence = get_persistence(str(ctx.obj["settings"]["db_path"]))

    async def _add():
        await persistence.init_db()
        await persistence.upsert_user({"id": user_id, "username": username, "email": email})

    run_async(_add())
    print_success(f"User '{user_id}' saved")


@main.command("issue-token")
@click.argument("user_id")
@click.option("--username", default=None)
@click.pass_context
def issue_token(ctx: click.Context, user_id: str, username: Optional[str]) -> None:
    """Print a push credential signed with the configured secret."""
    settings = ctx.obj["settings"]
    if not settings.get("jwt_secret"):
        print_error("jwt_secret is not configured")
        raise SystemExit(1)
    verifier = TokenVerifier(str(settings["jwt_secret"]), algorithms=settings.get("jwt_algorithms") or ("HS256",))
    claims = {"userId": user_id}
    if username:
        claims["username"] = username
    click.echo(verifier.issue(claims))


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to.")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on.")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP and websocket server in the foreground."""
    settings = ctx.obj["settings"]
    if host:
        settings["http_host"] = host
    if port:
        settings["http_port"] = port
    run_server(settings)


if __name__ == "__main__":
    main()
