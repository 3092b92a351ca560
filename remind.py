#!/usr/bin/env python3
"""
TODO Reminder CLI

Usage:
    python remind.py scan "src/**"              # List attributed TODOs
    python remind.py notify "src/**"            # Message each author
    python remind.py sync "src/**"              # Record TODOs in Bitable
    python remind.py --dry-run notify "src/**"  # Preview without sending
    python remind.py scan "src/**" --mark FIXME  # Other marker
    python remind.py version
"""

import asyncio
import sys
import traceback
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from todo_reminder import __version__
from todo_reminder.config import Config, parse_duration
from todo_reminder.git_handler import GitHandler
from todo_reminder.reminder import FeishuReminder
from todo_reminder.scanner import check_source_code_todo

console = Console()

mark_option = click.option("--mark", default=None, help="Marker substring (default: TODO)")


def _load_config(
    ctx: click.Context,
    require_credentials: bool,
    mark: Optional[str] = None,
) -> Config:
    """Load configuration and apply CLI overrides."""
    config = Config.from_env(require_credentials=require_credentials)

    if ctx.obj.get("debug"):
        config.debug = True
    if ctx.obj.get("dry_run"):
        config.dry_run = True
    if mark:
        config.todo_mark = mark

    return config


def _run(ctx: click.Context, coro) -> None:
    """Run a coroutine, mapping failures to exit codes."""
    try:
        asyncio.run(coro)
    except ValueError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        console.print("\n[dim]See .env.example for the required variables.[/dim]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        if ctx.obj.get("debug"):
            traceback.print_exc()
        sys.exit(1)


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.option("--dry-run", is_flag=True, help="Preview without sending or inserting")
@click.pass_context
def cli(ctx, debug: bool, dry_run: bool):
    """
    TODO Reminder

    Finds marker comments, blames them, and reports them through Feishu.
    """
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["dry_run"] = dry_run


@cli.command()
@click.argument("pattern")
@mark_option
@click.pass_context
def scan(ctx, pattern: str, mark: Optional[str]):
    """List attributed TODOs matched by PATTERN."""

    async def _scan():
        config = _load_config(ctx, require_credentials=False, mark=mark)

        if not await GitHandler(config).is_git_repo():
            console.print(f"[yellow]{config.repo_root} is not a git repository[/yellow]")

        todos = await check_source_code_todo(pattern, config.todo_mark, config=config)

        if not todos:
            console.print(f"[dim]No {config.todo_mark} found.[/dim]")
            return

        table = Table(title=f"{config.todo_mark} ({len(todos)})")
        table.add_column("Location", style="cyan")
        table.add_column("Author", style="green")
        table.add_column("Date", style="yellow")
        table.add_column("Source", style="white")

        for todo in todos:
            table.add_row(
                todo.key,
                todo.author_mail,
                todo.author_time.strftime("%Y-%m-%d"),
                todo.source_code.strip(),
            )

        console.print(table)

    _run(ctx, _scan())


@cli.command()
@click.argument("pattern")
@click.option("--grace-period", default=None, help="Skip TODOs younger than this, e.g. 1d, 2w")
@mark_option
@click.pass_context
def notify(ctx, pattern: str, grace_period: Optional[str], mark: Optional[str]):
    """Message every author about their TODOs matched by PATTERN."""

    async def _notify():
        config = _load_config(ctx, require_credentials=True, mark=mark)
        if grace_period is not None:
            config.grace_period = parse_duration(grace_period)

        if not config.user_id_map:
            console.print("[yellow]USER_ID_MAP is empty; nobody will be messaged.[/yellow]")

        async with FeishuReminder.from_config(config) as reminder:
            groups = await reminder.send_reminder_message(pattern)

        skipped = [mail for mail in groups if mail not in config.user_id_map]
        console.print(f"\n[bold]{len(groups)} authors with TODOs[/bold]")
        if skipped:
            console.print(f"[dim]No destination: {', '.join(sorted(skipped))}[/dim]")

    _run(ctx, _notify())


@cli.command()
@click.argument("pattern")
@click.option("--app-token", default=None, help="Bitable app token (default: BITABLE_APP_TOKEN)")
@click.option("--table-id", default=None, help="Bitable table id (default: BITABLE_TABLE_ID)")
@mark_option
@click.pass_context
def sync(
    ctx,
    pattern: str,
    app_token: Optional[str],
    table_id: Optional[str],
    mark: Optional[str],
):
    """Record TODOs matched by PATTERN in a Bitable table."""

    async def _sync():
        config = _load_config(ctx, require_credentials=True, mark=mark)

        async with FeishuReminder.from_config(config) as reminder:
            created = await reminder.send_reminder_record_into_bitable(
                pattern, app_token=app_token, table_id=table_id
            )

        console.print(f"\n[bold]{created} records created[/bold]")

    _run(ctx, _sync())


@cli.command()
def version():
    """Show version information."""
    console.print(f"TODO Reminder v{__version__}")


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
