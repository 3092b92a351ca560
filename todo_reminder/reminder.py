"""
Per-author TODO reminders over Feishu messages.

Also hosts FeishuReminder, the entry point that wires scanning,
grouping, messaging and Bitable sync together.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from rich.console import Console

from .config import Config, parse_duration
from .feishu_api import FeishuAPI
from .git_handler import BlameInfo
from .grouping import group_by_grace_period
from .record_sync import FieldMapper, sync_records
from .scanner import BlameFunc, check_source_code_todo

console = Console()

Renderer = Callable[[list[BlameInfo]], str]


def default_reminder_render(todos: list[BlameInfo]) -> str:
    """
    Render a worklist as plain text.

    Example:
        You have those TODO not been resolve:

        - packages/test/demo/bar.ts:2
           > // TODO: remove something
        - packages/test/demo/index.ts:2
           > // TODO: add code
    """
    todolist_text = "\n".join(
        f"- {todo.filename}:{todo.line}\n   > {todo.source_code.strip()}"
        for todo in todos
    )
    return f"You have those TODO not been resolve:\n\n{todolist_text}"


async def dispatch_notifications(
    api: FeishuAPI,
    groups: dict[str, list[BlameInfo]],
    user_id_map: dict[str, str],
    render: Optional[Renderer] = None,
    tenant_token: Optional[str] = None,
    dry_run: bool = False,
) -> dict[str, list[BlameInfo]]:
    """
    Send one rendered reminder per author with a known destination.

    Authors missing from user_id_map are skipped. Deliveries run
    concurrently; once all have settled the first failure is raised.

    Args:
        api: Feishu client.
        groups: Author email -> markers, as built by group_by_grace_period.
        user_id_map: Author email -> Feishu user id.
        render: Worklist renderer (default: default_reminder_render).
        tenant_token: Use this token instead of asking the provider.
        dry_run: Print messages instead of sending them.

    Returns:
        groups, unchanged, including skipped authors.

    Raises:
        TransportError: If authentication or any delivery fails.
    """
    render = render or default_reminder_render

    deliveries = []
    for mail, todos in groups.items():
        user_id = user_id_map.get(mail)
        if not user_id:
            if api.debug:
                console.print(f"[dim]No destination for {mail}, skipping[/dim]")
            continue
        deliveries.append((mail, user_id, render(todos)))

    if not deliveries:
        return groups

    if dry_run:
        for mail, user_id, text in deliveries:
            console.print(f"[yellow]Dry run - would send to {mail} ({user_id}):[/yellow]\n{text}")
        return groups

    token = tenant_token or await api.tokens.get_token()

    results = await asyncio.gather(
        *(
            api.send_message(text, user_id=user_id, tenant_token=token)
            for _, user_id, text in deliveries
        ),
        return_exceptions=True,
    )

    failures = []
    for (mail, _, _), result in zip(deliveries, results):
        if isinstance(result, BaseException):
            console.print(f"[red]Failed to remind {mail}: {result}[/red]")
            failures.append(result)
        else:
            console.print(f"[green]Reminded:[/green] {mail} ({len(groups[mail])} TODOs)")

    if failures:
        raise failures[0]

    return groups


class FeishuReminder:
    """
    Scans a tree for markers and reports them through Feishu.

    Two outputs:
    1. send_reminder_message: one chat message per author
    2. send_reminder_record_into_bitable: one Bitable record per marker
    """

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        config: Optional[Config] = None,
        api: Optional[FeishuAPI] = None,
        blame_line: Optional[BlameFunc] = None,
    ):
        """
        Initialize the reminder.

        Args:
            app_id: Feishu app id.
            app_secret: Feishu app secret.
            config: Scan and run settings; defaults to the current directory.
            api: Feishu client; built from the credentials when omitted.
            blame_line: Attribution override, mainly for tests.
        """
        self.config = config or Config(app_id=app_id, app_secret=app_secret)
        self.api = api or FeishuAPI(
            app_id,
            app_secret,
            base_url=self.config.base_url,
            debug=self.config.debug,
        )
        self.blame_line = blame_line

    @classmethod
    def from_config(cls, config: Config) -> "FeishuReminder":
        return cls(config.app_id, config.app_secret, config=config)

    async def __aenter__(self) -> "FeishuReminder":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.api.aclose()

    async def send_reminder_message(
        self,
        pattern: str,
        user_id_map: Optional[dict[str, str]] = None,
        todo_mark: Optional[str] = None,
        grace_period: Union[str, int, timedelta, None] = None,
        render: Optional[Renderer] = None,
        now: Optional[datetime] = None,
    ) -> dict[str, list[BlameInfo]]:
        """
        Remind every author of their unresolved markers.

        Args:
            pattern: Glob pattern, e.g. "./src/**".
            user_id_map: Author email -> Feishu user id (default: config).
            todo_mark: Marker substring (default: config).
            grace_period: "1d", "1w", milliseconds or timedelta (default: config).
            render: Worklist renderer.
            now: Reference instant for the grace period.

        Returns:
            Author email -> markers, including authors without a destination.
        """
        todos = await check_source_code_todo(
            pattern,
            todo_mark or self.config.todo_mark,
            config=self.config,
            blame_line=self.blame_line,
        )

        if grace_period is None:
            grace = self.config.grace_period
        else:
            grace = parse_duration(grace_period)

        groups = group_by_grace_period(todos, grace, now)

        return await dispatch_notifications(
            self.api,
            groups,
            user_id_map if user_id_map is not None else self.config.user_id_map,
            render=render,
            dry_run=self.config.dry_run,
        )

    async def send_reminder_record_into_bitable(
        self,
        pattern: str,
        app_token: Optional[str] = None,
        table_id: Optional[str] = None,
        field_mapper: Optional[FieldMapper] = None,
        todo_mark: Optional[str] = None,
    ) -> int:
        """
        Record every marker not yet present in a Bitable table.

        Returns:
            Number of records created.
        """
        app_token = app_token or self.config.app_token
        table_id = table_id or self.config.table_id
        if not app_token or not table_id:
            raise ValueError("Both a Bitable app token and a table id are required.")

        return await sync_records(
            self.api,
            pattern,
            app_token,
            table_id,
            field_mapper=field_mapper,
            todo_mark=todo_mark,
            config=self.config,
            blame_line=self.blame_line,
        )
