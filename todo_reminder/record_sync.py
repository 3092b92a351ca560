"""
Bitable record sync for attributed markers.

Orchestrates:
- Listing existing records (path field only)
- Dedup by `<filename>:<line>`
- Mapping new markers to record fields
- Sequential batch inserts
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

from rich.console import Console
from rich.table import Table

from .config import Config
from .feishu_api import MAX_BATCH_SIZE, FeishuAPI
from .git_handler import BlameInfo
from .scanner import BlameFunc, check_source_code_todo

console = Console()

FieldMapper = Callable[[BlameInfo], dict[str, Any]]

PATH_FIELD = "Path"
DEFAULT_PAGE_SIZE = 100


def default_record_fields(todo: BlameInfo) -> dict[str, Any]:
    """Map a marker to Bitable fields. Date is epoch milliseconds."""
    return {
        PATH_FIELD: todo.key,
        "Author": f"{todo.author} <{todo.author_mail}>",
        "Date": int(todo.author_time.timestamp() * 1000),
        "Summary": todo.summary,
        "Source": todo.source_code.strip(),
    }


def field_text(value: Any) -> str:
    """
    Flatten a Bitable text cell.

    Text cells come back either as a plain string or as a list of
    rich-text segments like [{"type": "text", "text": "a.ts:2"}].
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "".join(
            segment.get("text", "") if isinstance(segment, dict) else str(segment)
            for segment in value
        )
    if isinstance(value, dict):
        return str(value.get("text", ""))
    return str(value)


def chunked(items: list, size: int) -> Iterator[list]:
    """Split items into consecutive lists of at most size."""
    for start in range(0, len(items), size):
        yield items[start:start + size]


@dataclass
class SyncResult:
    """Result of a record sync."""

    todos_found: int = 0
    existing_records: int = 0
    records_created: int = 0
    batches: list[dict] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return self.records_created == 0


class RecordSync:
    """
    Inserts markers into a Bitable table without duplicating them.

    The dedup key is derived from path and line only, so running the
    sync again over an unchanged tree creates nothing. A custom field
    mapper must keep writing that key into path_field.
    """

    def __init__(
        self,
        api: FeishuAPI,
        app_token: str,
        table_id: str,
        field_mapper: Optional[FieldMapper] = None,
        path_field: str = PATH_FIELD,
        page_size: int = DEFAULT_PAGE_SIZE,
        batch_size: int = MAX_BATCH_SIZE,
        dry_run: bool = False,
    ):
        """
        Initialize record sync.

        Args:
            api: Feishu client.
            app_token: Bitable app token.
            table_id: Table id.
            field_mapper: Marker -> fields (default: default_record_fields).
            path_field: Field holding the dedup key.
            page_size: Records per list request.
            batch_size: Records per insert request, at most 100.
            dry_run: Compute new records without inserting them.
        """
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")

        self.api = api
        self.app_token = app_token
        self.table_id = table_id
        self.field_mapper = field_mapper or default_record_fields
        self.path_field = path_field
        self.page_size = page_size
        self.batch_size = batch_size
        self.dry_run = dry_run

    async def fetch_existing_keys(self) -> list[str]:
        """Dedup keys of every record already in the table, in fetch order."""
        keys = []
        async for record in self.api.iter_records(
            self.app_token,
            self.table_id,
            field_names=[self.path_field],
            page_size=self.page_size,
        ):
            keys.append(field_text(record.fields.get(self.path_field)))
        return keys

    @staticmethod
    def missing(todos: list[BlameInfo], existing_keys: set[str]) -> list[BlameInfo]:
        """Markers whose key is not yet recorded."""
        return [todo for todo in todos if todo.key not in existing_keys]

    async def insert(self, records: list[dict[str, Any]]) -> list[dict]:
        """Insert records one batch at a time; returns each batch response."""
        responses = []
        for batch in chunked(records, self.batch_size):
            responses.append(
                await self.api.batch_create_records(self.app_token, self.table_id, batch)
            )
        return responses

    async def sync(self, todos: list[BlameInfo]) -> SyncResult:
        """
        Insert every marker that has no record yet.

        Raises:
            TransportError: On the first failed list or insert request.
        """
        result = SyncResult(todos_found=len(todos))

        existing = await self.fetch_existing_keys()
        result.existing_records = len(existing)

        new_todos = self.missing(todos, set(existing))
        if not new_todos:
            console.print("[dim]No new TODO records to insert[/dim]")
            return result

        records = [self.field_mapper(todo) for todo in new_todos]

        if self.dry_run:
            console.print(f"[yellow]Dry run - would insert {len(records)} records[/yellow]")
            return result

        result.batches = await self.insert(records)
        result.records_created = len(records)

        self._print_summary(result)
        return result

    def _print_summary(self, result: SyncResult) -> None:
        table = Table(show_header=False, box=None)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="white")

        table.add_row("TODOs found", str(result.todos_found))
        table.add_row("Existing records", str(result.existing_records))
        table.add_row("Records created", str(result.records_created))
        table.add_row("Batches", str(len(result.batches)))

        console.print("[green]Bitable sync complete[/green]")
        console.print(table)


async def sync_records(
    api: FeishuAPI,
    pattern: str,
    app_token: str,
    table_id: str,
    field_mapper: Optional[FieldMapper] = None,
    todo_mark: Optional[str] = None,
    config: Optional[Config] = None,
    blame_line: Optional[BlameFunc] = None,
) -> int:
    """
    Scan pattern and record every new marker in a Bitable table.

    Returns:
        Number of records created.
    """
    config = config or Config()
    todos = await check_source_code_todo(
        pattern, todo_mark or config.todo_mark, config=config, blame_line=blame_line
    )
    record_sync = RecordSync(
        api, app_token, table_id, field_mapper=field_mapper, dry_run=config.dry_run
    )
    result = await record_sync.sync(todos)
    return result.records_created
