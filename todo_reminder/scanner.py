"""
Marker scanning and blame aggregation.

Turns a glob pattern into a flat, ordered list of attributed
marker occurrences:
- scan_files: find lines containing the marker in every matched file
- collect_blame: attribute every line concurrently
- check_source_code_todo: both steps, failing fast by default
"""

import asyncio
import glob
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional

import aiofiles
from rich.console import Console

from .config import Config
from .git_handler import AttributionError, BlameInfo, GitHandler, MarkerCoordinate

console = Console()

BlameFunc = Callable[[str, int], Awaitable[BlameInfo]]


class ScanError(Exception):
    """A file could not be enumerated or read."""
    pass


@dataclass
class FileTodos:
    """Marker lines found in one file."""

    path: str
    lines: list[int] = field(default_factory=list)

    @property
    def coordinates(self) -> list[MarkerCoordinate]:
        return [MarkerCoordinate(self.path, line) for line in self.lines]


@dataclass
class BlameReport:
    """Outcome of attributing every coordinate of a scan."""

    todos: list[BlameInfo] = field(default_factory=list)
    failures: list[AttributionError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.failures) == 0


def find_marker_lines(text: str, todo_mark: str = "TODO") -> list[int]:
    """
    Return 1-based line numbers whose text contains todo_mark.

    Splits on newline only, so numbering matches git's.
    """
    return [
        number
        for number, line in enumerate(text.split("\n"), start=1)
        if todo_mark in line
    ]


def match_files(pattern: str, root: Path) -> list[str]:
    """
    Expand a glob pattern relative to root, keeping regular files only.

    Returns:
        Sorted POSIX paths relative to root (absolute patterns stay absolute).
    """
    try:
        matches = glob.glob(pattern, root_dir=root, recursive=True)
    except OSError as e:
        raise ScanError(f"Could not expand pattern {pattern!r}: {e}") from e

    files = {
        Path(match).as_posix()
        for match in matches
        if os.path.isfile(os.path.join(root, match))
    }
    return sorted(files)


async def _read_file(root: Path, path: str, todo_mark: str) -> FileTodos:
    try:
        async with aiofiles.open(root / path, "r", encoding="utf-8", newline="") as fh:
            text = await fh.read()
    except (OSError, UnicodeDecodeError) as e:
        raise ScanError(f"Could not read {path}: {e}") from e

    return FileTodos(path=path, lines=find_marker_lines(text, todo_mark))


async def scan_files(
    pattern: str,
    todo_mark: str = "TODO",
    root: Optional[Path] = None,
) -> list[FileTodos]:
    """
    Find marker lines in every file matched by pattern.

    Files are read concurrently. A failure on any file fails the
    whole scan; no partial results are returned.

    Args:
        pattern: Glob pattern, e.g. "src/**/*.py".
        todo_mark: Literal, case-sensitive substring to look for.
        root: Directory the pattern is relative to (default: cwd).

    Returns:
        FileTodos for every matched file, in path order. Files without
        markers are included with an empty line list.

    Raises:
        ScanError: If any file cannot be read as UTF-8 text.
    """
    root = Path(root) if root is not None else Path.cwd()
    files = match_files(pattern, root)

    return list(await asyncio.gather(*(_read_file(root, path, todo_mark) for path in files)))


async def collect_blame(files: list[FileTodos], blame_line: BlameFunc) -> BlameReport:
    """
    Attribute every marker line concurrently.

    Every lookup settles before returning; successes keep file order
    then line order, failures are reported in the same order.
    """
    coordinates = [c for f in files for c in f.coordinates]

    outcomes = await asyncio.gather(
        *(blame_line(c.path, c.line) for c in coordinates),
        return_exceptions=True,
    )

    report = BlameReport()
    for outcome in outcomes:
        if isinstance(outcome, AttributionError):
            report.failures.append(outcome)
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            report.todos.append(outcome)

    return report


async def check_source_code_todo(
    pattern: str,
    todo_mark: str = "TODO",
    config: Optional[Config] = None,
    blame_line: Optional[BlameFunc] = None,
    strict: bool = True,
) -> list[BlameInfo]:
    """
    Check source code for markers and return blame for those lines.

    Args:
        pattern: Glob pattern relative to the repository root, e.g. "src/**".
        todo_mark: Marker substring.
        config: Configuration; defaults to the current directory as root.
        blame_line: Attribution function; defaults to GitHandler.blame_line.
        strict: Raise the first attribution failure instead of skipping it.

    Returns:
        Attributed occurrences in file order, then line order.

    Raises:
        ScanError: If a file cannot be read.
        AttributionError: If strict and any lookup fails.
    """
    config = config or Config()

    if blame_line is None:
        blame_line = GitHandler(config).blame_line

    files = await scan_files(pattern, todo_mark, root=config.repo_root)

    if config.debug:
        total = sum(len(f.lines) for f in files)
        console.print(f"[dim]Matched {len(files)} files, {total} marker lines[/dim]")

    report = await collect_blame(files, blame_line)

    if report.failures:
        if strict:
            raise report.failures[0]
        for failure in report.failures:
            console.print(f"[yellow]Warning: {failure}[/yellow]")

    return report.todos
