"""
Git operations handler for the reminder.

Handles:
- Line attribution via `git blame --porcelain`
- Parsing porcelain output into BlameInfo records
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from rich.console import Console

from .config import Config

console = Console()


@dataclass(frozen=True)
class MarkerCoordinate:
    """A `file:line` position holding a marker."""

    path: str
    line: int

    def __str__(self) -> str:
        return f"{self.path}:{self.line}"


class AttributionError(Exception):
    """Blame lookup failed for a coordinate."""

    def __init__(self, message: str, coordinate: Optional[MarkerCoordinate] = None):
        super().__init__(message)
        self.coordinate = coordinate


@dataclass(frozen=True)
class BlameInfo:
    """A marker occurrence attributed to the commit that last touched it."""

    author: str
    author_mail: str
    author_time: datetime
    author_tz: str
    committer: str
    committer_mail: str
    committer_time: datetime
    committer_tz: str
    summary: str
    previous: str
    filename: str
    line: int
    source_code: str

    @property
    def key(self) -> str:
        """Dedup key used for records: `<filename>:<line>`."""
        return f"{self.filename}:{self.line}"

    @classmethod
    def from_porcelain(cls, output: str, filename: str, line: int) -> "BlameInfo":
        """
        Create BlameInfo from `git blame --porcelain` output for one line.

        Porcelain layout:
            <sha> <orig-line> <final-line> <count>
            author <name>
            author-mail <<mail>>
            author-time <epoch>
            ...
            filename <path>
            \t<line content>

        Args:
            output: Raw stdout of git blame.
            filename: Path as requested by the caller.
            line: 1-based line number as requested by the caller.

        Raises:
            ValueError: If required headers are missing.
        """
        headers: dict[str, str] = {}
        source_code: Optional[str] = None

        lines = output.split("\n")
        for raw in lines[1:]:
            if raw.startswith("\t"):
                source_code = raw[1:]
                break
            key, _, value = raw.partition(" ")
            headers[key] = value

        if source_code is None:
            raise ValueError("porcelain output has no content line")

        try:
            return cls(
                author=headers["author"],
                author_mail=_strip_mail(headers["author-mail"]),
                author_time=_parse_epoch(headers["author-time"]),
                author_tz=headers["author-tz"],
                committer=headers["committer"],
                committer_mail=_strip_mail(headers["committer-mail"]),
                committer_time=_parse_epoch(headers["committer-time"]),
                committer_tz=headers["committer-tz"],
                summary=headers.get("summary", ""),
                previous=headers.get("previous", ""),
                filename=filename,
                line=line,
                source_code=source_code,
            )
        except KeyError as e:
            raise ValueError(f"porcelain output is missing header {e}") from e


def _strip_mail(value: str) -> str:
    """`<alice@x.com>` -> `alice@x.com`"""
    value = value.strip()
    if value.startswith("<") and value.endswith(">"):
        return value[1:-1]
    return value


def _parse_epoch(value: str) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class GitHandler:
    """
    Looks up line history for marker coordinates.

    One git process per coordinate, no caching.
    """

    def __init__(self, config: Config):
        """
        Initialize git handler.

        Args:
            config: Configuration instance.
        """
        self.config = config
        self.repo_root = Path(config.repo_root)

    async def _run_git(self, *args: str) -> str:
        """
        Run a git command in the repository root and return stdout.

        Raises:
            AttributionError: If git cannot be started or exits non-zero.
        """
        cmd = ["git", "-C", str(self.repo_root)] + list(args)

        if self.config.debug:
            console.print(f"[dim]Running: {' '.join(cmd)}[/dim]")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise AttributionError(f"Could not run git: {e}") from e

        stdout, stderr = await proc.communicate()

        if proc.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise AttributionError(message or f"git exited with status {proc.returncode}")

        return stdout.decode("utf-8", errors="replace")

    async def blame_line(self, path: str, line: int) -> BlameInfo:
        """
        Attribute a single line of a tracked file.

        Args:
            path: File path relative to the repository root.
            line: 1-based line number.

        Returns:
            BlameInfo for that exact coordinate in the working tree.

        Raises:
            AttributionError: If the path is untracked, the line is out of
                range, or git fails.
        """
        coordinate = MarkerCoordinate(path, line)

        if line < 1:
            raise AttributionError(f"Invalid line number for {coordinate}", coordinate)

        try:
            output = await self._run_git(
                "blame", "--porcelain", "-L", f"{line},{line}", "--", path,
            )
        except AttributionError as e:
            raise AttributionError(f"git blame failed for {coordinate}: {e}", coordinate) from e

        try:
            return BlameInfo.from_porcelain(output, filename=path, line=line)
        except ValueError as e:
            raise AttributionError(
                f"Unexpected git blame output for {coordinate}: {e}", coordinate
            ) from e

    async def is_git_repo(self) -> bool:
        """Check if repo_root is inside a git work tree."""
        try:
            await self._run_git("rev-parse", "--git-dir")
            return True
        except AttributionError:
            return False
