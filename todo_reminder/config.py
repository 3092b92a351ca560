"""
Configuration management for the TODO reminder.

Loads settings from environment variables and provides
structured configuration for scanning, notifying and syncing.
"""

import json
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv

FEISHU_BASE_URL = "https://open.feishu.cn"

_DURATION_RE = re.compile(
    r"^(?P<value>-?(?:\d+)?\.?\d+)\s*"
    r"(?P<unit>milliseconds?|msecs?|ms|seconds?|secs?|s|minutes?|mins?|m"
    r"|hours?|hrs?|h|days?|d|weeks?|w|years?|yrs?|y)?$",
    re.IGNORECASE,
)

_UNIT_MS = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "w": 7 * 24 * 60 * 60 * 1000,
    "y": 365.25 * 24 * 60 * 60 * 1000,
}


def parse_duration(value: Union[str, int, float, timedelta, None]) -> timedelta:
    """
    Parse a human duration into a timedelta.

    Bare numbers are milliseconds. Strings accept a unit suffix.

    Examples:
        "1d" -> 1 day
        "2 hours" -> 2 hours
        "1w" -> 7 days
        "1500" -> 1.5 seconds
        0 -> no duration

    Raises:
        ValueError: If the value cannot be parsed.
    """
    if value is None:
        return timedelta(0)
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(milliseconds=value)

    match = _DURATION_RE.match(value.strip())
    if not match:
        raise ValueError(
            f"Invalid duration: {value!r}\n"
            "Use a number of milliseconds or a value like '30m', '12h', '1d', '2w'."
        )

    unit = (match.group("unit") or "ms").lower()
    if unit.startswith("ms") or unit.startswith("milli"):
        key = "ms"
    else:
        key = unit[0]

    return timedelta(milliseconds=float(match.group("value")) * _UNIT_MS[key])


def _parse_user_id_map(raw: str, source: str) -> dict[str, str]:
    """Decode a JSON object mapping author email to Feishu user id."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"{source} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"{source} must be a JSON object of email -> user id.")

    return {str(email): str(user_id) for email, user_id in data.items()}


@dataclass
class Config:
    """
    Central configuration for the reminder.

    Loads from environment variables and provides defaults.
    All secrets are loaded from env vars - never hardcoded.
    """

    # Feishu app credentials
    app_id: str = ""
    app_secret: str = ""
    base_url: str = FEISHU_BASE_URL

    # Paths
    repo_root: Path = field(default_factory=lambda: Path.cwd())

    # Scan behavior
    todo_mark: str = "TODO"
    grace_period: timedelta = field(default_factory=timedelta)

    # Destinations
    user_id_map: dict[str, str] = field(default_factory=dict)
    app_token: Optional[str] = None
    table_id: Optional[str] = None

    # Run behavior
    debug: bool = False
    dry_run: bool = False

    @property
    def has_credentials(self) -> bool:
        """Whether both app id and secret are set."""
        return bool(self.app_id and self.app_secret)

    @classmethod
    def from_env(
        cls,
        env_file: Optional[Path] = None,
        require_credentials: bool = True,
    ) -> "Config":
        """
        Load configuration from environment variables.

        Args:
            env_file: Optional path to .env file. If not provided,
                     looks for .env in current directory.
            require_credentials: Fail when the Feishu app credentials
                     are missing. Scanning alone does not need them.

        Returns:
            Configured Config instance.

        Raises:
            ValueError: If required environment variables are missing
                        or malformed.
        """
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()

        app_id = os.getenv("LARK_APP_ID", "")
        app_secret = os.getenv("LARK_APP_SECRET", "")

        if require_credentials and not app_id:
            raise ValueError(
                "LARK_APP_ID environment variable is required.\n"
                "Create a custom app at https://open.feishu.cn/app"
            )
        if require_credentials and not app_secret:
            raise ValueError(
                "LARK_APP_SECRET environment variable is required.\n"
                "Copy it from the 'Credentials & Basic Info' page of your app."
            )

        # Destination map: inline JSON wins over a file
        user_id_map: dict[str, str] = {}
        inline_map = os.getenv("USER_ID_MAP")
        map_file = os.getenv("USER_ID_MAP_FILE")
        if inline_map:
            user_id_map = _parse_user_id_map(inline_map, "USER_ID_MAP")
        elif map_file:
            try:
                raw = Path(map_file).read_text(encoding="utf-8")
            except OSError as e:
                raise ValueError(f"Could not read USER_ID_MAP_FILE {map_file}: {e}") from e
            user_id_map = _parse_user_id_map(raw, "USER_ID_MAP_FILE")

        repo_root_str = os.getenv("REPO_ROOT")
        repo_root = Path(repo_root_str) if repo_root_str else Path.cwd()

        return cls(
            app_id=app_id,
            app_secret=app_secret,
            base_url=os.getenv("FEISHU_BASE_URL") or FEISHU_BASE_URL,
            repo_root=repo_root,
            todo_mark=os.getenv("TODO_MARK") or "TODO",
            grace_period=parse_duration(os.getenv("GRACE_PERIOD") or 0),
            user_id_map=user_id_map,
            app_token=os.getenv("BITABLE_APP_TOKEN") or None,
            table_id=os.getenv("BITABLE_TABLE_ID") or None,
            debug=os.getenv("DEBUG", "false").lower() == "true",
            dry_run=os.getenv("DRY_RUN", "false").lower() == "true",
        )

    def __post_init__(self):
        """Normalize configuration after initialization."""
        if isinstance(self.repo_root, str):
            self.repo_root = Path(self.repo_root)

        if not isinstance(self.grace_period, timedelta):
            self.grace_period = parse_duration(self.grace_period)

        if not self.todo_mark:
            raise ValueError("todo_mark must not be empty.")

        self.base_url = self.base_url.rstrip("/")
