"""
Shared fixtures: marker factories, a fake blame function,
a fake Feishu server and a throwaway git repository.
"""

import asyncio
import json
import shutil
import subprocess
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest

from todo_reminder.config import Config
from todo_reminder.feishu_api import SEND_MESSAGE_PATH, TOKEN_PATH, FeishuAPI
from todo_reminder.git_handler import AttributionError, BlameInfo, MarkerCoordinate

TOKEN = "t-test-token"
AUTHORED = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def make_todo(
    filename: str = "a.ts",
    line: int = 1,
    author_mail: str = "alice@x.com",
    author_time: datetime = AUTHORED,
    source_code: str = "// TODO: x",
    summary: str = "add feature",
) -> BlameInfo:
    return BlameInfo(
        author=author_mail.split("@")[0].title(),
        author_mail=author_mail,
        author_time=author_time,
        author_tz="+0000",
        committer="Bot",
        committer_mail="bot@x.com",
        committer_time=author_time,
        committer_tz="+0000",
        summary=summary,
        previous="",
        filename=filename,
        line=line,
        source_code=source_code,
    )


class FakeBlame:
    """
    Async stand-in for GitHandler.blame_line.

    Later coordinates resolve first, so ordering bugs show up.
    """

    def __init__(self, root: Path, authors=None, failing=()):
        self.root = root
        self.authors = authors or {}
        self.failing = {str(c) for c in failing}
        self.calls = []

    async def __call__(self, path: str, line: int) -> BlameInfo:
        self.calls.append((path, line))
        coordinate = MarkerCoordinate(path, line)
        await asyncio.sleep(0.001 * (100 - len(self.calls) % 100))

        if str(coordinate) in self.failing:
            raise AttributionError(f"no history for {coordinate}", coordinate)

        source = (self.root / path).read_text(encoding="utf-8").split("\n")[line - 1]
        mail, when = self.authors.get(path, ("alice@x.com", AUTHORED))
        return make_todo(path, line, author_mail=mail, author_time=when, source_code=source)


class FakeFeishu:
    """In-memory Feishu message + Bitable backend for httpx.MockTransport."""

    def __init__(self, records=None, expire: int = 7200):
        self.records = [dict(r) for r in records or []]
        self.expire = expire
        self.token_requests = 0
        self.messages = []
        self.list_requests = []
        self.batch_requests = []
        self.fail_send_to = set()
        self.reject_tokens = 0
        self.fail_list = False
        self.fail_batch_at = None
        self.batch_attempts = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path

        if path == TOKEN_PATH:
            self.token_requests += 1
            return httpx.Response(200, json={
                "code": 0,
                "msg": "ok",
                "tenant_access_token": TOKEN,
                "expire": self.expire,
            })

        if request.headers.get("Authorization") != f"Bearer {TOKEN}":
            return httpx.Response(401, json={"code": 99991663, "msg": "invalid token"})

        if self.reject_tokens:
            self.reject_tokens -= 1
            return httpx.Response(401, json={"code": 99991663, "msg": "invalid token"})

        if path == SEND_MESSAGE_PATH:
            body = json.loads(request.content)
            if body.get("user_id") in self.fail_send_to:
                return httpx.Response(400, json={"code": 230001, "msg": "invalid user"})
            self.messages.append(body)
            return httpx.Response(200, json={"code": 0, "data": {"message_id": "om_1"}})

        if path.endswith("/records/batch_create"):
            self.batch_attempts += 1
            if self.batch_attempts == self.fail_batch_at:
                return httpx.Response(500, json={"code": 1254290, "msg": "internal error"})
            body = json.loads(request.content)
            self.batch_requests.append(body["records"])
            self.records.extend(r["fields"] for r in body["records"])
            return httpx.Response(200, json={"code": 0, "data": {"records": body["records"]}})

        if path.endswith("/records"):
            if self.fail_list:
                return httpx.Response(500, json={"code": 1254290, "msg": "internal error"})
            params = request.url.params
            self.list_requests.append(dict(params))
            page_size = int(params["page_size"])
            start = int(params.get("page_token") or 0)
            names = json.loads(params["field_names"]) if "field_names" in params else None

            page = self.records[start:start + page_size]
            end = start + len(page)
            has_more = end < len(self.records)
            items = [
                {
                    "id": f"rec{start + i}",
                    "record_id": f"rec{start + i}",
                    "fields": {k: v for k, v in fields.items() if names is None or k in names},
                }
                for i, fields in enumerate(page)
            ]
            return httpx.Response(200, json={"code": 0, "data": {
                "has_more": has_more,
                "page_token": str(end) if has_more else "",
                "total": len(self.records),
                "items": items or None,
            }})

        return httpx.Response(404, json={"code": 404, "msg": "not found"})


@pytest.fixture
def feishu():
    return FakeFeishu()


def make_api(feishu: FakeFeishu, **kwargs) -> FeishuAPI:
    client = httpx.AsyncClient(transport=httpx.MockTransport(feishu.handler))
    return FeishuAPI("cli_app", "secret", client=client, **kwargs)


@pytest.fixture
def api(feishu):
    return make_api(feishu)


@pytest.fixture
def source_tree(tmp_path):
    """a.ts line 2 and b.ts line 5 hold a TODO; c.ts has none."""
    (tmp_path / "a.ts").write_text("const a = 1;\n// TODO: x\n", encoding="utf-8")
    (tmp_path / "b.ts").write_text("1\n2\n3\n4\n// TODO: y\n", encoding="utf-8")
    (tmp_path / "c.ts").write_text("clean\n", encoding="utf-8")
    return tmp_path


@pytest.fixture
def config(source_tree):
    return Config(app_id="cli_app", app_secret="secret", repo_root=source_tree)


@pytest.fixture
def git_repo(tmp_path, monkeypatch):
    """A git repository with one commit by alice@x.com."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    for key, value in {
        "GIT_AUTHOR_NAME": "Alice",
        "GIT_AUTHOR_EMAIL": "alice@x.com",
        "GIT_AUTHOR_DATE": "2024-01-02T03:04:05+00:00",
        "GIT_COMMITTER_NAME": "Bob",
        "GIT_COMMITTER_EMAIL": "bob@x.com",
        "GIT_COMMITTER_DATE": "2024-01-03T00:00:00+00:00",
        "GIT_CONFIG_NOSYSTEM": "1",
    }.items():
        monkeypatch.setenv(key, value)

    def git(*args):
        subprocess.run(["git", "-C", str(tmp_path), *args], check=True, capture_output=True)

    git("init", "-q")
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "a.ts").write_text("const a = 1;\n// TODO: x\n", encoding="utf-8")
    (tmp_path / "src" / "b.ts").write_text("1\n2\n3\n4\n// TODO: y\n", encoding="utf-8")
    git("add", "src")
    git("-c", "commit.gpgsign=false", "commit", "-q", "-m", "Add sources")

    return tmp_path
