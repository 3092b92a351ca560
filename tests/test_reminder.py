"""
Tests for per-author reminder messages.
"""

from datetime import datetime, timedelta, timezone

import pytest

from todo_reminder.config import Config
from todo_reminder.feishu_api import TransportError
from todo_reminder.reminder import (
    FeishuReminder,
    default_reminder_render,
    dispatch_notifications,
)
from tests.conftest import AUTHORED, FakeBlame, make_todo


class TestRender:

    def test_default_render(self):
        todos = [
            make_todo("a.ts", 2, source_code="    // TODO: x  "),
            make_todo("b.ts", 5, source_code="// TODO: y"),
        ]

        assert default_reminder_render(todos) == (
            "You have those TODO not been resolve:\n\n"
            "- a.ts:2\n   > // TODO: x\n"
            "- b.ts:5\n   > // TODO: y"
        )


class TestDispatchNotifications:

    @pytest.mark.asyncio
    async def test_unmapped_author_is_skipped_but_returned(self, feishu, api):
        groups = {
            "alice@x.com": [make_todo("a.ts", 2)],
            "bob@x.com": [make_todo("b.ts", 5, author_mail="bob@x.com")],
        }

        result = await dispatch_notifications(api, groups, {"alice@x.com": "u1"})

        assert result == groups
        assert [m["user_id"] for m in feishu.messages] == ["u1"]

    @pytest.mark.asyncio
    async def test_nobody_mapped_means_no_calls(self, feishu, api):
        groups = {"bob@x.com": [make_todo(author_mail="bob@x.com")]}

        await dispatch_notifications(api, groups, {})

        assert feishu.token_requests == 0
        assert feishu.messages == []

    @pytest.mark.asyncio
    async def test_one_token_per_dispatch(self, feishu, api):
        groups = {
            "alice@x.com": [make_todo()],
            "bob@x.com": [make_todo(author_mail="bob@x.com")],
        }

        await dispatch_notifications(api, groups, {"alice@x.com": "u1", "bob@x.com": "u2"})

        assert feishu.token_requests == 1
        assert sorted(m["user_id"] for m in feishu.messages) == ["u1", "u2"]

    @pytest.mark.asyncio
    async def test_custom_renderer(self, feishu, api):
        groups = {"alice@x.com": [make_todo(), make_todo(line=3)]}

        await dispatch_notifications(
            api, groups, {"alice@x.com": "u1"}, render=lambda todos: f"{len(todos)} open"
        )

        assert feishu.messages[0]["content"] == {"text": "2 open"}

    @pytest.mark.asyncio
    async def test_delivery_failure_fails_dispatch(self, feishu, api):
        feishu.fail_send_to.add("u2")
        groups = {
            "alice@x.com": [make_todo()],
            "bob@x.com": [make_todo(author_mail="bob@x.com")],
        }

        with pytest.raises(TransportError):
            await dispatch_notifications(api, groups, {"alice@x.com": "u1", "bob@x.com": "u2"})

        assert [m["user_id"] for m in feishu.messages] == ["u1"]

    @pytest.mark.asyncio
    async def test_dry_run_sends_nothing(self, feishu, api):
        groups = {"alice@x.com": [make_todo()]}

        result = await dispatch_notifications(api, groups, {"alice@x.com": "u1"}, dry_run=True)

        assert result == groups
        assert feishu.token_requests == 0
        assert feishu.messages == []


class TestFeishuReminder:

    @pytest.mark.asyncio
    async def test_send_reminder_message_end_to_end(self, feishu, api, config, source_tree):
        today = datetime.now(timezone.utc)
        blame = FakeBlame(source_tree, authors={
            "a.ts": ("alice@x.com", today),
            "b.ts": ("alice@x.com", today),
        })
        reminder = FeishuReminder("cli_app", "secret", config=config, api=api, blame_line=blame)

        groups = await reminder.send_reminder_message(
            "*.ts", user_id_map={"alice@x.com": "u1"}, grace_period=0
        )

        assert list(groups) == ["alice@x.com"]
        assert [(t.filename, t.line) for t in groups["alice@x.com"]] == [("a.ts", 2), ("b.ts", 5)]

        assert len(feishu.messages) == 1
        message = feishu.messages[0]
        assert message["user_id"] == "u1"
        assert message["msg_type"] == "text"
        assert "a.ts:2" in message["content"]["text"]
        assert "b.ts:5" in message["content"]["text"]

    @pytest.mark.asyncio
    async def test_grace_period_from_string(self, feishu, api, config, source_tree):
        now = AUTHORED + timedelta(hours=12)
        blame = FakeBlame(source_tree)
        reminder = FeishuReminder("cli_app", "secret", config=config, api=api, blame_line=blame)

        groups = await reminder.send_reminder_message(
            "*.ts", user_id_map={"alice@x.com": "u1"}, grace_period="1d", now=now
        )

        assert groups == {}
        assert feishu.messages == []

    @pytest.mark.asyncio
    async def test_defaults_come_from_config(self, feishu, api, source_tree):
        config = Config(
            repo_root=source_tree,
            todo_mark="const",
            user_id_map={"alice@x.com": "u1"},
            grace_period="1h",
        )
        reminder = FeishuReminder(
            "cli_app", "secret", config=config, api=api, blame_line=FakeBlame(source_tree)
        )

        groups = await reminder.send_reminder_message("*.ts", now=AUTHORED + timedelta(hours=2))

        assert [t.key for t in groups["alice@x.com"]] == ["a.ts:1"]
        assert feishu.messages[0]["user_id"] == "u1"

    @pytest.mark.asyncio
    async def test_bitable_needs_coordinates(self, api, config):
        reminder = FeishuReminder("cli_app", "secret", config=config, api=api)

        with pytest.raises(ValueError, match="table id"):
            await reminder.send_reminder_record_into_bitable("*.ts")
