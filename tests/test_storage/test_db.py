"""Tests for warden.storage.db — SQLite rule store."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from pathlib import Path

from warden.models import (
    Action,
    MalformedConditionsError,
    Resource,
    ResourceType,
    Scope,
    Subject,
    SubjectType,
    ValidationError,
)
from warden.storage.db import Database


class TestDatabaseInit:
    async def test_creates_tables(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "db" / "warden.db")
        await db.init()
        try:
            async with db.connection.execute(
                "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
            ) as cursor:
                tables = [row[0] for row in await cursor.fetchall()]
            assert "permission_rules" in tables
            assert "audit_log" in tables
        finally:
            await db.close()

    async def test_idempotent_init(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "db" / "warden.db")
        await db.init()
        await db.init()  # Second call should not raise
        try:
            async with db.connection.execute(
                "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
            ) as cursor:
                tables = [row[0] for row in await cursor.fetchall()]
            assert "permission_rules" in tables
        finally:
            await db.close()

    async def test_connection_before_init_raises(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "warden.db")
        with pytest.raises(RuntimeError, match="not initialized"):
            _ = db.connection

    async def test_migrates_legacy_audit_log(self, tmp_path: Path) -> None:
        db_path = tmp_path / "legacy.db"
        conn = sqlite3.connect(str(db_path))
        conn.execute(
            "CREATE TABLE audit_log ("
            "id INTEGER PRIMARY KEY AUTOINCREMENT, timestamp TEXT NOT NULL, "
            "event TEXT NOT NULL, subject_type TEXT NOT NULL, subject_id INTEGER, "
            "resource_type TEXT NOT NULL, resource_name TEXT, rule_id INTEGER, "
            "session_id INTEGER, detail TEXT)"
        )
        conn.commit()
        conn.close()

        db = Database(db_path)
        await db.init()
        try:
            async with db.connection.execute("PRAGMA table_info(audit_log)") as cursor:
                columns = [row[1] for row in await cursor.fetchall()]
            assert "owner_id" in columns
        finally:
            await db.close()


class TestCreateRule:
    async def test_all_fields(self, db: Database) -> None:
        rule = await db.create_rule(
            {
                "owner_id": 1,
                "session_id": 5,
                "subject_type": "agent",
                "subject_id": 1,
                "resource_type": "command",
                "resource_name": "shell",
                "action": "allow",
                "scope": "session",
                "conditions": {"dangerous": False},
                "priority": 10,
            }
        )
        assert rule.id is not None
        assert rule.owner_id == 1
        assert rule.session_id == 5
        assert rule.subject_type is SubjectType.AGENT
        assert rule.subject_id == 1
        assert rule.resource_type is ResourceType.COMMAND
        assert rule.resource_name == "shell"
        assert rule.action is Action.ALLOW
        assert rule.scope is Scope.SESSION
        assert rule.conditions == {"dangerous": False}
        assert rule.priority == 10
        assert rule.created_at is not None

    async def test_minimal_fields(self, db: Database) -> None:
        rule = await db.create_rule(
            {"subject_type": "*", "resource_type": "*", "action": "prompt"}
        )
        assert rule.scope is Scope.PERMANENT
        assert rule.priority == 0
        assert rule.conditions is None
        assert rule.owner_id is None

    async def test_created_rule_matches_stored_rule(self, db: Database) -> None:
        rule = await db.create_rule(
            {
                "subject_type": "plugin",
                "subject_id": 3,
                "resource_type": "ability",
                "resource_name": "deploy",
                "action": "deny",
                "conditions": {"env": "prod", "level": 2},
            }
        )
        fetched = await db.get_rule(rule.id)
        assert fetched == rule

    @pytest.mark.parametrize("field", ["subject_type", "resource_type", "action"])
    async def test_rejects_missing_required_field(self, db: Database, field: str) -> None:
        fields = {"subject_type": "agent", "resource_type": "command", "action": "allow"}
        del fields[field]
        with pytest.raises(ValidationError, match=field):
            await db.create_rule(fields)
        assert await db.list_rules() == []

    async def test_rejects_invalid_subject_type(self, db: Database) -> None:
        with pytest.raises(ValidationError, match="subject_type"):
            await db.create_rule(
                {"subject_type": "robot", "resource_type": "command", "action": "allow"}
            )


class TestGetAndDeleteRule:
    async def test_get_nonexistent_returns_none(self, db: Database) -> None:
        assert await db.get_rule(9999) is None

    async def test_delete_rule(self, db: Database) -> None:
        rule = await db.create_rule(
            {"subject_type": "agent", "resource_type": "command", "action": "allow"}
        )
        assert await db.delete_rule(rule.id) is True
        assert await db.get_rule(rule.id) is None

    async def test_delete_nonexistent_returns_false(self, db: Database) -> None:
        assert await db.delete_rule(9999) is False


class TestListRules:
    async def _seed(self, db: Database) -> None:
        await db.create_rule(
            {"owner_id": 1, "subject_type": "agent", "resource_type": "command",
             "resource_name": "shell", "action": "allow"}
        )
        await db.create_rule(
            {"owner_id": 2, "subject_type": "user", "resource_type": "tool",
             "resource_name": "grep", "action": "deny"}
        )
        await db.create_rule(
            {"owner_id": 1, "subject_type": "agent", "resource_type": "tool",
             "resource_name": "grep", "action": "prompt"}
        )

    async def test_list_all(self, db: Database) -> None:
        await self._seed(db)
        assert len(await db.list_rules()) == 3

    async def test_filter_by_owner(self, db: Database) -> None:
        await self._seed(db)
        rules = await db.list_rules(owner_id=1)
        assert len(rules) == 2
        assert all(r.owner_id == 1 for r in rules)

    async def test_filter_by_subject_type(self, db: Database) -> None:
        await self._seed(db)
        rules = await db.list_rules(subject_type="user")
        assert [r.action for r in rules] == [Action.DENY]

    async def test_filter_by_resource_type_and_name(self, db: Database) -> None:
        await self._seed(db)
        rules = await db.list_rules(resource_type=ResourceType.TOOL, resource_name="grep")
        assert len(rules) == 2

    async def test_ordered_by_priority_then_insertion(self, db: Database) -> None:
        low = await db.create_rule(
            {"subject_type": "*", "resource_type": "*", "action": "allow", "priority": 1}
        )
        high = await db.create_rule(
            {"subject_type": "*", "resource_type": "*", "action": "allow", "priority": 10}
        )
        mid_a = await db.create_rule(
            {"subject_type": "*", "resource_type": "*", "action": "deny", "priority": 5}
        )
        mid_b = await db.create_rule(
            {"subject_type": "*", "resource_type": "*", "action": "allow", "priority": 5}
        )
        rules = await db.list_rules()
        assert [r.id for r in rules] == [high.id, mid_a.id, mid_b.id, low.id]


class TestCandidateRules:
    async def test_sql_narrowing(self, db: Database) -> None:
        match = await db.create_rule(
            {"subject_type": "agent", "resource_type": "command", "action": "allow"}
        )
        await db.create_rule(
            {"subject_type": "user", "resource_type": "command", "action": "allow"}
        )
        await db.create_rule(
            {"subject_type": "agent", "subject_id": 2, "resource_type": "command",
             "action": "allow"}
        )
        await db.create_rule(
            {"subject_type": "agent", "resource_type": "command", "action": "allow",
             "session_id": 9, "scope": "session"}
        )
        rules = await db.candidate_rules(
            Subject("agent", 1), Resource("command", "shell"), {}
        )
        assert [r.id for r in rules] == [match.id]

    async def test_malformed_conditions_skipped(self, db: Database) -> None:
        good = await db.create_rule(
            {"subject_type": "agent", "resource_type": "command", "action": "allow"}
        )
        await db.connection.execute(
            "INSERT INTO permission_rules "
            "(subject_type, resource_type, action, conditions, created_at) "
            "VALUES ('agent', 'command', 'deny', '{broken', '2026-01-01T00:00:00')"
        )
        await db.connection.commit()
        rules = await db.candidate_rules(Subject("agent", 1), Resource("command", "shell"), {})
        assert [r.id for r in rules] == [good.id]

    async def test_malformed_conditions_strict_raises(self, db: Database) -> None:
        await db.connection.execute(
            "INSERT INTO permission_rules "
            "(subject_type, resource_type, action, conditions, created_at) "
            "VALUES ('agent', 'command', 'deny', '\"just a string\"', '2026-01-01T00:00:00')"
        )
        await db.connection.commit()
        with pytest.raises(MalformedConditionsError):
            await db.candidate_rules(
                Subject("agent", 1), Resource("command", "shell"), {}, strict=True
            )


class TestConsumeRule:
    async def test_consumes_once_rule_exactly_once(self, db: Database) -> None:
        rule = await db.create_rule(
            {"subject_type": "agent", "resource_type": "command", "action": "allow",
             "scope": "once"}
        )
        assert await db.consume_rule(rule.id) is True
        assert await db.consume_rule(rule.id) is False
        assert await db.get_rule(rule.id) is None

    async def test_does_not_consume_permanent_rule(self, db: Database) -> None:
        rule = await db.create_rule(
            {"subject_type": "agent", "resource_type": "command", "action": "allow"}
        )
        assert await db.consume_rule(rule.id) is False
        assert await db.get_rule(rule.id) is not None

    async def test_uncommitted_consume_rolls_back(self, db: Database) -> None:
        rule = await db.create_rule(
            {"subject_type": "agent", "resource_type": "command", "action": "allow",
             "scope": "once"}
        )
        assert await db.consume_rule(rule.id, commit=False) is True
        await db.rollback()
        assert await db.get_rule(rule.id) is not None


class TestAuditLog:
    async def test_log_and_fetch(self, db: Database) -> None:
        subject = Subject("agent", 1)
        resource = Resource("command", "shell")
        await db.log_decision(Action.ALLOW, subject, resource, {"session_id": 3}, rule_id=4)
        await db.log_decision(
            Action.PROMPT, subject, resource, {}, reason="no matching rules"
        )
        entries = await db.get_audit_log()
        assert [e["event"] for e in entries] == ["permission_prompt", "permission_allow"]
        assert entries[1]["rule_id"] == 4
        assert entries[1]["session_id"] == 3
        assert entries[0]["detail"] == {"reason": "no matching rules"}

    async def test_filter_by_event(self, db: Database) -> None:
        subject = Subject("user", 2)
        resource = Resource("tool", "grep")
        await db.log_decision(Action.DENY, subject, resource, {})
        await db.log_decision(Action.ALLOW, subject, resource, {})
        entries = await db.get_audit_log(event="permission_deny")
        assert len(entries) == 1
        assert entries[0]["subject_type"] == "user"
