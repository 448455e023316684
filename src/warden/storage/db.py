"""Async SQLite rule store for Warden."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import aiosqlite

from warden.models import (
    Action,
    MalformedConditionsError,
    PermissionRule,
    ResourceType,
    Scope,
    SubjectType,
    decode_conditions,
    encode_conditions,
    validate_rule_fields,
)

if TYPE_CHECKING:
    from pathlib import Path

    from warden.models import Resource, Subject

logger = logging.getLogger("warden.storage.db")

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS permission_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id INTEGER,
    session_id INTEGER,
    subject_type TEXT NOT NULL CHECK(subject_type IN ('user', 'agent', 'plugin', '*')),
    subject_id INTEGER,
    resource_type TEXT NOT NULL CHECK(resource_type IN ('command', 'tool', 'ability', '*')),
    resource_name TEXT,
    action TEXT NOT NULL CHECK(action IN ('allow', 'deny', 'prompt')),
    scope TEXT NOT NULL DEFAULT 'permanent' CHECK(scope IN ('once', 'session', 'permanent')),
    conditions TEXT,
    priority INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_permission_rules_types
    ON permission_rules(subject_type, resource_type);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    event TEXT NOT NULL,
    subject_type TEXT NOT NULL,
    subject_id INTEGER,
    resource_type TEXT NOT NULL,
    resource_name TEXT,
    rule_id INTEGER,
    session_id INTEGER,
    owner_id INTEGER,
    detail TEXT
);

CREATE INDEX IF NOT EXISTS idx_audit_log_event_time
    ON audit_log(event, timestamp);
"""

_RULE_COLUMNS = (
    "id, owner_id, session_id, subject_type, subject_id, resource_type, "
    "resource_name, action, scope, conditions, priority, created_at"
)

_FILTER_COLUMNS = (
    "owner_id",
    "session_id",
    "subject_type",
    "subject_id",
    "resource_type",
    "resource_name",
)

AUDIT_EVENTS: dict[Action, str] = {
    Action.ALLOW: "permission_allow",
    Action.DENY: "permission_deny",
    Action.PROMPT: "permission_prompt",
}


class Database:
    """Async SQLite database holding permission rules and the decision audit log."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._conn: aiosqlite.Connection | None = None
        self._consume_lock = asyncio.Lock()

    async def init(self) -> None:
        """Create parent directories, open connection, run schema and migrations."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        if self._conn is None:
            self._conn = await aiosqlite.connect(self._path)
        await self._conn.executescript(SCHEMA_SQL)
        await self._conn.commit()
        await self._migrate()
        logger.info("Database initialized at %s", self._path)

    async def _migrate(self) -> None:
        """Run idempotent schema migrations for columns added after initial release."""
        conn = self.connection
        migrations: list[tuple[str, str, str]] = [
            ("audit_log", "owner_id", "ALTER TABLE audit_log ADD COLUMN owner_id INTEGER"),
        ]
        for table, column, sql in migrations:
            try:
                await conn.execute(f"SELECT {column} FROM {table} LIMIT 0")  # noqa: S608
            except aiosqlite.OperationalError:
                await conn.execute(sql)
                logger.info("Migration: added %s.%s", table, column)
        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    @property
    def connection(self) -> aiosqlite.Connection:
        """Return the active connection. Raises if not initialized."""
        if self._conn is None:
            raise RuntimeError("Database not initialized, call init() first")
        return self._conn

    async def commit(self) -> None:
        """Commit the open transaction."""
        await self.connection.commit()

    async def rollback(self) -> None:
        """Discard uncommitted writes."""
        await self.connection.rollback()

    @property
    def consume_lock(self) -> asyncio.Lock:
        """Lock serializing evaluate-and-consume against this store."""
        return self._consume_lock

    # ── Rule CRUD ───────────────────────────────────────────────────────

    async def create_rule(self, fields: Mapping[str, Any]) -> PermissionRule:
        """Validate *fields*, insert a rule, and return it fully populated.

        Raises :exc:`~warden.models.ValidationError` for missing or invalid
        ``subject_type``, ``resource_type``, ``action`` (and ``scope``).
        """
        values = validate_rule_fields(fields)
        created_at = datetime.now(UTC).isoformat()
        cursor = await self.connection.execute(
            "INSERT INTO permission_rules "
            "(owner_id, session_id, subject_type, subject_id, resource_type, "
            "resource_name, action, scope, conditions, priority, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                values["owner_id"],
                values["session_id"],
                values["subject_type"].value,
                values["subject_id"],
                values["resource_type"].value,
                values["resource_name"],
                values["action"].value,
                values["scope"].value,
                encode_conditions(values["conditions"]),
                values["priority"],
                created_at,
            ),
        )
        rule_id = cursor.lastrowid
        await cursor.close()
        await self.connection.commit()
        logger.info(
            "Created rule %s: %s %s/%s -> %s/%s (scope=%s, priority=%d)",
            rule_id,
            values["action"].value,
            values["subject_type"].value,
            values["subject_id"],
            values["resource_type"].value,
            values["resource_name"],
            values["scope"].value,
            values["priority"],
        )
        return PermissionRule(id=rule_id, created_at=created_at, **values)  # type: ignore[arg-type]

    async def get_rule(self, rule_id: int) -> PermissionRule | None:
        """Fetch a single rule by ID, or None if not found."""
        async with self.connection.execute(
            f"SELECT {_RULE_COLUMNS} FROM permission_rules WHERE id = ?",  # noqa: S608
            (rule_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_rule(row)

    async def delete_rule(self, rule_id: int) -> bool:
        """Delete a rule by ID. Returns True iff a row was removed."""
        cursor = await self.connection.execute(
            "DELETE FROM permission_rules WHERE id = ?", (rule_id,)
        )
        deleted = cursor.rowcount > 0
        await cursor.close()
        await self.connection.commit()
        if deleted:
            logger.info("Deleted rule %d", rule_id)
        return deleted

    async def list_rules(
        self,
        *,
        owner_id: int | None = None,
        session_id: int | None = None,
        subject_type: SubjectType | str | None = None,
        subject_id: int | None = None,
        resource_type: ResourceType | str | None = None,
        resource_name: str | None = None,
    ) -> list[PermissionRule]:
        """List rules matching every given filter, highest priority first.

        Ties keep insertion order.
        """
        filters: dict[str, object] = {
            "owner_id": owner_id,
            "session_id": session_id,
            "subject_type": SubjectType(subject_type).value if subject_type else None,
            "subject_id": subject_id,
            "resource_type": ResourceType(resource_type).value if resource_type else None,
            "resource_name": resource_name,
        }
        clauses: list[str] = []
        params: list[object] = []
        for column in _FILTER_COLUMNS:
            value = filters[column]
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        async with self.connection.execute(
            f"SELECT {_RULE_COLUMNS} FROM permission_rules {where}"  # noqa: S608
            "ORDER BY priority DESC, id ASC",
            tuple(params),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_rule(row) for row in rows]

    # ── Evaluation support ──────────────────────────────────────────────

    async def candidate_rules(
        self,
        subject: Subject,
        resource: Resource,
        context: Mapping[str, Any],
        *,
        strict: bool = False,
    ) -> list[PermissionRule]:
        """Return rules that could match, in insertion order.

        Narrows on subject, resource, owner and session in SQL; conditions
        are left to the caller.  A row whose stored conditions cannot be
        decoded is logged and skipped, or raises
        :exc:`~warden.models.MalformedConditionsError` when *strict*.
        """
        async with self.connection.execute(
            f"SELECT {_RULE_COLUMNS} FROM permission_rules "  # noqa: S608
            "WHERE (subject_type = '*' OR subject_type = ?) "
            "AND (subject_id IS NULL OR subject_id = ?) "
            "AND (resource_type = '*' OR resource_type = ?) "
            "AND (resource_name IS NULL OR resource_name = ?) "
            "AND (session_id IS NULL OR session_id = ?) "
            "AND (owner_id IS NULL OR owner_id = ?) "
            "ORDER BY id ASC",
            (
                subject.type.value,
                subject.id,
                resource.type.value,
                resource.name,
                context.get("session_id"),
                context.get("owner_id"),
            ),
        ) as cursor:
            rows = await cursor.fetchall()

        rules: list[PermissionRule] = []
        for row in rows:
            try:
                rules.append(self._row_to_rule(row))
            except MalformedConditionsError as exc:
                if strict:
                    raise
                logger.warning("Skipping rule %s: %s", exc.rule_id, exc)
        return rules

    async def consume_rule(self, rule_id: int, *, commit: bool = True) -> bool:
        """Delete a once-scoped rule. Returns True iff this call removed it.

        With ``commit=False`` the delete stays in the open transaction until
        :meth:`commit`, or is undone by :meth:`rollback`.
        """
        cursor = await self.connection.execute(
            "DELETE FROM permission_rules WHERE id = ? AND scope = ?",
            (rule_id, Scope.ONCE.value),
        )
        consumed = cursor.rowcount > 0
        await cursor.close()
        if commit:
            await self.connection.commit()
        if consumed:
            logger.info("Consumed once-scoped rule %d", rule_id)
        return consumed

    # ── Decision audit log ──────────────────────────────────────────────

    async def log_decision(
        self,
        action: Action,
        subject: Subject,
        resource: Resource,
        context: Mapping[str, Any],
        rule_id: int | None = None,
        reason: str | None = None,
        *,
        commit: bool = True,
    ) -> None:
        """Record an evaluation verdict in the audit table."""
        detail = json.dumps({"reason": reason}) if reason else None
        await self.connection.execute(
            "INSERT INTO audit_log "
            "(timestamp, event, subject_type, subject_id, resource_type, resource_name, "
            "rule_id, session_id, owner_id, detail) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                datetime.now(UTC).isoformat(),
                AUDIT_EVENTS[action],
                subject.type.value,
                subject.id,
                resource.type.value,
                resource.name,
                rule_id,
                context.get("session_id"),
                context.get("owner_id"),
                detail,
            ),
        )
        if commit:
            await self.connection.commit()

    async def get_audit_log(
        self, *, event: str | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        """Return audit entries, most recent first."""
        if event is not None:
            query = (
                "SELECT id, timestamp, event, subject_type, subject_id, resource_type, "
                "resource_name, rule_id, session_id, owner_id, detail "
                "FROM audit_log WHERE event = ? ORDER BY id DESC LIMIT ?"
            )
            params: tuple[object, ...] = (event, limit)
        else:
            query = (
                "SELECT id, timestamp, event, subject_type, subject_id, resource_type, "
                "resource_name, rule_id, session_id, owner_id, detail "
                "FROM audit_log ORDER BY id DESC LIMIT ?"
            )
            params = (limit,)
        async with self.connection.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [
            {
                "id": row[0],
                "timestamp": row[1],
                "event": row[2],
                "subject_type": row[3],
                "subject_id": row[4],
                "resource_type": row[5],
                "resource_name": row[6],
                "rule_id": row[7],
                "session_id": row[8],
                "owner_id": row[9],
                "detail": json.loads(row[10]) if row[10] else None,
            }
            for row in rows
        ]

    @staticmethod
    def _row_to_rule(row: Any) -> PermissionRule:
        """Convert a permission_rules row tuple to a PermissionRule."""
        return PermissionRule(
            id=row[0],
            owner_id=row[1],
            session_id=row[2],
            subject_type=SubjectType(row[3]),
            subject_id=row[4],
            resource_type=ResourceType(row[5]),
            resource_name=row[6],
            action=Action(row[7]),
            scope=Scope(row[8]),
            conditions=decode_conditions(row[9], rule_id=row[0]),
            priority=row[10],
            created_at=row[11],
        )
