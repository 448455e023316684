"""CLI for managing and testing Warden permission rules.

Usage:
    python -m warden.rules_shell list --subject-type agent
    python -m warden.rules_shell add --subject-type agent --subject-id 1 \\
        --resource-type command --resource-name shell --action allow --scope once
    python -m warden.rules_shell delete 3
    python -m warden.rules_shell check agent 1 command shell --session 7
    python -m warden.rules_shell audit --last 20
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from warden.config import EngineConfig
from warden.models import Resource, Subject
from warden.permissions.evaluator import evaluate
from warden.storage.db import Database


def _parse_pairs(pairs: list[str] | None) -> dict[str, Any]:
    """Parse ``key=value`` arguments; values are JSON scalars when they parse as such."""
    result: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Expected key=value, got {pair!r}")
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            value = raw
        if isinstance(value, dict | list):
            value = raw
        result[key] = value
    return result


async def cmd_list(db: Database, args: argparse.Namespace, config: EngineConfig) -> int:
    """List rules, highest priority first."""
    rules = await db.list_rules(
        owner_id=args.owner,
        subject_type=args.subject_type,
        resource_type=args.resource_type,
        resource_name=args.resource_name,
    )
    if not rules:
        print("No rules found.")
        return 0
    print(f"{'ID':<6} {'Subject':<16} {'Resource':<24} {'Action':<8} {'Scope':<10} {'Prio':<5}")
    print("-" * 72)
    for rule in rules:
        subject = f"{rule.subject_type.value}:{rule.subject_id if rule.subject_id is not None else '*'}"
        resource = f"{rule.resource_type.value}:{rule.resource_name or '*'}"
        print(
            f"{rule.id:<6} {subject:<16} {resource:<24} {rule.action.value:<8} "
            f"{rule.scope.value:<10} {rule.priority:<5}"
        )
    print(f"\n{len(rules)} rule(s)")
    return 0


async def cmd_add(db: Database, args: argparse.Namespace, config: EngineConfig) -> int:
    """Create a rule."""
    rule = await db.create_rule(
        {
            "owner_id": args.owner,
            "session_id": args.session,
            "subject_type": args.subject_type,
            "subject_id": args.subject_id,
            "resource_type": args.resource_type,
            "resource_name": args.resource_name,
            "action": args.action,
            "scope": args.scope,
            "conditions": _parse_pairs(args.condition) or None,
            "priority": args.priority,
        }
    )
    print(json.dumps(rule.to_dict(), indent=2))
    return 0


async def cmd_delete(db: Database, args: argparse.Namespace, config: EngineConfig) -> int:
    """Delete a rule by ID."""
    if not await db.delete_rule(args.rule_id):
        print(f"Rule {args.rule_id} not found.")
        return 1
    print(f"Deleted rule {args.rule_id}.")
    return 0


async def cmd_check(db: Database, args: argparse.Namespace, config: EngineConfig) -> int:
    """Evaluate a request and print the verdict."""
    context = _parse_pairs(args.context)
    if args.session is not None:
        context["session_id"] = args.session
    if args.owner is not None:
        context["owner_id"] = args.owner
    result = await evaluate(
        Subject(args.subject_type, args.subject_id),
        Resource(args.resource_type, args.resource_name),
        context,
        db,
        config=config,
    )
    rule_desc = f"rule {result.rule.id}" if result.rule else "default"
    print(f"{result.action.value} ({rule_desc})")
    return 0


async def cmd_audit(db: Database, args: argparse.Namespace, config: EngineConfig) -> int:
    """Show recent evaluation decisions."""
    entries = await db.get_audit_log(event=args.event, limit=args.last)
    if not entries:
        print("No audit entries found.")
        return 0
    for entry in reversed(entries):
        rule = entry["rule_id"] if entry["rule_id"] is not None else "-"
        print(
            f"[{entry['timestamp']}] {entry['event']}: "
            f"{entry['subject_type']}:{entry['subject_id']} -> "
            f"{entry['resource_type']}:{entry['resource_name']} (rule={rule})"
        )
    print(f"\n{len(entries)} entry(ies)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="warden.rules_shell",
        description="Manage and test Warden permission rules",
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Path to warden.db (defaults to WARDEN_DB_PATH or WARDEN_HOME/db/warden.db)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Subcommand")

    # list
    list_parser = subparsers.add_parser("list", help="List rules")
    list_parser.add_argument("--owner", type=int, default=None)
    list_parser.add_argument("--subject-type", default=None)
    list_parser.add_argument("--resource-type", default=None)
    list_parser.add_argument("--resource-name", default=None)

    # add
    add_parser = subparsers.add_parser("add", help="Create a rule")
    add_parser.add_argument("--subject-type", required=True)
    add_parser.add_argument("--subject-id", type=int, default=None)
    add_parser.add_argument("--resource-type", required=True)
    add_parser.add_argument("--resource-name", default=None)
    add_parser.add_argument("--action", required=True)
    add_parser.add_argument("--scope", default=None)
    add_parser.add_argument("--session", type=int, default=None)
    add_parser.add_argument("--owner", type=int, default=None)
    add_parser.add_argument("--priority", type=int, default=0)
    add_parser.add_argument(
        "--condition", action="append", default=None, help="key=value (repeatable)"
    )

    # delete
    delete_parser = subparsers.add_parser("delete", help="Delete a rule")
    delete_parser.add_argument("rule_id", type=int)

    # check
    check_parser = subparsers.add_parser("check", help="Evaluate a request")
    check_parser.add_argument("subject_type")
    check_parser.add_argument("subject_id", type=int)
    check_parser.add_argument("resource_type")
    check_parser.add_argument("resource_name")
    check_parser.add_argument("--session", type=int, default=None)
    check_parser.add_argument("--owner", type=int, default=None)
    check_parser.add_argument(
        "--context", action="append", default=None, help="key=value (repeatable)"
    )

    # audit
    audit_parser = subparsers.add_parser("audit", help="Show recent decisions")
    audit_parser.add_argument("--event", default=None)
    audit_parser.add_argument("--last", type=int, default=20)

    return parser


async def _run(args: argparse.Namespace, config: EngineConfig) -> int:
    db = Database(config.database_path)
    await db.init()
    try:
        dispatch = {
            "list": cmd_list,
            "add": cmd_add,
            "delete": cmd_delete,
            "check": cmd_check,
            "audit": cmd_audit,
        }
        return await dispatch[args.command](db, args, config)
    finally:
        await db.close()


def main(argv: list[str] | None = None) -> None:
    """Entry point for the rules_shell CLI."""
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    config = EngineConfig.from_env()
    if args.db:
        config = replace(config, db_path=Path(args.db))

    try:
        status = asyncio.run(_run(args, config))
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    if status:
        sys.exit(status)


if __name__ == "__main__":
    main()
