"""Evaluate a permission request against the rule store.

The store lookup, ranking, once-scope consumption and audit write run under
the store's ``consume_lock`` in one transaction, so that a once-scoped rule
decides at most one evaluation.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from warden.config import EngineConfig
from warden.models import DEFAULT_ACTION, EvaluationResult, Scope
from warden.permissions.engine import rank_candidates

if TYPE_CHECKING:
    from warden.models import Resource, Subject
    from warden.storage.db import Database

logger = logging.getLogger("warden.permissions.evaluator")


async def evaluate(
    subject: Subject,
    resource: Resource,
    context: Mapping[str, Any] | None,
    db: Database,
    *,
    config: EngineConfig | None = None,
) -> EvaluationResult:
    """Resolve the verdict for *subject* invoking *resource*.

    Returns the winning rule's action, or :data:`~warden.models.DEFAULT_ACTION`
    with ``rule=None`` when nothing matches.  A once-scoped winner is deleted
    before returning; if another evaluation consumed it first, the next
    ranked candidate decides instead.  The delete and the audit row commit
    together, so a failed audit write leaves the once-scoped rule in place.
    Storage errors propagate.
    """
    cfg = config or EngineConfig()
    ctx: Mapping[str, Any] = context or {}

    async with db.consume_lock:
        try:
            rules = await db.candidate_rules(
                subject, resource, ctx, strict=cfg.strict_conditions
            )
            result = EvaluationResult(DEFAULT_ACTION)
            for rule in rank_candidates(rules, subject, resource, ctx):
                if rule.scope is Scope.ONCE and not await db.consume_rule(
                    rule.id, commit=False
                ):
                    logger.debug("Rule %d already consumed, falling through", rule.id)
                    continue
                result = EvaluationResult(rule.action, rule)
                break

            if cfg.audit:
                await db.log_decision(
                    result.action,
                    subject,
                    resource,
                    ctx,
                    rule_id=result.rule.id if result.rule else None,
                    reason=None if result.rule else "no matching rules",
                    commit=False,
                )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    if result.rule is None:
        logger.debug(
            "No matching rule for %s:%s -> %s:%s, defaulting to %s",
            subject.type.value,
            subject.id,
            resource.type.value,
            resource.name,
            result.action.value,
        )
    else:
        logger.debug(
            "Rule %d decided %s for %s:%s -> %s:%s",
            result.rule.id,
            result.action.value,
            subject.type.value,
            subject.id,
            resource.type.value,
            resource.name,
        )
    return result
