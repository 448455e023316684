"""Specificity-based rule matching. Pure logic with no I/O.

A rule is a candidate for ``(subject, resource, context)`` when every
targeting column is either a wildcard or equal to the request, and its
attribute conditions hold.  Candidates are ranked by:

1. specificity (higher first),
2. priority (higher first),
3. action: deny, then allow, then prompt,
4. input order.

Specificity is the sum of:

* ``+8``: rule is bound to the evaluation's session,
* ``+4``: exact subject (type and id), or ``+2``: subject type only,
* ``+1``: exact resource (type and name).

So the subject/resource combinations score 0-5 and any matching
session-bound rule outranks every rule that is not session-bound.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from warden.models import (
    Action,
    ConditionValue,
    PermissionRule,
    Resource,
    ResourceType,
    Subject,
    SubjectType,
)

SESSION_BONUS = 8
EXACT_SUBJECT_SCORE = 4
SUBJECT_TYPE_SCORE = 2
EXACT_RESOURCE_SCORE = 1

# Lower sorts first: deny is the most conservative outcome.
ACTION_RANK: dict[Action, int] = {
    Action.DENY: 0,
    Action.ALLOW: 1,
    Action.PROMPT: 2,
}


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


def _strict_equal(expected: ConditionValue, actual: object) -> bool:
    """Equality without bool/int coercion: ``True`` never equals ``1``."""
    if isinstance(expected, bool) or isinstance(actual, bool):
        return type(expected) is type(actual) and expected == actual
    if isinstance(expected, int | float) and isinstance(actual, int | float):
        return expected == actual
    return type(expected) is type(actual) and expected == actual


def conditions_match(
    conditions: Mapping[str, ConditionValue] | None, context: Mapping[str, Any]
) -> bool:
    """Return True when every condition key is in *context* with an equal value."""
    if not conditions:
        return True
    for key, expected in conditions.items():
        if key not in context:
            return False
        if not _strict_equal(expected, context[key]):
            return False
    return True


# ---------------------------------------------------------------------------
# Matching and scoring
# ---------------------------------------------------------------------------


def rule_matches(
    rule: PermissionRule, subject: Subject, resource: Resource, context: Mapping[str, Any]
) -> bool:
    """Return True if *rule* applies to this subject, resource and context."""
    if rule.subject_type is not SubjectType.ANY and rule.subject_type is not subject.type:
        return False
    if rule.subject_id is not None and rule.subject_id != subject.id:
        return False
    if rule.resource_type is not ResourceType.ANY and rule.resource_type is not resource.type:
        return False
    if rule.resource_name is not None and rule.resource_name != resource.name:
        return False
    if rule.owner_id is not None and rule.owner_id != context.get("owner_id"):
        return False
    if rule.session_id is not None and rule.session_id != context.get("session_id"):
        return False
    return conditions_match(rule.conditions, context)


def compute_specificity(
    rule: PermissionRule, subject: Subject, resource: Resource, context: Mapping[str, Any]
) -> int:
    """Score how precisely *rule* targets the request. Higher is more specific."""
    score = 0
    session_id = context.get("session_id")
    if rule.session_id is not None and session_id is not None and rule.session_id == session_id:
        score += SESSION_BONUS

    if rule.subject_type is not SubjectType.ANY:
        score += EXACT_SUBJECT_SCORE if rule.subject_id is not None else SUBJECT_TYPE_SCORE

    if rule.resource_type is not ResourceType.ANY and rule.resource_name is not None:
        score += EXACT_RESOURCE_SCORE

    return score


def rank_key(rule: PermissionRule, specificity: int) -> tuple[int, int, int]:
    """Sort key for a candidate; ascending order puts the winner first."""
    return (-specificity, -rule.priority, ACTION_RANK[rule.action])


def rank_candidates(
    rules: Iterable[PermissionRule],
    subject: Subject,
    resource: Resource,
    context: Mapping[str, Any],
) -> list[PermissionRule]:
    """Filter *rules* to matching candidates and return them winner-first.

    The sort is stable, so rules that tie on every key keep their input order.
    """
    scored = [
        (rank_key(rule, compute_specificity(rule, subject, resource, context)), rule)
        for rule in rules
        if rule_matches(rule, subject, resource, context)
    ]
    scored.sort(key=lambda item: item[0])
    return [rule for _, rule in scored]
