"""Permission engine: specificity-ranked allow/deny/prompt rules."""

from warden.permissions.engine import (
    ACTION_RANK,
    compute_specificity,
    conditions_match,
    rank_candidates,
    rule_matches,
)
from warden.permissions.evaluator import evaluate

__all__ = [
    "ACTION_RANK",
    "compute_specificity",
    "conditions_match",
    "evaluate",
    "rank_candidates",
    "rule_matches",
]
