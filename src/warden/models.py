"""Data models for Warden permission rules and evaluation results."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

ConditionValue = str | int | float | bool | None
Conditions = dict[str, ConditionValue]

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when a rule definition is missing a field or has an invalid value."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field


class MalformedConditionsError(ValueError):
    """Raised when a stored conditions blob cannot be decoded."""

    def __init__(self, rule_id: int | None, message: str) -> None:
        super().__init__(message)
        self.rule_id = rule_id


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SubjectType(str, Enum):
    """Kind of actor requesting permission."""

    USER = "user"
    AGENT = "agent"
    PLUGIN = "plugin"
    ANY = "*"


class ResourceType(str, Enum):
    """Kind of thing being gated."""

    COMMAND = "command"
    TOOL = "tool"
    ABILITY = "ability"
    ANY = "*"


class Action(str, Enum):
    """Verdict of a rule or of an evaluation."""

    ALLOW = "allow"
    DENY = "deny"
    PROMPT = "prompt"


class Scope(str, Enum):
    """Lifetime class of a rule."""

    ONCE = "once"
    SESSION = "session"
    PERMANENT = "permanent"


DEFAULT_ACTION = Action.PROMPT


# ---------------------------------------------------------------------------
# Evaluation input / output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Subject:
    """The actor being authorized, e.g. ``Subject(SubjectType.AGENT, 1)``."""

    type: SubjectType
    id: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", SubjectType(self.type))
        if self.id is not None and (isinstance(self.id, bool) or not isinstance(self.id, int)):
            raise ValidationError("id", f"Subject id must be an integer or None; got {self.id!r}")


@dataclass(frozen=True)
class Resource:
    """The command, tool, or ability being invoked."""

    type: ResourceType
    name: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", ResourceType(self.type))


@dataclass
class PermissionRule:
    """A persisted permission rule. Construct via ``Database.create_rule()``."""

    id: int
    subject_type: SubjectType
    resource_type: ResourceType
    action: Action
    owner_id: int | None = None
    session_id: int | None = None
    subject_id: int | None = None
    resource_name: str | None = None
    scope: Scope = Scope.PERMANENT
    conditions: Conditions | None = None
    priority: int = 0
    created_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize the rule to a JSON-compatible dict."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "session_id": self.session_id,
            "subject_type": self.subject_type.value,
            "subject_id": self.subject_id,
            "resource_type": self.resource_type.value,
            "resource_name": self.resource_name,
            "action": self.action.value,
            "scope": self.scope.value,
            "conditions": self.conditions,
            "priority": self.priority,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class EvaluationResult:
    """Resolved verdict. ``rule`` is ``None`` when the default applied."""

    action: Action
    rule: PermissionRule | None = None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

_SCALAR_TYPES = (str, int, float, bool)


def _enum_field(fields: Mapping[str, Any], name: str, enum_cls: type[Enum]) -> Any:
    raw = fields.get(name)
    if raw is None or raw == "":
        raise ValidationError(name, f"{name} is required")
    try:
        return enum_cls(raw)
    except ValueError:
        choices = ", ".join(m.value for m in enum_cls)  # type: ignore[attr-defined]
        raise ValidationError(
            name, f"Invalid {name}: {raw!r}. Must be one of: {choices}"
        ) from None


def _optional_int(fields: Mapping[str, Any], name: str) -> int | None:
    raw = fields.get(name)
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValidationError(name, f"{name} must be an integer or None; got {raw!r}")
    return raw


def validate_conditions(raw: Any) -> Conditions | None:
    """Return *raw* as a conditions mapping, or raise ``ValidationError``.

    Empty mappings normalise to ``None``.
    """
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise ValidationError("conditions", f"conditions must be a mapping; got {raw!r}")
    conditions: Conditions = {}
    for key, value in raw.items():
        if not isinstance(key, str):
            raise ValidationError("conditions", f"Condition keys must be strings; got {key!r}")
        if value is not None and not isinstance(value, _SCALAR_TYPES):
            raise ValidationError(
                "conditions", f"Condition {key!r} must be a scalar; got {value!r}"
            )
        conditions[key] = value
    return conditions or None


def validate_rule_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Validate and normalise a rule creation request.

    Required: ``subject_type``, ``resource_type``, ``action``.  Defaults:
    ``scope=permanent``, ``priority=0``.  Session-scoped rules need a
    ``session_id``.  Raises :exc:`ValidationError` naming the bad field.
    """
    subject_type = _enum_field(fields, "subject_type", SubjectType)
    resource_type = _enum_field(fields, "resource_type", ResourceType)
    action = _enum_field(fields, "action", Action)

    raw_scope = fields.get("scope")
    scope = Scope.PERMANENT if raw_scope is None else _enum_field(fields, "scope", Scope)

    session_id = _optional_int(fields, "session_id")
    if scope is Scope.SESSION and session_id is None:
        raise ValidationError("session_id", "Session-scoped rules require a session_id")

    priority = fields.get("priority", 0)
    if priority is None:
        priority = 0
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValidationError("priority", f"priority must be an integer; got {priority!r}")

    resource_name = fields.get("resource_name")
    if resource_name is not None and not isinstance(resource_name, str):
        raise ValidationError(
            "resource_name", f"resource_name must be a string or None; got {resource_name!r}"
        )

    return {
        "owner_id": _optional_int(fields, "owner_id"),
        "session_id": session_id,
        "subject_type": subject_type,
        "subject_id": _optional_int(fields, "subject_id"),
        "resource_type": resource_type,
        "resource_name": resource_name or None,
        "action": action,
        "scope": scope,
        "conditions": validate_conditions(fields.get("conditions")),
        "priority": priority,
    }


# ---------------------------------------------------------------------------
# Conditions (de)serialization
# ---------------------------------------------------------------------------


def encode_conditions(conditions: Conditions | None) -> str | None:
    """Serialize conditions for the ``conditions`` column."""
    if not conditions:
        return None
    return json.dumps(conditions, sort_keys=True)


def decode_conditions(raw: str | bytes | None, rule_id: int | None = None) -> Conditions | None:
    """Deserialize a ``conditions`` column value.

    Raises :exc:`MalformedConditionsError` on invalid JSON or when the blob
    is not an object of scalar values.
    """
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except (ValueError, TypeError, RecursionError) as exc:
        raise MalformedConditionsError(
            rule_id, f"Rule {rule_id}: conditions are not valid JSON: {exc}"
        ) from exc
    try:
        return validate_conditions(data)
    except ValidationError as exc:
        raise MalformedConditionsError(rule_id, f"Rule {rule_id}: {exc}") from exc
