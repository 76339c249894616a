"""
Automation rule models.

Rules are validated when they are loaded or created, so the engine only ever
evaluates well-formed triggers: unknown operators, uncompilable regexes and
wrongly-typed values are rejected up front instead of silently never matching.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from inbox_triage.triage.domain import Tier


class TriggerType(str, Enum):
    SENDER_EMAIL = "sender_email"
    SENDER_DOMAIN = "sender_domain"
    SUBJECT_CONTAINS = "subject_contains"
    SUBJECT_REGEX = "subject_regex"
    BODY_CONTAINS = "body_contains"
    HAS_ATTACHMENT = "has_attachment"
    IS_UNREAD = "is_unread"
    SCORE_THRESHOLD = "score_threshold"
    TIER = "tier"


class TriggerOperator(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    REGEX = "regex"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


class ActionType(str, Enum):
    SET_PRIORITY = "set_priority"
    SET_TIER = "set_tier"
    ADD_LABEL = "add_label"
    ARCHIVE = "archive"
    MARK_READ = "mark_read"
    FORWARD_TO = "forward_to"
    NOTIFY = "notify"
    AUTO_REPLY = "auto_reply"


TEXT_TRIGGERS = {TriggerType.SENDER_EMAIL, TriggerType.SENDER_DOMAIN}
CONTAINS_TRIGGERS = {TriggerType.SUBJECT_CONTAINS, TriggerType.BODY_CONTAINS}
BOOLEAN_TRIGGERS = {TriggerType.HAS_ATTACHMENT, TriggerType.IS_UNREAD}

TEXT_OPERATORS = {TriggerOperator.EQUALS, TriggerOperator.CONTAINS, TriggerOperator.REGEX}
NUMERIC_OPERATORS = {
    TriggerOperator.EQUALS,
    TriggerOperator.GREATER_THAN,
    TriggerOperator.LESS_THAN,
}

TIER_VALUES = {t.value for t in Tier}


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise ValueError(f"expected a boolean, got {value!r}")


def _as_text(value: Any, what: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{what} must be a non-empty string")
    return value


def _check_regex(pattern: str) -> str:
    try:
        re.compile(pattern)
    except re.error as e:
        raise ValueError(f"invalid regex {pattern!r}: {e}") from e
    return pattern


class AutomationRule(BaseModel):
    """A user-defined trigger/action automation."""

    model_config = ConfigDict(use_enum_values=False)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    enabled: bool = True

    trigger_type: TriggerType
    trigger_value: Any = None
    trigger_operator: TriggerOperator | None = None

    action_type: ActionType
    action_value: Any = None

    # Lower runs first
    priority: int = 0
    execution_count: int = 0
    last_executed: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def _validate_trigger_and_action(self) -> "AutomationRule":
        self._validate_trigger()
        self._validate_action()
        return self

    def _validate_trigger(self) -> None:
        trigger = self.trigger_type
        operator = self.trigger_operator

        if trigger in TEXT_TRIGGERS:
            self.trigger_value = _as_text(self.trigger_value, trigger.value)
            operator = operator or TriggerOperator.EQUALS
            if operator not in TEXT_OPERATORS:
                raise ValueError(f"operator {operator.value} not valid for {trigger.value}")
            if operator is TriggerOperator.REGEX:
                _check_regex(self.trigger_value)

        elif trigger in CONTAINS_TRIGGERS:
            self.trigger_value = _as_text(self.trigger_value, trigger.value)
            operator = TriggerOperator.CONTAINS

        elif trigger is TriggerType.SUBJECT_REGEX:
            self.trigger_value = _check_regex(_as_text(self.trigger_value, trigger.value))
            operator = TriggerOperator.REGEX

        elif trigger in BOOLEAN_TRIGGERS:
            self.trigger_value = _as_bool(self.trigger_value)
            operator = TriggerOperator.EQUALS

        elif trigger is TriggerType.SCORE_THRESHOLD:
            if isinstance(self.trigger_value, bool) or not isinstance(
                self.trigger_value, (int, float)
            ):
                raise ValueError("score_threshold value must be a number")
            operator = operator or TriggerOperator.GREATER_THAN
            if operator not in NUMERIC_OPERATORS:
                raise ValueError(f"operator {operator.value} not valid for score_threshold")

        elif trigger is TriggerType.TIER:
            if self.trigger_value not in TIER_VALUES:
                raise ValueError(f"tier must be one of {sorted(TIER_VALUES)}")
            operator = TriggerOperator.EQUALS

        self.trigger_operator = operator

    def _validate_action(self) -> None:
        action = self.action_type
        value = self.action_value

        if action is ActionType.SET_PRIORITY:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError("set_priority value must be an integer")
        elif action is ActionType.SET_TIER:
            if value not in TIER_VALUES:
                raise ValueError(f"set_tier value must be one of {sorted(TIER_VALUES)}")
        elif action is ActionType.ADD_LABEL:
            self.action_value = _as_text(value, "add_label value").strip()
        elif action is ActionType.FORWARD_TO:
            address = _as_text(value, "forward_to value").strip()
            if "@" not in address:
                raise ValueError("forward_to value must be an email address")
            self.action_value = address
        elif action is ActionType.AUTO_REPLY:
            self.action_value = _as_text(value, "auto_reply template")
        elif action is ActionType.NOTIFY:
            self.action_value = value if isinstance(value, str) and value else "Rule triggered"

    def summary(self) -> dict[str, Any]:
        """Serializable view for API responses."""
        return self.model_dump(mode="json")


class RuleCreate(BaseModel):
    """Fields a caller may supply when creating a rule (owner comes from auth)."""

    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    enabled: bool = True
    trigger_type: TriggerType
    trigger_value: Any = None
    trigger_operator: TriggerOperator | None = None
    action_type: ActionType
    action_value: Any = None
    priority: int = 0


class RuleUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=200)
    description: str | None = None
    enabled: bool | None = None
    trigger_type: TriggerType | None = None
    trigger_value: Any = None
    trigger_operator: TriggerOperator | None = None
    action_type: ActionType | None = None
    action_value: Any = None
    priority: int | None = None


@dataclass(slots=True)
class PendingAction:
    """Externally visible side effect queued for a downstream sender."""

    user_id: str
    email_id: str
    rule_id: str
    action_type: str  # "forward" or "auto_reply"
    action_data: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def dedupe_key(self) -> tuple[str, str, str]:
        return (self.rule_id, self.email_id, self.action_type)


@dataclass(slots=True)
class RuleApplication:
    """What the engine did for one scored email."""

    email_id: str
    applied_actions: list[str] = field(default_factory=list)
    results: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)
