"""
Rules engine - applies user automation rules to scored emails.

Rules are loaded per subject, validated, sorted by ascending priority (ties
keep insertion order) and cached for a short TTL; any mutation through the
engine invalidates that subject's cache. Every enabled rule whose trigger
matches fires; one failing rule never stops the others.

Actions either mutate stored email state (idempotent), append a deduplicated
pending action for downstream senders (forward, auto-reply), or publish a
notification event.
"""

import re
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from inbox_triage.errors import RuleValidationError
from inbox_triage.infrastructure.events import EventSink
from inbox_triage.infrastructure.events.schemas import DomainEvent, notification, rule_executed, rules_applied
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.rules.models import (
    ActionType,
    AutomationRule,
    PendingAction,
    RuleApplication,
    RuleCreate,
    TriggerOperator,
    TriggerType,
)
from inbox_triage.triage.domain import ScoredEmail, Tier

logger = get_logger(__name__)

RULE_TEMPLATES: list[dict[str, Any]] = [
    {
        "name": "Archive Marketing Emails",
        "description": "Automatically archive emails with marketing keywords",
        "trigger_type": "body_contains",
        "trigger_value": "unsubscribe",
        "action_type": "archive",
        "action_value": True,
        "priority": 10,
    },
    {
        "name": "VIP Priority",
        "description": "Set high priority for emails from your boss",
        "trigger_type": "sender_email",
        "trigger_value": "boss@company.com",
        "action_type": "set_priority",
        "action_value": 1,
        "priority": 1,
    },
    {
        "name": "Auto-Read Newsletters",
        "description": "Mark newsletters as read automatically",
        "trigger_type": "subject_contains",
        "trigger_value": "newsletter",
        "action_type": "mark_read",
        "action_value": True,
        "priority": 20,
    },
    {
        "name": "High Score Alert",
        "description": "Get notified for very important emails",
        "trigger_type": "score_threshold",
        "trigger_value": 90,
        "trigger_operator": "greater_than",
        "action_type": "notify",
        "action_value": "High priority email received!",
        "priority": 5,
    },
    {
        "name": "Archive Low Tier",
        "description": "Archive everything that lands in the low tier",
        "trigger_type": "tier",
        "trigger_value": "low",
        "action_type": "archive",
        "action_value": True,
        "priority": 30,
    },
]


def compare_text(value: str, target: str, operator: TriggerOperator) -> bool:
    if operator is TriggerOperator.EQUALS:
        return value == target
    if operator is TriggerOperator.CONTAINS:
        return target in value
    if operator is TriggerOperator.REGEX:
        return re.search(target, value, re.IGNORECASE) is not None
    return False


def compare_number(value: float, target: float, operator: TriggerOperator) -> bool:
    if operator is TriggerOperator.GREATER_THAN:
        return value > target
    if operator is TriggerOperator.LESS_THAN:
        return value < target
    if operator is TriggerOperator.EQUALS:
        return value == target
    return False


def evaluate_trigger(rule: AutomationRule, scored: ScoredEmail) -> bool:
    """Whether ``rule`` matches the scored email. Pure; text matching is case-insensitive."""
    email = scored.email
    result = scored.result
    trigger = rule.trigger_type
    value = rule.trigger_value

    if trigger is TriggerType.SENDER_EMAIL:
        return compare_text(email.from_email.lower(), value.lower(), rule.trigger_operator)
    if trigger is TriggerType.SENDER_DOMAIN:
        return compare_text(email.sender_domain, value.lower(), rule.trigger_operator)
    if trigger is TriggerType.SUBJECT_CONTAINS:
        return value.lower() in email.subject.lower()
    if trigger is TriggerType.SUBJECT_REGEX:
        return re.search(value, email.subject, re.IGNORECASE) is not None
    if trigger is TriggerType.BODY_CONTAINS:
        return value.lower() in f"{email.snippet} {email.body}".lower()
    if trigger is TriggerType.HAS_ATTACHMENT:
        return email.has_attachment == value
    if trigger is TriggerType.IS_UNREAD:
        return email.is_unread == value
    if trigger is TriggerType.SCORE_THRESHOLD:
        return compare_number(result.final_score, value, rule.trigger_operator)
    if trigger is TriggerType.TIER:
        return result.tier.value == value
    return False


class RulesEngine:
    """Cached per-subject automation rules."""

    def __init__(
        self,
        store,
        event_sink: EventSink | None = None,
        cache_ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        config_service=None,
    ):
        self.store = store
        self.event_sink = event_sink
        self.cache_ttl_seconds = cache_ttl_seconds
        # Per-subject cache_ttl_ms overrides the default TTL when set
        self.config_service = config_service
        self._clock = clock
        self._cache: dict[str, tuple[float, list[AutomationRule]]] = {}

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _validate_rows(self, subject_id: str, rows: list[dict[str, Any]]) -> list[AutomationRule]:
        rules = []
        for row in rows:
            try:
                rules.append(AutomationRule.model_validate(row))
            except ValidationError as e:
                logger.warning(
                    "Skipping invalid automation rule",
                    subject_id=subject_id,
                    rule_id=row.get("id"),
                    error=str(e.errors()[0].get("msg")) if e.errors() else str(e),
                )
        return rules

    async def load_rules(self, subject_id: str) -> list[AutomationRule]:
        """
        Enabled, valid rules for a subject in execution order.

        Served from cache within the TTL.
        """
        cached = self._cache.get(subject_id)
        if cached and self._clock() - cached[0] < await self._cache_ttl(subject_id):
            return cached[1]

        rows = await self.store.list_rules(subject_id)
        rules = [r for r in self._validate_rows(subject_id, rows) if r.enabled]
        # sorted() is stable, so equal priorities keep insertion order
        rules = sorted(rules, key=lambda r: r.priority)

        self._cache[subject_id] = (self._clock(), rules)
        logger.debug("Automation rules loaded", subject_id=subject_id, count=len(rules))
        return rules

    async def _cache_ttl(self, subject_id: str) -> float:
        if self.config_service is None:
            return self.cache_ttl_seconds
        config = await self.config_service.get_config(subject_id)
        return config.cache_ttl_ms / 1000

    async def list_rules(self, subject_id: str) -> list[AutomationRule]:
        """All valid rules for a subject, including disabled ones. Uncached."""
        rows = await self.store.list_rules(subject_id)
        return sorted(self._validate_rows(subject_id, rows), key=lambda r: r.priority)

    def invalidate(self, subject_id: str | None = None) -> None:
        if subject_id is None:
            self._cache.clear()
        else:
            self._cache.pop(subject_id, None)

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    async def apply_rules(self, subject_id: str, scored: ScoredEmail) -> RuleApplication:
        """
        Evaluate every enabled rule against a scored email and execute matches.

        Args:
            subject_id: Owner of the email and rules
            scored: Email plus its triage verdict

        Returns:
            RuleApplication with executed action types, their results and per-rule errors
        """
        rules = await self.load_rules(subject_id)
        application = RuleApplication(email_id=scored.email.id)

        for rule in rules:
            try:
                if not evaluate_trigger(rule, scored):
                    continue

                result = await self._execute_action(rule, scored, subject_id)
                application.applied_actions.append(rule.action_type.value)
                application.results.append(result)

                executed_at = datetime.now(UTC)
                await self.store.increment_rule_execution(rule.id, executed_at)
                rule.execution_count += 1
                rule.last_executed = executed_at

                logger.info(
                    "Automation rule executed",
                    subject_id=subject_id,
                    rule_id=rule.id,
                    email_id=scored.email.id,
                    action=rule.action_type.value,
                )
                await self._publish(
                    rule_executed(
                        subject_id, rule.id, rule.name, scored.email.id, [rule.action_type.value]
                    )
                )

            except Exception as e:
                logger.error(
                    "Automation rule failed",
                    subject_id=subject_id,
                    rule_id=rule.id,
                    email_id=scored.email.id,
                    error=str(e),
                )
                application.errors.append({"rule_id": rule.id, "error": str(e)})

        if application.applied_actions:
            await self._publish(
                rules_applied(
                    subject_id,
                    scored.email.id,
                    application.applied_actions,
                    len(application.applied_actions),
                )
            )

        return application

    async def _execute_action(
        self, rule: AutomationRule, scored: ScoredEmail, subject_id: str
    ) -> dict[str, Any]:
        email = scored.email
        action = rule.action_type
        value = rule.action_value

        if action is ActionType.SET_PRIORITY:
            await self.store.update_email_fields(email.id, {"priority": value})
            return {"priority": value}

        if action is ActionType.SET_TIER:
            tier = Tier(value)
            await self.store.update_score_tier(email.id, tier)
            scored.result.tier = tier
            return {"tier": tier.value}

        if action is ActionType.ADD_LABEL:
            email.labels = await self.store.add_email_label(email.id, value)
            return {"label": value}

        if action is ActionType.ARCHIVE:
            await self.store.update_email_fields(
                email.id, {"is_archived": True, "archived_by_rule": rule.id}
            )
            return {"archived": True}

        if action is ActionType.MARK_READ:
            await self.store.update_email_fields(email.id, {"is_unread": False})
            email.is_unread = False
            return {"marked_read": True}

        if action is ActionType.NOTIFY:
            await self._publish(notification(subject_id, email.id, value, rule_id=rule.id))
            return {"notified": True, "message": value}

        if action is ActionType.AUTO_REPLY:
            created = await self.store.insert_pending_action(
                PendingAction(
                    user_id=subject_id,
                    email_id=email.id,
                    rule_id=rule.id,
                    action_type="auto_reply",
                    action_data={"template": value},
                )
            )
            return {"auto_reply_queued": created}

        if action is ActionType.FORWARD_TO:
            created = await self.store.insert_pending_action(
                PendingAction(
                    user_id=subject_id,
                    email_id=email.id,
                    rule_id=rule.id,
                    action_type="forward",
                    action_data={"to": value},
                )
            )
            return {"forward_queued": created, "to": value}

        raise RuleValidationError(f"Unsupported action {action}", rule_id=rule.id)

    async def _publish(self, event: DomainEvent) -> None:
        if self.event_sink is None:
            return
        try:
            await self.event_sink.publish(event)
        except Exception as e:
            logger.warning("Event publish failed", topic=event.topic, error=str(e))

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    async def create_rule(self, subject_id: str, data: RuleCreate | dict[str, Any]) -> AutomationRule:
        """
        Validate and persist a new rule for ``subject_id``.

        Raises:
            RuleValidationError: Trigger or action is malformed
        """
        fields = data.model_dump() if isinstance(data, RuleCreate) else dict(data)
        fields["user_id"] = subject_id
        try:
            rule = AutomationRule.model_validate(fields)
        except ValidationError as e:
            raise RuleValidationError(f"Invalid rule: {e.errors()[0].get('msg', str(e))}") from e

        created = await self.store.insert_rule(rule)
        self.invalidate(subject_id)
        logger.info("Automation rule created", subject_id=subject_id, rule_id=created.id)
        return created

    async def update_rule(
        self, subject_id: str, rule_id: str, updates: dict[str, Any]
    ) -> AutomationRule | None:
        """
        Apply a partial update; the merged rule is validated before it is stored.

        Returns:
            Updated rule, or None when the subject has no such rule
        """
        rows = await self.store.list_rules(subject_id)
        current = next((row for row in rows if row.get("id") == rule_id), None)
        if current is None:
            return None

        merged = {**current, **{k: v for k, v in updates.items() if v is not None}}
        merged["updated_at"] = datetime.now(UTC)
        try:
            rule = AutomationRule.model_validate(merged)
        except ValidationError as e:
            raise RuleValidationError(
                f"Invalid rule: {e.errors()[0].get('msg', str(e))}", rule_id=rule_id
            ) from e

        updated = await self.store.update_rule(
            subject_id, rule_id, rule.model_dump(exclude={"id", "user_id", "created_at"})
        )
        self.invalidate(subject_id)
        return updated

    async def delete_rule(self, subject_id: str, rule_id: str) -> bool:
        deleted = await self.store.delete_rule(subject_id, rule_id)
        self.invalidate(subject_id)
        if deleted:
            logger.info("Automation rule deleted", subject_id=subject_id, rule_id=rule_id)
        return deleted

    def templates(self) -> list[dict[str, Any]]:
        """Built-in rule templates users can start from."""
        return [dict(t) for t in RULE_TEMPLATES]
