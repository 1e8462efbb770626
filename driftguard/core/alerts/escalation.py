"""
Alert Escalation
----------------
Schedules a delayed check for every escalation rule matching a new alert.
When the check fires, the alert is escalated only if it is still open and
below the rule's maximum level; otherwise the wakeup is a no-op. After an
escalation the check is re-armed, so an ignored alert keeps escalating up
to ``max_escalations``.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from driftguard.core.alerts.types import (
    Alert,
    AlertStatus,
    ConditionOperator,
    EscalationAction,
    EscalationActionType,
    EscalationCondition,
    EscalationConditionType,
    EscalationRule,
    ResponseActionCreate,
    ResponseActionKind,
)
from driftguard.core.drift.types import SEVERITY_ORDER, Impact, Severity
from driftguard.core.exceptions import AlertNotFoundError
from driftguard.core.observability import ESCALATION_COUNTER
from driftguard.core.scheduler import Scheduler

if TYPE_CHECKING:
    from driftguard.core.alerts.manager import AlertManager

logger = logging.getLogger(__name__)

IMPACT_ORDER = {Impact.LOW: 1, Impact.MEDIUM: 2, Impact.HIGH: 3, Impact.CRITICAL: 4}


def default_escalation_rules() -> List[EscalationRule]:
    return [
        EscalationRule(
            id="critical_escalation",
            name="Critical Alert Escalation",
            conditions=[
                EscalationCondition(
                    type=EscalationConditionType.SEVERITY,
                    operator=ConditionOperator.EQUALS,
                    value="critical",
                ),
            ],
            actions=[EscalationAction(type=EscalationActionType.NOTIFY, target="security_team")],
            escalation_delay=5,
            max_escalations=3,
        )
    ]


def is_business_hours(now: datetime) -> bool:
    """Monday to Friday, 09:00 to 17:59"""
    return now.weekday() < 5 and 9 <= now.hour <= 17


def _compare(operator: ConditionOperator, actual, expected, order: Optional[Dict] = None) -> bool:
    if operator == ConditionOperator.EQUALS:
        return actual == expected
    if operator == ConditionOperator.CONTAINS:
        if isinstance(expected, (list, tuple, set)):
            return actual in expected
        return str(expected) in str(actual)
    if order is None:
        return False
    if operator == ConditionOperator.GREATER_THAN:
        return order[actual] > order[expected]
    if operator == ConditionOperator.LESS_THAN:
        return order[actual] < order[expected]
    return False


def condition_matches(condition: EscalationCondition, alert: Alert, now: datetime) -> bool:
    try:
        if condition.type == EscalationConditionType.SEVERITY:
            expected = condition.value
            if condition.operator != ConditionOperator.CONTAINS:
                expected = Severity(condition.value)
            return _compare(condition.operator, alert.severity, expected, SEVERITY_ORDER)

        if condition.type == EscalationConditionType.CATEGORY:
            return _compare(condition.operator, alert.category.value, condition.value)

        if condition.type == EscalationConditionType.IMPACT:
            expected = condition.value
            if condition.operator != ConditionOperator.CONTAINS:
                expected = Impact(condition.value)
            return _compare(condition.operator, alert.metadata.business_impact, expected, IMPACT_ORDER)

        if condition.type == EscalationConditionType.BUSINESS_HOURS:
            return is_business_hours(now) == bool(condition.value)

        if condition.type == EscalationConditionType.UNACKNOWLEDGED_TIME:
            # Enforced at fire time by the open-state check
            return True
    except (ValueError, KeyError) as e:
        logger.warning(f"Escalation condition {condition.type.value} could not be evaluated: {str(e)}")
    return False


class EscalationScheduler:
    """Arms and fires escalation checks for alerts"""

    def __init__(
        self,
        scheduler: Scheduler,
        rules: Optional[List[EscalationRule]] = None,
    ):
        self.scheduler = scheduler
        self.rules: Dict[str, EscalationRule] = {
            rule.id: rule for rule in (rules if rules is not None else default_escalation_rules())
        }
        self.manager: Optional["AlertManager"] = None

    def bind(self, manager: "AlertManager") -> None:
        self.manager = manager

    def add_rule(self, rule: EscalationRule) -> None:
        self.rules[rule.id] = rule

    def matching_rules(self, alert: Alert) -> List[EscalationRule]:
        now = self.scheduler.now()
        return [
            rule for rule in self.rules.values()
            if rule.enabled and all(condition_matches(c, alert, now) for c in rule.conditions)
        ]

    def schedule(self, alert: Alert) -> int:
        """
        Arm one delayed check per matching rule.

        Returns:
            Number of checks armed
        """
        armed = 0
        for rule in self.matching_rules(alert):
            if self._arm(alert.id, rule):
                armed += 1
        return armed

    def _arm(self, alert_id: str, rule: EscalationRule) -> bool:
        task = self.scheduler.call_later(
            rule.escalation_delay * 60,
            self.fire,
            alert_id,
            rule.id,
            job_name=f"escalation:{rule.id}:{alert_id}",
        )
        if task is not None:
            logger.debug(f"Escalation {rule.id} armed for alert {alert_id} in {rule.escalation_delay} minutes")
        return task is not None

    async def fire(self, alert_id: str, rule_id: str) -> bool:
        """
        Run an escalation check.

        Returns:
            True if the alert was escalated
        """
        rule = self.rules.get(rule_id)
        if rule is None or not rule.enabled or self.manager is None:
            return False

        try:
            alert = self.manager.get_alert(alert_id)
        except AlertNotFoundError:
            logger.warning(f"Escalation {rule_id} fired for unknown alert {alert_id}")
            return False

        if alert.status != AlertStatus.OPEN or alert.escalation_level >= rule.max_escalations:
            logger.debug(f"Escalation {rule_id} skipped for alert {alert_id} ({alert.status.value})")
            return False

        await self._execute_actions(alert, rule)
        alert = await self.manager.escalate(alert_id, reason=f"Escalation rule '{rule.name}'")
        ESCALATION_COUNTER.labels(rule=rule.id).inc()

        if alert.status == AlertStatus.OPEN and alert.escalation_level < rule.max_escalations:
            self._arm(alert_id, rule)
        return True

    async def _execute_actions(self, alert: Alert, rule: EscalationRule) -> None:
        for action in rule.actions:
            try:
                if action.type == EscalationActionType.NOTIFY:
                    await self.manager.notifier.notify_target(alert, action.target)
                elif action.type == EscalationActionType.ASSIGN:
                    await self.manager.assign_alert(alert.id, action.target, actor="escalation_system")
                elif action.type == EscalationActionType.EXECUTE_PLAYBOOK:
                    await self.manager.add_response_action(
                        alert.id,
                        ResponseActionCreate(
                            kind=ResponseActionKind.AUTOMATED,
                            action=action.parameters.get("action", action.target),
                            description=f"Playbook {action.target} triggered by escalation rule {rule.id}",
                        ),
                    )
                elif action.type == EscalationActionType.CREATE_TICKET:
                    await self.manager.add_response_action(
                        alert.id,
                        ResponseActionCreate(
                            kind=ResponseActionKind.MANUAL,
                            action="create_ticket",
                            description=f"Ticket for {action.target}: {alert.title}",
                        ),
                    )
            except Exception as e:
                logger.error(f"Escalation action {action.type.value} failed for alert {alert.id}: {str(e)}")
