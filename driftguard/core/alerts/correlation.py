"""
Alert Correlation
-----------------
Matches a newly created alert against recent alerts using rule-defined
field conditions, and groups recent alerts by category to spot attack
campaigns. This module only decides what matches; the alert manager
applies the resulting actions.
"""

import logging
import re
from collections import defaultdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from driftguard.core.alerts.types import (
    Alert,
    CorrelationAction,
    CorrelationActionType,
    CorrelationCondition,
    CorrelationOperator,
    CorrelationRule,
)

logger = logging.getLogger(__name__)

CAMPAIGN_SOURCE = "correlation_engine"


def default_correlation_rules() -> List[CorrelationRule]:
    return [
        CorrelationRule(
            id="similar_alerts",
            name="Similar Alert Correlation",
            description="Correlate alerts with same category and environment",
            time_window=10,
            conditions=[
                CorrelationCondition(field="category"),
                CorrelationCondition(field="environment"),
            ],
            correlation_key="category_environment",
            actions=[CorrelationAction(type=CorrelationActionType.MERGE)],
        )
    ]


def get_field_value(alert: Alert, field: str) -> Any:
    """Resolve a dotted field path on an alert; enums resolve to their value"""
    value: Any = alert
    for part in field.split("."):
        if value is None:
            return None
        if isinstance(value, dict):
            value = value.get(part)
        else:
            value = getattr(value, part, None)
    if isinstance(value, Enum):
        return value.value
    return value


def _normalize(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def condition_matches(condition: CorrelationCondition, candidate: Alert, new_alert: Alert) -> bool:
    value = get_field_value(candidate, condition.field)
    expected = _normalize(condition.value)
    if expected is None or expected == "":
        expected = get_field_value(new_alert, condition.field)

    try:
        if condition.operator == CorrelationOperator.EQUALS:
            return value == expected
        if condition.operator == CorrelationOperator.CONTAINS:
            if isinstance(value, (list, tuple, set)):
                return expected in value
            return str(expected) in str(value)
        if condition.operator == CorrelationOperator.MATCHES:
            return re.search(str(expected), str(value)) is not None
        if condition.operator == CorrelationOperator.WITHIN_RANGE:
            bounds = condition.value or {}
            return bounds.get("min", float("-inf")) <= value <= bounds.get("max", float("inf"))
    except (TypeError, re.error) as e:
        logger.warning(f"Correlation condition on {condition.field} could not be evaluated: {str(e)}")
    return False


class CorrelationEngine:
    """Evaluates correlation rules in declaration order"""

    def __init__(self, rules: Optional[List[CorrelationRule]] = None):
        self.rules: List[CorrelationRule] = rules if rules is not None else default_correlation_rules()

    def add_rule(self, rule: CorrelationRule) -> None:
        self.rules.append(rule)

    def find_matches(
        self,
        alert: Alert,
        candidates: Iterable[Alert],
    ) -> List[Tuple[CorrelationRule, List[Alert]]]:
        """
        Find, per enabled rule, the candidate alerts correlated with ``alert``.

        A candidate is inside a rule's window when its timestamp is within
        ``time_window`` minutes of the new alert, in either direction.

        Returns:
            (rule, matched alerts) pairs for rules with at least one match
        """
        candidates = [c for c in candidates if c.id != alert.id]
        matches = []
        for rule in self.rules:
            if not rule.enabled:
                continue
            window = timedelta(minutes=rule.time_window)
            matched = [
                c for c in candidates
                if abs(c.timestamp - alert.timestamp) <= window
                and all(condition_matches(cond, c, alert) for cond in rule.conditions)
            ]
            if matched:
                matches.append((rule, matched))
        return matches

    @staticmethod
    def detect_attack_patterns(
        alerts: Iterable[Alert],
        now: datetime,
        window_minutes: int,
        threshold: int,
    ) -> Dict[str, List[Alert]]:
        """
        Group recent alerts by category and return groups at or above the threshold.

        Campaign alerts raised by a previous sweep are excluded.
        """
        cutoff = now - timedelta(minutes=window_minutes)
        by_category: Dict[str, List[Alert]] = defaultdict(list)
        for alert in alerts:
            if alert.source == CAMPAIGN_SOURCE or alert.timestamp < cutoff:
                continue
            by_category[alert.category.value].append(alert)
        return {category: group for category, group in by_category.items() if len(group) >= threshold}
