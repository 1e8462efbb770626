"""
Security Alert Manager
----------------------
Owns the alert lifecycle: creation, status transitions, assignment,
escalation and response actions. Every change is recorded on the alert's
timeline and mirrored to the audit ledger.

Creating an alert runs correlation against recent alerts, routes
notifications and arms escalation checks. State changes made by
correlation happen before any await, so two alerts created concurrently
always see each other.
"""

import csv
import io
import json
import logging
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple
from uuid import uuid4

from driftguard.core.alerts.correlation import CAMPAIGN_SOURCE, CorrelationEngine
from driftguard.core.alerts.escalation import EscalationScheduler
from driftguard.core.alerts.notifications import NotificationRouter
from driftguard.core.alerts.remediation import ResponseActionExecutor
from driftguard.core.alerts.types import (
    Alert,
    AlertCategory,
    AlertCreate,
    AlertFilter,
    AlertMetadata,
    AlertStatus,
    CorrelationActionType,
    CorrelationRule,
    Evidence,
    EvidenceType,
    Incident,
    IndicatorType,
    ResponseAction,
    ResponseActionCreate,
    ResponseActionKind,
    ResponseActionStatus,
    SecurityIndicator,
    TimelineEntry,
)
from driftguard.core.audit.ledger import AuditLedger
from driftguard.core.audit.types import AuditSeverity
from driftguard.core.config import Settings
from driftguard.core.drift.types import Impact, Severity
from driftguard.core.exceptions import (
    AlertNotFoundError,
    AuditWriteError,
    InvalidStatusTransitionError,
    ResponseActionNotFoundError,
    UnsupportedExportFormatError,
)
from driftguard.core.observability import ALERT_COUNTER, ALERT_TRANSITION_COUNTER
from driftguard.core.scheduler import Scheduler

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Awaitable[None]]

CSV_HEADERS = [
    "ID", "Timestamp", "Severity", "Category", "Title", "Description",
    "Environment", "Status", "Assigned To", "Risk Score",
]

DASHBOARD_RECENT = 10
DASHBOARD_TOP_RESOURCES = 10


def _new_id(prefix: str, now: datetime) -> str:
    return f"{prefix}_{int(now.timestamp() * 1000)}_{uuid4().hex[:9]}"


def _audit_severity(severity: Severity) -> AuditSeverity:
    if severity in (Severity.CRITICAL, Severity.HIGH):
        return AuditSeverity.CRITICAL
    return AuditSeverity.WARNING


class AlertManager:
    """
    Alert lifecycle service.

    Collaborators are passed in explicitly; the escalation scheduler is
    bound back to this manager so fired escalations can act on alerts.
    """

    def __init__(
        self,
        settings: Settings,
        ledger: AuditLedger,
        notifier: NotificationRouter,
        executor: ResponseActionExecutor,
        scheduler: Scheduler,
        correlation: Optional[CorrelationEngine] = None,
        escalation: Optional[EscalationScheduler] = None,
    ):
        self.settings = settings
        self.ledger = ledger
        self.notifier = notifier
        self.executor = executor
        self.scheduler = scheduler
        self.correlation = correlation or CorrelationEngine()
        self.escalation = escalation or EscalationScheduler(scheduler)
        self.escalation.bind(self)

        self.alerts: Dict[str, Alert] = {}
        self.history: Deque[Alert] = deque(maxlen=settings.ALERT_HISTORY_LIMIT)
        self.incidents: Dict[str, Incident] = {}
        self._campaigns: Dict[str, datetime] = {}

        self._created_listeners: List[Listener] = []
        self._status_listeners: List[Listener] = []
        self._escalated_listeners: List[Listener] = []
        self._incident_listeners: List[Listener] = []

    def now(self) -> datetime:
        return self.scheduler.now()

    # ========== Subscriptions ========== #

    def on_alert_created(self, listener: Listener) -> None:
        self._created_listeners.append(listener)

    def on_status_changed(self, listener: Listener) -> None:
        self._status_listeners.append(listener)

    def on_escalated(self, listener: Listener) -> None:
        self._escalated_listeners.append(listener)

    def on_incident(self, listener: Listener) -> None:
        self._incident_listeners.append(listener)

    async def _emit(self, listeners: List[Listener], payload: Any) -> None:
        for listener in list(listeners):
            try:
                await listener(payload)
            except Exception as e:
                logger.error(f"Alert listener {getattr(listener, '__name__', listener)} failed: {str(e)}")

    async def _audit(self, alert: Alert, action: str, description: str, severity: AuditSeverity,
                     actor: Optional[str] = None, before: Any = None, after: Any = None) -> None:
        try:
            await self.ledger.log_alert_event(
                actor=actor or "system",
                alert_id=alert.id,
                action=action,
                description=description,
                severity=severity,
                environment=alert.environment,
                before=before,
                after=after,
                correlation_id=alert.correlation_id,
            )
        except AuditWriteError as e:
            # Operators were already notified through the ledger's write-error listeners
            logger.error(f"Audit record for alert {alert.id} ({action}) was not persisted: {str(e)}")

    def _timeline(self, alert: Alert, event: str, description: str, user: Optional[str] = None) -> None:
        alert.timeline.append(
            TimelineEntry(
                timestamp=self.now(),
                event=event,
                description=description,
                user=user,
                automated=user is None,
            )
        )

    # ========== Lifecycle ========== #

    def get_alert(self, alert_id: str) -> Alert:
        alert = self.alerts.get(alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert not found: {alert_id}")
        return alert

    async def create_alert(self, data: AlertCreate) -> str:
        """
        Create an alert in the open state.

        Args:
            data: Alert content

        Returns:
            The new alert id
        """
        now = self.now()
        alert = Alert(
            id=_new_id("alert", now),
            timestamp=now,
            severity=data.severity,
            category=data.category,
            title=data.title,
            description=data.description,
            source=data.source,
            environment=data.environment,
            affected_resources=list(data.affected_resources),
            indicators=list(data.indicators),
            assigned_to=data.assigned_to,
            correlation_id=data.correlation_id,
            metadata=data.metadata,
            response_actions=[self._new_action(a) for a in data.response_actions],
            timeline=[
                TimelineEntry(timestamp=now, event="alert_created", description="Security alert created")
            ],
        )

        candidates = list(self.history)
        if len(self.history) == self.history.maxlen:
            evicted = self.history[0]
            self.alerts.pop(evicted.id, None)
            logger.debug(f"Alert {evicted.id} evicted from memory")
        self.alerts[alert.id] = alert
        self.history.append(alert)
        ALERT_COUNTER.labels(severity=alert.severity.value, category=alert.category.value).inc()

        # Correlation mutates state synchronously; audit records follow
        effects, incidents = self._correlate(alert, candidates)

        await self._audit(
            alert, "create", f"Security alert created: {alert.title}", _audit_severity(alert.severity),
            after={"severity": alert.severity.value, "category": alert.category.value, "title": alert.title},
        )
        for target, action, description in effects:
            await self._audit(target, action, description, AuditSeverity.INFO)

        logger.info(f"Security alert created: {alert.id} ({alert.severity.value}) - {alert.title}")
        await self._emit(self._created_listeners, alert)

        for incident in incidents:
            await self._emit(self._incident_listeners, incident)

        await self.notifier.dispatch(alert)
        self.escalation.schedule(alert)

        for action in list(alert.response_actions):
            if action.kind == ResponseActionKind.AUTOMATED and action.status == ResponseActionStatus.PENDING:
                await self.execute_response_action(alert.id, action.id)

        return alert.id

    def _correlate(
        self, alert: Alert, candidates: List[Alert]
    ) -> Tuple[List[Tuple[Alert, str, str]], List[Incident]]:
        """Apply correlation actions; returns the audit effects and new incidents"""
        effects: List[Tuple[Alert, str, str]] = []
        incidents: List[Incident] = []
        for rule, matched in self.correlation.find_matches(alert, candidates):
            for action in rule.actions:
                if action.type == CorrelationActionType.MERGE:
                    effects.extend(self._merge(alert, matched, rule))
                elif action.type == CorrelationActionType.SUPPRESS:
                    effects.extend(self._suppress(matched, rule))
                elif action.type == CorrelationActionType.ESCALATE:
                    self._bump(alert, f"Escalated by correlation rule '{rule.name}'")
                    effects.append((alert, "escalate", f"Alert escalated to level {alert.escalation_level}"))
                elif action.type == CorrelationActionType.CREATE_INCIDENT:
                    incident = Incident(
                        id=_new_id("inc", self.now()),
                        created_at=self.now(),
                        rule_id=rule.id,
                        primary_alert_id=alert.id,
                        related_alert_ids=[m.id for m in matched],
                    )
                    self.incidents[incident.id] = incident
                    incidents.append(incident)
                    logger.info(f"Created incident {incident.id} from alert correlation")
        return effects, incidents

    def _merge(self, alert: Alert, matched: List[Alert], rule: CorrelationRule) -> List[Tuple[Alert, str, str]]:
        existing = [m.correlation_id for m in matched if m.correlation_id]
        correlation_id = alert.correlation_id or (existing[0] if existing else _new_id("corr", self.now()))

        # Fold any other groups the matches belong to into this one
        absorbed = {cid for cid in existing if cid != correlation_id}
        if absorbed:
            for other in self.alerts.values():
                if other.correlation_id in absorbed:
                    other.correlation_id = correlation_id

        alert.correlation_id = correlation_id
        for m in matched:
            m.correlation_id = correlation_id
            if m.id not in alert.related_alerts:
                alert.related_alerts.append(m.id)
            if alert.id not in m.related_alerts:
                m.related_alerts.append(alert.id)

        self._timeline(alert, "correlated", f"Merged with {len(matched)} alerts by rule '{rule.name}'")
        logger.info(f"Merged {len(matched)} alerts with alert {alert.id} under {correlation_id}")
        return [(alert, "correlate", f"Alert correlated under {correlation_id} by rule {rule.id}")]

    def _suppress(self, matched: List[Alert], rule: CorrelationRule) -> List[Tuple[Alert, str, str]]:
        effects = []
        for m in matched:
            if m.status.is_terminal:
                continue
            old_status = m.status
            m.status = AlertStatus.RESOLVED
            ALERT_TRANSITION_COUNTER.labels(status=m.status.value).inc()
            self._timeline(m, "suppressed", f"Suppressed by correlation rule '{rule.name}'")
            effects.append((m, "suppress", f"Status changed from {old_status.value} to resolved by suppression"))
        logger.info(f"Suppressed {len(effects)} correlated alerts")
        return effects

    def _bump(self, alert: Alert, reason: str) -> None:
        alert.escalation_level += 1
        self._timeline(alert, "escalated", f"Alert escalated to level {alert.escalation_level}: {reason}")

    async def escalate(self, alert_id: str, reason: str = "manual escalation") -> Alert:
        alert = self.get_alert(alert_id)
        self._bump(alert, reason)
        await self._audit(
            alert, "escalate", f"Alert escalated to level {alert.escalation_level}",
            _audit_severity(alert.severity), after={"escalation_level": alert.escalation_level},
        )
        logger.warning(f"Alert {alert.id} escalated to level {alert.escalation_level}")
        await self._emit(self._escalated_listeners, alert)
        return alert

    async def update_alert_status(
        self,
        alert_id: str,
        status: AlertStatus,
        actor: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> Alert:
        """
        Move an alert to a new status.

        Raises:
            AlertNotFoundError: If the alert does not exist
            InvalidStatusTransitionError: If the alert is already resolved or a false positive
        """
        alert = self.get_alert(alert_id)
        old_status = alert.status
        if old_status.is_terminal:
            raise InvalidStatusTransitionError(
                f"Alert {alert_id} is {old_status.value} and cannot move to {status.value}"
            )

        alert.status = status
        ALERT_TRANSITION_COUNTER.labels(status=status.value).inc()
        description = f"Status changed from {old_status.value} to {status.value}"
        if comment:
            description = f"{description}: {comment}"
        self._timeline(alert, "status_changed", description, user=actor)

        await self._audit(
            alert, "status_change", description, AuditSeverity.INFO, actor=actor,
            before={"status": old_status.value}, after={"status": status.value, "comment": comment},
        )
        await self._emit(self._status_listeners, {"alert": alert, "old_status": old_status, "new_status": status})
        return alert

    async def assign_alert(self, alert_id: str, assignee: str, actor: Optional[str] = None) -> Alert:
        alert = self.get_alert(alert_id)
        previous = alert.assigned_to
        alert.assigned_to = assignee
        self._timeline(alert, "assigned", f"Alert assigned to {assignee}", user=actor)
        await self._audit(
            alert, "assign", f"Alert assigned to {assignee}", AuditSeverity.INFO, actor=actor,
            before={"assigned_to": previous}, after={"assigned_to": assignee},
        )
        return alert

    def _new_action(self, data: ResponseActionCreate) -> ResponseAction:
        return ResponseAction(
            id=_new_id("action", self.now()),
            kind=data.kind,
            action=data.action,
            description=data.description,
        )

    async def add_response_action(self, alert_id: str, data: ResponseActionCreate) -> str:
        """
        Attach a response action; automated actions are executed immediately.

        Returns:
            The new action id
        """
        alert = self.get_alert(alert_id)
        action = self._new_action(data)
        alert.response_actions.append(action)
        self._timeline(alert, "response_action_added", f"Response action added: {action.action}")
        await self._audit(
            alert, "response_action_add", f"Response action added: {action.action}", AuditSeverity.INFO,
            after={"action_id": action.id, "kind": action.kind.value, "action": action.action},
        )

        if action.kind == ResponseActionKind.AUTOMATED:
            await self.execute_response_action(alert_id, action.id)
        return action.id

    async def execute_response_action(self, alert_id: str, action_id: str, actor: Optional[str] = None) -> ResponseAction:
        """
        Execute a response action. Failures are recorded on the action and
        the timeline, never raised.

        Raises:
            AlertNotFoundError: If the alert does not exist
            ResponseActionNotFoundError: If the action does not belong to the alert
        """
        alert = self.get_alert(alert_id)
        action = next((a for a in alert.response_actions if a.id == action_id), None)
        if action is None:
            raise ResponseActionNotFoundError(f"Response action not found: {action_id}")

        action.status = ResponseActionStatus.RUNNING
        action.executed_at = self.now()
        action.executed_by = actor or "system"

        try:
            result = await self.executor.execute(action, alert)
            action.status = ResponseActionStatus.COMPLETED
            action.result = result
            self._timeline(alert, "response_action_completed", f"Response action completed: {action.action}")
        except Exception as e:
            error = str(e) or type(e).__name__
            action.status = ResponseActionStatus.FAILED
            action.result = {"error": error}
            self._timeline(alert, "response_action_failed", f"Response action failed: {action.action} - {error}")
            logger.error(f"Response action {action.action} failed for alert {alert.id}: {error}")

        await self._audit(
            alert, "response_action_execute", f"Response action {action.action} {action.status.value}",
            AuditSeverity.WARNING if action.status == ResponseActionStatus.FAILED else AuditSeverity.INFO,
            actor=actor, after={"action_id": action.id, "status": action.status.value},
        )
        return action

    # ========== Queries ========== #

    def query_alerts(self, alert_filter: Optional[AlertFilter] = None) -> List[Alert]:
        """Return matching alerts, newest first"""
        f = alert_filter or AlertFilter()
        results = []
        for alert in self.alerts.values():
            if f.severity and alert.severity not in f.severity:
                continue
            if f.category and alert.category not in f.category:
                continue
            if f.status and alert.status not in f.status:
                continue
            if f.environment and alert.environment not in f.environment:
                continue
            if f.start and alert.timestamp < f.start:
                continue
            if f.end and alert.timestamp > f.end:
                continue
            if f.assigned_to and alert.assigned_to != f.assigned_to:
                continue
            if f.correlation_id and alert.correlation_id != f.correlation_id:
                continue
            results.append(alert)
        return sorted(results, key=lambda a: a.timestamp, reverse=True)

    def export_alerts(self, alert_filter: Optional[AlertFilter] = None, fmt: str = "json") -> str:
        """
        Export alerts as json, csv or siem (JSON lines).

        Raises:
            UnsupportedExportFormatError: For any other format
        """
        alerts = self.query_alerts(alert_filter)
        if fmt == "json":
            return json.dumps([a.model_dump(mode="json") for a in alerts], indent=2)
        if fmt == "csv":
            return self._format_csv(alerts)
        if fmt == "siem":
            return self._format_siem(alerts)
        raise UnsupportedExportFormatError(f"Unsupported export format: {fmt}")

    @staticmethod
    def _format_csv(alerts: List[Alert]) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADERS)
        for alert in alerts:
            writer.writerow([
                alert.id,
                alert.timestamp.isoformat(),
                alert.severity.value,
                alert.category.value,
                alert.title,
                alert.description,
                alert.environment,
                alert.status.value,
                alert.assigned_to or "",
                alert.metadata.risk_score,
            ])
        return buffer.getvalue()

    @staticmethod
    def _format_siem(alerts: List[Alert]) -> str:
        lines = []
        for alert in alerts:
            lines.append(json.dumps({
                "timestamp": alert.timestamp.isoformat(),
                "event_type": "security_alert",
                "severity": alert.severity.value,
                "category": alert.category.value,
                "title": alert.title,
                "description": alert.description,
                "source": alert.source,
                "environment": alert.environment,
                "indicators": [i.model_dump(mode="json") for i in alert.indicators],
                "risk_score": alert.metadata.risk_score,
                "affected_resources": alert.affected_resources,
            }))
        return "\n".join(lines)

    def dashboard(self) -> Dict[str, Any]:
        all_alerts = list(self.alerts.values())
        today = self.now().replace(hour=0, minute=0, second=0, microsecond=0)

        resource_counts = Counter(r for a in all_alerts for r in a.affected_resources)
        recent = sorted(all_alerts, key=lambda a: a.timestamp, reverse=True)[:DASHBOARD_RECENT]

        return {
            "summary": {
                "total_alerts": len(all_alerts),
                "open_alerts": sum(1 for a in all_alerts if a.status == AlertStatus.OPEN),
                "critical_alerts": sum(1 for a in all_alerts if a.severity == Severity.CRITICAL),
                "alerts_today": sum(1 for a in all_alerts if a.timestamp >= today),
            },
            "by_severity": dict(Counter(a.severity.value for a in all_alerts)),
            "by_category": dict(Counter(a.category.value for a in all_alerts)),
            "by_status": dict(Counter(a.status.value for a in all_alerts)),
            "recent_alerts": recent,
            "top_affected_resources": [
                {"resource": resource, "count": count}
                for resource, count in resource_counts.most_common(DASHBOARD_TOP_RESOURCES)
            ],
        }

    # ========== Periodic analysis ========== #

    async def sweep(self) -> List[str]:
        """
        Look for attack campaigns among recent alerts.

        Returns:
            Ids of campaign alerts created by this sweep
        """
        now = self.now()
        window = self.settings.CORRELATION_WINDOW_MINUTES
        groups = self.correlation.detect_attack_patterns(
            list(self.history), now, window, self.settings.ATTACK_PATTERN_THRESHOLD
        )

        created = []
        for category, group in groups.items():
            last_raised = self._campaigns.get(category)
            if last_raised is not None and now - last_raised < timedelta(minutes=window):
                continue
            self._campaigns[category] = now

            environments = sorted({a.environment for a in group})
            resources = list(dict.fromkeys(r for a in group for r in a.affected_resources))
            alert_id = await self.create_alert(
                AlertCreate(
                    severity=Severity.HIGH,
                    category=AlertCategory.SYSTEM_INTRUSION,
                    title="Potential Attack Campaign Detected",
                    description=f"Multiple {category} alerts suggest coordinated attack",
                    source=CAMPAIGN_SOURCE,
                    environment=environments[0] if len(environments) == 1 else "all",
                    affected_resources=resources,
                    indicators=[
                        SecurityIndicator(
                            type=IndicatorType.ANOMALY,
                            description="High frequency of related security events",
                            confidence=80,
                            evidence=[
                                Evidence(
                                    type=EvidenceType.BEHAVIORAL,
                                    description=f"{len(group)} related alerts in short timeframe",
                                    data={"category": category, "count": len(group)},
                                    timestamp=now,
                                    source=CAMPAIGN_SOURCE,
                                )
                            ],
                        )
                    ],
                    metadata=AlertMetadata(
                        detection_method="correlation_analysis",
                        risk_score=85,
                        business_impact=Impact.HIGH,
                        compliance_implications=["incident_response"],
                        attack_vectors=["coordinated_attack"],
                        affected_services=["multiple"],
                    ),
                )
            )
            logger.warning(f"Potential attack campaign in category {category}: {len(group)} alerts")
            created.append(alert_id)
        return created
