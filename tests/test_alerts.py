"""
Alert Manager Tests
-------------------
Tests for the alert lifecycle, response actions, queries, exports, the
dashboard summary and attack campaign detection.
"""

import asyncio
import csv
import io
import json
from unittest.mock import AsyncMock

import pytest

from driftguard.core.alerts.correlation import CAMPAIGN_SOURCE
from driftguard.core.alerts.manager import AlertManager
from driftguard.core.alerts.types import (
    AlertCategory,
    AlertFilter,
    AlertStatus,
    ResponseActionCreate,
    ResponseActionKind,
    ResponseActionStatus,
)
from driftguard.core.audit.types import AuditFilter, AuditSeverity, TargetType
from driftguard.core.drift.types import Severity
from driftguard.core.exceptions import (
    AlertNotFoundError,
    InvalidStatusTransitionError,
    ResponseActionNotFoundError,
    UnsupportedExportFormatError,
)
from tests.conftest import START_TIME, make_alert_data

pytestmark = pytest.mark.asyncio


def alert_audit_entries(ledger, alert_id=None):
    entries = ledger.query(AuditFilter(target_types=[TargetType.ALERT]))
    if alert_id:
        entries = [e for e in entries if e.target.identifier == alert_id]
    return entries


# ========== TESTS FOR ALERT CREATION ========== #

async def test_create_alert(manager, ledger, transport):
    """A new alert is open, timestamped, audited and routed"""
    # Act
    alert_id = await manager.create_alert(make_alert_data())

    # Assert
    alert = manager.get_alert(alert_id)
    assert alert_id.startswith("alert_")
    assert alert.status == AlertStatus.OPEN
    assert alert.escalation_level == 0
    assert alert.timestamp == START_TIME
    assert alert.timeline[0].event == "alert_created"

    entries = alert_audit_entries(ledger, alert_id)
    assert len(entries) == 1
    assert entries[0].action == "alert_create"
    assert entries[0].severity == AuditSeverity.CRITICAL

    assert transport.sent == [(alert_id, "default")]


async def test_low_severity_alert_is_audited_as_warning(manager, ledger, transport):
    """Low and medium alerts produce warning audit entries and skip filtered channels"""
    # Act
    alert_id = await manager.create_alert(make_alert_data(severity=Severity.LOW))

    # Assert
    assert alert_audit_entries(ledger, alert_id)[0].severity == AuditSeverity.WARNING
    assert transport.sent == []


async def test_alert_severity_cannot_be_none():
    """Alerts always carry a real severity"""
    with pytest.raises(ValueError):
        make_alert_data(severity=Severity.NONE)


async def test_created_listener_is_notified(manager):
    """Creation listeners receive the new alert; a failing listener is isolated"""
    # Arrange
    failing = AsyncMock(side_effect=RuntimeError("listener bug"))
    listener = AsyncMock()
    manager.on_alert_created(failing)
    manager.on_alert_created(listener)

    # Act
    alert_id = await manager.create_alert(make_alert_data())

    # Assert
    listener.assert_awaited_once()
    assert listener.await_args.args[0].id == alert_id


async def test_notification_failure_does_not_block_creation(manager, transport):
    """Alerts are created even when every channel fails"""
    # Arrange
    transport.fail = True

    # Act
    alert_id = await manager.create_alert(make_alert_data())

    # Assert
    assert manager.get_alert(alert_id).status == AlertStatus.OPEN


async def test_undecodable_title_completes_creation(manager, ledger, scheduler, transport):
    """Text the audit log must escape does not cut alert creation short"""
    # Act
    alert_id = await manager.create_alert(
        make_alert_data(severity=Severity.CRITICAL, title="drift in caf\udce9")
    )

    # Assert
    entries = alert_audit_entries(ledger, alert_id)
    assert entries[0].after["title"] == "drift in caf\\udce9"
    assert len(scheduler.delayed) == 1
    assert (alert_id, "critical") in transport.sent


async def test_alert_memory_is_bounded(settings, ledger, notifier, executor, scheduler):
    """The oldest alerts are evicted once the history limit is reached"""
    # Arrange
    settings.ALERT_HISTORY_LIMIT = 2
    manager = AlertManager(settings, ledger, notifier, executor, scheduler)
    first = await manager.create_alert(make_alert_data(environment="env_a"))

    # Act
    await manager.create_alert(make_alert_data(environment="env_b"))
    await manager.create_alert(make_alert_data(environment="env_c"))

    # Assert
    assert len(manager.alerts) == 2
    assert len(manager.history) == 2
    with pytest.raises(AlertNotFoundError):
        manager.get_alert(first)


async def test_get_unknown_alert(manager):
    """Unknown ids raise AlertNotFoundError"""
    with pytest.raises(AlertNotFoundError):
        manager.get_alert("alert_missing")


# ========== TESTS FOR LIFECYCLE ========== #

async def test_status_transitions(manager, ledger):
    """Each transition is recorded on the timeline and in the audit log"""
    # Arrange
    alert_id = await manager.create_alert(make_alert_data())
    listener = AsyncMock()
    manager.on_status_changed(listener)

    # Act
    await manager.update_alert_status(alert_id, AlertStatus.ACKNOWLEDGED, actor="alice")
    alert = await manager.update_alert_status(
        alert_id, AlertStatus.RESOLVED, actor="alice", comment="rolled back"
    )

    # Assert
    assert alert.status == AlertStatus.RESOLVED
    status_events = [t for t in alert.timeline if t.event == "status_changed"]
    assert [t.description for t in status_events] == [
        "Status changed from open to acknowledged",
        "Status changed from acknowledged to resolved: rolled back",
    ]
    assert all(t.user == "alice" and not t.automated for t in status_events)

    audit = [e for e in alert_audit_entries(ledger, alert_id) if e.action == "alert_status_change"]
    assert len(audit) == 2
    assert audit[1].before == {"status": "acknowledged"}
    assert audit[1].actor == "alice"

    assert listener.await_count == 2
    payload = listener.await_args.args[0]
    assert payload["old_status"] == AlertStatus.ACKNOWLEDGED
    assert payload["new_status"] == AlertStatus.RESOLVED


@pytest.mark.parametrize("terminal", [AlertStatus.RESOLVED, AlertStatus.FALSE_POSITIVE])
async def test_terminal_states_are_final(manager, terminal):
    """Resolved and false-positive alerts cannot change status"""
    # Arrange
    alert_id = await manager.create_alert(make_alert_data())
    await manager.update_alert_status(alert_id, terminal)

    # Act / Assert
    with pytest.raises(InvalidStatusTransitionError):
        await manager.update_alert_status(alert_id, AlertStatus.OPEN)
    assert manager.get_alert(alert_id).status == terminal


async def test_assign_alert(manager, ledger):
    """Assignment is recorded with the previous assignee"""
    # Arrange
    alert_id = await manager.create_alert(make_alert_data(assigned_to="bob"))

    # Act
    alert = await manager.assign_alert(alert_id, "carol", actor="lead")

    # Assert
    assert alert.assigned_to == "carol"
    assert alert.timeline[-1].description == "Alert assigned to carol"
    entry = alert_audit_entries(ledger, alert_id)[-1]
    assert entry.before == {"assigned_to": "bob"}
    assert entry.after == {"assigned_to": "carol"}


async def test_manual_escalation(manager):
    """Escalation raises the level and notifies listeners"""
    # Arrange
    alert_id = await manager.create_alert(make_alert_data())
    listener = AsyncMock()
    manager.on_escalated(listener)

    # Act
    alert = await manager.escalate(alert_id, "customer impact")

    # Assert
    assert alert.escalation_level == 1
    assert alert.timeline[-1].event == "escalated"
    listener.assert_awaited_once_with(alert)


# ========== TESTS FOR RESPONSE ACTIONS ========== #

async def test_automated_action_runs_immediately(manager):
    """Automated actions execute as soon as they are added"""
    # Arrange
    alert_id = await manager.create_alert(make_alert_data())

    # Act
    action_id = await manager.add_response_action(
        alert_id,
        ResponseActionCreate(kind=ResponseActionKind.AUTOMATED, action="block_ip", description="203.0.113.7"),
    )

    # Assert
    action = next(a for a in manager.get_alert(alert_id).response_actions if a.id == action_id)
    assert action.status == ResponseActionStatus.COMPLETED
    assert action.executed_by == "system"
    assert action.result["ip"] == "203.0.113.7"
    assert manager.get_alert(alert_id).timeline[-1].event == "response_action_completed"


async def test_automated_actions_in_alert_data_run_on_creation(manager):
    """Automated actions supplied at creation run before create returns"""
    # Act
    alert_id = await manager.create_alert(make_alert_data(
        response_actions=[
            ResponseActionCreate(kind=ResponseActionKind.AUTOMATED, action="rotate_keys"),
            ResponseActionCreate(kind=ResponseActionKind.MANUAL, action="call_owner"),
        ]
    ))

    # Assert
    automated, manual = manager.get_alert(alert_id).response_actions
    assert automated.status == ResponseActionStatus.COMPLETED
    assert automated.result["resources"] == ["DATABASE_URL"]
    assert manual.status == ResponseActionStatus.PENDING


async def test_manual_action_is_executed_on_request(manager):
    """Manual actions wait for an explicit execute"""
    # Arrange
    alert_id = await manager.create_alert(make_alert_data())
    action_id = await manager.add_response_action(alert_id, ResponseActionCreate(action="disable_user",
                                                                                 description="mallory"))

    # Act
    action = await manager.execute_response_action(alert_id, action_id, actor="alice")

    # Assert
    assert action.status == ResponseActionStatus.COMPLETED
    assert action.executed_by == "alice"
    assert action.executed_at == START_TIME


async def test_failed_action_is_captured(manager, executor):
    """Handler errors are recorded on the action, never raised"""
    # Arrange
    async def explode(action, alert):
        raise RuntimeError("firewall API unreachable")

    executor.register("block_ip", explode)
    alert_id = await manager.create_alert(make_alert_data())

    # Act
    action_id = await manager.add_response_action(
        alert_id, ResponseActionCreate(kind=ResponseActionKind.AUTOMATED, action="block_ip")
    )

    # Assert
    alert = manager.get_alert(alert_id)
    action = next(a for a in alert.response_actions if a.id == action_id)
    assert action.status == ResponseActionStatus.FAILED
    assert action.result == {"error": "firewall API unreachable"}
    assert alert.timeline[-1].event == "response_action_failed"


async def test_action_timeout_is_captured(manager, executor):
    """Handlers that run past the timeout fail"""
    # Arrange
    async def hang(action, alert):
        await asyncio.sleep(5)

    executor.register("isolate_system", hang)
    executor.timeout = 0.01
    alert_id = await manager.create_alert(make_alert_data())
    action_id = await manager.add_response_action(alert_id, ResponseActionCreate(action="isolate_system"))

    # Act
    action = await manager.execute_response_action(alert_id, action_id)

    # Assert
    assert action.status == ResponseActionStatus.FAILED
    assert action.result == {"error": "TimeoutError"}


async def test_unknown_action_id(manager):
    """Executing an action that is not on the alert raises"""
    # Arrange
    alert_id = await manager.create_alert(make_alert_data())

    # Act / Assert
    with pytest.raises(ResponseActionNotFoundError):
        await manager.execute_response_action(alert_id, "action_missing")


async def test_unregistered_action_is_simulated(manager):
    """Actions without a handler are simulated"""
    # Arrange
    alert_id = await manager.create_alert(make_alert_data())

    # Act
    action_id = await manager.add_response_action(
        alert_id, ResponseActionCreate(kind=ResponseActionKind.AUTOMATED, action="quarantine_bucket")
    )

    # Assert
    action = next(a for a in manager.get_alert(alert_id).response_actions if a.id == action_id)
    assert action.result == {"simulated": True, "action": "quarantine_bucket"}


# ========== TESTS FOR QUERIES AND EXPORTS ========== #

async def test_query_alerts(manager, clock):
    """Filters combine and results are newest first"""
    # Arrange
    first = await manager.create_alert(make_alert_data(severity=Severity.HIGH, environment="production"))
    clock.advance(minutes=1)
    second = await manager.create_alert(make_alert_data(severity=Severity.LOW, environment="staging"))
    clock.advance(minutes=1)
    third = await manager.create_alert(make_alert_data(
        severity=Severity.HIGH, category=AlertCategory.AUTHENTICATION, environment="production"
    ))
    await manager.update_alert_status(third, AlertStatus.INVESTIGATING)

    # Act
    everything = manager.query_alerts()
    high = manager.query_alerts(AlertFilter(severity=[Severity.HIGH]))
    open_production = manager.query_alerts(AlertFilter(status=[AlertStatus.OPEN], environment=["production"]))

    # Assert
    assert [a.id for a in everything] == [third, second, first]
    assert [a.id for a in high] == [third, first]
    assert [a.id for a in open_production] == [first]


async def test_export_csv(manager):
    """CSV export has the documented header row"""
    # Arrange
    alert_id = await manager.create_alert(make_alert_data(description="Value changed, please review"))

    # Act
    rows = list(csv.reader(io.StringIO(manager.export_alerts(fmt="csv"))))

    # Assert
    assert rows[0] == ["ID", "Timestamp", "Severity", "Category", "Title", "Description",
                       "Environment", "Status", "Assigned To", "Risk Score"]
    assert rows[1][0] == alert_id
    assert rows[1][5] == "Value changed, please review"
    assert rows[1][9] == "50.0"


async def test_export_json_and_siem(manager):
    """JSON exports a list, SIEM exports one event per line"""
    # Arrange
    await manager.create_alert(make_alert_data())
    await manager.create_alert(make_alert_data(environment="staging"))

    # Act
    as_json = json.loads(manager.export_alerts(fmt="json"))
    siem_lines = manager.export_alerts(fmt="siem").splitlines()

    # Assert
    assert len(as_json) == 2
    assert len(siem_lines) == 2
    event = json.loads(siem_lines[0])
    assert event["event_type"] == "security_alert"
    assert event["risk_score"] == 50


async def test_export_unsupported_format(manager):
    """Unknown export formats are rejected"""
    with pytest.raises(UnsupportedExportFormatError):
        manager.export_alerts(fmt="pdf")


async def test_dashboard(manager):
    """Dashboard summarises counts and the most affected resources"""
    # Arrange
    await manager.create_alert(make_alert_data(severity=Severity.CRITICAL, affected_resources=["db", "cache"]))
    second = await manager.create_alert(make_alert_data(environment="staging", affected_resources=["db"]))
    await manager.update_alert_status(second, AlertStatus.ACKNOWLEDGED)

    # Act
    dashboard = manager.dashboard()

    # Assert
    assert dashboard["summary"] == {
        "total_alerts": 2,
        "open_alerts": 1,
        "critical_alerts": 1,
        "alerts_today": 2,
    }
    assert dashboard["by_status"] == {"open": 1, "acknowledged": 1}
    assert dashboard["top_affected_resources"][0] == {"resource": "db", "count": 2}
    assert len(dashboard["recent_alerts"]) == 2


# ========== TESTS FOR CAMPAIGN DETECTION ========== #

async def test_sweep_raises_one_campaign_alert(manager, clock):
    """Enough alerts of one category within the window raise a campaign alert once"""
    # Arrange
    for i in range(5):
        await manager.create_alert(make_alert_data(
            category=AlertCategory.AUTHENTICATION,
            environment="production" if i % 2 else "staging",
            affected_resources=[f"user_{i}"],
        ))
        clock.advance(minutes=1)

    # Act
    created = await manager.sweep()
    repeated = await manager.sweep()

    # Assert
    assert len(created) == 1
    assert repeated == []
    campaign = manager.get_alert(created[0])
    assert campaign.title == "Potential Attack Campaign Detected"
    assert campaign.category == AlertCategory.SYSTEM_INTRUSION
    assert campaign.severity == Severity.HIGH
    assert campaign.source == CAMPAIGN_SOURCE
    assert campaign.environment == "all"
    assert campaign.affected_resources == [f"user_{i}" for i in range(5)]


async def test_sweep_below_threshold(manager):
    """Fewer alerts than the threshold raise nothing"""
    # Arrange
    for _ in range(4):
        await manager.create_alert(make_alert_data(category=AlertCategory.AUTHENTICATION))

    # Act / Assert
    assert await manager.sweep() == []


async def test_sweep_ignores_alerts_outside_window(manager, clock):
    """Only alerts inside the correlation window count"""
    # Arrange
    for _ in range(5):
        await manager.create_alert(make_alert_data(category=AlertCategory.MALWARE))
    clock.advance(minutes=45)

    # Act / Assert
    assert await manager.sweep() == []
