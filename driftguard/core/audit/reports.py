"""
Audit Reports and Exports
-------------------------
Compliance reports over a filtered set of audit entries and the json, csv
and syslog export formats.
"""

import csv
import io
import json
import socket
from collections import Counter
from datetime import datetime
from typing import List

from driftguard.core.audit.types import (
    AuditEntry,
    AuditEventType,
    AuditSeverity,
    ComplianceFinding,
    ComplianceReport,
    ComplianceReportSummary,
)
from driftguard.core.exceptions import UnsupportedExportFormatError

SYSLOG_APP_NAME = "driftguard-audit"
SYSLOG_PRIORITY = {
    AuditSeverity.CRITICAL: 2,
    AuditSeverity.WARNING: 4,
    AuditSeverity.INFO: 6,
}

CSV_HEADERS = [
    "ID", "Timestamp", "Event Type", "Severity", "Actor", "Source",
    "Target Type", "Target ID", "Action", "Description",
]

MAX_FINDING_EVIDENCE = 5
EXCESSIVE_CONFIG_CHANGES = 100


def calculate_compliance_score(entries: List[AuditEntry]) -> int:
    if not entries:
        return 100
    critical = sum(1 for e in entries if e.severity == AuditSeverity.CRITICAL)
    return round(max(0.0, 100 - critical / len(entries) * 100))


def build_findings(entries: List[AuditEntry], standard: str, generated: datetime) -> List[ComplianceFinding]:
    findings = []
    critical = [e for e in entries if e.severity == AuditSeverity.CRITICAL]
    if critical:
        findings.append(
            ComplianceFinding(
                id=f"finding_critical_events_{int(generated.timestamp() * 1000)}",
                severity="high",
                title="Critical Security Events Detected",
                description=f"{len(critical)} critical security events were detected",
                requirement=f"{standard} requires monitoring and response to security events",
                evidence=[
                    f"{e.timestamp.isoformat()}: {e.description}" for e in critical[:MAX_FINDING_EVIDENCE]
                ],
                remediation="Review and respond to all critical security events",
            )
        )
    return findings


def build_recommendations(entries: List[AuditEntry]) -> List[str]:
    recommendations = []
    if any(e.event_type == AuditEventType.SECURITY_VIOLATION for e in entries):
        recommendations.append("Implement additional security controls to prevent violations")
    config_changes = [e for e in entries if e.event_type.value.startswith("config.")]
    if len(config_changes) > EXCESSIVE_CONFIG_CHANGES:
        recommendations.append("Review change management processes for excessive configuration changes")
    return recommendations


def generate_compliance_report(
    entries: List[AuditEntry],
    standard: str,
    environment: str,
    start: datetime,
    end: datetime,
    generated: datetime,
) -> ComplianceReport:
    """
    Build a compliance report over already-filtered entries.

    Args:
        entries: Entries within the period and environment
        standard: Compliance standard name, e.g. SOC2
        environment: Environment the entries belong to
        start: Start of the reporting period
        end: End of the reporting period
        generated: Report generation time

    Returns:
        The compliance report
    """
    return ComplianceReport(
        id=f"compliance_{standard}_{environment}_{int(generated.timestamp() * 1000)}",
        generated=generated,
        period_start=start,
        period_end=end,
        standard=standard,
        environment=environment,
        summary=ComplianceReportSummary(
            total_events=len(entries),
            by_severity=dict(Counter(e.severity.value for e in entries)),
            by_type=dict(Counter(e.event_type.value for e in entries)),
            compliance_score=calculate_compliance_score(entries),
        ),
        findings=build_findings(entries, standard, generated),
        recommendations=build_recommendations(entries),
    )


def format_as_csv(entries: List[AuditEntry]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for entry in entries:
        writer.writerow([
            entry.id,
            entry.timestamp.isoformat(),
            entry.event_type.value,
            entry.severity.value,
            entry.actor,
            entry.source,
            entry.target.type.value,
            entry.target.identifier,
            entry.action,
            entry.description,
        ])
    return buffer.getvalue()


def format_as_syslog(entries: List[AuditEntry]) -> str:
    hostname = socket.gethostname()
    lines = []
    for entry in entries:
        priority = SYSLOG_PRIORITY[entry.severity]
        lines.append(
            f"<{priority}>{entry.timestamp.isoformat()} {hostname} {SYSLOG_APP_NAME}: "
            f"{entry.event_type.value}[{entry.id}]: {entry.description}"
        )
    return "\n".join(lines)


def export_entries(entries: List[AuditEntry], fmt: str) -> str:
    """
    Render entries in the requested export format.

    Raises:
        UnsupportedExportFormatError: If the format is not json, csv or syslog
    """
    if fmt == "json":
        return json.dumps([e.model_dump(mode="json") for e in entries], indent=2)
    if fmt == "csv":
        return format_as_csv(entries)
    if fmt == "syslog":
        return format_as_syslog(entries)
    raise UnsupportedExportFormatError(f"Unsupported export format: {fmt}")
