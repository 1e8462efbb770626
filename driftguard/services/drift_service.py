# driftguard/services/drift_service.py
import logging
from collections import deque
from datetime import datetime
from typing import Awaitable, Callable, Deque, List, Optional

from driftguard.core.audit.ledger import AuditLedger
from driftguard.core.audit.types import AuditSeverity
from driftguard.core.config import Settings
from driftguard.core.drift.capture import SnapshotCapturer, generate_checksums
from driftguard.core.drift.compliance import ComplianceChecker
from driftguard.core.drift.detector import compare_snapshots
from driftguard.core.drift.severity import (
    assess_security_impact,
    calculate_drift_score,
    determine_severity,
    generate_recommendations,
)
from driftguard.core.drift.types import Baseline, DriftResult, Impact, Severity
from driftguard.core.exceptions import AuditWriteError, BaselineNotFoundError
from driftguard.core.observability import track_drift_detection
from driftguard.core.scheduler import utc_now
from driftguard.services.baseline_store import BaselineStore

logger = logging.getLogger(__name__)

DriftListener = Callable[[DriftResult], Awaitable[None]]

REPORT_RECENT_RESULTS = 20
REPORT_SECURITY_RESULTS = 5
REPORT_SECURITY_THRESHOLD = 30


def _audit_severity(severity: Severity) -> AuditSeverity:
    if severity in (Severity.CRITICAL, Severity.HIGH):
        return AuditSeverity.CRITICAL
    if severity == Severity.MEDIUM:
        return AuditSeverity.WARNING
    return AuditSeverity.INFO


class DriftService:
    """
    Baseline creation and drift detection for named environments.

    Results are kept in a bounded in-memory history and pushed to drift
    listeners registered with ``on_drift``.
    """

    def __init__(
        self,
        settings: Settings,
        store: BaselineStore,
        capturer: SnapshotCapturer,
        ledger: AuditLedger,
        compliance: Optional[ComplianceChecker] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.store = store
        self.capturer = capturer
        self.ledger = ledger
        self.compliance = compliance or ComplianceChecker()
        self.clock = clock
        self.history: Deque[DriftResult] = deque(maxlen=settings.DRIFT_HISTORY_LIMIT)
        self._listeners: List[DriftListener] = []

    def on_drift(self, listener: DriftListener) -> None:
        """Register a listener called with every DriftResult that has changes"""
        self._listeners.append(listener)

    async def create_baseline(
        self,
        environment: str,
        author: str,
        description: Optional[str] = None,
    ) -> Baseline:
        """
        Capture the current configuration and store it as the environment's latest baseline.

        Args:
            environment: Environment name
            author: Who created the baseline
            description: Optional free-text description

        Returns:
            The stored Baseline
        """
        snapshot = await self.capturer.capture()
        baseline = Baseline(
            environment=environment,
            timestamp=self.clock(),
            snapshot=snapshot,
            checksums=generate_checksums(snapshot),
            author=author,
            description=description,
        )
        await self.store.save(baseline)

        try:
            await self.ledger.log_baseline_created(author, baseline.id, environment, baseline.checksums)
        except AuditWriteError as e:
            logger.error(f"Audit record for baseline {baseline.id} was not persisted: {str(e)}")

        logger.info(f"Baseline {baseline.id} created for {environment} by {author}")
        return baseline

    async def get_baseline(self, environment: str, baseline_id: Optional[str] = None) -> Baseline:
        if baseline_id:
            baseline = await self.store.get(baseline_id)
        else:
            baseline = await self.store.latest(environment)
        if baseline is None:
            target = baseline_id or f"environment {environment}"
            raise BaselineNotFoundError(f"No baseline found for {target}")
        return baseline

    @track_drift_detection
    async def detect_drift(self, environment: str, baseline_id: Optional[str] = None) -> DriftResult:
        """
        Compare the current configuration against a baseline.

        Args:
            environment: Environment name
            baseline_id: Baseline to compare against (defaults to the latest)

        Returns:
            DriftResult with score, severity, security impact and compliance status

        Raises:
            BaselineNotFoundError: If no matching baseline exists
        """
        baseline = await self.get_baseline(environment, baseline_id)
        snapshot = await self.capturer.capture()
        now = self.clock()

        changes = compare_snapshots(baseline.snapshot, snapshot, timestamp=now)
        score = calculate_drift_score(changes)
        severity = determine_severity(changes, score)
        security_impact = assess_security_impact(changes)
        compliance_status = await self.compliance.check(snapshot, environment)

        result = DriftResult(
            timestamp=now,
            environment=environment,
            baseline_id=baseline.id,
            snapshot=snapshot,
            drift_score=score,
            severity=severity,
            changes=changes,
            security_impact=security_impact,
            compliance_status=compliance_status,
            recommendations=generate_recommendations(changes, security_impact, compliance_status),
        )
        self.history.append(result)

        if result.changed:
            logger.warning(
                f"Drift detected in {environment}: score {score:.1f}, severity {severity.value}, "
                f"{len(changes)} changes"
            )
            await self._record(result)
            for listener in list(self._listeners):
                try:
                    await listener(result)
                except Exception as e:
                    logger.error(f"Drift listener {getattr(listener, '__name__', listener)} failed: {str(e)}")
        else:
            logger.info(f"No drift detected in {environment}")

        return result

    async def _record(self, result: DriftResult) -> None:
        summary = [
            {
                "type": c.type.value,
                "category": c.category.value,
                "path": c.path,
                "impact": c.impact.value,
                "old_value": c.old_value,
                "new_value": c.new_value,
            }
            for c in result.changes
        ]
        try:
            await self.ledger.log_drift_detection(
                result.environment, result.drift_score, summary, _audit_severity(result.severity)
            )
        except AuditWriteError as e:
            logger.error(f"Audit record for drift {result.id} was not persisted: {str(e)}")

    def get_history(self, environment: Optional[str] = None, limit: Optional[int] = None) -> List[DriftResult]:
        """Drift results, oldest first"""
        results = [r for r in self.history if environment is None or r.environment == environment]
        if limit is not None:
            results = results[-limit:]
        return results

    def generate_report(self, environments: Optional[List[str]] = None) -> str:
        """
        Render a Markdown summary of recent drift results.

        Args:
            environments: Environments to include (all when empty)

        Returns:
            Markdown report text
        """
        environments = environments or []
        selected = [r for r in self.history if not environments or r.environment in environments]
        recent = selected[-REPORT_RECENT_RESULTS:]

        lines: List[str] = [
            "# Configuration Drift Report",
            "",
            f"**Generated:** {self.clock().isoformat()}",
            "",
        ]

        if recent:
            avg_score = sum(r.drift_score for r in recent) / len(recent)
            avg_security = sum(r.security_impact.overall_score for r in recent) / len(recent)
            critical = sum(len(r.critical_changes) for r in recent)
            lines += [
                "## Executive Summary",
                f"- Average Drift Score: {avg_score:.1f}",
                f"- Average Security Impact: {avg_security:.1f}",
                f"- Critical Changes: {critical}",
                f"- Environments Monitored: {len({r.environment for r in recent})}",
                "",
            ]

        lines += ["## Security Impact Analysis", ""]
        for result in recent[-REPORT_SECURITY_RESULTS:]:
            impact = result.security_impact
            if impact.overall_score <= REPORT_SECURITY_THRESHOLD:
                continue
            lines.append(f"### {result.environment} - {result.timestamp.isoformat()}")
            lines.append(f"- Overall Security Score: {impact.overall_score}")
            for category, score in sorted(impact.categories.items()):
                lines.append(f"- {category.replace('_', ' ').title()} Impact: {score}")
            if impact.critical_findings:
                lines.append("- Critical Findings:")
                lines.extend(f"  - {finding}" for finding in impact.critical_findings)
            lines.append("")

        lines += ["## Compliance Status", ""]
        compliance_counts: dict = {}
        for result in recent:
            key = result.compliance_status.value
            compliance_counts[key] = compliance_counts.get(key, 0) + 1
        for status, count in compliance_counts.items():
            lines.append(f"- {status.upper()}: {count}")
        lines.append("")

        names = environments or list(dict.fromkeys(r.environment for r in self.history))
        for env in names:
            latest = next((r for r in reversed(self.history) if r.environment == env), None)
            if latest is None:
                continue
            lines += [
                f"## {env.upper()} Environment",
                f"- Drift Score: {latest.drift_score:.1f}",
                f"- Severity: {latest.severity.value.upper()}",
                f"- Security Impact: {latest.security_impact.overall_score}",
                f"- Compliance: {latest.compliance_status.value.upper()}",
                f"- Total Changes: {len(latest.changes)}",
                "",
            ]
            if latest.critical_changes:
                lines.append("### Critical Changes")
                for change in latest.critical_changes:
                    lines.append(f"- **{change.path}**: {change.description}")
                    if change.security_implications:
                        lines.append(f"  - Security: {', '.join(change.security_implications)}")
                lines.append("")
            if latest.recommendations:
                lines.append("### Recommendations")
                lines.extend(f"- {r}" for r in latest.recommendations)
                lines.append("")

        return "\n".join(lines)

    def summarize(self, result: DriftResult) -> dict:
        """Compact view of a drift result for API listings"""
        by_impact: dict = {impact.value: 0 for impact in Impact}
        for change in result.changes:
            by_impact[change.impact.value] += 1
        return {
            "id": result.id,
            "environment": result.environment,
            "timestamp": result.timestamp,
            "baseline_id": result.baseline_id,
            "drift_score": result.drift_score,
            "severity": result.severity,
            "change_count": len(result.changes),
            "changes_by_impact": by_impact,
            "security_impact": result.security_impact.overall_score,
            "compliance_status": result.compliance_status,
        }
