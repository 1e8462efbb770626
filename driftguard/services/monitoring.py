"""
Monitoring Service
------------------
Builds the drift, alerting and audit components for one process and wires
them together through their subscription hooks:

- drift results with a severity become configuration_drift alerts
- integrity violations found during audit maintenance become critical
  data_integrity alerts
- ledger write failures are surfaced to operators immediately

Periodic work (drift scans, correlation sweeps, audit maintenance) runs on
the scheduler, so stopping the service cancels every timer it created.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from driftguard.core.alerts.manager import AlertManager
from driftguard.core.alerts.notifications import NotificationRouter
from driftguard.core.alerts.remediation import ResponseActionExecutor
from driftguard.core.alerts.types import (
    AlertCategory,
    AlertCreate,
    AlertMetadata,
    Evidence,
    EvidenceType,
    IndicatorType,
    SecurityIndicator,
)
from driftguard.core.audit.ledger import AuditLedger
from driftguard.core.audit.types import IntegrityReport
from driftguard.core.config import Settings
from driftguard.core.drift.capture import SnapshotCapturer
from driftguard.core.drift.types import ChangeCategory, DriftResult, Impact, Severity
from driftguard.core.exceptions import AuditWriteError, BaselineNotFoundError
from driftguard.core.scheduler import Scheduler
from driftguard.services.baseline_store import BaselineStore
from driftguard.services.drift_service import DriftService

logger = logging.getLogger(__name__)

SECURITY_HIGH_IMPACT_THRESHOLD = 70
MAX_EVIDENCE_CHANGES = 20

SEVERITY_TO_IMPACT = {
    Severity.LOW: Impact.LOW,
    Severity.MEDIUM: Impact.MEDIUM,
    Severity.HIGH: Impact.HIGH,
    Severity.CRITICAL: Impact.CRITICAL,
}


def build_drift_alert(result: DriftResult) -> AlertCreate:
    """Turn a drift result into alert data; the alert severity equals the drift severity"""
    tags = ["configuration_drift"]
    if result.security_impact.overall_score >= SECURITY_HIGH_IMPACT_THRESHOLD:
        tags.append("security_high_impact")

    compliance = list(dict.fromkeys(i for c in result.changes for i in c.compliance_implications))
    services = sorted({c.path.split(".")[0] for c in result.changes if c.category == ChangeCategory.SERVICE})
    evidence = [
        Evidence(
            type=EvidenceType.CONFIG,
            description=f"{change.type.value} {change.category.value}: {change.path}",
            data={"impact": change.impact.value, "confidence": change.confidence},
            timestamp=change.timestamp,
            source="drift_detector",
        )
        for change in result.changes[:MAX_EVIDENCE_CHANGES]
    ]

    return AlertCreate(
        severity=result.severity,
        category=AlertCategory.CONFIGURATION_DRIFT,
        title=f"Configuration drift detected in {result.environment}",
        description=(
            f"{len(result.changes)} configuration changes detected against baseline "
            f"{result.baseline_id} (drift score {result.drift_score:.1f})"
        ),
        source="drift_detector",
        environment=result.environment,
        affected_resources=[c.path for c in result.changes],
        indicators=[
            SecurityIndicator(
                type=IndicatorType.MISCONFIGURATION,
                description="Configuration deviates from the accepted baseline",
                confidence=max((c.confidence for c in result.changes), default=0),
                evidence=evidence,
            )
        ],
        metadata=AlertMetadata(
            detection_method="drift_detection",
            risk_score=result.drift_score,
            business_impact=SEVERITY_TO_IMPACT.get(result.severity, Impact.LOW),
            compliance_implications=compliance,
            affected_services=services,
            tags=tags,
        ),
    )


class MonitoringService:
    """
    Owns every monitoring component of one process.

    Components can be injected for tests; anything not passed in is built
    from ``settings``.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker,
        scheduler: Optional[Scheduler] = None,
        ledger: Optional[AuditLedger] = None,
        capturer: Optional[SnapshotCapturer] = None,
        notifier: Optional[NotificationRouter] = None,
        executor: Optional[ResponseActionExecutor] = None,
        environments: Optional[List[str]] = None,
    ):
        self.settings = settings
        self.scheduler = scheduler or Scheduler()
        clock = self.scheduler.now
        self.ledger = ledger or AuditLedger(settings, clock=clock)
        self.store = BaselineStore(session_factory)
        self.drift = DriftService(
            settings,
            self.store,
            capturer or SnapshotCapturer(settings, clock=clock),
            self.ledger,
            clock=clock,
        )
        self.notifier = notifier or NotificationRouter(settings, clock=clock)
        self.executor = executor or ResponseActionExecutor(
            timeout=settings.RESPONSE_ACTION_TIMEOUT,
            clock=clock,
            emergency_notifier=self.notifier.dispatch_emergency,
        )
        self.alerts = AlertManager(settings, self.ledger, self.notifier, self.executor, self.scheduler)
        self.environments: List[str] = list(environments or [settings.ENVIRONMENT])

        self._file_change_generation: Dict[str, int] = {}
        self.last_write_error: Optional[Dict[str, Any]] = None
        self.last_integrity_report: Optional[IntegrityReport] = None

        self.drift.on_drift(self._on_drift)
        self.ledger.on_integrity_violation(self._on_integrity_violation)
        self.ledger.on_write_error(self._on_write_error)

    # ========== Lifecycle ========== #

    async def start(self) -> None:
        """Resume the audit chain and start the periodic jobs"""
        await self.ledger.resume()
        self.scheduler.start()

        self.scheduler.every("drift_scan", self.settings.DRIFT_SCAN_INTERVAL, self.scan_all)
        self.scheduler.every("correlation_sweep", self.settings.CORRELATION_SWEEP_INTERVAL, self.alerts.sweep)
        self.scheduler.every("audit_maintenance", self.settings.AUDIT_MAINTENANCE_INTERVAL, self.ledger.maintenance)

        await self._log_system_event("monitoring_start", {"environments": self.environments})
        logger.info(f"Monitoring started for {', '.join(self.environments)}")

    async def stop(self) -> None:
        await self._log_system_event("monitoring_stop", {"environments": self.environments})
        await self.scheduler.stop()
        await self.ledger.close()
        logger.info("Monitoring stopped")

    def monitor(self, environment: str) -> None:
        if environment not in self.environments:
            self.environments.append(environment)
            logger.info(f"Environment {environment} added to monitoring")

    async def _log_system_event(self, event: str, details: Any) -> None:
        try:
            await self.ledger.log_system_event("monitoring_service", event, details)
        except AuditWriteError as e:
            logger.error(f"Audit record for {event} was not persisted: {str(e)}")

    # ========== Scanning ========== #

    async def scan(self, environment: str) -> Optional[DriftResult]:
        """
        Run one drift scan. An environment without a baseline gets an
        initial baseline instead.
        """
        try:
            return await self.drift.detect_drift(environment)
        except BaselineNotFoundError:
            logger.info(f"No baseline for {environment}, creating initial baseline")
            await self.drift.create_baseline(environment, "system", "Initial baseline")
            return None

    async def scan_all(self) -> List[DriftResult]:
        results = []
        for environment in list(self.environments):
            try:
                result = await self.scan(environment)
            except Exception as e:
                logger.error(f"Drift scan failed for {environment}: {str(e)}")
                continue
            if result is not None:
                results.append(result)
        return results

    def _is_excluded(self, path: str) -> bool:
        candidate = Path(path).as_posix()
        for excluded in self.settings.DRIFT_EXCLUDED_PATHS:
            prefix = Path(excluded).as_posix()
            if candidate == prefix or candidate.startswith(prefix.rstrip("/") + "/"):
                return True
        return False

    def notify_file_change(self, path: str) -> bool:
        """
        Schedule a drift scan after a watched file changed.

        Repeated notifications for the same path within the debounce delay
        collapse into one scan.

        Returns:
            False when the path is excluded or the scheduler is not running
        """
        if self._is_excluded(path):
            logger.debug(f"Ignoring change to excluded path {path}")
            return False

        generation = self._file_change_generation.get(path, 0) + 1
        self._file_change_generation[path] = generation
        task = self.scheduler.call_later(
            self.settings.DRIFT_FILE_CHANGE_DEBOUNCE,
            self._on_file_change_settled,
            path,
            generation,
            job_name=f"file_change:{path}",
        )
        return task is not None

    async def _on_file_change_settled(self, path: str, generation: int) -> None:
        if self._file_change_generation.get(path) != generation:
            return
        del self._file_change_generation[path]
        logger.info(f"Configuration file changed: {path}")
        await self.scan_all()

    # ========== Subscriptions ========== #

    async def _on_drift(self, result: DriftResult) -> None:
        if result.severity == Severity.NONE:
            return
        alert_id = await self.alerts.create_alert(build_drift_alert(result))
        logger.info(f"Drift {result.id} raised alert {alert_id}")

    async def _on_integrity_violation(self, report: IntegrityReport) -> None:
        self.last_integrity_report = report
        now = self.scheduler.now()
        await self.alerts.create_alert(
            AlertCreate(
                severity=Severity.CRITICAL,
                category=AlertCategory.DATA_INTEGRITY,
                title="Audit Log Integrity Violation",
                description=f"Audit chain verification found {len(report.issues)} issues",
                source="audit_ledger",
                environment=self.settings.ENVIRONMENT,
                affected_resources=["audit_log"],
                indicators=[
                    SecurityIndicator(
                        type=IndicatorType.COMPROMISE,
                        description="Audit entries failed hash, signature or chain verification",
                        confidence=95,
                        evidence=[
                            Evidence(
                                type=EvidenceType.LOG,
                                description="Integrity verification issues",
                                data={"issues": report.issues[:10], "verified_count": report.verified_count},
                                timestamp=now,
                                source="audit_ledger",
                            )
                        ],
                    )
                ],
                metadata=AlertMetadata(
                    detection_method="integrity_verification",
                    risk_score=100,
                    business_impact=Impact.CRITICAL,
                    compliance_implications=["audit_trail_integrity"],
                    tags=["audit", "tamper_evidence"],
                ),
            )
        )

    async def _on_write_error(self, payload: Dict[str, Any]) -> None:
        self.last_write_error = {"error": payload.get("error"), "timestamp": self.scheduler.now()}
        logger.critical(f"Audit ledger write failure: {payload.get('error')}")

    # ========== Health ========== #

    def health(self) -> Dict[str, Any]:
        now: datetime = self.scheduler.now()
        return {
            "timestamp": now,
            "environments": self.environments,
            "scheduler": self.scheduler.health(),
            "audit": {
                "entries_in_memory": len(self.ledger.entries),
                "pending_writes": self.ledger.pending_count,
                "last_write_error": self.last_write_error,
                "last_integrity_report": self.last_integrity_report,
            },
            "alerts": {
                "total": len(self.alerts.alerts),
                "incidents": len(self.alerts.incidents),
            },
            "drift_results": len(self.drift.history),
        }
