# driftguard/api/deps.py
from fastapi import HTTPException, Request, status

from driftguard.core.alerts.manager import AlertManager
from driftguard.core.audit.ledger import AuditLedger
from driftguard.services.drift_service import DriftService
from driftguard.services.monitoring import MonitoringService


def get_monitoring(request: Request) -> MonitoringService:
    """Return the MonitoringService created by the application lifespan"""
    monitoring = getattr(request.app.state, "monitoring", None)
    if monitoring is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Monitoring service is not running"
        )
    return monitoring


def get_drift_service(request: Request) -> DriftService:
    return get_monitoring(request).drift


def get_alert_manager(request: Request) -> AlertManager:
    return get_monitoring(request).alerts


def get_audit_ledger(request: Request) -> AuditLedger:
    return get_monitoring(request).ledger
