# driftguard/api/routes/audit.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, field_validator

from driftguard.api.deps import get_audit_ledger
from driftguard.core.audit.ledger import AuditLedger
from driftguard.core.audit.policy import SUPPORTED_STANDARDS
from driftguard.core.audit.types import (
    AuditEntry,
    AuditEventType,
    AuditFilter,
    AuditSeverity,
    ComplianceReport,
    IntegrityReport,
    TargetType,
)
from driftguard.core.exceptions import UnsupportedExportFormatError
from driftguard.core.utils import ensure_utc


class ComplianceReportRequest(BaseModel):
    """Request body for compliance report generation"""
    standard: str
    environment: str
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


router = APIRouter()

EXPORT_MEDIA_TYPES = {
    "json": "application/json",
    "csv": "text/csv",
    "syslog": "text/plain",
}


def audit_filter(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    event_type: List[AuditEventType] = Query(default=[]),
    severity: List[AuditSeverity] = Query(default=[]),
    actor: List[str] = Query(default=[]),
    source: List[str] = Query(default=[]),
    target_type: List[TargetType] = Query(default=[]),
    environment: List[str] = Query(default=[]),
    correlation_id: List[str] = Query(default=[]),
) -> AuditFilter:
    return AuditFilter(
        start=start,
        end=end,
        event_types=event_type,
        severities=severity,
        actors=actor,
        sources=source,
        target_types=target_type,
        environments=environment,
        correlation_ids=correlation_id,
    )


@router.get("/entries", response_model=List[AuditEntry])
async def query_audit_log(
    filters: AuditFilter = Depends(audit_filter),
    ledger: AuditLedger = Depends(get_audit_ledger),
):
    """Audit entries matching the filters, in ledger order"""
    return ledger.query(filters)


@router.get("/export", response_class=PlainTextResponse)
async def export_audit_log(
    export_format: str = Query(default="json", alias="format"),
    filters: AuditFilter = Depends(audit_filter),
    ledger: AuditLedger = Depends(get_audit_ledger),
):
    """Export audit entries as json, csv or syslog"""
    try:
        content = ledger.export(filters, export_format)
    except UnsupportedExportFormatError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return PlainTextResponse(content, media_type=EXPORT_MEDIA_TYPES[export_format])


@router.get("/verify", response_model=IntegrityReport)
async def verify_integrity(ledger: AuditLedger = Depends(get_audit_ledger)):
    """Recompute hashes and signatures along the in-memory chain"""
    return await ledger.verify_integrity()


@router.get("/statistics")
async def get_statistics(ledger: AuditLedger = Depends(get_audit_ledger)) -> Dict[str, Any]:
    return ledger.statistics()


@router.post("/compliance-report", response_model=ComplianceReport)
async def generate_compliance_report(
    body: ComplianceReportRequest,
    ledger: AuditLedger = Depends(get_audit_ledger),
):
    if body.standard not in SUPPORTED_STANDARDS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported compliance standard: {body.standard}"
        )
    if body.end < body.start:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Report end must not be before start"
        )
    return ledger.generate_compliance_report(body.standard, body.environment, body.start, body.end)
