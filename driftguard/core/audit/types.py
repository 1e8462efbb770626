"""
Audit Ledger Types
------------------
Entries, integrity blocks, retention policies, filters and report models
for the tamper-evident audit ledger.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from driftguard.core.utils import ensure_utc


class AuditEventType(str, Enum):
    CONFIG_CREATE = "config.create"
    CONFIG_UPDATE = "config.update"
    CONFIG_DELETE = "config.delete"
    CONFIG_READ = "config.read"
    SECRET_CREATE = "secret.create"
    SECRET_UPDATE = "secret.update"
    SECRET_DELETE = "secret.delete"
    SECRET_READ = "secret.read"
    SECRET_ROTATE = "secret.rotate"
    KEY_CREATE = "key.create"
    KEY_UPDATE = "key.update"
    KEY_DELETE = "key.delete"
    KEY_ROTATE = "key.rotate"
    KEY_BACKUP = "key.backup"
    KEY_RECOVER = "key.recover"
    ACCESS_GRANT = "access.grant"
    ACCESS_REVOKE = "access.revoke"
    ACCESS_DENY = "access.deny"
    AUTH_LOGIN = "auth.login"
    AUTH_LOGOUT = "auth.logout"
    AUTH_FAILED = "auth.failed"
    SYSTEM_START = "system.start"
    SYSTEM_STOP = "system.stop"
    SYSTEM_ERROR = "system.error"
    SECURITY_VIOLATION = "security.violation"
    COMPLIANCE_CHECK = "compliance.check"
    DRIFT_DETECTED = "drift.detected"
    BASELINE_CREATED = "baseline.created"
    ALERT_TRIGGERED = "alert.triggered"
    ALERT_UPDATED = "alert.updated"


class AuditSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class TargetType(str, Enum):
    CONFIGURATION = "configuration"
    SECRET = "secret"
    KEY = "key"
    ACCESS = "access"
    SYSTEM = "system"
    ALERT = "alert"


class SecurityLevel(str, Enum):
    PUBLIC = "public"
    CONFIDENTIAL = "confidential"
    SECRET = "secret"
    TOP_SECRET = "top_secret"


class AuditTarget(BaseModel):
    type: TargetType
    identifier: str
    name: Optional[str] = None
    environment: Optional[str] = None
    category: Optional[str] = None


class AuditMetadata(BaseModel):
    correlation_id: Optional[str] = None
    request_id: Optional[str] = None
    parent_id: Optional[str] = None
    tags: List[str] = []
    context: Dict[str, Any] = {}
    compliance_flags: List[str] = []
    security_level: Optional[SecurityLevel] = None


class IntegrityData(BaseModel):
    hash: str
    signature: str
    algorithm: str = "sha256"
    previous_hash: str = ""


class RetentionPolicy(BaseModel):
    category: str
    retention_period_days: int
    archive_after_days: int
    purge_after_days: int
    legal_hold: bool = False


class AuditDraft(BaseModel):
    """An audit entry before the ledger assigns id, timestamp and integrity."""

    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO
    actor: str
    source: str
    target: AuditTarget
    action: str
    description: str
    before: Optional[Any] = None
    after: Optional[Any] = None
    metadata: AuditMetadata = Field(default_factory=AuditMetadata)


class AuditEntry(BaseModel):
    id: str
    timestamp: datetime
    event_type: AuditEventType
    severity: AuditSeverity
    actor: str
    source: str
    target: AuditTarget
    action: str
    description: str
    before: Optional[Any] = None
    after: Optional[Any] = None
    metadata: AuditMetadata = Field(default_factory=AuditMetadata)
    integrity: IntegrityData
    retention: RetentionPolicy


class AuditFilter(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    event_types: List[AuditEventType] = []
    severities: List[AuditSeverity] = []
    actors: List[str] = []
    sources: List[str] = []
    target_types: List[TargetType] = []
    environments: List[str] = []
    correlation_ids: List[str] = []

    @field_validator("start", "end")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)


class IntegrityReport(BaseModel):
    valid: bool
    issues: List[str] = []
    verified_count: int = 0


class ComplianceFinding(BaseModel):
    id: str
    severity: str
    title: str
    description: str
    requirement: str
    evidence: List[str] = []
    remediation: str
    status: str = "open"


class ComplianceReportSummary(BaseModel):
    total_events: int
    by_severity: Dict[str, int] = {}
    by_type: Dict[str, int] = {}
    compliance_score: int


class ComplianceReport(BaseModel):
    id: str
    generated: datetime
    period_start: datetime
    period_end: datetime
    standard: str
    environment: str
    summary: ComplianceReportSummary
    findings: List[ComplianceFinding] = []
    recommendations: List[str] = []
