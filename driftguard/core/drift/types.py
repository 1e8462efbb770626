"""
Drift Detection Types
--------------------
This module defines the type system used for drift detection: snapshot
records, baselines, detected changes and drift results.
"""

from enum import Enum
from typing import Dict, Any, Optional, List
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from uuid import uuid4

from driftguard.core.scheduler import utc_now


class ChangeType(str, Enum):
    """Types of drift changes that can occur."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


class ChangeCategory(str, Enum):
    """Snapshot sections a change can belong to."""

    ENVIRONMENT = "environment"
    FILE = "file"
    SERVICE = "service"
    SECRET = "secret"
    SYSTEM = "system"


class Impact(str, Enum):
    """Impact of a single change."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Severity(str, Enum):
    """Ordinal risk level shared by drift results and alerts."""

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_ORDER[self]


SEVERITY_ORDER = {
    Severity.NONE: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class ComplianceStatus(str, Enum):
    COMPLIANT = "compliant"
    NON_COMPLIANT = "non_compliant"
    UNKNOWN = "unknown"


class ServiceStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    UNKNOWN = "unknown"


class FileRecord(BaseModel):
    """A watched file; content is never stored, only its checksum."""

    model_config = ConfigDict(frozen=True)

    path: str
    checksum: str
    size: int
    modified: datetime


class ServiceDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    config: Dict[str, Any] = {}
    dependencies: List[str] = []
    status: ServiceStatus = ServiceStatus.UNKNOWN


class SecretReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: str
    source: str
    accessible: bool


class SystemDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    runtime_version: str
    platform: str
    architecture: str = ""
    hostname: str
    uptime: float = 0.0


class ConfigurationSnapshot(BaseModel):
    """Point-in-time view of an environment's configuration."""

    model_config = ConfigDict(frozen=True)

    environment: Dict[str, str] = {}
    files: Dict[str, FileRecord] = {}
    services: Dict[str, ServiceDescriptor] = {}
    secrets: Dict[str, SecretReference] = {}
    system: SystemDescriptor
    captured_at: datetime = Field(default_factory=utc_now)


class Baseline(BaseModel):
    """Accepted reference snapshot used for drift comparison."""

    id: str = Field(default_factory=lambda: f"baseline_{uuid4().hex}")
    environment: str
    timestamp: datetime = Field(default_factory=utc_now)
    snapshot: ConfigurationSnapshot
    checksums: Dict[str, str] = {}
    author: str
    description: Optional[str] = None


class Change(BaseModel):
    """
    Represents a single detected change in configuration.
    Produced by the comparator only.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"change_{uuid4().hex}")
    type: ChangeType
    category: ChangeCategory
    path: str
    description: str = ""
    old_value: Optional[Any] = None
    new_value: Optional[Any] = None
    impact: Impact
    confidence: int = Field(ge=0, le=100)
    security_implications: List[str] = []
    compliance_implications: List[str] = []
    timestamp: datetime = Field(default_factory=utc_now)


class SecurityImpactAssessment(BaseModel):
    overall_score: int = 0
    categories: Dict[str, int] = {}
    critical_findings: List[str] = []
    recommendations: List[str] = []


class DriftResult(BaseModel):
    """Outcome of comparing the current snapshot against a baseline."""

    id: str = Field(default_factory=lambda: f"drift_{uuid4().hex}")
    timestamp: datetime = Field(default_factory=utc_now)
    environment: str
    baseline_id: str
    snapshot: ConfigurationSnapshot
    drift_score: float = 0.0
    severity: Severity = Severity.NONE
    changes: List[Change] = []
    security_impact: SecurityImpactAssessment = Field(default_factory=SecurityImpactAssessment)
    compliance_status: ComplianceStatus = ComplianceStatus.UNKNOWN
    recommendations: List[str] = []

    @property
    def changed(self) -> bool:
        """Check if there are any changes detected."""
        return len(self.changes) > 0

    @property
    def critical_changes(self) -> List[Change]:
        return [c for c in self.changes if c.impact == Impact.CRITICAL]
