"""
Security Alert Types
--------------------
Alerts, their response actions and timeline, plus the rule and channel
configuration entities read by correlation, escalation and notification.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from driftguard.core.drift.types import Impact, Severity
from driftguard.core.utils import ensure_utc


class AlertCategory(str, Enum):
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    CONFIGURATION_DRIFT = "configuration_drift"
    SECRET_COMPROMISE = "secret_compromise"
    KEY_MANAGEMENT = "key_management"
    DATA_BREACH = "data_breach"
    SYSTEM_INTRUSION = "system_intrusion"
    MALWARE = "malware"
    COMPLIANCE_VIOLATION = "compliance_violation"
    PERFORMANCE_ANOMALY = "performance_anomaly"
    AVAILABILITY = "availability"
    DATA_INTEGRITY = "data_integrity"
    NETWORK_SECURITY = "network_security"
    APPLICATION_SECURITY = "application_security"


class AlertStatus(str, Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"

    @property
    def is_terminal(self) -> bool:
        return self in (AlertStatus.RESOLVED, AlertStatus.FALSE_POSITIVE)


class IndicatorType(str, Enum):
    COMPROMISE = "compromise"
    MISCONFIGURATION = "misconfiguration"
    VIOLATION = "violation"
    ANOMALY = "anomaly"
    THREAT = "threat"


class EvidenceType(str, Enum):
    LOG = "log"
    METRIC = "metric"
    CONFIG = "config"
    FILE = "file"
    NETWORK = "network"
    BEHAVIORAL = "behavioral"


class Evidence(BaseModel):
    type: EvidenceType
    description: str
    data: Optional[Any] = None
    timestamp: datetime
    source: str


class SecurityIndicator(BaseModel):
    type: IndicatorType
    description: str
    confidence: int = Field(ge=0, le=100)
    evidence: List[Evidence] = []
    mitre_technique: Optional[str] = None


class AlertMetadata(BaseModel):
    detection_method: str = "manual"
    risk_score: float = 0
    business_impact: Impact = Impact.LOW
    compliance_implications: List[str] = []
    attack_vectors: List[str] = []
    affected_services: List[str] = []
    tags: List[str] = []


class ResponseActionKind(str, Enum):
    MANUAL = "manual"
    AUTOMATED = "automated"


class ResponseActionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ResponseActionCreate(BaseModel):
    kind: ResponseActionKind = ResponseActionKind.MANUAL
    action: str
    description: str = ""


class ResponseAction(BaseModel):
    id: str
    kind: ResponseActionKind
    action: str
    description: str = ""
    status: ResponseActionStatus = ResponseActionStatus.PENDING
    executed_by: Optional[str] = None
    executed_at: Optional[datetime] = None
    result: Optional[Any] = None


class TimelineEntry(BaseModel):
    timestamp: datetime
    event: str
    description: str
    user: Optional[str] = None
    automated: bool = True


class AlertCreate(BaseModel):
    """Caller-supplied alert content; lifecycle fields are assigned on creation."""

    severity: Severity
    category: AlertCategory
    title: str
    description: str
    source: str
    environment: str
    affected_resources: List[str] = []
    indicators: List[SecurityIndicator] = []
    metadata: AlertMetadata = Field(default_factory=AlertMetadata)
    response_actions: List[ResponseActionCreate] = []
    assigned_to: Optional[str] = None
    correlation_id: Optional[str] = None

    @field_validator("severity")
    @classmethod
    def severity_must_be_set(cls, v: Severity) -> Severity:
        if v == Severity.NONE:
            raise ValueError("Alert severity cannot be 'none'")
        return v


class Alert(BaseModel):
    id: str
    timestamp: datetime
    severity: Severity
    category: AlertCategory
    title: str
    description: str
    source: str
    environment: str
    affected_resources: List[str] = []
    indicators: List[SecurityIndicator] = []
    status: AlertStatus = AlertStatus.OPEN
    assigned_to: Optional[str] = None
    escalation_level: int = 0
    correlation_id: Optional[str] = None
    related_alerts: List[str] = []
    metadata: AlertMetadata = Field(default_factory=AlertMetadata)
    response_actions: List[ResponseAction] = []
    timeline: List[TimelineEntry] = []


class AlertFilter(BaseModel):
    severity: List[Severity] = []
    category: List[AlertCategory] = []
    status: List[AlertStatus] = []
    environment: List[str] = []
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    assigned_to: Optional[str] = None
    correlation_id: Optional[str] = None

    @field_validator("start", "end")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)


class Incident(BaseModel):
    id: str
    created_at: datetime
    rule_id: str
    primary_alert_id: str
    related_alert_ids: List[str] = []


# ========== Correlation ========== #

class CorrelationOperator(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    MATCHES = "matches"
    WITHIN_RANGE = "within_range"


class CorrelationCondition(BaseModel):
    field: str
    operator: CorrelationOperator = CorrelationOperator.EQUALS
    # None or "" means "same value as the new alert"
    value: Optional[Any] = None


class CorrelationActionType(str, Enum):
    MERGE = "merge"
    SUPPRESS = "suppress"
    ESCALATE = "escalate"
    CREATE_INCIDENT = "create_incident"


class CorrelationAction(BaseModel):
    type: CorrelationActionType
    parameters: Dict[str, Any] = {}


class CorrelationRule(BaseModel):
    id: str
    name: str
    description: str = ""
    time_window: int = Field(description="Window in minutes")
    conditions: List[CorrelationCondition] = []
    correlation_key: str = ""
    actions: List[CorrelationAction] = []
    enabled: bool = True


# ========== Escalation ========== #

class EscalationConditionType(str, Enum):
    SEVERITY = "severity"
    CATEGORY = "category"
    UNACKNOWLEDGED_TIME = "unacknowledged_time"
    BUSINESS_HOURS = "business_hours"
    IMPACT = "impact"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"


class EscalationCondition(BaseModel):
    type: EscalationConditionType
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any


class EscalationActionType(str, Enum):
    NOTIFY = "notify"
    ASSIGN = "assign"
    EXECUTE_PLAYBOOK = "execute_playbook"
    CREATE_TICKET = "create_ticket"


class EscalationAction(BaseModel):
    type: EscalationActionType
    target: str
    parameters: Dict[str, Any] = {}


class EscalationRule(BaseModel):
    id: str
    name: str
    conditions: List[EscalationCondition] = []
    actions: List[EscalationAction] = []
    escalation_delay: float = Field(description="Delay in minutes")
    max_escalations: int = 1
    enabled: bool = True


# ========== Notification ========== #

class ChannelType(str, Enum):
    LOG = "log"
    EMAIL = "email"
    WEBHOOK = "webhook"
    SLACK = "slack"
    TEAMS = "teams"
    PAGERDUTY = "pagerduty"


class TimeWindow(BaseModel):
    start: str = Field(description="HH:MM")
    end: str = Field(description="HH:MM")
    timezone: str = "UTC"
    days: List[int] = Field(default=[0, 1, 2, 3, 4, 5, 6], description="0=Sunday")


class NotificationChannel(BaseModel):
    id: str
    type: ChannelType
    config: Dict[str, Any] = {}
    severity_filter: List[Severity] = []
    category_filter: List[AlertCategory] = []
    active_hours: Optional[TimeWindow] = None
    enabled: bool = True
