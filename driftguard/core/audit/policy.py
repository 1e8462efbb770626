"""
Audit Policies
--------------
Retention policies attached to entries at creation time, plus the
severity, security-level and compliance-flag classification used by the
ledger's logging helpers.
"""

from typing import Any, Dict, List, Optional

from driftguard.core.audit.types import (
    AuditSeverity,
    AuditTarget,
    RetentionPolicy,
    SecurityLevel,
    TargetType,
)

SUPPORTED_STANDARDS = ("SOC2", "PCI-DSS", "GDPR", "HIPAA", "ISO27001")

SECURITY_CRITICAL_POLICY = RetentionPolicy(
    category="security_critical",
    retention_period_days=2555,
    archive_after_days=365,
    purge_after_days=2555,
    legal_hold=True,
)

RETENTION_POLICIES: Dict[str, RetentionPolicy] = {
    "key_critical": SECURITY_CRITICAL_POLICY,
    "secret_critical": SECURITY_CRITICAL_POLICY,
    "configuration_info": RetentionPolicy(
        category="operational",
        retention_period_days=365,
        archive_after_days=90,
        purge_after_days=365,
    ),
}

DEFAULT_RETENTION_POLICY = RetentionPolicy(
    category="default",
    retention_period_days=2555,  # 7 years
    archive_after_days=365,
    purge_after_days=2555,
)


def get_retention_policy(target_type: TargetType, severity: AuditSeverity) -> RetentionPolicy:
    """Look up the retention policy for a target type and severity"""
    policy = RETENTION_POLICIES.get(f"{target_type.value}_{severity.value}", DEFAULT_RETENTION_POLICY)
    return policy.model_copy()


def assess_severity(
    action: str,
    target: AuditTarget,
    before: Optional[Any] = None,
    after: Optional[Any] = None,
) -> AuditSeverity:
    """
    Assess the severity of a configuration change.

    Deletions and writes to secrets or keys are critical, as are changes to
    security-related identifiers. Production changes are warnings.
    """
    if action in ("delete", "remove"):
        return AuditSeverity.CRITICAL

    if target.type in (TargetType.SECRET, TargetType.KEY):
        return AuditSeverity.WARNING if action == "read" else AuditSeverity.CRITICAL

    identifier = target.identifier.lower()
    if any(marker in identifier for marker in ("security", "auth", "password", "secret")):
        return AuditSeverity.CRITICAL

    if target.environment == "production":
        return AuditSeverity.WARNING

    return AuditSeverity.INFO


def classify_security_level(target: AuditTarget) -> SecurityLevel:
    identifier = target.identifier.lower()
    if target.type == TargetType.KEY or "private_key" in identifier:
        return SecurityLevel.TOP_SECRET
    if target.type == TargetType.SECRET or "secret" in identifier:
        return SecurityLevel.SECRET
    if "security" in identifier or "auth" in identifier:
        return SecurityLevel.CONFIDENTIAL
    return SecurityLevel.PUBLIC


def identify_compliance_flags(target: AuditTarget, action: str) -> List[str]:
    flags = []
    if target.type in (TargetType.SECRET, TargetType.KEY):
        flags.extend(["data_protection", "encryption"])
    identifier = target.identifier.lower()
    if "auth" in identifier or "access" in identifier:
        flags.append("access_control")
    if target.environment == "production":
        flags.append("production_change")
    if action == "delete":
        flags.append("data_deletion")
    return flags


def describe_change(
    action: str,
    target: AuditTarget,
    before: Optional[Any] = None,
    after: Optional[Any] = None,
) -> str:
    target_name = target.name or target.identifier
    prefix = f"{action} operation on {target.type.value} '{target_name}'"
    if before is not None and after is not None:
        return f"{prefix} - modified configuration"
    if after is not None:
        return f"{prefix} - created new configuration"
    if before is not None:
        return f"{prefix} - removed configuration"
    return prefix
