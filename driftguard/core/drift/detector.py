"""
Drift Detection Core Logic
-------------------------
This module contains the comparator that diffs a baseline snapshot against
the current snapshot, one category at a time, and classifies the impact of
every change it finds.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from driftguard.core.drift.capture import redact_value
from driftguard.core.drift.types import (
    Change,
    ChangeCategory,
    ChangeType,
    ConfigurationSnapshot,
    FileRecord,
    Impact,
    SecretReference,
    ServiceDescriptor,
)
from driftguard.core.scheduler import utc_now
from driftguard.core.utils import calculate_hash

logger = logging.getLogger(__name__)

# Environment variable naming patterns, checked in order
ENV_CRITICAL_PATTERN = re.compile(r"SECRET|PASSW(OR)?D|PRIVATE_KEY|CREDENTIAL", re.IGNORECASE)
ENV_HIGH_PATTERN = re.compile(r"DB|DATABASE|JWT|AUTH|NODE_ENV|PYTHON_ENV|APP_ENV|RUNTIME", re.IGNORECASE)
ENV_MEDIUM_PATTERN = re.compile(r"API|URL|PORT|HOST", re.IGNORECASE)

# File path markers, checked in order against the lower-cased path
FILE_CRITICAL_MARKERS = ("security", "auth", ".env", "ssl", "tls", "cert", ".pem")
FILE_HIGH_MARKERS = ("config", "settings", "docker", "compose", "k8s", "kubernetes", "helm")
FILE_MEDIUM_SUFFIXES = (".json", ".yaml", ".yml", ".toml", ".ini")

SERVICE_CRITICAL_MARKERS = ("auth", "security")
SERVICE_HIGH_CONFIG_KEYS = ("port", "database", "security")

ENV_CONFIDENCE = {
    ChangeType.ADDED: 95,
    ChangeType.MODIFIED: 90,
    ChangeType.REMOVED: 100,
}


def classify_environment_impact(key: str) -> Impact:
    if ENV_CRITICAL_PATTERN.search(key):
        return Impact.CRITICAL
    if ENV_HIGH_PATTERN.search(key):
        return Impact.HIGH
    if ENV_MEDIUM_PATTERN.search(key):
        return Impact.MEDIUM
    return Impact.LOW


def classify_file_impact(path: str) -> Impact:
    lowered = path.lower()
    if any(marker in lowered for marker in FILE_CRITICAL_MARKERS):
        return Impact.CRITICAL
    if any(marker in lowered for marker in FILE_HIGH_MARKERS):
        return Impact.HIGH
    if lowered.endswith(FILE_MEDIUM_SUFFIXES):
        return Impact.MEDIUM
    return Impact.LOW


def classify_service_impact(service: ServiceDescriptor) -> Impact:
    """
    Services named after auth or security, or depending on one, are
    critical. Services whose config exposes ports, databases or security
    settings are high. Everything else is medium.
    """
    names = [service.name.lower()] + [d.lower() for d in service.dependencies]
    if any(marker in name for name in names for marker in SERVICE_CRITICAL_MARKERS):
        return Impact.CRITICAL
    config_keys = [str(k).lower() for k in service.config.keys()]
    if any(marker in key for key in config_keys for marker in SERVICE_HIGH_CONFIG_KEYS):
        return Impact.HIGH
    return Impact.MEDIUM


def security_implications_for(category: ChangeCategory, path: str, impact: Impact) -> List[str]:
    implications = []
    if impact in (Impact.HIGH, Impact.CRITICAL):
        implications.append(f"{category.value.capitalize()} change at {path} may affect security posture")
    if category == ChangeCategory.SECRET:
        implications.append("Credential exposure or rotation may be required")
    if ENV_CRITICAL_PATTERN.search(path):
        implications.append("Sensitive credential configuration modified")
    return implications


def compliance_implications_for(category: ChangeCategory, impact: Impact) -> List[str]:
    implications = []
    if impact == Impact.CRITICAL:
        implications.append("Change requires review under change-management controls")
    if category in (ChangeCategory.SECRET, ChangeCategory.ENVIRONMENT) and impact != Impact.LOW:
        implications.append("Configuration baseline deviation must be documented")
    return implications


def _file_value(record: FileRecord) -> Dict[str, Any]:
    return {
        "checksum": record.checksum,
        "size": record.size,
        "modified": record.modified.isoformat(),
    }


class _ChangeBuilder:
    """Collects changes for one comparison, stamping a shared timestamp"""

    def __init__(self, timestamp: datetime):
        self.timestamp = timestamp
        self.changes: List[Change] = []

    def add(
        self,
        change_type: ChangeType,
        category: ChangeCategory,
        path: str,
        description: str,
        impact: Impact,
        confidence: int,
        old_value: Any = None,
        new_value: Any = None,
    ) -> None:
        self.changes.append(
            Change(
                type=change_type,
                category=category,
                path=path,
                description=description,
                old_value=old_value,
                new_value=new_value,
                impact=impact,
                confidence=confidence,
                security_implications=security_implications_for(category, path, impact),
                compliance_implications=compliance_implications_for(category, impact),
                timestamp=self.timestamp,
            )
        )


def _compare_environment(baseline: Dict[str, str], current: Dict[str, str], out: _ChangeBuilder) -> None:
    for key, value in current.items():
        impact = classify_environment_impact(key)
        if key not in baseline:
            out.add(
                ChangeType.ADDED, ChangeCategory.ENVIRONMENT, key,
                f"Environment variable {key} added", impact, ENV_CONFIDENCE[ChangeType.ADDED],
                new_value=redact_value(key, value),
            )
        elif baseline[key] != value:
            out.add(
                ChangeType.MODIFIED, ChangeCategory.ENVIRONMENT, key,
                f"Environment variable {key} modified", impact, ENV_CONFIDENCE[ChangeType.MODIFIED],
                old_value=redact_value(key, baseline[key]),
                new_value=redact_value(key, value),
            )

    for key, value in baseline.items():
        if key not in current:
            out.add(
                ChangeType.REMOVED, ChangeCategory.ENVIRONMENT, key,
                f"Environment variable {key} removed", classify_environment_impact(key),
                ENV_CONFIDENCE[ChangeType.REMOVED],
                old_value=redact_value(key, value),
            )


def _compare_files(baseline: Dict[str, FileRecord], current: Dict[str, FileRecord], out: _ChangeBuilder) -> None:
    for path, record in current.items():
        impact = classify_file_impact(path)
        if path not in baseline:
            out.add(
                ChangeType.ADDED, ChangeCategory.FILE, path,
                f"Configuration file {path} added", impact, 100,
                new_value=_file_value(record),
            )
        elif baseline[path].checksum != record.checksum:
            out.add(
                ChangeType.MODIFIED, ChangeCategory.FILE, path,
                f"Configuration file {path} modified", impact, 100,
                old_value=_file_value(baseline[path]),
                new_value=_file_value(record),
            )

    for path, record in baseline.items():
        if path not in current:
            out.add(
                ChangeType.REMOVED, ChangeCategory.FILE, path,
                f"Configuration file {path} removed", classify_file_impact(path), 100,
                old_value=_file_value(record),
            )


def _compare_services(
    baseline: Dict[str, ServiceDescriptor],
    current: Dict[str, ServiceDescriptor],
    out: _ChangeBuilder,
) -> None:
    for name, service in current.items():
        if name not in baseline:
            out.add(
                ChangeType.ADDED, ChangeCategory.SERVICE, name,
                f"Service {name} added", classify_service_impact(service), 95,
                new_value=service.model_dump(mode="json"),
            )
            continue

        previous = baseline[name]
        if calculate_hash(previous.config) != calculate_hash(service.config):
            out.add(
                ChangeType.MODIFIED, ChangeCategory.SERVICE, f"{name}.configuration",
                f"Service {name} configuration changed", classify_service_impact(service), 90,
                old_value=previous.config,
                new_value=service.config,
            )
        if previous.version != service.version:
            out.add(
                ChangeType.MODIFIED, ChangeCategory.SERVICE, f"{name}.version",
                f"Service {name} version changed from {previous.version} to {service.version}",
                Impact.MEDIUM, 100,
                old_value=previous.version,
                new_value=service.version,
            )

    for name, service in baseline.items():
        if name not in current:
            out.add(
                ChangeType.REMOVED, ChangeCategory.SERVICE, name,
                f"Service {name} removed", classify_service_impact(service), 100,
                old_value=service.model_dump(mode="json"),
            )


def _compare_secrets(
    baseline: Dict[str, SecretReference],
    current: Dict[str, SecretReference],
    out: _ChangeBuilder,
) -> None:
    for name, secret in current.items():
        if name not in baseline:
            out.add(
                ChangeType.ADDED, ChangeCategory.SECRET, name,
                f"Secret {name} added", Impact.HIGH, 100,
                new_value={"type": secret.type, "source": secret.source},
            )
        elif baseline[name].accessible != secret.accessible:
            became_inaccessible = not secret.accessible
            out.add(
                ChangeType.MODIFIED, ChangeCategory.SECRET, f"{name}.accessibility",
                f"Secret {name} became {'inaccessible' if became_inaccessible else 'accessible'}",
                Impact.CRITICAL if became_inaccessible else Impact.MEDIUM, 95,
                old_value=baseline[name].accessible,
                new_value=secret.accessible,
            )

    for name, secret in baseline.items():
        if name not in current:
            out.add(
                ChangeType.REMOVED, ChangeCategory.SECRET, name,
                f"Secret {name} removed", Impact.HIGH, 100,
                old_value={"type": secret.type, "source": secret.source},
            )


def _compare_system(baseline: ConfigurationSnapshot, current: ConfigurationSnapshot, out: _ChangeBuilder) -> None:
    old, new = baseline.system, current.system
    if old.runtime_version != new.runtime_version:
        out.add(
            ChangeType.MODIFIED, ChangeCategory.SYSTEM, "system.runtime_version",
            f"Runtime version changed from {old.runtime_version} to {new.runtime_version}",
            Impact.MEDIUM, 100,
            old_value=old.runtime_version,
            new_value=new.runtime_version,
        )
    if old.hostname != new.hostname:
        out.add(
            ChangeType.MODIFIED, ChangeCategory.SYSTEM, "system.hostname",
            f"Hostname changed from {old.hostname} to {new.hostname}",
            Impact.HIGH, 100,
            old_value=old.hostname,
            new_value=new.hostname,
        )


def compare_snapshots(
    baseline: ConfigurationSnapshot,
    current: ConfigurationSnapshot,
    timestamp: Optional[datetime] = None,
) -> List[Change]:
    """
    Compare two snapshots and return the detected changes.

    Categories are compared independently. A failure while comparing one
    category is logged and the remaining categories are still compared.

    Args:
        baseline: The reference snapshot
        current: The snapshot to compare against the reference
        timestamp: Timestamp stamped on every change (defaults to now)

    Returns:
        Changes in category order: environment, file, service, secret, system
    """
    out = _ChangeBuilder(timestamp or utc_now())

    comparisons: List[tuple] = [
        (ChangeCategory.ENVIRONMENT, lambda: _compare_environment(baseline.environment, current.environment, out)),
        (ChangeCategory.FILE, lambda: _compare_files(baseline.files, current.files, out)),
        (ChangeCategory.SERVICE, lambda: _compare_services(baseline.services, current.services, out)),
        (ChangeCategory.SECRET, lambda: _compare_secrets(baseline.secrets, current.secrets, out)),
        (ChangeCategory.SYSTEM, lambda: _compare_system(baseline, current, out)),
    ]

    for category, compare in comparisons:
        try:
            compare()
        except Exception as e:
            logger.error(f"Error comparing {category.value} configuration: {str(e)}")

    return out.changes
