"""
Compliance Rules
----------------
Rule-based compliance checks evaluated against a captured snapshot. A
snapshot is compliant when at least 80% of the combined compliance score
is reached. An optional external validator may contribute its own score.
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Union

from driftguard.core.drift.types import ComplianceStatus, ConfigurationSnapshot, Severity

logger = logging.getLogger(__name__)

COMPLIANCE_THRESHOLD = 80

FALSY_VALUES = {"", "0", "false", "no", "off"}
ENVIRONMENT_KEYS = ("ENVIRONMENT", "APP_ENV", "PYTHON_ENV", "NODE_ENV")

# Returns a 0-100 score for an environment
ExternalValidator = Callable[[str], Union[float, Awaitable[float]]]


@dataclass
class ComplianceResult:
    compliant: bool
    message: str
    score: int = 0


@dataclass
class ComplianceRule:
    id: str
    name: str
    description: str
    standard: str
    category: str
    severity: Severity
    validate: Callable[[ConfigurationSnapshot], ComplianceResult]


def _is_production(snapshot: ConfigurationSnapshot) -> bool:
    return any(snapshot.environment.get(key, "").lower() == "production" for key in ENVIRONMENT_KEYS)


def _debug_disabled(snapshot: ConfigurationSnapshot) -> ComplianceResult:
    debug = snapshot.environment.get("DEBUG", "").strip().lower()
    compliant = debug in FALSY_VALUES or not _is_production(snapshot)
    return ComplianceResult(
        compliant=compliant,
        message="Debug mode configuration validated for SOC2 compliance"
        if compliant else "Debug mode is enabled in production",
        score=100 if compliant else 0,
    )


def _tls_required(snapshot: ConfigurationSnapshot) -> ComplianceResult:
    tls_version = snapshot.environment.get("TLS_VERSION")
    compliant = not tls_version or any(v in tls_version for v in ("1.2", "1.3"))
    return ComplianceResult(
        compliant=compliant,
        message="TLS configuration meets PCI-DSS requirements"
        if compliant else "TLS version does not meet PCI-DSS requirements",
        score=100 if compliant else 0,
    )


def default_compliance_rules() -> Dict[str, ComplianceRule]:
    rules = [
        ComplianceRule(
            id="soc2_debug_disabled",
            name="Debug Mode Disabled in Production",
            description="Debug mode should be disabled in production environments",
            standard="SOC2",
            category="environment",
            severity=Severity.CRITICAL,
            validate=_debug_disabled,
        ),
        ComplianceRule(
            id="pci_tls_required",
            name="TLS Required for Data Transmission",
            description="TLS 1.2 or higher must be used for data transmission",
            standard="PCI-DSS",
            category="encryption",
            severity=Severity.CRITICAL,
            validate=_tls_required,
        ),
    ]
    return {rule.id: rule for rule in rules}


class ComplianceChecker:
    """Evaluates compliance rules against snapshots"""

    def __init__(
        self,
        rules: Optional[Dict[str, ComplianceRule]] = None,
        validator: Optional[ExternalValidator] = None,
    ):
        self.rules = rules if rules is not None else default_compliance_rules()
        self.validator = validator

    def add_rule(self, rule: ComplianceRule) -> None:
        self.rules[rule.id] = rule

    def evaluate(self, snapshot: ConfigurationSnapshot) -> List[ComplianceResult]:
        return [rule.validate(snapshot) for rule in self.rules.values()]

    async def check(self, snapshot: ConfigurationSnapshot, environment: str) -> ComplianceStatus:
        """
        Determine the compliance status of a snapshot.

        Args:
            snapshot: Snapshot to evaluate
            environment: Environment name passed to the external validator

        Returns:
            COMPLIANT when the score reaches the threshold, UNKNOWN on error
        """
        try:
            results = self.evaluate(snapshot)
            if not results:
                rule_score = 100.0
            else:
                rule_score = sum(1 for r in results if r.compliant) / len(results) * 100

            score = rule_score
            if self.validator is not None:
                external = self.validator(environment)
                if inspect.isawaitable(external):
                    external = await external
                score = (float(external) + rule_score) / 2

            return ComplianceStatus.COMPLIANT if score >= COMPLIANCE_THRESHOLD else ComplianceStatus.NON_COMPLIANT
        except Exception as e:
            logger.error(f"Compliance check failed for {environment}: {str(e)}")
            return ComplianceStatus.UNKNOWN
