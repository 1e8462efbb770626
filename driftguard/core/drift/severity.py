"""
Drift Severity Classification
----------------------------
This module scores a set of detected changes, classifies the overall drift
severity, assesses the security impact per security category and produces
the recommendations attached to a drift result.

The severity classification helps prioritize responses to detected changes.
"""

from typing import Dict, List

from driftguard.core.drift.types import (
    Change,
    ChangeCategory,
    ComplianceStatus,
    Impact,
    SecurityImpactAssessment,
    Severity,
)

# Weight of each impact level in the drift score
IMPACT_WEIGHTS = {
    Impact.LOW: 1,
    Impact.MEDIUM: 3,
    Impact.HIGH: 7,
    Impact.CRITICAL: 15,
}

# Points each change contributes to the security categories it touches
SECURITY_IMPACT_SCORES = {
    Impact.LOW: 5,
    Impact.MEDIUM: 15,
    Impact.HIGH: 30,
    Impact.CRITICAL: 50,
}

# Path substrings mapping a change to a security category
SECURITY_CATEGORY_MARKERS: Dict[str, tuple] = {
    "authentication": ("auth", "jwt", "session"),
    "authorization": ("cors", "permission", "role"),
    "encryption": ("encrypt", "tls", "ssl"),
    "data_protection": ("database", "backup"),
    "network_security": ("port", "host", "network"),
}

SECURITY_CATEGORY_LABELS = {
    "authentication": "Authentication",
    "authorization": "Authorization",
    "encryption": "Encryption",
    "data_protection": "Data protection",
    "network_security": "Network security",
}

MAX_SCORE = 100
EXTENSIVE_CHANGE_THRESHOLD = 10


def calculate_drift_score(changes: List[Change]) -> float:
    """
    Calculate the drift score for a set of changes.

    Each change contributes its impact weight scaled by its confidence.
    The total is clamped to 100.

    Args:
        changes: Detected changes

    Returns:
        Score between 0 and 100
    """
    score = sum(IMPACT_WEIGHTS[change.impact] * change.confidence / 100 for change in changes)
    return min(float(MAX_SCORE), score)


def determine_severity(changes: List[Change], score: float) -> Severity:
    """
    Classify overall drift severity from the changes and their score.

    Args:
        changes: Detected changes
        score: Drift score computed by calculate_drift_score

    Returns:
        Overall severity
    """
    critical_count = sum(1 for c in changes if c.impact == Impact.CRITICAL)
    high_count = sum(1 for c in changes if c.impact == Impact.HIGH)

    if critical_count > 0 or score >= 80:
        return Severity.CRITICAL
    if high_count >= 2 or score >= 60:
        return Severity.HIGH
    if score >= 30:
        return Severity.MEDIUM
    if score > 0:
        return Severity.LOW
    return Severity.NONE


def assess_security_impact(changes: List[Change]) -> SecurityImpactAssessment:
    """
    Assess how the changes affect each security category.

    Args:
        changes: Detected changes

    Returns:
        Assessment with per-category scores, findings and recommendations
    """
    categories = {name: 0 for name in SECURITY_CATEGORY_MARKERS}
    critical_findings: List[str] = []

    for change in changes:
        path = change.path.lower()
        points = SECURITY_IMPACT_SCORES[change.impact]
        for name, markers in SECURITY_CATEGORY_MARKERS.items():
            if not any(marker in path for marker in markers):
                continue
            categories[name] = min(MAX_SCORE, categories[name] + points)
            if change.impact == Impact.CRITICAL:
                finding = f"{SECURITY_CATEGORY_LABELS[name]} configuration changed: {change.description}"
                if finding not in critical_findings:
                    critical_findings.append(finding)

    overall = min(MAX_SCORE, sum(categories.values()))

    recommendations = []
    if categories["authentication"] > 20:
        recommendations.append("Review authentication system for potential security issues")
    if categories["encryption"] > 20:
        recommendations.append("Verify encryption configurations are still secure")
    if overall > 50:
        recommendations.append("Conduct security review of all configuration changes")

    return SecurityImpactAssessment(
        overall_score=overall,
        categories=categories,
        critical_findings=critical_findings,
        recommendations=recommendations,
    )


def generate_recommendations(
    changes: List[Change],
    security_impact: SecurityImpactAssessment,
    compliance_status: ComplianceStatus,
) -> List[str]:
    """Build the de-duplicated recommendation list for a drift result"""
    recommendations: List[str] = []

    critical_count = sum(1 for c in changes if c.impact == Impact.CRITICAL)
    if critical_count > 0:
        recommendations.append(f"Review {critical_count} critical configuration changes immediately")

    if len(changes) > EXTENSIVE_CHANGE_THRESHOLD:
        recommendations.append("Consider creating a new baseline due to extensive changes")

    if any(c.category == ChangeCategory.SECRET for c in changes):
        recommendations.append("Audit all secret-related changes and rotate affected credentials")

    if compliance_status == ComplianceStatus.NON_COMPLIANT:
        recommendations.append("Address compliance rule failures before the next deployment")

    recommendations.extend(security_impact.recommendations)

    # Preserve first-seen order
    return list(dict.fromkeys(recommendations))
