"""
Severity policy gate.

Decides whether a problem record may be remediated automatically, given the
cluster's ``AutoHealSettings``.  The gate fails safe: no policy means no
remediation unless the caller forces it.
"""

from typing import Optional

from .models import AutoHealSettings, ProblemSource, Severity

CATEGORY_FLAGS: dict[ProblemSource, str] = {
    ProblemSource.ANOMALY: "auto_apply_anomalies",
    ProblemSource.SECURITY_THREAT: "auto_apply_security",
    # Pod-health fixes share the security switch
    ProblemSource.POD_OBSERVATION: "auto_apply_security",
}


def meets_threshold(severity: Severity, threshold: Severity) -> bool:
    return severity.ordinal >= threshold.ordinal


def category_enabled(settings: Optional[AutoHealSettings], source: ProblemSource) -> bool:
    """Return True if auto-heal is on and the source's category flag is set."""
    if settings is None or not settings.enabled:
        return False
    return bool(getattr(settings, CATEGORY_FLAGS[source]))


def should_process(
    severity: Severity,
    settings: Optional[AutoHealSettings],
    force: bool = False,
    source: ProblemSource = ProblemSource.ANOMALY,
) -> bool:
    """Return True if a record of ``severity`` from ``source`` may be remediated."""
    if force:
        return True
    if not category_enabled(settings, source):
        return False
    return meets_threshold(severity, settings.severity_threshold)
