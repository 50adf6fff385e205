from __future__ import annotations

from typing import Iterable

from .models import Finding, RiskScore, Severity

ELEVATION_THRESHOLD = 3


def severity_for_cvss(score: float) -> Severity:
    if score >= 9.0:
        return Severity.CRITICAL
    if score >= 7.0:
        return Severity.HIGH
    if score >= 4.0:
        return Severity.MEDIUM
    if score > 0.0:
        return Severity.LOW
    return Severity.INFORMATIONAL


def _raise_band(band: Severity) -> Severity:
    order = list(Severity)
    return order[min(band.rank + 1, len(order) - 1)]


def score_findings(findings: Iterable[Finding]) -> RiskScore:
    """Collapse a host's findings into one numeric score and a band.

    The score is the highest CVSS among the findings. Three or more
    findings of medium severity or worse raise the band one level.
    """
    findings = list(findings)
    if not findings:
        return RiskScore(score=0.0, band=Severity.INFORMATIONAL)

    score = max(finding.record.cvss for finding in findings)
    band = severity_for_cvss(score)
    elevated = sum(1 for finding in findings if finding.severity.rank >= Severity.MEDIUM.rank)
    if elevated >= ELEVATION_THRESHOLD:
        band = _raise_band(band)
    return RiskScore(score=score, band=band, finding_count=len(findings), elevated_count=elevated)
