"""Per-scanner severity tables: raw severity token -> canonical SeverityLevel.

Every token a scanner's vocabulary can emit maps to exactly one level. Tokens are
matched case-insensitively after stripping. Anything unrecognized or absent maps
to "info" so that a missing severity never suppresses a finding.

| scanner  | critical          | high          | medium                   | low          | info                    |
|----------|-------------------|---------------|--------------------------|--------------|-------------------------|
| semgrep  | CRITICAL, ERROR   | HIGH, WARNING | MEDIUM, NOTE             | LOW, STYLE   | INFO, INVENTORY, EXPERIMENT |
| osv      | CRITICAL          | HIGH          | MODERATE, MEDIUM         | LOW          | NONE, UNKNOWN           |
| gitleaks | CRITICAL          | HIGH          | MEDIUM                   | LOW          | INFO                    |
| checkov  | CRITICAL          | HIGH          | MEDIUM, MODERATE         | LOW          | INFO, NONE              |
| trivy    | CRITICAL          | HIGH          | MEDIUM                   | LOW          | UNKNOWN, NEGLIGIBLE     |
"""

from app.schemas.vulnerability import SeverityLevel

DEFAULT_SEVERITY: SeverityLevel = "info"

SEVERITY_TABLES: dict[str, dict[str, SeverityLevel]] = {
    "semgrep": {
        "critical": "critical",
        "error": "critical",
        "high": "high",
        "warning": "high",
        "medium": "medium",
        "note": "medium",
        "low": "low",
        "style": "low",
        "info": "info",
        "inventory": "info",
        "experiment": "info",
    },
    "osv": {
        "critical": "critical",
        "high": "high",
        "moderate": "medium",
        "medium": "medium",
        "low": "low",
        "none": "info",
        "unknown": "info",
    },
    # gitleaks reports carry no severity; the adapter passes CRITICAL for every leak.
    "gitleaks": {
        "critical": "critical",
        "high": "high",
        "medium": "medium",
        "low": "low",
        "info": "info",
    },
    "checkov": {
        "critical": "critical",
        "high": "high",
        "medium": "medium",
        "moderate": "medium",
        "low": "low",
        "info": "info",
        "none": "info",
    },
    "trivy": {
        "critical": "critical",
        "high": "high",
        "medium": "medium",
        "low": "low",
        "unknown": "info",
        "negligible": "info",
    },
}


def normalize_severity(scanner: str, raw_severity: str | None) -> SeverityLevel:
    """
    Map a scanner's raw severity token to the canonical level.
    Unknown scanners, unknown tokens and missing tokens all yield "info".
    """
    if raw_severity is None or not isinstance(raw_severity, str):
        return DEFAULT_SEVERITY
    token = raw_severity.strip().lower()
    if not token:
        return DEFAULT_SEVERITY
    return SEVERITY_TABLES.get(scanner, {}).get(token, DEFAULT_SEVERITY)
