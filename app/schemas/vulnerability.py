"""Pydantic schemas for scanner output: normalized vulnerabilities and per-adapter scan results."""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

# Reusable severity levels for validation and type safety across schemas.
SeverityLevel = Literal["critical", "high", "medium", "low", "info"]

SEVERITY_VALUES: frozenset[str] = frozenset({"critical", "high", "medium", "low", "info"})

# Most severe first; index is the sort rank.
SEVERITY_ORDER: tuple[SeverityLevel, ...] = ("critical", "high", "medium", "low", "info")

ScannerName = Literal["semgrep", "osv", "gitleaks", "checkov", "trivy"]
VulnerabilityType = Literal["sast", "sca", "secrets", "iac", "container"]
ScanMode = Literal["quick", "full"]
ErrorSeverity = Literal["warning", "error", "fatal"]

# Fixed provenance mapping; a record violating it is a normalization bug.
SCANNER_TYPE: dict[str, VulnerabilityType] = {
    "semgrep": "sast",
    "osv": "sca",
    "gitleaks": "secrets",
    "checkov": "iac",
    "trivy": "container",
}


def severity_rank(severity: str) -> int:
    """Sort rank for a severity (0 = critical); unknown values sort last."""
    try:
        return SEVERITY_ORDER.index(severity)  # type: ignore[arg-type]
    except ValueError:
        return len(SEVERITY_ORDER)


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class NormalizedVulnerability(BaseModel):
    """Canonical finding record, identical in shape for every scanner."""

    id: str = Field(..., min_length=1, description="Identifier assigned at conversion time.")
    scan_id: str = Field(..., min_length=1, description="Owning scan.")
    scanner: ScannerName = Field(..., description="Tool that produced the finding.")
    type: VulnerabilityType = Field(..., description="Category, derived from scanner.")
    severity: SeverityLevel = Field(..., description="critical > high > medium > low > info.")
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    file_path: str | None = Field(
        default=None,
        description="Path relative to the scan target root; null when not file-scoped.",
    )
    line_start: int | None = Field(default=None, ge=0)
    line_end: int | None = Field(default=None, ge=0)
    code_snippet: str | None = None
    rule_id: str = Field(..., min_length=1, description="Scanner-internal rule/check identifier.")
    cwe: list[str] = Field(default_factory=list)
    cve: str | None = Field(default=None, description="Published CVE identifier, if any.")
    owasp: list[str] = Field(default_factory=list)
    confidence: float = Field(..., ge=0, le=1, description="Likelihood of a true positive.")
    recommendation: str = Field(..., min_length=1)
    references: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Scanner-specific forensic detail (package, layer digest, CVSS, ...).",
    )
    detected_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_type_matches_scanner(self) -> "NormalizedVulnerability":
        expected = SCANNER_TYPE[self.scanner]
        if self.type != expected:
            raise ValueError(
                f"type {self.type!r} is inconsistent with scanner {self.scanner!r} (expected {expected!r})"
            )
        return self


class AdapterError(BaseModel):
    """Structured error reported by an adapter; fatal means the adapter produced nothing usable."""

    message: str = Field(..., min_length=1)
    file: str | None = None
    severity: ErrorSeverity = "error"


class ScanResult(BaseModel):
    """Output of one adapter invocation."""

    scanner: ScannerName
    success: bool
    vulnerabilities: list[NormalizedVulnerability] = Field(default_factory=list)
    errors: list[AdapterError] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="duration_ms plus tool counters such as files_scanned or rules_executed.",
    )

    @field_validator("metadata")
    @classmethod
    def ensure_duration(cls, v: dict[str, Any]) -> dict[str, Any]:
        v.setdefault("duration_ms", 0)
        return v

    @property
    def is_fatal(self) -> bool:
        return not self.success or any(e.severity == "fatal" for e in self.errors)

    @model_validator(mode="after")
    def check_failed_results_are_empty(self) -> "ScanResult":
        if not self.success and self.vulnerabilities:
            raise ValueError("a failed ScanResult must not carry vulnerabilities")
        return self
