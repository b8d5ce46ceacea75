"""Pydantic schemas for scans: lifecycle state, per-scanner breakdown, logs and API payloads."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from app.schemas.vulnerability import (
    SCANNER_TYPE,
    NormalizedVulnerability,
    ScanMode,
    ScannerName,
    VulnerabilityType,
)

ScanStatus = Literal[
    "pending",
    "running",
    "normalizing",
    "ai_enriching",
    "completed",
    "failed",
    "cancelled",
]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})

ScannerRunStatus = Literal["completed", "failed", "skipped"]
LogLevel = Literal["debug", "info", "warning", "error"]


class Scan(BaseModel):
    """Persisted scan state as seen by readers."""

    model_config = {"from_attributes": True}

    id: str
    target: str
    mode: ScanMode
    scanners: list[ScannerName] = Field(
        default_factory=list,
        description="Scanners requested for this scan (profile or explicit list).",
    )
    status: ScanStatus
    progress_percentage: int = Field(..., ge=0, le=100)
    progress_stage: str
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_message: str | None = None
    enrichment_degraded: bool = False
    created_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ScannerRun(BaseModel):
    """Per-adapter outcome kept for the scanner-by-scanner breakdown."""

    model_config = {"from_attributes": True}

    scanner: ScannerName
    type: VulnerabilityType
    status: ScannerRunStatus
    findings_count: int = Field(default=0, ge=0)
    duration_ms: int = Field(default=0, ge=0)
    errors: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ScanLogEntry(BaseModel):
    """One append-only progress/diagnostic event."""

    model_config = {"from_attributes": True}

    sequence: int = Field(..., ge=1, description="Strictly increasing within one scan.")
    level: LogLevel
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class ScannerSummary(BaseModel):
    """Breakdown row, e.g. "Static Analysis: 12 findings, completed"."""

    scanner: ScannerName
    type: VulnerabilityType
    label: str
    status: ScannerRunStatus
    findings: int = Field(..., ge=0)
    duration_ms: int = Field(..., ge=0)
    errors: list[str] = Field(default_factory=list)


class SeverityCounts(BaseModel):
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    info: int = 0


class ScanSummary(BaseModel):
    scanners: list[ScannerSummary] = Field(default_factory=list)
    severity_counts: SeverityCounts = Field(default_factory=SeverityCounts)
    total_vulnerabilities: int = Field(default=0, ge=0)


class ScanStatusResponse(BaseModel):
    scan: Scan
    summary: ScanSummary


class ScanLogsResponse(BaseModel):
    scan_id: str
    logs: list[ScanLogEntry]


class ScanVulnerabilitiesResponse(BaseModel):
    scan_id: str
    vulnerabilities: list[NormalizedVulnerability]


class StartScanRequest(BaseModel):
    """Request to scan a checked-out workspace."""

    target: str = Field(
        ...,
        min_length=1,
        max_length=4096,
        description="Absolute path of the workspace checkout to scan.",
    )
    mode: ScanMode = "full"
    scanners: list[ScannerName] | None = Field(
        default=None,
        description="Optional subset of the mode's scanners to run.",
    )

    @field_validator("target")
    @classmethod
    def strip_target(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("target must be non-empty")
        return v

    @field_validator("scanners")
    @classmethod
    def dedupe_scanners(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return None
        if not v:
            raise ValueError("scanners must not be empty when provided")
        return sorted(set(v), key=list(SCANNER_TYPE).index)


class ScanAccepted(BaseModel):
    scan_id: str
    status: ScanStatus
