"""Pydantic request/response schemas."""

from app.schemas.health import HealthResponse
from app.schemas.scan import (
    TERMINAL_STATUSES,
    Scan,
    ScanAccepted,
    ScanLogEntry,
    ScanLogsResponse,
    ScannerRun,
    ScannerSummary,
    ScanStatus,
    ScanStatusResponse,
    ScanSummary,
    ScanVulnerabilitiesResponse,
    SeverityCounts,
    StartScanRequest,
)
from app.schemas.vulnerability import (
    SCANNER_TYPE,
    SEVERITY_ORDER,
    AdapterError,
    NormalizedVulnerability,
    ScanMode,
    ScannerName,
    ScanResult,
    SeverityLevel,
    VulnerabilityType,
)

__all__ = [
    "AdapterError",
    "HealthResponse",
    "NormalizedVulnerability",
    "SCANNER_TYPE",
    "SEVERITY_ORDER",
    "Scan",
    "ScanAccepted",
    "ScanLogEntry",
    "ScanLogsResponse",
    "ScanMode",
    "ScanResult",
    "ScanStatus",
    "ScanStatusResponse",
    "ScanSummary",
    "ScanVulnerabilitiesResponse",
    "ScannerName",
    "ScannerRun",
    "ScannerSummary",
    "SeverityCounts",
    "SeverityLevel",
    "StartScanRequest",
    "TERMINAL_STATUSES",
    "VulnerabilityType",
]
