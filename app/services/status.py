"""Read side: scan status, per-scanner breakdown, logs and vulnerabilities from persisted state only."""

from app.core.errors import ScanNotFoundError
from app.repositories.scans import ScanRepository
from app.scanners.registry import SCANNER_LABELS
from app.schemas.scan import (
    Scan,
    ScanLogsResponse,
    ScannerRun,
    ScannerSummary,
    ScanStatusResponse,
    ScanSummary,
    ScanVulnerabilitiesResponse,
    SeverityCounts,
)
from app.schemas.vulnerability import SEVERITY_ORDER


def scanner_summary(run: ScannerRun) -> ScannerSummary:
    return ScannerSummary(
        scanner=run.scanner,
        type=run.type,
        label=SCANNER_LABELS.get(run.scanner, run.scanner),
        status=run.status,
        findings=run.findings_count,
        duration_ms=run.duration_ms,
        errors=[str(e.get("message", "")) for e in run.errors if e.get("message")],
    )


class ScanStatusService:
    """Stateless; every call reads committed rows and has no side effects."""

    def __init__(self, repository: ScanRepository) -> None:
        self._repository = repository

    def _require_scan(self, scan_id: str) -> Scan:
        scan = self._repository.get_scan(scan_id)
        if scan is None:
            raise ScanNotFoundError(f"Scan {scan_id} not found")
        return scan

    def get_status(self, scan_id: str) -> ScanStatusResponse:
        scan = self._require_scan(scan_id)
        runs = self._repository.list_scanner_runs(scan_id)
        counts = self._repository.severity_counts(scan_id)
        severity_counts = SeverityCounts(**{s: counts.get(s, 0) for s in SEVERITY_ORDER})
        return ScanStatusResponse(
            scan=scan,
            summary=ScanSummary(
                scanners=[scanner_summary(r) for r in runs],
                severity_counts=severity_counts,
                total_vulnerabilities=sum(counts.get(s, 0) for s in SEVERITY_ORDER),
            ),
        )

    def get_logs(self, scan_id: str, after: int | None = None) -> ScanLogsResponse:
        self._require_scan(scan_id)
        return ScanLogsResponse(scan_id=scan_id, logs=self._repository.list_logs(scan_id, after))

    def list_vulnerabilities(self, scan_id: str) -> ScanVulnerabilitiesResponse:
        self._require_scan(scan_id)
        return ScanVulnerabilitiesResponse(
            scan_id=scan_id, vulnerabilities=self._repository.list_vulnerabilities(scan_id)
        )
