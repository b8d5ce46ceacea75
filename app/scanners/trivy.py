"""Container adapter for trivy, run against each directory holding a Dockerfile or compose file."""

import logging
import tempfile
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from app.core.errors import ScanPipelineError
from app.scanners.base import (
    clean_list,
    conversion_error,
    elapsed_ms,
    extract_cve,
    failed_result,
    new_id,
    read_report,
    relative_path,
    walk_files,
)
from app.scanners.runner import ProcessRunner
from app.schemas.vulnerability import (
    AdapterError,
    NormalizedVulnerability,
    ScanMode,
    ScanResult,
)
from app.services.severity import normalize_severity
from app.services.titles import dependency_title

if TYPE_CHECKING:
    from app.core.config import Settings

logger = logging.getLogger(__name__)

CONTAINER_FILES = frozenset({"docker-compose.yml", "docker-compose.yaml"})
CONTAINER_MAX_DEPTH = 5


def is_container_file(path: Path) -> bool:
    return path.name == "Dockerfile" or path.name.startswith("Dockerfile.") or path.name in CONTAINER_FILES


def find_container_files(target: str) -> list[Path]:
    return [p for p in walk_files(target, CONTAINER_MAX_DEPTH) if is_container_file(p)]


def _cvss_score(vuln: dict[str, Any]) -> float | None:
    nvd = (vuln.get("CVSS") or {}).get("nvd") or {}
    score = nvd.get("V3Score")
    try:
        return float(score) if score is not None else None
    except (TypeError, ValueError):
        return None


def convert_vulnerability(
    vuln: dict[str, Any],
    result_target: str | None,
    source_file: str | None,
    scan_id: str,
) -> NormalizedVulnerability:
    vuln_id = vuln.get("VulnerabilityID") or "TRIVY-UNKNOWN"
    pkg = vuln.get("PkgName") or "unknown"
    installed = vuln.get("InstalledVersion") or "unknown"
    fixed = vuln.get("FixedVersion")
    title = (vuln.get("Title") or "").strip()
    description = (vuln.get("Description") or "").strip()
    if fixed:
        recommendation = f"Update {pkg} from {installed} to {fixed}"
    else:
        recommendation = f"Review {pkg} (no fix available yet)"
    return NormalizedVulnerability(
        id=new_id(),
        scan_id=scan_id,
        scanner="trivy",
        type="container",
        severity=normalize_severity("trivy", vuln.get("Severity")),
        title=dependency_title(pkg, vuln_id),
        description=description or title or f"{vuln_id} affects {pkg} {installed}",
        file_path=source_file,
        rule_id=vuln_id,
        cwe=clean_list(vuln.get("CweIDs")),
        cve=extract_cve(vuln_id),
        owasp=["A06:2021"],
        confidence=1.0,
        recommendation=recommendation,
        references=clean_list([vuln.get("PrimaryURL"), *(vuln.get("References") or [])]),
        metadata={
            "package_name": pkg,
            "installed_version": installed,
            "fixed_version": fixed,
            "target": result_target,
            "layer_digest": (vuln.get("Layer") or {}).get("Digest"),
            "cvss_score": _cvss_score(vuln),
        },
    )


def parse_report(report: Any, source_file: str | None, scan_id: str) -> ScanResult:
    """Parse one trivy report; source_file is the compose/Dockerfile path relative to the target."""
    if not isinstance(report, dict):
        return failed_result("trivy", "trivy output is not a JSON object")
    vulnerabilities: list[NormalizedVulnerability] = []
    errors: list[AdapterError] = []
    for result in report.get("Results") or []:
        result_target = result.get("Target")
        for vuln in result.get("Vulnerabilities") or []:
            try:
                vulnerabilities.append(
                    convert_vulnerability(vuln, result_target, source_file, scan_id)
                )
            except (ValidationError, AttributeError, TypeError) as e:
                errors.append(conversion_error("trivy", vuln, e, source_file))
    return ScanResult(
        scanner="trivy",
        success=True,
        vulnerabilities=vulnerabilities,
        errors=errors,
    )


class TrivyAdapter:
    name = "trivy"
    kind = "container"

    def __init__(self, settings: "Settings", runner: ProcessRunner) -> None:
        self._binary = settings.TRIVY_BIN
        self._runner = runner

    def applies_to(self, target: str) -> bool:
        return bool(find_container_files(target))

    async def _scan_one(
        self, container_file: Path, target: str, scan_id: str, report_path: Path
    ) -> ScanResult:
        rel = relative_path(target, str(container_file))
        argv = [
            self._binary,
            "filesystem",
            "--format",
            "json",
            "--output",
            str(report_path),
            str(container_file.parent),
        ]
        output = await self._runner.run(argv)
        if output.exit_code != 0:
            detail = output.stderr.strip()[:500] or f"exit code {output.exit_code}"
            return failed_result("trivy", f"trivy failed on {rel}: {detail}")
        return parse_report(read_report(report_path, "trivy"), rel, scan_id)

    async def scan(self, target: str, scan_id: str, mode: ScanMode) -> ScanResult:
        """
        Scan every container definition in turn.

        A failure on one file is recorded as an error; the adapter is fatal only
        when no file could be scanned.
        """
        start = time.perf_counter()
        container_files: list[Path] = []
        seen_dirs: set[Path] = set()
        # trivy scans a directory; one Dockerfile and one compose file in it would double up
        for path in find_container_files(target):
            if path.parent not in seen_dirs:
                seen_dirs.add(path.parent)
                container_files.append(path)
        vulnerabilities: list[NormalizedVulnerability] = []
        errors: list[AdapterError] = []
        scanned = 0
        with tempfile.TemporaryDirectory(prefix="trivy-") as out_dir:
            for index, container_file in enumerate(container_files):
                rel = relative_path(target, str(container_file))
                try:
                    report_path = Path(out_dir) / f"report-{index}.json"
                    partial = await self._scan_one(container_file, target, scan_id, report_path)
                except ScanPipelineError as e:
                    logger.warning("trivy failed on %s for scan %s: %s", rel, scan_id, e.message)
                    errors.append(AdapterError(message=e.message, file=rel, severity="error"))
                    continue
                if partial.is_fatal:
                    errors.extend(
                        AdapterError(message=err.message, file=rel, severity="error")
                        for err in partial.errors
                    )
                    continue
                scanned += 1
                vulnerabilities.extend(partial.vulnerabilities)
                errors.extend(partial.errors)

        duration = elapsed_ms(start)
        if container_files and scanned == 0:
            message = "; ".join(e.message for e in errors) or "trivy could not scan any container file"
            return failed_result("trivy", message, duration)
        logger.info(
            "trivy finished",
            extra={"scan_id": scan_id, "findings": len(vulnerabilities), "files": scanned},
        )
        return ScanResult(
            scanner="trivy",
            success=True,
            vulnerabilities=vulnerabilities,
            errors=errors,
            metadata={"duration_ms": duration, "files_scanned": scanned},
        )
