"""SCA adapter for osv-scanner (dependency lockfiles)."""

import logging
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
    remove_quietly,
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

LOCKFILES = frozenset({
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "Pipfile.lock",
    "poetry.lock",
    "Gemfile.lock",
    "go.sum",
    "Cargo.lock",
    "composer.lock",
    "pom.xml",
    "build.gradle",
})
LOCKFILE_MAX_DEPTH = 3
REPORT_NAME = ".osv-report.json"
OWASP_VULNERABLE_COMPONENTS = "A06:2021"


def find_lockfiles(target: str) -> list[Path]:
    return [p for p in walk_files(target, LOCKFILE_MAX_DEPTH) if p.name in LOCKFILES]


def fixed_version(vuln: dict[str, Any]) -> str | None:
    """First `fixed` event of the first affected range, if any."""
    for affected in vuln.get("affected") or []:
        for rng in affected.get("ranges") or []:
            for event in rng.get("events") or []:
                if isinstance(event, dict) and event.get("fixed"):
                    return str(event["fixed"])
        break
    return None


def convert_vulnerability(
    vuln: dict[str, Any],
    package: dict[str, Any],
    source_path: str | None,
    target: str,
    scan_id: str,
) -> NormalizedVulnerability:
    vuln_id = vuln.get("id") or "OSV-UNKNOWN"
    name = package.get("name") or "unknown"
    version = package.get("version") or "unknown"
    aliases = clean_list(vuln.get("aliases"))
    db_specific = vuln.get("database_specific") or {}
    fixed = fixed_version(vuln)
    summary = (vuln.get("summary") or "").strip()
    details = (vuln.get("details") or "").strip()
    return NormalizedVulnerability(
        id=new_id(),
        scan_id=scan_id,
        scanner="osv",
        type="sca",
        severity=normalize_severity("osv", db_specific.get("severity")),
        title=dependency_title(name, vuln_id),
        description=details or summary or f"{vuln_id} affects {name} {version}",
        file_path=relative_path(target, source_path),
        rule_id=vuln_id,
        cwe=clean_list(db_specific.get("cwe_ids")),
        cve=extract_cve(vuln_id, *aliases),
        owasp=[OWASP_VULNERABLE_COMPONENTS],
        confidence=1.0,
        recommendation=f"Update {name} from {version} to {fixed or 'latest'}",
        references=clean_list(ref.get("url") for ref in vuln.get("references") or [] if isinstance(ref, dict)),
        metadata={
            "package_name": name,
            "package_version": version,
            "fixed_version": fixed,
            "ecosystem": package.get("ecosystem"),
            "aliases": aliases,
        },
    )


def parse_report(report: Any, target: str, scan_id: str) -> ScanResult:
    if not isinstance(report, dict):
        return failed_result("osv", "osv-scanner output is not a JSON object")
    vulnerabilities: list[NormalizedVulnerability] = []
    errors: list[AdapterError] = []
    sources: set[str] = set()
    for result in report.get("results") or []:
        source_path = (result.get("source") or {}).get("path")
        if source_path:
            sources.add(source_path)
        for entry in result.get("packages") or []:
            package = entry.get("package") or {}
            for vuln in entry.get("vulnerabilities") or []:
                try:
                    vulnerabilities.append(
                        convert_vulnerability(vuln, package, source_path, target, scan_id)
                    )
                except (ValidationError, AttributeError, TypeError) as e:
                    errors.append(
                        conversion_error("osv", vuln, e, relative_path(target, source_path))
                    )
    return ScanResult(
        scanner="osv",
        success=True,
        vulnerabilities=vulnerabilities,
        errors=errors,
        metadata={"files_scanned": len(sources)},
    )


class OsvAdapter:
    name = "osv"
    kind = "sca"

    def __init__(self, settings: "Settings", runner: ProcessRunner) -> None:
        self._binary = settings.OSV_SCANNER_BIN
        self._runner = runner

    def applies_to(self, target: str) -> bool:
        return bool(find_lockfiles(target))

    async def scan(self, target: str, scan_id: str, mode: ScanMode) -> ScanResult:
        start = time.perf_counter()
        lockfiles = find_lockfiles(target)
        if not lockfiles:
            return ScanResult(
                scanner="osv",
                success=True,
                metadata={"duration_ms": elapsed_ms(start), "files_scanned": 0},
            )
        report_path = Path(target) / REPORT_NAME
        argv = [self._binary, "--json", f"--output={report_path}"]
        argv += [f"--lockfile={p}" for p in lockfiles]
        try:
            output = await self._runner.run(argv, cwd=target)
            # 0 = clean, 1 = vulnerabilities found
            if output.exit_code > 1:
                detail = output.stderr.strip()[:500] or f"exit code {output.exit_code}"
                return failed_result("osv", f"osv-scanner failed: {detail}", elapsed_ms(start))
            result = parse_report(read_report(report_path, "osv-scanner"), target, scan_id)
        except ScanPipelineError as e:
            logger.warning("osv-scanner failed for scan %s: %s", scan_id, e.message)
            return failed_result("osv", e.message, elapsed_ms(start))
        finally:
            remove_quietly(report_path)
        result.metadata["duration_ms"] = elapsed_ms(start)
        result.metadata["lockfiles"] = [relative_path(target, str(p)) for p in lockfiles]
        logger.info(
            "osv-scanner finished",
            extra={"scan_id": scan_id, "findings": len(result.vulnerabilities)},
        )
        return result
