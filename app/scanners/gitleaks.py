"""Secrets adapter for gitleaks. Secret values never leave this module."""

import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from app.core.errors import AdapterParseError, ScanPipelineError
from app.scanners.base import (
    as_int,
    conversion_error,
    elapsed_ms,
    failed_result,
    new_id,
    read_report,
    relative_path,
    remove_quietly,
)
from app.scanners.runner import ProcessRunner
from app.schemas.vulnerability import (
    AdapterError,
    NormalizedVulnerability,
    ScanMode,
    ScanResult,
)
from app.services.severity import normalize_severity
from app.services.titles import secret_title

if TYPE_CHECKING:
    from app.core.config import Settings

logger = logging.getLogger(__name__)

REPORT_NAME = ".gitleaks-report.json"
REDACTED = "***REDACTED***"
RECOMMENDATION = (
    "Rotate this credential immediately and use environment variables or secret managers"
)
REFERENCE = "https://owasp.org/Top10/A07_2021-Identification_and_Authentication_Failures/"


def _leaks(report: Any) -> list[Any]:
    if isinstance(report, list):
        return report
    if isinstance(report, dict):
        for key in ("results", "leaks"):
            if isinstance(report.get(key), list):
                return report[key]
        return []
    raise AdapterParseError("gitleaks report is neither a list nor an object")


def convert_leak(leak: dict[str, Any], target: str, scan_id: str) -> NormalizedVulnerability:
    rule_id = leak.get("RuleID") or "generic-secret"
    description = (leak.get("Description") or "").strip()
    line_start = as_int(leak.get("StartLine"))
    return NormalizedVulnerability(
        id=new_id(),
        scan_id=scan_id,
        scanner="gitleaks",
        type="secrets",
        # gitleaks has no severity; any committed secret is critical
        severity=normalize_severity("gitleaks", "CRITICAL"),
        title=secret_title(rule_id),
        description=description or f"Hard-coded secret matching rule {rule_id}",
        file_path=relative_path(target, leak.get("File")),
        line_start=line_start,
        line_end=as_int(leak.get("EndLine")) or line_start,
        code_snippet=REDACTED,
        rule_id=rule_id,
        cwe=["CWE-798"],
        owasp=["A07:2021"],
        confidence=0.95,
        recommendation=RECOMMENDATION,
        references=[REFERENCE],
        metadata={"secret_type": rule_id, "entropy": leak.get("Entropy")},
    )


def parse_report(report: Any, target: str, scan_id: str) -> ScanResult:
    vulnerabilities: list[NormalizedVulnerability] = []
    errors: list[AdapterError] = []
    for leak in _leaks(report):
        try:
            vulnerabilities.append(convert_leak(leak, target, scan_id))
        except (ValidationError, AttributeError, TypeError) as e:
            file = leak.get("File") if isinstance(leak, dict) else None
            errors.append(conversion_error("gitleaks", leak, e, relative_path(target, file)))
    return ScanResult(
        scanner="gitleaks",
        success=True,
        vulnerabilities=vulnerabilities,
        errors=errors,
        metadata={"files_scanned": len({v.file_path for v in vulnerabilities if v.file_path})},
    )


class GitleaksAdapter:
    name = "gitleaks"
    kind = "secrets"

    def __init__(self, settings: "Settings", runner: ProcessRunner) -> None:
        self._binary = settings.GITLEAKS_BIN
        self._runner = runner

    def applies_to(self, target: str) -> bool:
        return True

    async def scan(self, target: str, scan_id: str, mode: ScanMode) -> ScanResult:
        start = time.perf_counter()
        report_path = Path(target) / REPORT_NAME
        argv = [
            self._binary,
            "detect",
            f"--source={target}",
            "--report-format=json",
            f"--report-path={report_path}",
            "--no-git",
            "--exit-code=0",
        ]
        try:
            output = await self._runner.run(argv)
            if output.exit_code != 0:
                detail = output.stderr.strip()[:500] or f"exit code {output.exit_code}"
                return failed_result("gitleaks", f"gitleaks failed: {detail}", elapsed_ms(start))
            # no report file means nothing was found
            if not report_path.exists():
                result = ScanResult(scanner="gitleaks", success=True)
            else:
                result = parse_report(read_report(report_path, "gitleaks"), target, scan_id)
        except ScanPipelineError as e:
            logger.warning("gitleaks failed for scan %s: %s", scan_id, e.message)
            return failed_result("gitleaks", e.message, elapsed_ms(start))
        finally:
            remove_quietly(report_path)
        result.metadata["duration_ms"] = elapsed_ms(start)
        logger.info(
            "gitleaks finished",
            extra={"scan_id": scan_id, "findings": len(result.vulnerabilities)},
        )
        return result
