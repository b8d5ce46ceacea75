"""IaC adapter for checkov (Terraform, CloudFormation, Kubernetes, compose files)."""

import logging
import tempfile
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from app.core.errors import ScanPipelineError
from app.scanners.base import (
    as_int,
    clean_list,
    conversion_error,
    elapsed_ms,
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
from app.services.titles import iac_title

if TYPE_CHECKING:
    from app.core.config import Settings

logger = logging.getLogger(__name__)

IAC_EXTENSIONS = frozenset({".tf", ".yaml", ".yml", ".json"})
IAC_NAME_HINTS = ("terraform", "cloudformation", "kubernetes", "docker-compose")
IAC_MAX_DEPTH = 5
REPORT_NAME = "results_json.json"
GENERIC_RECOMMENDATION = "Update the resource configuration to satisfy this policy check."

# Checked in order against the lower-cased check id and name.
CWE_HINTS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("encrypt",), "CWE-311"),
    (("access", "public"), "CWE-732"),
    (("logging", "log"), "CWE-778"),
    (("secret", "credential", "password"), "CWE-798"),
)
DEFAULT_CWE = "CWE-16"


def is_iac_file(path: Path) -> bool:
    name = path.name.lower()
    return path.suffix.lower() in IAC_EXTENSIONS or any(h in name for h in IAC_NAME_HINTS)


def has_iac_files(target: str) -> bool:
    return any(is_iac_file(p) for p in walk_files(target, IAC_MAX_DEPTH, skip_hidden=True))


def infer_cwe(check_id: str, check_name: str) -> str:
    haystack = f"{check_id} {check_name}".lower()
    for needles, cwe in CWE_HINTS:
        if any(n in haystack for n in needles):
            return cwe
    return DEFAULT_CWE


def _snippet(code_block: Any) -> str | None:
    # checkov: [[line_no, "text\n"], ...]
    if not isinstance(code_block, list):
        return None
    lines = [str(entry[1]).rstrip("\n") for entry in code_block if isinstance(entry, list) and len(entry) == 2]
    return "\n".join(lines) or None


def convert_check(check: dict[str, Any], target: str, scan_id: str) -> NormalizedVulnerability:
    check_id = check.get("check_id") or "CKV_UNKNOWN"
    check_name = (check.get("check_name") or "").strip()
    resource = check.get("resource")
    line_range = check.get("file_line_range") or []
    guideline = check.get("guideline")
    return NormalizedVulnerability(
        id=new_id(),
        scan_id=scan_id,
        scanner="checkov",
        type="iac",
        severity=normalize_severity("checkov", check.get("severity")),
        title=iac_title(check_name or check_id, resource),
        description=check_name or check_id,
        file_path=relative_path(target, check.get("file_abs_path") or check.get("file_path")),
        line_start=as_int(line_range[0]) if len(line_range) > 0 else None,
        line_end=as_int(line_range[1]) if len(line_range) > 1 else None,
        code_snippet=_snippet(check.get("code_block")),
        rule_id=check_id,
        cwe=[infer_cwe(check_id, check_name)],
        owasp=["A02:2021", "A05:2021"],
        confidence=0.95,
        recommendation=f"See remediation guideline: {guideline}" if guideline else GENERIC_RECOMMENDATION,
        references=clean_list([guideline]),
        metadata={
            "resource": resource,
            "resource_type": (resource or "").split(".", 1)[0] or None,
            "check_type": check.get("check_type"),
            "benchmark": check.get("benchmarks"),
        },
    )


def _reports(report: Any) -> list[dict[str, Any]]:
    # checkov writes one object per framework, or a list of them
    if isinstance(report, list):
        return [r for r in report if isinstance(r, dict)]
    if isinstance(report, dict):
        return [report]
    return []


def parse_report(report: Any, target: str, scan_id: str) -> ScanResult:
    vulnerabilities: list[NormalizedVulnerability] = []
    errors: list[AdapterError] = []
    passed = 0
    for framework_report in _reports(report):
        results = framework_report.get("results") or {}
        passed += len(results.get("passed_checks") or [])
        for check in results.get("failed_checks") or []:
            try:
                vulnerabilities.append(convert_check(check, target, scan_id))
            except (ValidationError, AttributeError, TypeError, IndexError) as e:
                file = check.get("file_path") if isinstance(check, dict) else None
                errors.append(conversion_error("checkov", check, e, relative_path(target, file)))
    return ScanResult(
        scanner="checkov",
        success=True,
        vulnerabilities=vulnerabilities,
        errors=errors,
        metadata={
            "files_scanned": len({v.file_path for v in vulnerabilities if v.file_path}),
            "rules_executed": passed + len(vulnerabilities),
        },
    )


class CheckovAdapter:
    name = "checkov"
    kind = "iac"

    def __init__(self, settings: "Settings", runner: ProcessRunner) -> None:
        self._binary = settings.CHECKOV_BIN
        self._runner = runner

    def applies_to(self, target: str) -> bool:
        return has_iac_files(target)

    async def scan(self, target: str, scan_id: str, mode: ScanMode) -> ScanResult:
        start = time.perf_counter()
        with tempfile.TemporaryDirectory(prefix="checkov-") as out_dir:
            argv = [
                self._binary,
                "--directory",
                target,
                "--output",
                "json",
                "--output-file-path",
                out_dir,
                "--quiet",
                "--compact",
            ]
            try:
                output = await self._runner.run(
                    argv, env={"CHECKOV_RUN_SCA_PACKAGE_SCAN": "false"}
                )
                # 0 = passed, 1 = failed checks
                if output.exit_code > 1:
                    detail = output.stderr.strip()[:500] or f"exit code {output.exit_code}"
                    return failed_result("checkov", f"checkov failed: {detail}", elapsed_ms(start))
                result = parse_report(
                    read_report(Path(out_dir) / REPORT_NAME, "checkov"), target, scan_id
                )
            except ScanPipelineError as e:
                logger.warning("checkov failed for scan %s: %s", scan_id, e.message)
                return failed_result("checkov", e.message, elapsed_ms(start))
        result.metadata["duration_ms"] = elapsed_ms(start)
        logger.info(
            "checkov finished",
            extra={"scan_id": scan_id, "findings": len(result.vulnerabilities)},
        )
        return result
