"""SAST adapter for semgrep."""

import logging
import time
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from app.core.errors import ScanPipelineError
from app.scanners.base import (
    as_int,
    clean_list,
    conversion_error,
    elapsed_ms,
    failed_result,
    load_json,
    new_id,
    relative_path,
)
from app.scanners.runner import ProcessRunner
from app.schemas.vulnerability import (
    AdapterError,
    NormalizedVulnerability,
    ScanMode,
    ScanResult,
)
from app.services.severity import normalize_severity
from app.services.titles import normalize_title

if TYPE_CHECKING:
    from app.core.config import Settings

logger = logging.getLogger(__name__)

RULESETS: dict[str, tuple[str, ...]] = {
    "quick": ("p/ci",),
    "full": ("p/ci", "p/security-audit", "p/owasp-top-ten"),
}

EXCLUDES = ("node_modules", ".git", "dist", "build", "vendor", "*.min.js")

CONFIDENCE: dict[str, float] = {"HIGH": 0.95, "MEDIUM": 0.8, "LOW": 0.6}
DEFAULT_CONFIDENCE = 0.8
UNKNOWN_CONFIDENCE = 0.7

GENERIC_RECOMMENDATION = "Review the flagged code and apply the secure coding pattern for this rule."


def build_command(binary: str, target: str, mode: ScanMode) -> list[str]:
    argv = [binary, "scan", "--json"]
    for config in RULESETS[mode]:
        argv += ["--config", config]
    for pattern in EXCLUDES:
        argv += ["--exclude", pattern]
    argv += ["--timeout", "60", "--max-memory", "2000", "--metrics=off", target]
    return argv


def _confidence(raw: Any) -> float:
    if raw is None:
        return DEFAULT_CONFIDENCE
    return CONFIDENCE.get(str(raw).strip().upper(), UNKNOWN_CONFIDENCE)


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _cwe_ids(values: list[Any]) -> list[str]:
    # semgrep writes "CWE-79: Improper Neutralization of ..."
    return clean_list(str(v).split(":", 1)[0] for v in values)


def convert_result(item: dict[str, Any], target: str, scan_id: str) -> NormalizedVulnerability:
    extra = item.get("extra") or {}
    metadata = extra.get("metadata") or {}
    rule_id = item.get("check_id") or "semgrep-unknown-rule"
    message = (extra.get("message") or "").strip()
    start = item.get("start") or {}
    end = item.get("end") or {}
    fix = extra.get("fix")
    return NormalizedVulnerability(
        id=new_id(),
        scan_id=scan_id,
        scanner="semgrep",
        type="sast",
        severity=normalize_severity("semgrep", extra.get("severity")),
        title=normalize_title(rule_id, message),
        description=message or rule_id,
        file_path=relative_path(target, item.get("path")),
        line_start=as_int(start.get("line")),
        line_end=as_int(end.get("line")),
        code_snippet=extra.get("lines") or None,
        rule_id=rule_id,
        cwe=_cwe_ids(_as_list(metadata.get("cwe"))),
        owasp=clean_list(_as_list(metadata.get("owasp"))),
        confidence=_confidence(metadata.get("confidence")),
        recommendation=f"Apply the suggested fix: {fix}" if fix else GENERIC_RECOMMENDATION,
        references=clean_list(_as_list(metadata.get("references"))),
        metadata={
            "category": metadata.get("category"),
            "technology": metadata.get("technology"),
            "likelihood": metadata.get("likelihood"),
            "impact": metadata.get("impact"),
        },
    )


def parse_report(report: Any, target: str, scan_id: str) -> ScanResult:
    """Convert a parsed semgrep JSON report into a ScanResult (duration filled in by the caller)."""
    if not isinstance(report, dict):
        return failed_result("semgrep", "semgrep output is not a JSON object")
    vulnerabilities: list[NormalizedVulnerability] = []
    errors: list[AdapterError] = []
    for item in report.get("results") or []:
        try:
            vulnerabilities.append(convert_result(item, target, scan_id))
        except (ValidationError, AttributeError, TypeError) as e:
            path = item.get("path") if isinstance(item, dict) else None
            errors.append(conversion_error("semgrep", item, e, relative_path(target, path)))
    for err in report.get("errors") or []:
        if not isinstance(err, dict):
            continue
        spans = err.get("spans") or []
        file = spans[0].get("file") if spans and isinstance(spans[0], dict) else None
        errors.append(
            AdapterError(
                message=(err.get("message") or err.get("type") or "semgrep error").strip(),
                file=relative_path(target, file),
                severity="warning",
            )
        )
    paths = report.get("paths") or {}
    scanned = paths.get("scanned") if isinstance(paths, dict) else None
    files = scanned if scanned else {v.file_path for v in vulnerabilities if v.file_path}
    return ScanResult(
        scanner="semgrep",
        success=True,
        vulnerabilities=vulnerabilities,
        errors=errors,
        metadata={"files_scanned": len(files)},
    )


class SemgrepAdapter:
    name = "semgrep"
    kind = "sast"

    def __init__(self, settings: "Settings", runner: ProcessRunner) -> None:
        self._binary = settings.SEMGREP_BIN
        self._runner = runner

    def applies_to(self, target: str) -> bool:
        return True

    async def scan(self, target: str, scan_id: str, mode: ScanMode) -> ScanResult:
        start = time.perf_counter()
        try:
            output = await self._runner.run(build_command(self._binary, target, mode))
            # 0 = clean, 1 = findings; anything else is a crash
            if output.exit_code > 1:
                detail = output.stderr.strip()[:500] or f"exit code {output.exit_code}"
                return failed_result("semgrep", f"semgrep failed: {detail}", elapsed_ms(start))
            result = parse_report(load_json(output.stdout, "semgrep"), target, scan_id)
        except ScanPipelineError as e:
            logger.warning("semgrep scan failed for scan %s: %s", scan_id, e.message)
            return failed_result("semgrep", e.message, elapsed_ms(start))
        result.metadata["duration_ms"] = elapsed_ms(start)
        result.metadata["rulesets"] = list(RULESETS[mode])
        logger.info(
            "semgrep finished",
            extra={
                "scan_id": scan_id,
                "findings": len(result.vulnerabilities),
                "duration_ms": result.metadata["duration_ms"],
            },
        )
        return result
