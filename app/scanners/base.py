"""Adapter protocol and helpers shared by every scanner adapter."""

import json
import logging
import os
import re
import time
import uuid
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from app.core.errors import AdapterParseError
from app.schemas.vulnerability import (
    AdapterError,
    ScanMode,
    ScannerName,
    ScanResult,
    VulnerabilityType,
)

logger = logging.getLogger(__name__)

CVE_PATTERN = re.compile(r"^CVE-\d{4}-\d{4,}$")

# Directories never worth walking when looking for lockfiles, IaC or Dockerfiles.
SKIP_DIRS = frozenset({"node_modules", ".git"})


@runtime_checkable
class ScannerAdapter(Protocol):
    """One external scanner. `scan` never raises for tool failures; it returns a failed ScanResult."""

    name: ScannerName
    kind: VulnerabilityType

    def applies_to(self, target: str) -> bool: ...

    async def scan(self, target: str, scan_id: str, mode: ScanMode) -> ScanResult: ...


def new_id() -> str:
    return str(uuid.uuid4())


def elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def relative_path(target: str, path: str | None) -> str | None:
    """
    Make a scanner-reported path relative to the target root.

    Strips the absolute workspace prefix and leading separators; returns None
    for empty input.
    """
    if not path:
        return None
    root = os.path.normpath(target)
    normalized = os.path.normpath(path)
    if normalized == root:
        return None
    if normalized.startswith(root + os.sep):
        normalized = normalized[len(root) + 1 :]
    normalized = normalized.replace("\\", "/").lstrip("/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized or None


def extract_cve(*candidates: Any) -> str | None:
    """First candidate that matches the published CVE pattern, upper-cased."""
    for candidate in candidates:
        if isinstance(candidate, str):
            value = candidate.strip().upper()
            if CVE_PATTERN.match(value):
                return value
    return None


def clean_list(values: Iterable[Any] | None) -> list[str]:
    """Drop empties and duplicates, keeping first-seen order."""
    out: list[str] = []
    for value in values or ():
        if value is None:
            continue
        text = str(value).strip()
        if text and text not in out:
            out.append(text)
    return out


def as_int(value: Any) -> int | None:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number >= 0 else None


def load_json(raw: str, scanner: str) -> Any:
    """Parse a scanner report; empty or malformed output raises AdapterParseError."""
    if not raw or not raw.strip():
        raise AdapterParseError(f"{scanner} produced no output")
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise AdapterParseError(f"{scanner} output is not valid JSON: {e.msg}", cause=e) from e


def read_report(path: Path, scanner: str) -> Any:
    """Read a JSON report file written by a scanner, then remove it from the workspace."""
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise AdapterParseError(f"{scanner} report {path.name} could not be read", cause=e) from e
    finally:
        remove_quietly(path)
    return load_json(raw, scanner)


def remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove scanner report %s: %s", path, e)


def walk_files(target: str, max_depth: int, skip_hidden: bool = False) -> Iterator[Path]:
    """Yield files under target up to max_depth directory levels, skipping vendored trees."""
    root = Path(target)
    if not root.is_dir():
        return
    base_depth = len(root.parts)
    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        depth = len(current.parts) - base_depth
        dirnames[:] = sorted(
            d
            for d in dirnames
            if d not in SKIP_DIRS and not (skip_hidden and d.startswith("."))
        )
        if depth >= max_depth:
            dirnames[:] = []
        for filename in sorted(filenames):
            yield current / filename


def failed_result(
    scanner: ScannerName,
    message: str,
    duration_ms: int = 0,
    **metadata: Any,
) -> ScanResult:
    """ScanResult for a tool that crashed, timed out, is missing or produced unparseable output."""
    return ScanResult(
        scanner=scanner,
        success=False,
        vulnerabilities=[],
        errors=[AdapterError(message=message, severity="fatal")],
        metadata={"duration_ms": duration_ms, **metadata},
    )


def conversion_error(scanner: str, raw: Any, exc: Exception, file: str | None = None) -> AdapterError:
    """Structured error for one raw finding that could not become a valid record."""
    rule = (raw.get("check_id") or raw.get("RuleID") or raw.get("id")) if isinstance(raw, dict) else None
    label = f" ({rule})" if rule else ""
    return AdapterError(
        message=f"{scanner} finding{label} could not be converted: {exc}",
        file=file,
        severity="error",
    )
