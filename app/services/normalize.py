"""Normalization and correlation of adapter output into one deduplicated vulnerability list.

Pipeline: canonicalize every record, group by dedup key, fold each group into
one survivor, stamp scan-independent fingerprints, then sort. The result
depends only on the multiset of input records, never on their order.
"""

import hashlib
import logging
import re
from collections import defaultdict
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from app.core.errors import NormalizationError
from app.schemas.vulnerability import (
    SCANNER_TYPE,
    NormalizedVulnerability,
    severity_rank,
)

if TYPE_CHECKING:
    from app.repositories.scans import ScanRepository

logger = logging.getLogger(__name__)

# CVE: CVE-YEAR-NNNNN+ (4+ digits after second hyphen).
_CVE_PATTERN = re.compile(r"^CVE-\d{4}-\d{4,}$", re.IGNORECASE)
# GHSA: GHSA-xxxx-xxxx-xxxx (4 alphanumeric groups).
_GHSA_PATTERN = re.compile(r"^GHSA-[a-z0-9]{4}-[a-z0-9]{4}-[a-z0-9]{4}$", re.IGNORECASE)

DEPENDENCY_TYPES = frozenset({"sca", "container"})
_OPTIONAL_TEXT_FIELDS = ("file_path", "code_snippet", "cve")

DedupKey = tuple[str, str, str]


def _clean_text_list(values: Iterable[Any]) -> list[str]:
    out: list[str] = []
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if text and text not in out:
            out.append(text)
    return out


def _normalize_path(path: str | None) -> str | None:
    if path is None:
        return None
    path = path.strip().replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    path = path.lstrip("/")
    return path or None


def canonicalize(vuln: NormalizedVulnerability) -> NormalizedVulnerability:
    """
    Re-validate one record and tidy its fields.

    Raises NormalizationError when the record breaks a data-model invariant
    (for example a type that does not match its scanner); that is an adapter
    bug, not bad scanner data.
    """
    data = vuln.model_dump()
    expected = SCANNER_TYPE.get(data["scanner"])
    if expected is None or data["type"] != expected:
        raise NormalizationError(
            f"Vulnerability {data['id']} has type {data['type']!r} but scanner {data['scanner']!r}"
        )
    for name in _OPTIONAL_TEXT_FIELDS:
        value = data.get(name)
        if isinstance(value, str) and not value.strip():
            data[name] = None
    data["file_path"] = _normalize_path(data["file_path"])
    if data["cve"] is not None:
        cve = data["cve"].strip().upper()
        data["cve"] = cve if _CVE_PATTERN.match(cve) else None
    data["cwe"] = _clean_text_list(data["cwe"])
    data["owasp"] = _clean_text_list(data["owasp"])
    data["references"] = _clean_text_list(data["references"])
    try:
        return NormalizedVulnerability.model_validate(data)
    except ValidationError as e:
        raise NormalizationError(f"Vulnerability {data['id']} is invalid: {e}", cause=e) from e


def identifier(vuln: NormalizedVulnerability) -> str:
    """CVE, else first GHSA/CVE alias, else empty; dependency findings also carry the package name."""
    ident = vuln.cve or ""
    if not ident:
        for alias in vuln.metadata.get("aliases") or []:
            alias = str(alias).strip()
            if _GHSA_PATTERN.match(alias) or _CVE_PATTERN.match(alias):
                ident = alias.upper()
                break
    if vuln.type in DEPENDENCY_TYPES:
        package = vuln.metadata.get("package_name")
        if package:
            ident = f"{ident}@{package}"
    return ident


def dedup_key(vuln: NormalizedVulnerability) -> DedupKey:
    return (vuln.file_path or "", vuln.rule_id, identifier(vuln))


def combine_confidence(confidences_by_scanner: dict[str, list[float]]) -> float:
    """
    Noisy-OR across distinct scanners: 1 - prod(1 - c_i).

    Repeats from the same scanner count once (their max). The result is never
    below the largest input.
    """
    per_scanner = sorted(max(values) for values in confidences_by_scanner.values() if values)
    if not per_scanner:
        return 0.0
    miss = 1.0
    for c in per_scanner:
        miss *= 1.0 - c
    combined = round(1.0 - miss, 6)
    return min(1.0, max(combined, per_scanner[-1]))


def _survivor_order(vuln: NormalizedVulnerability) -> tuple[float, int, str, str]:
    return (-vuln.confidence, severity_rank(vuln.severity), vuln.scanner, vuln.id)


def merge_group(group: list[NormalizedVulnerability]) -> NormalizedVulnerability:
    """Fold duplicates into the highest-confidence record, keeping the worst severity."""
    ordered = sorted(group, key=_survivor_order)
    survivor, folded = ordered[0], ordered[1:]
    if not folded:
        return survivor

    by_scanner: dict[str, list[float]] = defaultdict(list)
    for v in ordered:
        by_scanner[v.scanner].append(v.confidence)

    metadata = dict(survivor.metadata)
    duplicates = list(metadata.get("duplicates") or [])
    duplicates.extend(
        {
            "id": v.id,
            "scanner": v.scanner,
            "confidence": v.confidence,
            "line_start": v.line_start,
            "line_end": v.line_end,
            "code_snippet": v.code_snippet,
        }
        for v in folded
    )
    metadata["duplicates"] = sorted(duplicates, key=lambda d: (d["scanner"], d["id"]))
    scanners = set(metadata.get("scanners") or []) | set(by_scanner)
    metadata["scanners"] = sorted(scanners)

    return survivor.model_copy(
        update={
            "severity": min((v.severity for v in ordered), key=severity_rank),
            "confidence": combine_confidence(by_scanner),
            "cwe": _clean_text_list(c for v in ordered for c in v.cwe),
            "owasp": _clean_text_list(o for v in ordered for o in v.owasp),
            "references": _clean_text_list(r for v in ordered for r in v.references),
            "metadata": metadata,
        }
    )


def correlate(vulns: Iterable[NormalizedVulnerability]) -> list[NormalizedVulnerability]:
    groups: dict[DedupKey, list[NormalizedVulnerability]] = defaultdict(list)
    for v in vulns:
        groups[dedup_key(v)].append(v)
    return [merge_group(group) for group in groups.values()]


def fingerprint(target: str, vuln: NormalizedVulnerability) -> str:
    """Scan-independent identity: the same issue in the same target hashes the same across scans."""
    file_path, rule_id, ident = dedup_key(vuln)
    key = "|".join([target.rstrip("/"), vuln.type, file_path.lower(), rule_id.lower(), ident.lower()])
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def content_hash(snippet: str | None) -> str | None:
    """Hash of the whitespace-normalised snippet; None when there is no snippet."""
    if not snippet:
        return None
    normalized = " ".join(snippet.split())
    if not normalized:
        return None
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def sort_key(vuln: NormalizedVulnerability) -> tuple[int, float, str, str, str]:
    return (
        severity_rank(vuln.severity),
        -vuln.confidence,
        vuln.file_path or "",
        vuln.rule_id,
        identifier(vuln),
    )


def normalize_vulnerabilities(
    vulns: Iterable[NormalizedVulnerability], target: str
) -> list[NormalizedVulnerability]:
    """Canonicalize, deduplicate, fingerprint and sort. Pure; running it twice changes nothing."""
    canonical = [canonicalize(v) for v in vulns]
    merged = correlate(canonical)
    stamped = []
    for v in merged:
        metadata = dict(v.metadata)
        metadata["fingerprint"] = fingerprint(target, v)
        metadata["content_hash"] = content_hash(v.code_snippet)
        stamped.append(v.model_copy(update={"metadata": metadata}))
    return sorted(stamped, key=sort_key)


class NormalizationEngine:
    """Normalizes one scan's merged adapter output and links it to earlier scans of the same target."""

    def __init__(self, repository: "ScanRepository | None" = None) -> None:
        self._repository = repository

    def run(
        self,
        vulns: Iterable[NormalizedVulnerability],
        target: str,
        scan_id: str,
    ) -> list[NormalizedVulnerability]:
        normalized = normalize_vulnerabilities(vulns, target)
        if self._repository is None or not normalized:
            return normalized
        return self.link_previous(normalized, target, scan_id)

    def link_previous(
        self,
        vulns: list[NormalizedVulnerability],
        target: str,
        scan_id: str,
    ) -> list[NormalizedVulnerability]:
        """
        Attach cross-scan identity.

        A prior record with the same fingerprint and unchanged content becomes
        `previous_vulnerability_id`; a changed snippet is flagged instead.
        """
        if self._repository is None:
            return vulns
        fingerprints = [v.metadata["fingerprint"] for v in vulns]
        prior = self._repository.find_previous_vulnerabilities(target, fingerprints, scan_id)
        if not prior:
            return vulns
        linked: list[NormalizedVulnerability] = []
        matched = 0
        for v in vulns:
            previous = prior.get(v.metadata["fingerprint"])
            if previous is None:
                linked.append(v)
                continue
            metadata = dict(v.metadata)
            if previous.content_hash == metadata.get("content_hash"):
                metadata["previous_vulnerability_id"] = previous.id
                metadata["first_seen_scan_id"] = previous.first_seen_scan_id or previous.scan_id
                matched += 1
            else:
                metadata["content_changed"] = True
            linked.append(v.model_copy(update={"metadata": metadata}))
        logger.info(
            "Linked vulnerabilities to previous scans",
            extra={"scan_id": scan_id, "linked": matched, "total": len(vulns)},
        )
        return linked
