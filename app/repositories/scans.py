"""Scan repository: the only code that touches the scan tables.

Each call runs in its own short transaction and commits before returning, so
readers only ever see committed state. Any SQLAlchemy error is re-raised as
PersistenceFailure.
"""

import logging
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import PersistenceFailure
from app.models import Scan as ScanRow
from app.models import ScanLog as ScanLogRow
from app.models import ScannerRun as ScannerRunRow
from app.models import Vulnerability as VulnerabilityRow
from app.schemas.scan import TERMINAL_STATUSES, Scan, ScanLogEntry, ScannerRun
from app.schemas.vulnerability import NormalizedVulnerability, utcnow

logger = logging.getLogger(__name__)

# Concurrent appenders (lifecycle and the stalled-scan job) can race on the next sequence.
APPEND_LOG_ATTEMPTS = 3

NON_TERMINAL_STATUSES = ("pending", "running", "normalizing", "ai_enriching")


@dataclass(frozen=True)
class PriorVulnerability:
    """The most recent earlier record with a given fingerprint."""

    id: str
    scan_id: str
    fingerprint: str
    content_hash: str | None
    first_seen_scan_id: str | None


class ScanRepository(Protocol):
    def create_scan(
        self, scan_id: str, target: str, mode: str, scanners: list[str], status: str, stage: str
    ) -> Scan: ...

    def get_scan(self, scan_id: str) -> Scan | None: ...

    def update_scan(
        self, scan_id: str, expected_status: str | Iterable[str] | None = None, **fields: Any
    ) -> bool: ...

    def append_log(
        self, scan_id: str, level: str, message: str, details: dict[str, Any] | None = None
    ) -> ScanLogEntry: ...

    def list_logs(self, scan_id: str, after: int | None = None) -> list[ScanLogEntry]: ...

    def save_scanner_runs(self, scan_id: str, runs: list[ScannerRun]) -> None: ...

    def list_scanner_runs(self, scan_id: str) -> list[ScannerRun]: ...

    def insert_vulnerabilities(
        self, scan_id: str, vulns: list[NormalizedVulnerability]
    ) -> bool: ...

    def list_vulnerabilities(self, scan_id: str) -> list[NormalizedVulnerability]: ...

    def severity_counts(self, scan_id: str) -> dict[str, int]: ...

    def find_previous_vulnerabilities(
        self, target: str, fingerprints: list[str], exclude_scan_id: str
    ) -> dict[str, PriorVulnerability]: ...

    def list_stalled_scans(self, updated_before: datetime) -> list[Scan]: ...


def _as_status_set(expected: str | Iterable[str] | None) -> tuple[str, ...] | None:
    if expected is None:
        return None
    if isinstance(expected, str):
        return (expected,)
    return tuple(expected)


def _vulnerability_from_row(row: VulnerabilityRow) -> NormalizedVulnerability:
    return NormalizedVulnerability(
        id=row.id,
        scan_id=row.scan_id,
        scanner=row.scanner,
        type=row.type,
        severity=row.severity,
        title=row.title,
        description=row.description,
        file_path=row.file_path,
        line_start=row.line_start,
        line_end=row.line_end,
        code_snippet=row.code_snippet,
        rule_id=row.rule_id,
        cwe=list(row.cwe or []),
        cve=row.cve,
        owasp=list(row.owasp or []),
        confidence=row.confidence,
        recommendation=row.recommendation,
        references=list(row.references or []),
        metadata=dict(row.metadata_ or {}),
        detected_at=row.detected_at,
    )


def _vulnerability_to_row(vuln: NormalizedVulnerability, position: int) -> VulnerabilityRow:
    return VulnerabilityRow(
        id=vuln.id,
        scan_id=vuln.scan_id,
        scanner=vuln.scanner,
        type=vuln.type,
        severity=vuln.severity,
        title=vuln.title,
        description=vuln.description,
        file_path=vuln.file_path,
        line_start=vuln.line_start,
        line_end=vuln.line_end,
        code_snippet=vuln.code_snippet,
        rule_id=vuln.rule_id,
        cwe=vuln.cwe,
        cve=vuln.cve,
        owasp=vuln.owasp,
        confidence=vuln.confidence,
        recommendation=vuln.recommendation,
        references=vuln.references,
        metadata_=vuln.model_dump(mode="json")["metadata"],
        fingerprint=vuln.metadata.get("fingerprint") or "",
        content_hash=vuln.metadata.get("content_hash"),
        position=position,
        detected_at=vuln.detected_at,
    )


def _scanner_run_from_row(row: ScannerRunRow) -> ScannerRun:
    return ScannerRun(
        scanner=row.scanner,
        type=row.type,
        status=row.status,
        findings_count=row.findings_count,
        duration_ms=row.duration_ms,
        errors=list(row.errors or []),
        metadata=dict(row.metadata_ or {}),
    )


class SqlAlchemyScanRepository:
    """ScanRepository backed by the SQLAlchemy ORM models."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self, action: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Persistence failure while trying to %s: %s", action, e)
            raise PersistenceFailure(f"Could not {action}", cause=e) from e
        finally:
            session.close()

    def create_scan(
        self, scan_id: str, target: str, mode: str, scanners: list[str], status: str, stage: str
    ) -> Scan:
        now = utcnow()
        row = ScanRow(
            id=scan_id,
            target=target,
            mode=mode,
            scanners=list(scanners),
            status=status,
            progress_percentage=0,
            progress_stage=stage,
            enrichment_degraded=False,
            created_at=now,
            updated_at=now,
        )
        with self._session("create scan") as session:
            session.add(row)
            session.commit()
            return Scan.model_validate(row)

    def get_scan(self, scan_id: str) -> Scan | None:
        with self._session("load scan") as session:
            row = session.get(ScanRow, scan_id)
            return Scan.model_validate(row) if row is not None else None

    def update_scan(
        self, scan_id: str, expected_status: str | Iterable[str] | None = None, **fields: Any
    ) -> bool:
        """
        Compare-and-set update. Returns False, writing nothing, when the scan's
        current status is not one of expected_status.
        """
        statuses = _as_status_set(expected_status)
        stmt = update(ScanRow).where(ScanRow.id == scan_id)
        if statuses is not None:
            stmt = stmt.where(ScanRow.status.in_(statuses))
        stmt = stmt.values(**fields, updated_at=utcnow())
        with self._session("update scan") as session:
            result = session.execute(stmt)
            session.commit()
            return result.rowcount == 1

    def append_log(
        self, scan_id: str, level: str, message: str, details: dict[str, Any] | None = None
    ) -> ScanLogEntry:
        for attempt in range(1, APPEND_LOG_ATTEMPTS + 1):
            with self._session("append scan log") as session:
                current = session.scalar(
                    select(func.max(ScanLogRow.sequence)).where(ScanLogRow.scan_id == scan_id)
                )
                row = ScanLogRow(
                    scan_id=scan_id,
                    sequence=(current or 0) + 1,
                    level=level,
                    message=message,
                    details=details or {},
                    created_at=utcnow(),
                )
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    if attempt == APPEND_LOG_ATTEMPTS:
                        raise
                    logger.debug("Log sequence collision on scan %s; retrying", scan_id)
                    continue
                return ScanLogEntry.model_validate(row)
        raise PersistenceFailure(f"Could not append log for scan {scan_id}")

    def list_logs(self, scan_id: str, after: int | None = None) -> list[ScanLogEntry]:
        stmt = select(ScanLogRow).where(ScanLogRow.scan_id == scan_id)
        if after is not None:
            stmt = stmt.where(ScanLogRow.sequence > after)
        stmt = stmt.order_by(ScanLogRow.sequence)
        with self._session("list scan logs") as session:
            return [ScanLogEntry.model_validate(row) for row in session.scalars(stmt)]

    def save_scanner_runs(self, scan_id: str, runs: list[ScannerRun]) -> None:
        with self._session("save scanner runs") as session:
            for run in runs:
                session.add(
                    ScannerRunRow(
                        scan_id=scan_id,
                        scanner=run.scanner,
                        type=run.type,
                        status=run.status,
                        findings_count=run.findings_count,
                        duration_ms=run.duration_ms,
                        errors=run.errors,
                        metadata_=run.metadata,
                    )
                )
            session.commit()

    def list_scanner_runs(self, scan_id: str) -> list[ScannerRun]:
        stmt = select(ScannerRunRow).where(ScannerRunRow.scan_id == scan_id).order_by(ScannerRunRow.id)
        with self._session("list scanner runs") as session:
            return [_scanner_run_from_row(row) for row in session.scalars(stmt)]

    def insert_vulnerabilities(self, scan_id: str, vulns: list[NormalizedVulnerability]) -> bool:
        """
        Bulk insert in one transaction, only while the scan is still non-terminal.

        The status check takes a row lock (SELECT ... FOR UPDATE on PostgreSQL),
        so a concurrent cancel cannot slip between the check and the insert.
        Returns False, inserting nothing, when the scan is already terminal.
        """
        with self._session("insert vulnerabilities") as session:
            status = session.scalar(
                select(ScanRow.status).where(ScanRow.id == scan_id).with_for_update()
            )
            if status is None or status in TERMINAL_STATUSES:
                session.rollback()
                return False
            session.add_all(_vulnerability_to_row(v, i) for i, v in enumerate(vulns))
            session.commit()
            return True

    def list_vulnerabilities(self, scan_id: str) -> list[NormalizedVulnerability]:
        stmt = (
            select(VulnerabilityRow)
            .where(VulnerabilityRow.scan_id == scan_id)
            .order_by(VulnerabilityRow.position, VulnerabilityRow.id)
        )
        with self._session("list vulnerabilities") as session:
            return [_vulnerability_from_row(row) for row in session.scalars(stmt)]

    def severity_counts(self, scan_id: str) -> dict[str, int]:
        stmt = (
            select(VulnerabilityRow.severity, func.count())
            .where(VulnerabilityRow.scan_id == scan_id)
            .group_by(VulnerabilityRow.severity)
        )
        with self._session("count vulnerabilities") as session:
            return {severity: count for severity, count in session.execute(stmt)}

    def find_previous_vulnerabilities(
        self, target: str, fingerprints: list[str], exclude_scan_id: str
    ) -> dict[str, PriorVulnerability]:
        if not fingerprints:
            return {}
        stmt = (
            select(VulnerabilityRow, ScanRow.created_at)
            .join(ScanRow, ScanRow.id == VulnerabilityRow.scan_id)
            .where(
                ScanRow.target == target,
                ScanRow.status == "completed",
                ScanRow.id != exclude_scan_id,
                VulnerabilityRow.fingerprint.in_(set(fingerprints)),
            )
            .order_by(ScanRow.created_at.desc(), VulnerabilityRow.id)
        )
        prior: dict[str, PriorVulnerability] = {}
        with self._session("find previous vulnerabilities") as session:
            for row, _created_at in session.execute(stmt):
                if row.fingerprint in prior:
                    continue
                prior[row.fingerprint] = PriorVulnerability(
                    id=row.id,
                    scan_id=row.scan_id,
                    fingerprint=row.fingerprint,
                    content_hash=row.content_hash,
                    first_seen_scan_id=(row.metadata_ or {}).get("first_seen_scan_id"),
                )
        return prior

    def list_stalled_scans(self, updated_before: datetime) -> list[Scan]:
        stmt = (
            select(ScanRow)
            .where(ScanRow.status.in_(NON_TERMINAL_STATUSES), ScanRow.updated_at < updated_before)
            .order_by(ScanRow.created_at)
        )
        with self._session("list stalled scans") as session:
            return [Scan.model_validate(row) for row in session.scalars(stmt)]
