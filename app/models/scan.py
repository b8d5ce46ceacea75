"""ORM models for scans, their per-scanner runs and their progress log."""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from app.models.base import Base, JSONType


class Scan(Base):
    """
    One scan of a workspace checkout.

    status is written only by the lifecycle manager, always together with
    progress_percentage and progress_stage.
    """

    __tablename__ = "scans"

    id = Column(String(36), primary_key=True)
    target = Column(String(4096), nullable=False, index=True)
    mode = Column(String(16), nullable=False)
    scanners = Column(JSONType, nullable=False, default=list)
    status = Column(String(32), nullable=False, index=True)
    progress_percentage = Column(Integer, nullable=False, default=0)
    progress_stage = Column(String(64), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    enrichment_degraded = Column(Boolean, nullable=False, default=False)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    scanner_runs = relationship(
        "ScannerRun", back_populates="scan", cascade="all, delete-orphan", passive_deletes=True
    )
    logs = relationship(
        "ScanLog", back_populates="scan", cascade="all, delete-orphan", passive_deletes=True
    )
    vulnerabilities = relationship(
        "Vulnerability", back_populates="scan", cascade="all, delete-orphan", passive_deletes=True
    )


class ScannerRun(Base):
    """Outcome of one adapter within a scan (completed, failed or skipped)."""

    __tablename__ = "scanner_runs"
    __table_args__ = (UniqueConstraint("scan_id", "scanner", name="uq_scanner_runs_scan_scanner"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    scan_id = Column(
        String(36), ForeignKey("scans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    scanner = Column(String(32), nullable=False)
    type = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False)
    findings_count = Column(Integer, nullable=False, default=0)
    duration_ms = Column(Integer, nullable=False, default=0)
    errors = Column(JSONType, nullable=False, default=list)
    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", JSONType, nullable=False, default=dict)

    scan = relationship("Scan", back_populates="scanner_runs")


class ScanLog(Base):
    """Append-only progress/diagnostic event; sequence is strictly increasing per scan."""

    __tablename__ = "scan_logs"
    __table_args__ = (UniqueConstraint("scan_id", "sequence", name="uq_scan_logs_scan_sequence"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    scan_id = Column(
        String(36), ForeignKey("scans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sequence = Column(Integer, nullable=False)
    level = Column(String(16), nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSONType, nullable=False, default=dict)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    scan = relationship("Scan", back_populates="logs")
