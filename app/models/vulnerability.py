"""ORM model for persisted normalized vulnerabilities."""

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from app.models.base import Base, JSONType


class Vulnerability(Base):
    """
    Persisted NormalizedVulnerability, plus cross-scan identity columns.

    fingerprint is stable across scans of the same target; content_hash
    changes when the flagged code changes.
    """

    __tablename__ = "vulnerabilities"

    id = Column(String(36), primary_key=True)
    scan_id = Column(
        String(36), ForeignKey("scans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    scanner = Column(String(32), nullable=False)
    type = Column(String(32), nullable=False, index=True)
    severity = Column(String(16), nullable=False, index=True)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=False)
    file_path = Column(String(2048), nullable=True)
    line_start = Column(Integer, nullable=True)
    line_end = Column(Integer, nullable=True)
    code_snippet = Column(Text, nullable=True)
    rule_id = Column(String(512), nullable=False)
    cwe = Column(JSONType, nullable=False, default=list)
    cve = Column(String(64), nullable=True, index=True)
    owasp = Column(JSONType, nullable=False, default=list)
    confidence = Column(Float, nullable=False)
    recommendation = Column(Text, nullable=False)
    references = Column(JSONType, nullable=False, default=list)
    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", JSONType, nullable=False, default=dict)
    fingerprint = Column(String(64), nullable=False, index=True)
    content_hash = Column(String(64), nullable=True)
    # position in the normalized, sorted output of its scan
    position = Column(Integer, nullable=False, default=0)
    detected_at = Column(DateTime(timezone=True), nullable=False)

    scan = relationship("Scan", back_populates="vulnerabilities")
