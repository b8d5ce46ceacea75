"""SQLAlchemy ORM models."""

from app.models.base import Base
from app.models.scan import Scan, ScanLog, ScannerRun
from app.models.vulnerability import Vulnerability

__all__ = ["Base", "Scan", "ScanLog", "ScannerRun", "Vulnerability"]
