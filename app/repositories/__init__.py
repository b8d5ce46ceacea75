"""Persistence collaborators for scan state."""

from app.repositories.scans import PriorVulnerability, ScanRepository, SqlAlchemyScanRepository

__all__ = ["PriorVulnerability", "ScanRepository", "SqlAlchemyScanRepository"]
