"""Scanner adapters: run one external security tool and convert its report to NormalizedVulnerability records."""

from app.scanners.base import ScannerAdapter
from app.scanners.registry import SCAN_PROFILES, ScannerRegistry, build_registry

__all__ = ["SCAN_PROFILES", "ScannerAdapter", "ScannerRegistry", "build_registry"]
