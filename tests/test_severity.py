"""Unit tests for per-scanner severity tables: every token maps, unknown and missing map to info."""

import unittest

from app.schemas.vulnerability import SEVERITY_VALUES
from app.services.severity import SEVERITY_TABLES, normalize_severity


class TestSeverityTables(unittest.TestCase):
    """Every declared token maps to a canonical level for every scanner."""

    def test_all_tables_produce_canonical_levels(self) -> None:
        self.assertEqual(set(SEVERITY_TABLES), {"semgrep", "osv", "gitleaks", "checkov", "trivy"})
        for scanner, table in SEVERITY_TABLES.items():
            for token, level in table.items():
                self.assertIn(level, SEVERITY_VALUES, f"{scanner}:{token}")
                self.assertEqual(normalize_severity(scanner, token.upper()), level)

    def test_semgrep_vocabulary(self) -> None:
        self.assertEqual(normalize_severity("semgrep", "ERROR"), "critical")
        self.assertEqual(normalize_severity("semgrep", "WARNING"), "high")
        self.assertEqual(normalize_severity("semgrep", "INFO"), "info")

    def test_osv_moderate_is_medium(self) -> None:
        self.assertEqual(normalize_severity("osv", "MODERATE"), "medium")

    def test_trivy_unknown_is_info(self) -> None:
        self.assertEqual(normalize_severity("trivy", "UNKNOWN"), "info")

    def test_case_and_whitespace_insensitive(self) -> None:
        self.assertEqual(normalize_severity("gitleaks", "  Critical "), "critical")


class TestSeverityFallback(unittest.TestCase):
    """Unknown, missing and non-string inputs never raise; they map to info."""

    def test_missing_and_empty(self) -> None:
        for raw in (None, "", "   "):
            self.assertEqual(normalize_severity("semgrep", raw), "info")

    def test_unknown_token(self) -> None:
        self.assertEqual(normalize_severity("checkov", "SEVERE"), "info")

    def test_unknown_scanner(self) -> None:
        self.assertEqual(normalize_severity("nessus", "HIGH"), "info")

    def test_non_string(self) -> None:
        self.assertEqual(normalize_severity("osv", 7), "info")  # type: ignore[arg-type]
