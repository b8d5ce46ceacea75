"""Unit tests for normalization and correlation: dedup, confidence merge, ordering, cross-scan linking."""

import random
import unittest

from fakes import InMemoryScanRepository, make_vuln

from app.core.errors import NormalizationError
from app.services.normalize import (
    NormalizationEngine,
    canonicalize,
    combine_confidence,
    content_hash,
    dedup_key,
    fingerprint,
    normalize_vulnerabilities,
)

TARGET = "/workspace/repo"


def _mixed_batch() -> list:
    return [
        make_vuln("semgrep", severity="high", confidence=0.6, line_start=10),
        make_vuln("semgrep", severity="critical", confidence=0.9, line_start=14),
        make_vuln("semgrep", severity="low", confidence=0.7, rule_id="python.flask.debug-enabled"),
        make_vuln(
            "gitleaks",
            severity="critical",
            confidence=0.95,
            rule_id="aws-access-token",
            file_path="config/settings.py",
            code_snippet="***REDACTED***",
        ),
        make_vuln(
            "osv",
            severity="medium",
            confidence=1.0,
            rule_id="GHSA-35jh-r3h4-6jhm",
            file_path="package-lock.json",
            cve="CVE-2021-23337",
            code_snippet=None,
            metadata={"package_name": "lodash"},
        ),
        make_vuln(
            "osv",
            severity="high",
            confidence=1.0,
            rule_id="GHSA-35jh-r3h4-6jhm",
            file_path="package-lock.json",
            cve="CVE-2021-23337",
            code_snippet=None,
            metadata={"package_name": "lodash-es"},
        ),
    ]


class TestCanonicalize(unittest.TestCase):
    def test_type_mismatch_raises(self) -> None:
        bad = make_vuln("semgrep").model_copy(update={"type": "iac"})
        with self.assertRaises(NormalizationError):
            canonicalize(bad)

    def test_tidies_fields(self) -> None:
        v = canonicalize(
            make_vuln(
                file_path="./src\\app.py",
                cve="cve-2021-44228",
                code_snippet="   ",
                cwe=["CWE-95", " CWE-95 ", ""],
            )
        )
        self.assertEqual(v.file_path, "src/app.py")
        self.assertEqual(v.cve, "CVE-2021-44228")
        self.assertIsNone(v.code_snippet)
        self.assertEqual(v.cwe, ["CWE-95"])

    def test_malformed_cve_dropped(self) -> None:
        self.assertIsNone(canonicalize(make_vuln(cve="CVE-TBD")).cve)


class TestCorrelation(unittest.TestCase):
    def test_duplicates_merge_to_highest_confidence(self) -> None:
        low = make_vuln("semgrep", confidence=0.6, severity="medium", line_start=3)
        high = make_vuln("semgrep", confidence=0.9, severity="high", line_start=9)
        result = normalize_vulnerabilities([low, high], TARGET)
        self.assertEqual(len(result), 1)
        merged = result[0]
        self.assertEqual(merged.id, high.id)
        self.assertGreaterEqual(merged.confidence, 0.9)
        self.assertEqual(merged.severity, "high")
        self.assertEqual([d["id"] for d in merged.metadata["duplicates"]], [low.id])

    def test_folded_locations_keep_lines_and_snippet(self) -> None:
        first = make_vuln("semgrep", confidence=0.9, line_start=4, line_end=4, code_snippet="eval(a)")
        other = make_vuln("semgrep", confidence=0.7, line_start=20, line_end=22, code_snippet="eval(\n  b\n)")
        (merged,) = normalize_vulnerabilities([first, other], TARGET)
        (duplicate,) = merged.metadata["duplicates"]
        self.assertEqual((merged.line_start, merged.code_snippet), (4, "eval(a)"))
        self.assertEqual((duplicate["line_start"], duplicate["line_end"]), (20, 22))
        self.assertEqual(duplicate["code_snippet"], "eval(\n  b\n)")

    def test_cross_scanner_confidence_is_noisy_or(self) -> None:
        shared = {
            "rule_id": "CVE-2021-44228",
            "file_path": "Dockerfile",
            "cve": "CVE-2021-44228",
            "metadata": {"package_name": "log4j-core"},
        }
        a = make_vuln("osv", confidence=0.6, severity="high", **shared)
        b = make_vuln("trivy", confidence=0.9, severity="critical", **shared)
        (merged,) = normalize_vulnerabilities([a, b], TARGET)
        self.assertAlmostEqual(merged.confidence, 0.96)
        self.assertEqual(merged.severity, "critical")
        self.assertEqual(merged.metadata["scanners"], ["osv", "trivy"])

    def test_same_cve_different_package_stays_separate(self) -> None:
        result = normalize_vulnerabilities(_mixed_batch()[4:], TARGET)
        self.assertEqual(len(result), 2)
        self.assertNotEqual(dedup_key(result[0]), dedup_key(result[1]))

    def test_combine_confidence_bounds(self) -> None:
        self.assertEqual(combine_confidence({}), 0.0)
        self.assertEqual(combine_confidence({"semgrep": [0.4, 0.7]}), 0.7)
        self.assertLessEqual(combine_confidence({"osv": [1.0], "trivy": [1.0]}), 1.0)


class TestOrderingAndIdempotence(unittest.TestCase):
    def test_permutation_independent(self) -> None:
        batch = _mixed_batch()
        expected = [v.model_dump() for v in normalize_vulnerabilities(batch, TARGET)]
        rng = random.Random(7)
        for _ in range(5):
            shuffled = batch[:]
            rng.shuffle(shuffled)
            got = [v.model_dump() for v in normalize_vulnerabilities(shuffled, TARGET)]
            self.assertEqual(got, expected)

    def test_idempotent(self) -> None:
        once = normalize_vulnerabilities(_mixed_batch(), TARGET)
        twice = normalize_vulnerabilities(once, TARGET)
        self.assertEqual([v.model_dump() for v in twice], [v.model_dump() for v in once])

    def test_sorted_by_severity_then_confidence(self) -> None:
        result = normalize_vulnerabilities(_mixed_batch(), TARGET)
        severities = [v.severity for v in result]
        self.assertEqual(severities[:2], ["critical", "critical"])
        self.assertEqual(result[0].confidence, 0.95)
        self.assertEqual(severities[-1], "low")

    def test_fingerprint_stamped_and_scan_independent(self) -> None:
        a = make_vuln(scan_id="scan-a")
        b = make_vuln(scan_id="scan-b", line_start=99)
        self.assertEqual(fingerprint(TARGET, a), fingerprint(TARGET, b))
        self.assertNotEqual(fingerprint(TARGET, a), fingerprint("/other/repo", a))
        (stamped,) = normalize_vulnerabilities([a], TARGET)
        self.assertEqual(stamped.metadata["fingerprint"], fingerprint(TARGET, a))

    def test_content_hash_ignores_whitespace(self) -> None:
        self.assertEqual(content_hash("eval( x )\n"), content_hash("  eval(  x )"))
        self.assertIsNone(content_hash(None))
        self.assertIsNone(content_hash(" \n "))

    def test_empty_input(self) -> None:
        self.assertEqual(normalize_vulnerabilities([], TARGET), [])


class TestLinkPrevious(unittest.TestCase):
    """Findings of a new scan link to the same finding of the last completed scan of that target."""

    def _completed_scan(self, repo: InMemoryScanRepository, scan_id: str, vulns: list) -> None:
        repo.create_scan(scan_id, TARGET, "full", ["semgrep"], status="normalizing", stage="x")
        repo.insert_vulnerabilities(scan_id, normalize_vulnerabilities(vulns, TARGET))
        repo.update_scan(scan_id, status="completed")

    def test_unchanged_snippet_links(self) -> None:
        repo = InMemoryScanRepository()
        first = make_vuln(scan_id="scan-1")
        self._completed_scan(repo, "scan-1", [first])
        engine = NormalizationEngine(repo)
        (linked,) = engine.run([make_vuln(scan_id="scan-2")], TARGET, "scan-2")
        self.assertEqual(linked.metadata["previous_vulnerability_id"], first.id)
        self.assertEqual(linked.metadata["first_seen_scan_id"], "scan-1")

    def test_changed_snippet_flagged(self) -> None:
        repo = InMemoryScanRepository()
        self._completed_scan(repo, "scan-1", [make_vuln(scan_id="scan-1")])
        engine = NormalizationEngine(repo)
        (linked,) = engine.run(
            [make_vuln(scan_id="scan-2", code_snippet="eval(sanitize(q))")], TARGET, "scan-2"
        )
        self.assertTrue(linked.metadata["content_changed"])
        self.assertNotIn("previous_vulnerability_id", linked.metadata)

    def test_no_repository_means_no_linking(self) -> None:
        (v,) = NormalizationEngine().run([make_vuln()], TARGET, "scan-2")
        self.assertNotIn("previous_vulnerability_id", v.metadata)
        vulns = normalize_vulnerabilities([make_vuln()], TARGET)
        self.assertEqual(NormalizationEngine().link_previous(vulns, TARGET, "scan-2"), vulns)
